"""
Telemetry abstraction.

Pipelines emit events, counters and metrics through ``TelemetryService``.
The default implementation writes structured loguru records and keeps the
counters in memory so run summaries and tests can read them back.
"""

import threading
from abc import ABC, abstractmethod
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Dict, Optional

from logconfig.logger import get_logger
from migrationkit.exceptions.base_exceptions import BaseApplicationError

logger = get_logger()

DEFAULT_METRIC_WINDOW = 1000


@dataclass
class MetricAggregate:
    count: int = 0
    total: float = 0.0
    minimum: Optional[float] = None
    maximum: Optional[float] = None

    def add(self, value: float) -> None:
        self.count += 1
        self.total += value
        self.minimum = value if self.minimum is None else min(self.minimum, value)
        self.maximum = value if self.maximum is None else max(self.maximum, value)

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0


class TelemetryService(ABC):
    """Sink for structured telemetry."""

    @abstractmethod
    def track_event(self, name: str, properties: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    def track_metric(self, name: str, value: float, properties: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    def increment_counter(self, name: str, value: int = 1, properties: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    def track_exception(self, exception: BaseException, properties: Optional[Dict[str, Any]] = None) -> None:
        ...

    async def flush(self) -> None:
        return None


class LoggingTelemetryService(TelemetryService):
    """
    Telemetry written to the log stream, with in-process counters.

    Metrics keep running aggregates and at most the last ``metric_window``
    samples per name.
    """

    def __init__(self, metric_window: int = DEFAULT_METRIC_WINDOW):
        self.metric_window = metric_window
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = defaultdict(int)
        self._metrics: Dict[str, deque] = defaultdict(lambda: deque(maxlen=self.metric_window))
        self._aggregates: Dict[str, MetricAggregate] = defaultdict(MetricAggregate)
        self._events: Dict[str, int] = defaultdict(int)
        self._exceptions: Dict[str, int] = defaultdict(int)

    def track_event(self, name: str, properties: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._events[name] += 1
        logger.bind(telemetry="event", event_name=name, **(properties or {})).debug(f"Event: {name}")

    def track_metric(self, name: str, value: float, properties: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._metrics[name].append(value)
            self._aggregates[name].add(value)
        logger.bind(telemetry="metric", metric_name=name, value=value, **(properties or {})).debug(
            f"Metric: {name}={value}"
        )

    def increment_counter(self, name: str, value: int = 1, properties: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._counters[name] += value

    def track_exception(self, exception: BaseException, properties: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._exceptions[exception.__class__.__name__] += 1
        error = exception.to_dict() if isinstance(exception, BaseApplicationError) else None
        logger.bind(telemetry="exception", error=error, **(properties or {})).error(
            f"{exception.__class__.__name__}: {exception}"
        )

    def get_counter(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def get_event_count(self, name: str) -> int:
        with self._lock:
            return self._events.get(name, 0)

    def get_exception_count(self, exception_type: str) -> int:
        with self._lock:
            return self._exceptions.get(exception_type, 0)

    def get_metric_values(self, name: str) -> list:
        with self._lock:
            return list(self._metrics.get(name, []))

    def get_metric_aggregate(self, name: str) -> MetricAggregate:
        with self._lock:
            aggregate = self._aggregates.get(name)
            return MetricAggregate(**vars(aggregate)) if aggregate else MetricAggregate()

    async def flush(self) -> None:
        with self._lock:
            snapshot = dict(self._counters)
        if snapshot:
            logger.info(f"Telemetry counters: {snapshot}")
