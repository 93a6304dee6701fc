"""
Process-wide cached secret.

Wraps a loader coroutine so the first caller fetches the value and every
later caller reads it from memory. Concurrent first calls share one load.
"""

import asyncio
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from logconfig.logger import get_logger

logger = get_logger()

T = TypeVar("T")


class CachedSecret(Generic[T]):
    """Lazily loaded value with an explicit invalidation hook."""

    def __init__(self, name: str, loader: Callable[[], Awaitable[T]], enabled: bool = True):
        self.name = name
        self._loader = loader
        self._enabled = enabled
        self._value: Optional[T] = None
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._loaded

    async def get_or_load(self) -> T:
        if not self._enabled:
            return await self._loader()

        # Steady state: no lock.
        if self._loaded:
            return self._value

        async with self._lock:
            if not self._loaded:
                logger.info(f"Loading cached secret '{self.name}'")
                self._value = await self._loader()
                self._loaded = True
        return self._value

    def invalidate(self) -> None:
        self._value = None
        self._loaded = False
        logger.info(f"Invalidated cached secret '{self.name}'")
