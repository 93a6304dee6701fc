"""
Telemetry services package.
"""

from .telemetry_service import LoggingTelemetryService, TelemetryService

__all__ = ["LoggingTelemetryService", "TelemetryService"]
