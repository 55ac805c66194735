"""Exception taxonomy for the telemetry pipeline."""

from __future__ import annotations


class TelemetryError(Exception):
    """Base class for all pipeline errors."""


class ConnectionFailed(TelemetryError):
    """Raised when a hardware scan, connect or disconnect fails.

    Recoverable: the caller decides whether to retry.
    """

    def __init__(self, device_id: str | None, reason: str) -> None:
        self.device_id = device_id
        self.reason = reason
        target = f" for {device_id}" if device_id else ""
        super().__init__(f"Hardware operation failed{target}: {reason}")


class PersistenceFailed(TelemetryError):
    """Raised when a store read or write fails."""

    def __init__(self, operation: str, reason: str) -> None:
        self.operation = operation
        self.reason = reason
        super().__init__(f"Store operation {operation!r} failed: {reason}")


class DataLoss(TelemetryError, Warning):
    """Emitted (as a warning) when an ingestion buffer overflows."""

    def __init__(self, device_id: str, data_type: str, dropped: int) -> None:
        self.device_id = device_id
        self.data_type = data_type
        self.dropped = dropped
        super().__init__(
            f"Ingestion buffer overflow for {device_id}/{data_type}: "
            f"{dropped} point(s) dropped so far"
        )


class NotInitialized(TelemetryError):
    """Raised when the service is used before ``initialize()`` or after ``cleanup()``."""

    def __init__(self, operation: str) -> None:
        self.operation = operation
        super().__init__(f"{operation}() called before initialize() or after cleanup()")


class UnknownDevice(TelemetryError, LookupError):
    """Raised for a hardware address with no registered, connected device."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        super().__init__(f"No connected device with id {device_id!r}")
