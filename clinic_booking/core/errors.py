"""Exceptions shared by the booking engine."""


class ScheduleConfigurationError(RuntimeError):
    """Rule tables are missing or do not have the expected columns."""


class LockTimeoutError(TimeoutError):
    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout:g}s waiting for lock '{key}'.")
        self.key = key
        self.timeout = timeout


class BookingError(Exception):
    """A recoverable rejection that is reported to the caller as ok=false."""

    def __init__(self, code: str, reason: str | None = None):
        super().__init__(code if reason is None else f"{code} ({reason})")
        self.code = code
        self.reason = reason
