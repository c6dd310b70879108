"""Exception taxonomy for configuration, upstream and storage failures."""


class TrackerError(Exception):
    pass


class ConfigError(TrackerError):
    """Required configuration (e.g. the explorer API key) is missing."""


class UpstreamError(TrackerError):
    pass


class UpstreamHttpError(UpstreamError):
    """Non-retryable HTTP status from the explorer."""

    def __init__(self, status_code: int, message: str = "") -> None:
        self.status_code = status_code
        super().__init__(message or f"Explorer HTTP {status_code}")


class UpstreamDataError(UpstreamError):
    """Explorer answered, but the payload does not have the expected shape."""


class UpstreamRetryExhaustedError(UpstreamError):
    def __init__(self, attempts: int, reason: str) -> None:
        self.attempts = attempts
        self.reason = reason
        super().__init__(f"Explorer still failing after {attempts} attempts: {reason}")


class ConflictError(TrackerError):
    """Insert collided with an existing row on its natural key."""
