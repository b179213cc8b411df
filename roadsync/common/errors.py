"""Domain errors and failure typing."""


class PipelineError(Exception):
    """Base class for pipeline failures."""

    error_code = "PIPELINE_ERROR"


class ConfigError(PipelineError):
    """Raised for invalid or missing configuration."""

    error_code = "CONFIG_ERROR"


class StageError(PipelineError):
    """Raised for failures that abort a whole run, such as an unreadable root."""

    error_code = "STAGE_ERROR"


class ReadingError(PipelineError):
    """A single reading cannot be turned into anomaly events.

    ``reason`` is the short code written to the source record's sidecar.
    """

    error_code = "READING_ERROR"

    def __init__(self, reason: str, message: str | None = None) -> None:
        super().__init__(message or reason)
        self.reason = reason


class InvalidPayload(ReadingError):
    error_code = "INVALID_PAYLOAD"


class GpsNotLocked(ReadingError):
    error_code = "GPS_NOT_LOCKED"


class NoAnomalyDetected(ReadingError):
    error_code = "NO_ANOMALY"


class NotEligible(PipelineError):
    """Record already carries a terminal migration status."""

    error_code = "NOT_ELIGIBLE"


class StorageFailure(PipelineError):
    """Transaction, connection or sidecar write failure for one item."""

    error_code = "STORAGE_FAILURE"
