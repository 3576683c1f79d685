"""Errors raised by the ingestion pipeline."""


class HealthSyncError(Exception):
    """Base class for pipeline errors."""


class BlobNotFoundError(HealthSyncError):
    """The requested object does not exist in the blob store."""

    def __init__(self, key: str):
        super().__init__(f"Object not found: {key}")
        self.key = key


class StreamReadError(HealthSyncError):
    """The source export could not be read, even after retries."""


class PersistenceError(HealthSyncError):
    """A metric history could not be saved, even after retries."""


class ProcessingCancelled(HealthSyncError):
    """Processing was cancelled by the caller."""


class ProcessingError(HealthSyncError):
    """A metric pass failed and the remaining pipeline was abandoned.

    ``status`` holds the ProcessingStatus as it was when the failure occurred.
    """

    def __init__(self, message: str, status=None):
        super().__init__(message)
        self.status = status
