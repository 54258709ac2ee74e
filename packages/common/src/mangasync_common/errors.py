"""Custom error types for the mangasync pipeline.

All errors follow the "fail fast" principle with explicit messages.

Retry semantics are decided by type: the queue consumer treats
``JobValidationError`` and ``NonRetryableError`` as final and retries
everything else with exponential backoff.
"""


class MangaSyncError(Exception):
    """Base exception for all mangasync errors."""

    pass


class StorageError(MangaSyncError):
    """Error during database operations."""

    pass


class JobValidationError(MangaSyncError):
    """Job payload failed schema validation.

    Malformed payloads never become valid on retry, so the job is
    logged and dropped.
    """

    pass


class NonRetryableError(MangaSyncError):
    """Error that retrying cannot fix."""

    pass


class SourceRebindError(NonRetryableError):
    """A (source_name, source_id) link is already bound to another series."""

    def __init__(self, source_name: str, source_id: str, bound_series_id: str, requested_series_id: str):
        self.source_name = source_name
        self.source_id = source_id
        self.bound_series_id = bound_series_id
        self.requested_series_id = requested_series_id
        super().__init__(
            f"Source {source_name}:{source_id} is bound to series {bound_series_id}, "
            f"refusing to rebind to {requested_series_id}"
        )


class LockUnavailableError(MangaSyncError):
    """A distributed lock is held by another worker.

    Retryable: the queue will redeliver the job after backoff.
    """

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Failed to acquire lock: {key}")
