"""MangaSync Common - shared errors, settings and logging.

Version: 1.0.0
"""

from mangasync_common.config import Settings, get_settings
from mangasync_common.errors import (
    JobValidationError,
    LockUnavailableError,
    MangaSyncError,
    NonRetryableError,
    SourceRebindError,
    StorageError,
)
from mangasync_common.logging_config import configure_logging, get_logger

__version__ = "1.0.0"

__all__ = [
    "Settings",
    "get_settings",
    "configure_logging",
    "get_logger",
    "MangaSyncError",
    "StorageError",
    "JobValidationError",
    "NonRetryableError",
    "SourceRebindError",
    "LockUnavailableError",
]
