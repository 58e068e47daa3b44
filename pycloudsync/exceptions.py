"""Exception classes for pycloudsync."""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from .sync.result import SyncError, SyncErrorCode


class CloudSyncError(Exception):
    """Base exception for all pycloudsync errors."""

    pass


class ConfigError(CloudSyncError):
    """Raised when the configuration file cannot be read."""

    pass


class StorageError(CloudSyncError):
    """Raised when pairs or results cannot be persisted."""

    pass


class PairValidationError(CloudSyncError):
    """Raised when a sync pair fails validation.

    Attributes:
        path: The offending path (if the failure is tied to one)
        code: Error code used when the failure is recorded in a SyncResult
    """

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        code: Optional["SyncErrorCode"] = None,
    ):
        super().__init__(message)
        self.path = path
        self.code = code


class LockAcquisitionError(CloudSyncError):
    """Raised when another process already holds the lock for a pair.

    This is never retried by the engine: it means a sync is already
    running, not that something went wrong.
    """

    def __init__(self, error: "SyncError"):
        super().__init__(error.message)
        self.error = error
