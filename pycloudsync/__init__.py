"""PyCloudSync - keep folder pairs in sync across cloud drives using rsync."""

from .config import Config
from .exceptions import (
    CloudSyncError,
    ConfigError,
    LockAcquisitionError,
    PairValidationError,
    StorageError,
)
from .storage import SyncStorage
from .sync import (
    ConflictResolution,
    SyncEngine,
    SyncMode,
    SyncPair,
    SyncResult,
    SyncStatus,
)

__version__ = "0.1.0"

__all__ = [
    "Config",
    "SyncStorage",
    "SyncEngine",
    "SyncMode",
    "SyncPair",
    "SyncResult",
    "SyncStatus",
    "ConflictResolution",
    "CloudSyncError",
    "ConfigError",
    "LockAcquisitionError",
    "PairValidationError",
    "StorageError",
]
