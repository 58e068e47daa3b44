"""Sync engine for pycloudsync - locking, rsync transfers and conflict handling."""

from .conflicts import ConflictDetector, ConflictResolver, copy_file
from .engine import SyncEngine, SyncPhase, sync_many
from .lock import LockInfo, LockManager
from .modes import ConflictResolution, SyncMode
from .pair import DEFAULT_EXCLUDES, SyncPair, paths_overlap
from .result import (
    FileConflict,
    SyncError,
    SyncErrorCode,
    SyncResult,
    SyncStatus,
)
from .retry import (
    RecoveryAction,
    RetryController,
    RetryPolicy,
    calculate_delay,
    get_recovery_action,
    is_recoverable,
    retry_sync,
)
from .transfer import RsyncRunner, TransferReport, build_arguments, parse_rsync_output

__all__ = [
    "SyncEngine",
    "SyncPhase",
    "sync_many",
    "SyncMode",
    "ConflictResolution",
    "SyncPair",
    "DEFAULT_EXCLUDES",
    "paths_overlap",
    "LockManager",
    "LockInfo",
    "RsyncRunner",
    "TransferReport",
    "build_arguments",
    "parse_rsync_output",
    "ConflictDetector",
    "ConflictResolver",
    "copy_file",
    "FileConflict",
    "SyncError",
    "SyncErrorCode",
    "SyncResult",
    "SyncStatus",
    "RecoveryAction",
    "RetryController",
    "RetryPolicy",
    "calculate_delay",
    "get_recovery_action",
    "is_recoverable",
    "retry_sync",
]
