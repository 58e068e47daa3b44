"""Result records produced by a sync run.

A :class:`SyncResult` is created once per orchestrator invocation and is
never mutated afterwards. All records round-trip through ``to_dict`` /
``from_dict`` so the storage layer can keep them as JSON.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from ..utils import parse_iso_timestamp, to_iso, utc_now
from .modes import ConflictResolution


class SyncStatus(str, Enum):
    """Status of a sync operation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PAUSED = "paused"


class SyncErrorCode(str, Enum):
    """Closed set of error codes recorded in a SyncResult."""

    PERMISSION_DENIED = "permission_denied"
    PATH_NOT_FOUND = "path_not_found"
    INSUFFICIENT_SPACE = "insufficient_space"
    NETWORK_TIMEOUT = "network_timeout"
    HYDRATION_TIMEOUT = "hydration_timeout"
    """A cloud placeholder took too long to download before it could be read"""
    LOCKFILE_EXISTS = "lockfile_exists"
    RSYNC_FAILED = "transfer_tool_failed"
    UNKNOWN = "unknown"


def _require_datetime(value: Optional[str], key: str) -> datetime:
    parsed = parse_iso_timestamp(value)
    if parsed is None:
        raise ValueError(f"Invalid or missing timestamp for '{key}': {value!r}")
    return parsed


@dataclass(frozen=True)
class SyncError:
    """A single error recorded during a sync.

    ``is_recoverable`` is what the retry controller looks at first when
    deciding whether another attempt could succeed.
    """

    code: SyncErrorCode
    message: str
    path: Optional[str] = None
    timestamp: datetime = field(default_factory=utc_now)
    is_recoverable: bool = True

    def __str__(self) -> str:
        if self.path:
            return f"{self.message} ({self.path})"
        return self.message

    def to_dict(self) -> dict:
        return {
            "code": self.code.value,
            "message": self.message,
            "path": self.path,
            "timestamp": to_iso(self.timestamp),
            "is_recoverable": self.is_recoverable,
        }

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        path: Optional[str] = None,
        is_recoverable: bool = True,
    ) -> "SyncError":
        """Build an error record from a filesystem exception.

        Args:
            exc: The exception that was raised
            path: Path the operation was working on
            is_recoverable: Whether a later attempt could succeed

        Returns:
            SyncError with a code derived from the exception type
        """
        if isinstance(exc, PermissionError):
            code = SyncErrorCode.PERMISSION_DENIED
        elif isinstance(exc, (FileNotFoundError, NotADirectoryError)):
            code = SyncErrorCode.PATH_NOT_FOUND
        elif isinstance(exc, OSError) and "no space left" in str(exc).lower():
            code = SyncErrorCode.INSUFFICIENT_SPACE
        else:
            code = SyncErrorCode.UNKNOWN
        return cls(
            code=code, message=str(exc), path=path, is_recoverable=is_recoverable
        )

    @classmethod
    def from_dict(cls, data: dict) -> "SyncError":
        return cls(
            code=SyncErrorCode(data.get("code", SyncErrorCode.UNKNOWN.value)),
            message=data.get("message", ""),
            path=data.get("path"),
            timestamp=_require_datetime(data.get("timestamp"), "timestamp"),
            is_recoverable=bool(data.get("is_recoverable", True)),
        )


@dataclass(frozen=True)
class FileConflict:
    """A file that changed on both sides since the last successful sync."""

    path: str
    """Path relative to the pair roots"""

    source_modified: datetime
    destination_modified: datetime
    resolution: ConflictResolution

    resolved_path: Optional[str] = None
    """Relative path of the extra copy created by ``keep_both``"""

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "source_modified": to_iso(self.source_modified),
            "destination_modified": to_iso(self.destination_modified),
            "resolution": self.resolution.value,
            "resolved_path": self.resolved_path,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "FileConflict":
        return cls(
            path=data["path"],
            source_modified=_require_datetime(
                data.get("source_modified"), "source_modified"
            ),
            destination_modified=_require_datetime(
                data.get("destination_modified"), "destination_modified"
            ),
            resolution=ConflictResolution(data["resolution"]),
            resolved_path=data.get("resolved_path"),
        )


@dataclass(frozen=True)
class SyncResult:
    """Outcome of one sync invocation for one pair."""

    pair_id: str
    start_time: datetime
    end_time: datetime = field(default_factory=utc_now)
    files_added: int = 0
    files_updated: int = 0
    files_deleted: int = 0
    bytes_transferred: int = 0
    conflicts: tuple[FileConflict, ...] = ()
    errors: tuple[SyncError, ...] = ()
    is_dry_run: bool = False
    status: SyncStatus = SyncStatus.COMPLETED

    def __post_init__(self) -> None:
        # Accept lists from callers but store tuples so the record stays immutable
        object.__setattr__(self, "conflicts", tuple(self.conflicts))
        object.__setattr__(self, "errors", tuple(self.errors))

    @property
    def duration(self) -> float:
        """Elapsed time in seconds."""
        return (self.end_time - self.start_time).total_seconds()

    @property
    def total_changes(self) -> int:
        return self.files_added + self.files_updated + self.files_deleted

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    @property
    def summary(self) -> str:
        """One-line human summary, e.g. ``"3 added, 1 updated, 2 errors"``."""
        if self.is_dry_run:
            return (
                f"Dry run: {self.files_added} to add, "
                f"{self.files_updated} to update, "
                f"{self.files_deleted} to delete"
            )

        parts = []
        if self.files_added > 0:
            parts.append(f"{self.files_added} added")
        if self.files_updated > 0:
            parts.append(f"{self.files_updated} updated")
        if self.files_deleted > 0:
            parts.append(f"{self.files_deleted} deleted")
        if self.conflicts:
            parts.append(f"{len(self.conflicts)} conflicts")
        if self.errors:
            parts.append(f"{len(self.errors)} errors")

        return ", ".join(parts) if parts else "No changes"

    def to_dict(self) -> dict:
        """Convert the result to a JSON-serializable dictionary."""
        return {
            "pair_id": self.pair_id,
            "start_time": to_iso(self.start_time),
            "end_time": to_iso(self.end_time),
            "files_added": self.files_added,
            "files_updated": self.files_updated,
            "files_deleted": self.files_deleted,
            "bytes_transferred": self.bytes_transferred,
            "conflicts": [c.to_dict() for c in self.conflicts],
            "errors": [e.to_dict() for e in self.errors],
            "is_dry_run": self.is_dry_run,
            "status": self.status.value,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncResult":
        """Create a SyncResult from a dictionary produced by ``to_dict``.

        Raises:
            ValueError: If timestamps or enum values are invalid
            KeyError: If ``pair_id`` is missing
        """
        return cls(
            pair_id=data["pair_id"],
            start_time=_require_datetime(data.get("start_time"), "start_time"),
            end_time=_require_datetime(data.get("end_time"), "end_time"),
            files_added=int(data.get("files_added", 0)),
            files_updated=int(data.get("files_updated", 0)),
            files_deleted=int(data.get("files_deleted", 0)),
            bytes_transferred=int(data.get("bytes_transferred", 0)),
            conflicts=tuple(
                FileConflict.from_dict(c) for c in data.get("conflicts", [])
            ),
            errors=tuple(SyncError.from_dict(e) for e in data.get("errors", [])),
            is_dry_run=bool(data.get("is_dry_run", False)),
            status=SyncStatus(data.get("status", SyncStatus.COMPLETED.value)),
        )
