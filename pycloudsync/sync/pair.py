"""Sync pair configuration and validation."""

import os
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from ..exceptions import PairValidationError
from ..utils import DEFAULT_SYNC_INTERVAL, parse_iso_timestamp, to_iso, utc_now
from .modes import ConflictResolution, SyncMode
from .result import SyncErrorCode

DEFAULT_EXCLUDES: tuple[str, ...] = (
    ".DS_Store",
    "Icon\r",
    ".Trash",
    "*.gdoc",
    "*.gsheet",
    "*.gslides",
    "*.gdraw",
    "*.gform",
    "*.gmap",
    "*.gsite",
    "desktop.ini",
    "Thumbs.db",
    ".localized",
    "*.tmp",
    "~$*",  # Temporary office files
    ".TemporaryItems",
    ".Spotlight-V100",
    ".fseventsd",
    ".DocumentRevisions-V100",
)
"""System files and Google Drive link stubs that never make sense to copy"""

# Fields that `SyncPair.update` refuses to touch
_IMMUTABLE_FIELDS = frozenset({"id", "created_at"})


def normalize_path(path: Union[str, Path]) -> Path:
    """Expand ``~`` and make a path absolute without resolving symlinks."""
    return Path(os.path.abspath(os.path.expanduser(str(path))))


def paths_overlap(first: Union[str, Path], second: Union[str, Path]) -> bool:
    """Check whether two directories are equal or nested inside one another.

    The comparison works on path components, so ``/data/A`` and
    ``/data/AB`` do not overlap even though one is a string prefix of
    the other.

    Args:
        first: First directory
        second: Second directory

    Returns:
        True if the paths are equal or one is an ancestor of the other
    """
    a = Path(os.path.normpath(normalize_path(first)))
    b = Path(os.path.normpath(normalize_path(second)))
    return a == b or a in b.parents or b in a.parents


@dataclass
class SyncPair:
    """A configured source/destination folder relationship.

    Examples:
        >>> pair = SyncPair("Docs", "~/iCloud/Docs", "~/GoogleDrive/Docs")
        >>> pair.sync_mode
        <SyncMode.ONE_WAY: 'one_way'>
    """

    name: str
    """Display name"""

    source: Path
    """Source directory (absolute, ``~`` expanded)"""

    destination: Path
    """Destination directory (absolute, ``~`` expanded)"""

    sync_mode: SyncMode = SyncMode.ONE_WAY

    enabled: bool = True

    exclude_patterns: list[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDES))
    """Exclude globs, in the order they are handed to rsync"""

    include_patterns: list[str] = field(default_factory=list)
    """Include globs, in the order they are handed to rsync"""

    conflict_resolution: ConflictResolution = ConflictResolution.LATEST_WINS

    max_file_size: Optional[int] = None
    """Files larger than this many bytes are skipped"""

    sync_interval: float = DEFAULT_SYNC_INTERVAL
    """Seconds between scheduled runs (only read by the scheduler)"""

    last_sync_time: Optional[datetime] = None
    """End of the last successful sync, used for conflict detection"""

    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def __post_init__(self) -> None:
        self.source = normalize_path(self.source)
        self.destination = normalize_path(self.destination)
        self.sync_mode = SyncMode.parse(self.sync_mode)
        self.conflict_resolution = ConflictResolution.parse(self.conflict_resolution)
        self.exclude_patterns = list(self.exclude_patterns)
        self.include_patterns = list(self.include_patterns)

    def __setattr__(self, name: str, value: Any) -> None:
        if name == "id" and "id" in self.__dict__:
            raise AttributeError("The id of a sync pair cannot be changed")
        super().__setattr__(name, value)

    def __str__(self) -> str:
        return (
            f"{self.name}: {self.source} -> {self.destination} "
            f"({self.sync_mode.value})"
        )

    def validate(self) -> None:
        """Validate that the pair can be synced right now.

        Checks, in order: the source is an existing directory, the
        destination is an existing directory, and neither is nested in
        (or equal to) the other. Must be called before every sync since a
        cloud volume can disappear at any time.

        Raises:
            PairValidationError: With the offending path on failure
        """
        checks = (("Source", self.source), ("Destination", self.destination))
        for label, path in checks:
            if not path.exists():
                raise PairValidationError(
                    f"{label} path not found: {path}",
                    path=str(path),
                    code=SyncErrorCode.PATH_NOT_FOUND,
                )
            if not path.is_dir():
                raise PairValidationError(
                    f"Path is not a directory: {path}",
                    path=str(path),
                    code=SyncErrorCode.PATH_NOT_FOUND,
                )

        if paths_overlap(self.source, self.destination):
            raise PairValidationError(
                "Recursive mapping detected. Source and destination cannot be "
                f"nested within each other: {self.source} <-> {self.destination}",
                path=str(self.destination),
                code=SyncErrorCode.UNKNOWN,
            )

    def update(self, **changes: Any) -> "SyncPair":
        """Apply an edit and re-validate.

        The pair is left untouched when validation of the edited copy fails.

        Args:
            **changes: Field values to replace

        Returns:
            This pair, updated

        Raises:
            AttributeError: If an immutable field is included
            PairValidationError: If the edited pair is invalid
        """
        forbidden = _IMMUTABLE_FIELDS.intersection(changes)
        if forbidden:
            raise AttributeError(f"Cannot change: {', '.join(sorted(forbidden))}")

        edited = replace(self, **changes)
        edited.validate()

        for key in changes:
            setattr(self, key, getattr(edited, key))
        self.updated_at = utc_now()
        return self

    def to_dict(self) -> dict:
        """Convert the pair to a JSON-serializable dictionary."""
        return {
            "id": self.id,
            "name": self.name,
            "source": str(self.source),
            "destination": str(self.destination),
            "sync_mode": self.sync_mode.value,
            "enabled": self.enabled,
            "exclude_patterns": list(self.exclude_patterns),
            "include_patterns": list(self.include_patterns),
            "conflict_resolution": self.conflict_resolution.value,
            "max_file_size": self.max_file_size,
            "sync_interval": self.sync_interval,
            "last_sync_time": to_iso(self.last_sync_time),
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SyncPair":
        """Create a SyncPair from a dictionary.

        Args:
            data: Dictionary as produced by ``to_dict``

        Returns:
            SyncPair instance

        Raises:
            ValueError: If required fields are missing or values are invalid
        """
        required = ["name", "source", "destination"]
        missing = [key for key in required if key not in data]
        if missing:
            raise ValueError(f"Missing required fields: {', '.join(missing)}")

        kwargs: dict[str, Any] = {
            "name": data["name"],
            "source": data["source"],
            "destination": data["destination"],
            "sync_mode": data.get("sync_mode", SyncMode.ONE_WAY.value),
            "enabled": data.get("enabled", True),
            "include_patterns": data.get("include_patterns", []),
            "conflict_resolution": data.get(
                "conflict_resolution", ConflictResolution.LATEST_WINS.value
            ),
            "max_file_size": data.get("max_file_size"),
            "sync_interval": data.get("sync_interval", DEFAULT_SYNC_INTERVAL),
            "last_sync_time": parse_iso_timestamp(data.get("last_sync_time")),
        }
        if "exclude_patterns" in data:
            kwargs["exclude_patterns"] = data["exclude_patterns"]
        if data.get("id"):
            kwargs["id"] = data["id"]
        for key in ("created_at", "updated_at"):
            parsed = parse_iso_timestamp(data.get(key))
            if parsed is not None:
                kwargs[key] = parsed

        return cls(**kwargs)
