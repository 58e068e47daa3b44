"""Two-way conflict detection and resolution.

A conflict is a file present on both sides whose modification time on
*both* sides is later than the pair's last successful sync. A file
changed on one side only is not a conflict; the next rsync pass simply
propagates it.
"""

import logging
import os
import shutil
import uuid
from dataclasses import replace
from pathlib import Path
from typing import Optional, Union

from ..utils import file_mtime
from .modes import ConflictResolution
from .pair import SyncPair
from .result import FileConflict, SyncError

logger = logging.getLogger(__name__)

DEFAULT_CONFLICT_LABEL = "conflict"

_STAGING_PREFIX = ".pycloudsync-staging-"


def list_regular_files(root: Union[str, Path]) -> dict[str, Path]:
    """Walk a directory tree and map relative paths to regular files.

    Symlinks, sockets, devices and directories are left out. Paths use
    forward slashes regardless of platform.

    Args:
        root: Directory to walk

    Returns:
        Dictionary mapping relative path to absolute Path
    """
    root_path = Path(root)
    files: dict[str, Path] = {}

    if not root_path.is_dir():
        return files

    for dirpath, _dirnames, filenames in os.walk(root_path):
        for filename in filenames:
            file_path = Path(dirpath) / filename
            if file_path.is_symlink() or not file_path.is_file():
                continue
            relative = file_path.relative_to(root_path).as_posix()
            files[relative] = file_path

    return files


def is_excluded(relative_path: str, patterns: list[str]) -> bool:
    """Check a relative path against exclude patterns.

    Wildcards (``*`` and ``?``) are stripped and the remainder is matched
    as a plain substring. Patterns that are empty once stripped match
    nothing.
    """
    for pattern in patterns:
        needle = pattern.replace("*", "").replace("?", "")
        if needle and needle in relative_path:
            return True
    return False


def copy_file(source: Path, destination: Path) -> None:
    """Copy a file, replacing whatever is at the destination.

    The existing target is removed first and the file is written fresh,
    so cloud providers see a new file rather than a rename.
    """
    if destination.exists() or destination.is_symlink():
        destination.unlink()
    destination.parent.mkdir(parents=True, exist_ok=True)
    shutil.copy2(source, destination)


class ConflictDetector:
    """Finds files modified on both sides since the last sync."""

    def detect(self, pair: SyncPair) -> list[FileConflict]:
        """Detect conflicts for a pair.

        Args:
            pair: The sync pair to inspect

        Returns:
            List of conflicts sorted by relative path (empty when the pair
            has never synced)
        """
        if pair.last_sync_time is None:
            logger.debug(f"No previous sync for {pair.name}, skipping conflict check")
            return []

        source_files = list_regular_files(pair.source)
        destination_files = list_regular_files(pair.destination)
        common = sorted(set(source_files) & set(destination_files))

        conflicts: list[FileConflict] = []
        for relative in common:
            if is_excluded(relative, pair.exclude_patterns):
                continue

            try:
                source_modified = file_mtime(source_files[relative])
                destination_modified = file_mtime(destination_files[relative])
            except FileNotFoundError:
                # Deleted between the walk and the stat
                continue

            if (
                source_modified > pair.last_sync_time
                and destination_modified > pair.last_sync_time
            ):
                conflicts.append(
                    FileConflict(
                        path=relative,
                        source_modified=source_modified,
                        destination_modified=destination_modified,
                        resolution=pair.conflict_resolution,
                    )
                )

        if conflicts:
            logger.info(f"Found {len(conflicts)} conflict(s) in {pair.name}")
        return conflicts


class ConflictResolver:
    """Applies a resolution policy to detected conflicts."""

    def __init__(self, label: Optional[str] = None):
        """Initialize the resolver.

        Args:
            label: Word used in the name of copies kept by ``keep_both``.
                Defaults to the name of the source folder, so the copy
                says which side it came from.
        """
        self.label = label

    def resolve(
        self,
        conflict: FileConflict,
        source_root: Union[str, Path],
        destination_root: Union[str, Path],
        policy: Optional[ConflictResolution] = None,
    ) -> FileConflict:
        """Resolve a single conflict.

        Args:
            conflict: The conflict to resolve
            source_root: Pair source directory
            destination_root: Pair destination directory
            policy: Override for ``conflict.resolution``

        Returns:
            The conflict as resolved (``resolved_path`` is set for keep_both)

        Raises:
            OSError: If a file operation fails; nothing is half-applied
                for keep_both
        """
        policy = policy or conflict.resolution
        source = Path(source_root) / conflict.path
        destination = Path(destination_root) / conflict.path

        if policy == ConflictResolution.LATEST_WINS:
            if conflict.source_modified > conflict.destination_modified:
                logger.debug(f"Source is newer: {conflict.path}")
                copy_file(source, destination)
            elif conflict.destination_modified > conflict.source_modified:
                logger.debug(f"Destination is newer: {conflict.path}")
                copy_file(destination, source)
            else:
                logger.debug(f"Same modification time, leaving {conflict.path}")
        elif policy == ConflictResolution.SOURCE_WINS:
            copy_file(source, destination)
        elif policy == ConflictResolution.DESTINATION_WINS:
            copy_file(destination, source)
        elif policy == ConflictResolution.KEEP_BOTH:
            resolved = self._keep_both(
                conflict.path, Path(source_root), Path(destination_root)
            )
            return replace(conflict, resolution=policy, resolved_path=resolved)

        return replace(conflict, resolution=policy)

    def resolve_all(
        self,
        conflicts: list[FileConflict],
        source_root: Union[str, Path],
        destination_root: Union[str, Path],
    ) -> tuple[list[FileConflict], list[SyncError]]:
        """Resolve conflicts one by one, continuing past failures.

        Returns:
            Tuple of (resolved conflicts, errors for those that failed)
        """
        resolved: list[FileConflict] = []
        errors: list[SyncError] = []

        for conflict in conflicts:
            try:
                resolved.append(
                    self.resolve(conflict, source_root, destination_root)
                )
            except OSError as e:
                logger.warning(f"Could not resolve conflict for {conflict.path}: {e}")
                errors.append(SyncError.from_exception(e, path=conflict.path))
                # The unresolved conflict is still reported
                resolved.append(conflict)

        return resolved, errors

    def conflict_name(
        self, relative_path: str, source_root: Path, destination_root: Path
    ) -> str:
        """Pick a free name for the kept source copy.

        With the default label a conflict on ``notes.txt`` in a source
        folder called ``iCloud`` becomes ``notes (iCloud).txt``. A counter
        is added when the name is taken on either side.
        """
        base = self.label or Path(source_root).name or DEFAULT_CONFLICT_LABEL
        path = Path(relative_path)
        stem, suffix = path.stem, path.suffix
        counter = 1
        while True:
            label = base if counter == 1 else f"{base} {counter}"
            candidate = path.with_name(f"{stem} ({label}){suffix}").as_posix()
            if not (source_root / candidate).exists() and not (
                destination_root / candidate
            ).exists():
                return candidate
            counter += 1

    def _keep_both(
        self, relative_path: str, source_root: Path, destination_root: Path
    ) -> str:
        """Keep both versions on both sides.

        Afterwards each side holds the destination version under the
        original name and the source version under the conflict name.
        Both copies are staged and size-checked before anything visible
        is touched; if the swap fails the source original is restored.

        Returns:
            Relative path of the conflict copy
        """
        source = source_root / relative_path
        destination = destination_root / relative_path
        conflict_rel = self.conflict_name(relative_path, source_root, destination_root)
        source_conflict = source_root / conflict_rel
        destination_conflict = destination_root / conflict_rel

        token = uuid.uuid4().hex[:8]
        staged_in_source = source.with_name(f"{_STAGING_PREFIX}{token}-{source.name}")
        staged_in_destination = destination.with_name(
            f"{_STAGING_PREFIX}{token}-{destination.name}"
        )

        try:
            # Phase 1: stage and verify
            shutil.copy2(destination, staged_in_source)
            shutil.copy2(source, staged_in_destination)
            self._verify_copy(destination, staged_in_source)
            self._verify_copy(source, staged_in_destination)

            # Phase 2: swap into place
            os.rename(source, source_conflict)
            try:
                os.replace(staged_in_source, source)
                os.replace(staged_in_destination, destination_conflict)
            except OSError:
                logger.warning(f"Rolling back keep-both for {relative_path}")
                if source.exists():
                    source.unlink()
                os.rename(source_conflict, source)
                if destination_conflict.exists():
                    destination_conflict.unlink()
                raise
        finally:
            for staged in (staged_in_source, staged_in_destination):
                if staged.exists():
                    staged.unlink()

        logger.info(f"Kept both versions of {relative_path} as {conflict_rel}")
        return conflict_rel

    @staticmethod
    def _verify_copy(original: Path, copy: Path) -> None:
        expected = original.stat().st_size
        actual = copy.stat().st_size
        if expected != actual:
            raise OSError(
                f"Size mismatch staging {original}: expected {expected}, got {actual}"
            )
