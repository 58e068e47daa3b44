"""Cross-process locking so that a pair is never synced twice at once.

Each pair gets a marker file ``<lock_dir>/<pair_id>.lock`` created with
``O_CREAT | O_EXCL``. The CLI and any background agent share the same
directory, so whoever creates the marker first owns the pair until it
deletes the marker again.
"""

import json
import logging
import os
import socket
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Optional

from ..utils import (
    DEFAULT_LOCK_TIMEOUT,
    LOCK_POLL_INTERVAL,
    STALE_LOCK_SECONDS,
    parse_iso_timestamp,
    to_iso,
    utc_now,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LockInfo:
    """Contents of a lock marker."""

    pid: int
    timestamp: datetime
    hostname: str

    def to_dict(self) -> dict:
        return {
            "pid": self.pid,
            "timestamp": to_iso(self.timestamp),
            "hostname": self.hostname,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LockInfo":
        timestamp = parse_iso_timestamp(data.get("timestamp"))
        if timestamp is None:
            raise ValueError("Lock marker has no valid timestamp")
        return cls(
            pid=int(data["pid"]),
            timestamp=timestamp,
            hostname=str(data.get("hostname", "unknown")),
        )

    @classmethod
    def current(cls) -> "LockInfo":
        return cls(pid=os.getpid(), timestamp=utc_now(), hostname=socket.gethostname())


class LockManager:
    """Per-pair mutual exclusion based on lock marker files."""

    def __init__(
        self,
        lock_dir: Path,
        stale_after: float = STALE_LOCK_SECONDS,
        poll_interval: float = LOCK_POLL_INTERVAL,
    ):
        """Initialize the lock manager.

        Args:
            lock_dir: Directory shared by every cooperating process
            stale_after: Age in seconds after which a marker is abandoned
            poll_interval: Seconds to sleep between acquisition attempts
        """
        self.lock_dir = lock_dir
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.lock_dir.mkdir(parents=True, exist_ok=True)

    def lock_path(self, pair_id: str) -> Path:
        """Return the marker path for a pair."""
        return self.lock_dir / f"{pair_id}.lock"

    def acquire(self, pair_id: str, timeout: float = DEFAULT_LOCK_TIMEOUT) -> bool:
        """Try to take the lock for a pair.

        A marker older than ``stale_after`` is removed first. After that the
        marker is created atomically; if it already exists the call polls
        until ``timeout`` seconds have passed.

        Args:
            pair_id: Pair identifier
            timeout: Seconds to keep trying

        Returns:
            True if the lock is now held by this process, False otherwise
        """
        lock_file = self.lock_path(pair_id)
        self._remove_if_stale(lock_file)

        deadline = time.monotonic() + timeout
        while True:
            if self._try_create(lock_file):
                logger.debug(f"Lock acquired: {lock_file.name}")
                return True
            if time.monotonic() >= deadline:
                break
            time.sleep(self.poll_interval)

        owner = self.read_owner(pair_id)
        if owner is not None:
            logger.error(
                f"Lock held by PID {owner.pid} on {owner.hostname} "
                f"since {owner.timestamp.isoformat()}"
            )
        return False

    def release(self, pair_id: str) -> None:
        """Delete the marker for a pair if it exists."""
        lock_file = self.lock_path(pair_id)
        try:
            lock_file.unlink()
            logger.debug(f"Lock released: {lock_file.name}")
        except FileNotFoundError:
            pass

    def is_locked(self, pair_id: str) -> bool:
        """Check whether a marker exists for the pair.

        Advisory only: used to display "syncing" without taking the lock.
        """
        return self.lock_path(pair_id).exists()

    def read_owner(self, pair_id: str) -> Optional[LockInfo]:
        """Return the owner recorded in a pair's marker, if readable."""
        try:
            with open(self.lock_path(pair_id), encoding="utf-8") as f:
                return LockInfo.from_dict(json.load(f))
        except (OSError, ValueError, KeyError, TypeError):
            return None

    def cleanup_all(self) -> int:
        """Remove every lock marker. Only safe when no sync is running.

        Returns:
            Number of markers removed
        """
        removed = 0
        for lock_file in self.lock_dir.glob("*.lock"):
            try:
                lock_file.unlink()
                removed += 1
                logger.debug(f"Cleaned up lock: {lock_file.name}")
            except FileNotFoundError:
                continue
        return removed

    def _try_create(self, lock_file: Path) -> bool:
        try:
            fd = os.open(str(lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False

        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(LockInfo.current().to_dict(), f, indent=2)
        return True

    def _remove_if_stale(self, lock_file: Path) -> None:
        try:
            age = time.time() - lock_file.stat().st_mtime
        except FileNotFoundError:
            return
        if age <= self.stale_after:
            return

        # Move the marker aside before deleting it, so a fresh marker that
        # another process created after the stat above is never removed
        claimed = lock_file.with_name(f"{lock_file.name}.{uuid.uuid4().hex}.stale")
        try:
            os.rename(lock_file, claimed)
        except FileNotFoundError:
            return

        try:
            if time.time() - claimed.stat().st_mtime <= self.stale_after:
                logger.debug(f"Lockfile was renewed, restoring: {lock_file.name}")
                try:
                    os.link(claimed, lock_file)
                except FileExistsError:
                    pass
                return
            logger.warning(f"Removing stale lockfile: {lock_file.name}")
        finally:
            claimed.unlink(missing_ok=True)
