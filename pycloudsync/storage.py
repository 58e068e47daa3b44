"""JSON persistence for sync pairs and their result history.

Two files live in the data directory:

- ``pairs.json``: object keyed by pair id
- ``results.json``: list of result records, each with its own ``id``

Writes from different threads are serialized and every file is replaced
atomically, so a crash mid-write never leaves a truncated file behind.
"""

import json
import logging
import os
import tempfile
import threading
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

from .exceptions import StorageError
from .sync.pair import SyncPair
from .sync.result import SyncResult
from .utils import DEFAULT_HISTORY_DAYS, parse_iso_timestamp, utc_now

logger = logging.getLogger(__name__)

PAIRS_FILE = "pairs.json"
RESULTS_FILE = "results.json"

DEFAULT_RESULTS_LIMIT = 50


class SyncStorage:
    """Stores sync pairs and sync results as JSON files."""

    def __init__(self, data_dir: Path):
        """Initialize storage.

        Args:
            data_dir: Directory holding pairs.json and results.json
        """
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()

    @property
    def pairs_file(self) -> Path:
        return self.data_dir / PAIRS_FILE

    @property
    def results_file(self) -> Path:
        return self.data_dir / RESULTS_FILE

    # Pairs

    def save_pair(self, pair: SyncPair) -> None:
        """Insert or replace a pair, stamping its ``updated_at``."""
        with self._lock:
            pairs = self._read_pairs()
            pair.updated_at = utc_now()
            pairs[pair.id] = pair.to_dict()
            self._write_json(self.pairs_file, pairs)
        logger.debug(f"Saved pair {pair.name} ({pair.id})")

    def get_all_pairs(self) -> list[SyncPair]:
        """Return all pairs, sorted by name."""
        with self._lock:
            raw = self._read_pairs()

        pairs = []
        for pair_id, data in raw.items():
            try:
                pairs.append(SyncPair.from_dict(data))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable pair {pair_id}: {e}")
        return sorted(pairs, key=lambda p: p.name.lower())

    def get_pair(self, pair_id: str) -> Optional[SyncPair]:
        with self._lock:
            data = self._read_pairs().get(pair_id)
        if data is None:
            return None
        try:
            return SyncPair.from_dict(data)
        except (KeyError, ValueError, TypeError) as e:
            logger.warning(f"Unreadable pair {pair_id}: {e}")
            return None

    def find_pair(self, name_or_id: str) -> Optional[SyncPair]:
        """Look a pair up by id, then by name (case-insensitive)."""
        pair = self.get_pair(name_or_id)
        if pair is not None:
            return pair

        wanted = name_or_id.lower()
        for candidate in self.get_all_pairs():
            if candidate.name.lower() == wanted:
                return candidate
        return None

    def delete_pair(self, pair_id: str) -> bool:
        """Delete a pair and all of its results.

        Returns:
            True if the pair existed
        """
        with self._lock:
            pairs = self._read_pairs()
            if pairs.pop(pair_id, None) is None:
                return False
            self._write_json(self.pairs_file, pairs)

            results = self._read_results(for_update=True)
            remaining = [r for r in results if r.get("pair_id") != pair_id]
            if len(remaining) != len(results):
                self._write_json(self.results_file, remaining)

        logger.debug(f"Deleted pair {pair_id}")
        return True

    def update_last_sync_time(self, pair_id: str, when: datetime) -> None:
        """Record the end of a successful sync for a pair.

        Raises:
            StorageError: If the pair does not exist
        """
        with self._lock:
            pairs = self._read_pairs()
            if pair_id not in pairs:
                raise StorageError(f"Unknown sync pair: {pair_id}")
            pair = SyncPair.from_dict(pairs[pair_id])
            pair.last_sync_time = when
            pair.updated_at = utc_now()
            pairs[pair_id] = pair.to_dict()
            self._write_json(self.pairs_file, pairs)

    # Results

    def save_result(self, result: SyncResult) -> str:
        """Append a result to the history.

        Returns:
            Id assigned to the stored record
        """
        record = result.to_dict()
        record["id"] = str(uuid.uuid4())
        with self._lock:
            results = self._read_results(for_update=True)
            results.append(record)
            self._write_json(self.results_file, results)
        return record["id"]

    def get_results(
        self, pair_id: Optional[str] = None, limit: int = DEFAULT_RESULTS_LIMIT
    ) -> list[SyncResult]:
        """Return stored results, newest first.

        Args:
            pair_id: Only results for this pair (all pairs when None)
            limit: Maximum number of results

        Returns:
            List of SyncResult sorted by start time, descending
        """
        with self._lock:
            records = self._read_results()

        results = []
        for record in records:
            if pair_id is not None and record.get("pair_id") != pair_id:
                continue
            try:
                results.append(SyncResult.from_dict(record))
            except (KeyError, ValueError, TypeError) as e:
                logger.warning(f"Skipping unreadable result {record.get('id')}: {e}")

        results.sort(key=lambda r: r.start_time, reverse=True)
        return results[:limit] if limit > 0 else results

    def cleanup_older_than(self, days: int = DEFAULT_HISTORY_DAYS) -> int:
        """Remove results that ended more than ``days`` days ago.

        Returns:
            Number of results removed
        """
        cutoff = utc_now() - timedelta(days=days)
        with self._lock:
            records = self._read_results(for_update=True)
            kept = []
            for record in records:
                end_time = parse_iso_timestamp(record.get("end_time"))
                if end_time is not None and end_time < cutoff:
                    continue
                kept.append(record)
            removed = len(records) - len(kept)
            if removed:
                self._write_json(self.results_file, kept)

        if removed:
            logger.info(f"Removed {removed} result(s) older than {days} day(s)")
        return removed

    # File access

    def _read_pairs(self) -> dict[str, Any]:
        data = self._read_json(self.pairs_file, {})
        if not isinstance(data, dict):
            raise StorageError(f"{self.pairs_file} does not contain an object")
        return data

    def _read_results(self, for_update: bool = False) -> list[dict[str, Any]]:
        """Load the history, treating a damaged file as empty.

        Args:
            for_update: The caller is about to rewrite the file, so a damaged
                file is first moved aside instead of being overwritten
        """
        try:
            data = self._read_json(self.results_file, [])
        except StorageError as e:
            # A damaged history must not block syncing
            logger.warning(f"Ignoring sync history: {e}")
        else:
            if isinstance(data, list):
                return data
            logger.warning(f"Ignoring sync history: {self.results_file} is not a list")

        if for_update:
            self._set_aside(self.results_file)
        return []

    def _set_aside(self, path: Path) -> Path:
        """Rename a damaged file so its contents survive the next write."""
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%f")
        target = path.with_name(f"{path.name}.corrupt-{stamp}")
        try:
            os.replace(path, target)
        except OSError as e:
            raise StorageError(f"Cannot move damaged {path} aside: {e}") from e
        logger.warning(f"Moved damaged {path.name} to {target.name}")
        return target

    @staticmethod
    def _read_json(path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load {path}: {e}")
            raise StorageError(f"Failed to load {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        fd, tmp_name = tempfile.mkstemp(
            dir=self.data_dir, prefix=f".{path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp_name, path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StorageError(f"Failed to write {path}: {e}") from e
