"""Sync orchestrator: validate, lock, transfer, aggregate, unlock."""

import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Union

from ..config import Config
from ..exceptions import LockAcquisitionError, PairValidationError
from ..utils import utc_now
from .conflicts import ConflictDetector, ConflictResolver
from .lock import LockManager
from .modes import SyncMode
from .pair import SyncPair
from .result import SyncError, SyncErrorCode, SyncResult, SyncStatus
from .transfer import RsyncRunner, TransferReport

logger = logging.getLogger(__name__)


class SyncPhase(str, Enum):
    """Steps of a single sync run, in the order they happen."""

    VALIDATING = "validating"
    LOCKING = "locking"
    DETECTING_CONFLICTS = "detecting_conflicts"
    RESOLVING_CONFLICTS = "resolving_conflicts"
    TRANSFERRING = "transferring"
    TRANSFERRING_BACK = "transferring_back"
    AGGREGATING = "aggregating"
    FINISHED = "finished"


PhaseCallback = Callable[[SyncPair, SyncPhase], None]


class SyncEngine:
    """Runs one sync for one pair at a time.

    The engine never persists anything: storing the returned result and
    advancing the pair's last sync time is left to the caller.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        lock_manager: Optional[LockManager] = None,
        runner: Optional[RsyncRunner] = None,
        detector: Optional[ConflictDetector] = None,
        resolver: Optional[ConflictResolver] = None,
        phase_callback: Optional[PhaseCallback] = None,
    ):
        """Initialize sync engine.

        Args:
            config: Settings (loaded from disk when omitted)
            lock_manager: Per-pair lock coordinator
            runner: rsync runner
            detector: Two-way conflict detector
            resolver: Two-way conflict resolver
            phase_callback: Called with (pair, phase) on every transition
        """
        self.config = config or Config.load()
        self.locks = lock_manager or LockManager(self.config.lock_dir)
        self.runner = runner or RsyncRunner(
            self.config.rsync_path, timeout=self.config.transfer_timeout
        )
        self.detector = detector or ConflictDetector()
        self.resolver = resolver or ConflictResolver(self.config.conflict_label)
        self.phase_callback = phase_callback

    def sync(self, pair: SyncPair, dry_run: bool = False) -> SyncResult:
        """Sync a single pair.

        Args:
            pair: Sync pair to synchronize
            dry_run: If True, only report what would be done

        Returns:
            SyncResult for every outcome, including failures

        Raises:
            LockAcquisitionError: If another sync holds the pair's lock

        Examples:
            >>> engine = SyncEngine()
            >>> result = engine.sync(pair, dry_run=True)
            >>> print(result.summary)
        """
        start_time = utc_now()

        self._enter(pair, SyncPhase.VALIDATING)
        try:
            pair.validate()
        except PairValidationError as e:
            logger.error(f"Validation failed for {pair.name}: {e}")
            error = SyncError(
                code=e.code or SyncErrorCode.UNKNOWN,
                message=str(e),
                path=e.path,
                is_recoverable=False,
            )
            return self._failed(pair, start_time, error, dry_run)

        self._enter(pair, SyncPhase.LOCKING)
        try:
            acquired = self.locks.acquire(pair.id, timeout=self.config.lock_timeout)
        except OSError as e:
            logger.error(f"Cannot take the lock for {pair.name}: {e}")
            lock_file = str(self.locks.lock_path(pair.id))
            error = SyncError.from_exception(e, path=lock_file)
            return self._failed(pair, start_time, error, dry_run)
        if not acquired:
            raise LockAcquisitionError(
                SyncError(
                    code=SyncErrorCode.LOCKFILE_EXISTS,
                    message=f"Another sync is already running for '{pair.name}'",
                    path=str(self.locks.lock_path(pair.id)),
                    is_recoverable=False,
                )
            )
        logger.debug(f"Acquired lock for {pair.name}")

        try:
            logger.info(
                f"Starting {'dry run' if dry_run else 'sync'} of {pair.name} "
                f"({pair.sync_mode.value})"
            )
            if pair.sync_mode == SyncMode.TWO_WAY:
                result = self._sync_two_way(pair, dry_run, start_time)
            else:
                self._enter(pair, SyncPhase.TRANSFERRING)
                report = self._transfer(
                    pair,
                    pair.source,
                    pair.destination,
                    dry_run,
                    mirror=pair.sync_mode == SyncMode.MIRROR,
                )
                self._enter(pair, SyncPhase.AGGREGATING)
                result = report.to_result(pair.id, start_time, dry_run)
        except Exception as e:
            logger.exception(f"Unexpected error syncing {pair.name}")
            result = self._failed(
                pair,
                start_time,
                SyncError(
                    code=SyncErrorCode.UNKNOWN, message=str(e), is_recoverable=False
                ),
                dry_run,
            )
        finally:
            self.locks.release(pair.id)
            logger.debug(f"Released lock for {pair.name}")

        self._enter(pair, SyncPhase.FINISHED)
        logger.info(f"Finished {pair.name}: {result.status.value}, {result.summary}")
        return result

    def _sync_two_way(
        self, pair: SyncPair, dry_run: bool, start_time: datetime
    ) -> SyncResult:
        self._enter(pair, SyncPhase.DETECTING_CONFLICTS)
        conflicts = self.detector.detect(pair)
        resolution_errors: list[SyncError] = []

        if conflicts and not dry_run:
            self._enter(pair, SyncPhase.RESOLVING_CONFLICTS)
            conflicts, resolution_errors = self.resolver.resolve_all(
                conflicts, pair.source, pair.destination
            )

        # Directions run strictly one after the other
        self._enter(pair, SyncPhase.TRANSFERRING)
        forward = self._transfer(pair, pair.source, pair.destination, dry_run)
        self._enter(pair, SyncPhase.TRANSFERRING_BACK)
        backward = self._transfer(pair, pair.destination, pair.source, dry_run)

        self._enter(pair, SyncPhase.AGGREGATING)
        status = (
            SyncStatus.FAILED
            if forward.has_errors or backward.has_errors
            else SyncStatus.COMPLETED
        )
        return SyncResult(
            pair_id=pair.id,
            start_time=start_time,
            files_added=forward.files_added + backward.files_added,
            files_updated=forward.files_updated + backward.files_updated,
            files_deleted=forward.files_deleted + backward.files_deleted,
            bytes_transferred=forward.bytes_transferred + backward.bytes_transferred,
            conflicts=tuple(conflicts),
            errors=tuple(resolution_errors + forward.errors + backward.errors),
            is_dry_run=dry_run,
            status=status,
        )

    def _transfer(
        self,
        pair: SyncPair,
        source: Path,
        destination: Path,
        dry_run: bool,
        mirror: bool = False,
    ) -> TransferReport:
        run = self.runner.run_mirror if mirror else self.runner.run_one_way
        return run(
            source,
            destination,
            excludes=pair.exclude_patterns,
            includes=pair.include_patterns,
            max_size=pair.max_file_size,
            dry_run=dry_run,
        )

    def _enter(self, pair: SyncPair, phase: SyncPhase) -> None:
        logger.debug(f"{pair.name}: {phase.value}")
        if self.phase_callback is not None:
            self.phase_callback(pair, phase)

    @staticmethod
    def _failed(
        pair: SyncPair, start_time: datetime, error: SyncError, dry_run: bool
    ) -> SyncResult:
        return SyncResult(
            pair_id=pair.id,
            start_time=start_time,
            errors=(error,),
            is_dry_run=dry_run,
            status=SyncStatus.FAILED,
        )


def sync_many(
    engine: SyncEngine,
    pairs: list[SyncPair],
    dry_run: bool = False,
    max_workers: int = 1,
    sync_func: Optional[Callable[[SyncPair], SyncResult]] = None,
) -> dict[str, Union[SyncResult, LockAcquisitionError]]:
    """Sync several pairs, running different pairs in parallel.

    Each pair runs on its own worker thread; the per-pair lock is the
    only thing that serializes runs.

    Args:
        engine: Engine used for every pair
        pairs: Pairs to sync
        dry_run: If True, only report what would be done
        max_workers: Number of pairs synced at the same time
        sync_func: Replaces ``engine.sync`` (e.g. a retrying wrapper)

    Returns:
        Dictionary mapping pair id to its result, or to the lock error
        when the pair was already being synced
    """
    run = sync_func or (lambda p: engine.sync(p, dry_run=dry_run))
    outcomes: dict[str, Union[SyncResult, LockAcquisitionError]] = {}

    with ThreadPoolExecutor(max_workers=max(1, max_workers)) as executor:
        futures = {executor.submit(run, pair): pair for pair in pairs}

        for future in as_completed(futures):
            pair = futures[future]
            try:
                outcomes[pair.id] = future.result()
            except LockAcquisitionError as e:
                logger.warning(f"Skipping {pair.name}: {e}")
                outcomes[pair.id] = e

    return outcomes
