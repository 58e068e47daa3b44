"""Retry with exponential backoff and recovery suggestions."""

import logging
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Union

from ..utils import DEFAULT_BASE_DELAY, DEFAULT_MAX_ATTEMPTS, DEFAULT_MAX_DELAY
from .pair import SyncPair
from .result import SyncError, SyncErrorCode, SyncResult, SyncStatus

if TYPE_CHECKING:
    from .engine import SyncEngine

logger = logging.getLogger(__name__)

RECOVERABLE_KEYWORDS: tuple[str, ...] = (
    "timeout",
    "network",
    "connection",
    "temporary",
    "busy",
    "resource temporarily unavailable",
)
"""Message fragments that mark an error as transient"""

JITTER_FRACTION = 0.1
MIN_DELAY = 0.1


@dataclass
class RetryPolicy:
    """How often and how patiently to retry."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay: float = DEFAULT_BASE_DELAY
    max_delay: float = DEFAULT_MAX_DELAY
    jitter: bool = True

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.base_delay < 0 or self.max_delay < 0:
            raise ValueError("Delays must not be negative")


def calculate_delay(
    attempt: int,
    policy: RetryPolicy,
    rand: Callable[[], float] = random.random,
) -> float:
    """Delay before retrying after the given (1-based) attempt.

    ``min(base * 2**(attempt - 1), max_delay)``, optionally spread by up
    to 10% in either direction and never below 0.1 seconds.

    Examples:
        >>> policy = RetryPolicy(jitter=False)
        >>> [calculate_delay(n, policy) for n in range(1, 4)]
        [1.0, 2.0, 4.0]
    """
    delay = min(policy.base_delay * (2 ** (attempt - 1)), policy.max_delay)
    if policy.jitter:
        spread = delay * JITTER_FRACTION * (2 * rand() - 1)
        delay = max(MIN_DELAY, delay + spread)
    return float(delay)


def is_recoverable(error: Union[SyncError, BaseException]) -> bool:
    """Decide whether another attempt could succeed.

    An explicit recoverability flag wins; otherwise the message is
    checked for transient-sounding keywords.
    """
    if isinstance(error, SyncError):
        return error.is_recoverable

    wrapped = getattr(error, "error", None)
    if isinstance(wrapped, SyncError):
        return wrapped.is_recoverable

    flag = getattr(error, "is_recoverable", None)
    if isinstance(flag, bool):
        return flag

    message = str(error).lower()
    return any(keyword in message for keyword in RECOVERABLE_KEYWORDS)


def _result_is_retryable(result: SyncResult) -> bool:
    return (
        result.status == SyncStatus.FAILED
        and bool(result.errors)
        and all(is_recoverable(error) for error in result.errors)
    )


class RecoveryAction(str, Enum):
    """What the user (or the scheduler) should do about an error."""

    RETRY = "retry"
    RETRY_LATER = "retry_later"
    WAIT_AND_RETRY = "wait_and_retry"
    REQUEST_PERMISSIONS = "request_permissions"
    CHECK_PATHS = "check_paths"
    FREE_SPACE = "free_space"
    CHECK_RSYNC = "check_rsync"
    CONTACT_SUPPORT = "contact_support"

    @property
    def description(self) -> str:
        descriptions = {
            RecoveryAction.RETRY: "Retry the sync",
            RecoveryAction.RETRY_LATER: "Retry later when the connection is stable",
            RecoveryAction.WAIT_AND_RETRY: "Wait for the running sync to finish",
            RecoveryAction.REQUEST_PERMISSIONS: (
                "Grant read/write access to the folders (Full Disk Access on macOS)"
            ),
            RecoveryAction.CHECK_PATHS: "Check that both folders still exist",
            RecoveryAction.FREE_SPACE: "Free up disk space on the destination",
            RecoveryAction.CHECK_RSYNC: "Check that rsync is installed and working",
            RecoveryAction.CONTACT_SUPPORT: "Check the logs and report the problem",
        }
        return descriptions[self]

    @property
    def is_user_actionable(self) -> bool:
        """Whether a person has to change something before a retry helps."""
        return self in (
            RecoveryAction.REQUEST_PERMISSIONS,
            RecoveryAction.CHECK_PATHS,
            RecoveryAction.FREE_SPACE,
        )


_RECOVERY_ACTIONS = {
    SyncErrorCode.PERMISSION_DENIED: RecoveryAction.REQUEST_PERMISSIONS,
    SyncErrorCode.PATH_NOT_FOUND: RecoveryAction.CHECK_PATHS,
    SyncErrorCode.INSUFFICIENT_SPACE: RecoveryAction.FREE_SPACE,
    SyncErrorCode.NETWORK_TIMEOUT: RecoveryAction.RETRY_LATER,
    SyncErrorCode.HYDRATION_TIMEOUT: RecoveryAction.RETRY_LATER,
    SyncErrorCode.LOCKFILE_EXISTS: RecoveryAction.WAIT_AND_RETRY,
    SyncErrorCode.RSYNC_FAILED: RecoveryAction.CHECK_RSYNC,
    SyncErrorCode.UNKNOWN: RecoveryAction.CONTACT_SUPPORT,
}


def get_recovery_action(
    error: Union[SyncError, SyncErrorCode, BaseException],
) -> RecoveryAction:
    """Suggest what to do about an error.

    Error codes map directly; plain exceptions are classified by their
    message.

    Args:
        error: A SyncError, an error code, or an exception

    Returns:
        The suggested RecoveryAction
    """
    if isinstance(error, SyncError):
        error = error.code
    if isinstance(error, SyncErrorCode):
        return _RECOVERY_ACTIONS.get(error, RecoveryAction.CONTACT_SUPPORT)

    wrapped = getattr(error, "error", None)
    if isinstance(wrapped, SyncError):
        return get_recovery_action(wrapped)

    message = str(error).lower()
    if "permission" in message:
        return RecoveryAction.REQUEST_PERMISSIONS
    if "space" in message or "quota" in message:
        return RecoveryAction.FREE_SPACE
    if "network" in message or "timeout" in message:
        return RecoveryAction.RETRY_LATER
    if "not found" in message:
        return RecoveryAction.CHECK_PATHS
    return RecoveryAction.CONTACT_SUPPORT


class RetryController:
    """Runs a sync operation until it succeeds or attempts run out.

    Both raised exceptions and returned failed results are retried, but
    only when they are recoverable. After the last attempt the final
    exception is re-raised or the final failed result is returned.
    """

    def __init__(
        self,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        rand: Callable[[], float] = random.random,
    ):
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._rand = rand

    def run(self, operation: Callable[[], SyncResult]) -> SyncResult:
        """Call ``operation`` with retries.

        Args:
            operation: Zero-argument callable returning a SyncResult

        Returns:
            The first successful result, or the last failed one
        """
        attempt = 1
        while True:
            try:
                result = operation()
            except Exception as e:
                if not is_recoverable(e) or attempt >= self.policy.max_attempts:
                    raise
                logger.warning(
                    f"Attempt {attempt}/{self.policy.max_attempts} failed: {e}"
                )
            else:
                if not _result_is_retryable(result):
                    return result
                if attempt >= self.policy.max_attempts:
                    logger.error(
                        f"Giving up after {attempt} attempt(s) for {result.pair_id}"
                    )
                    return result
                logger.warning(
                    f"Attempt {attempt}/{self.policy.max_attempts} failed with "
                    f"{len(result.errors)} recoverable error(s)"
                )

            delay = calculate_delay(attempt, self.policy, self._rand)
            logger.info(f"Retrying in {delay:.1f}s")
            self._sleep(delay)
            attempt += 1


def retry_sync(
    engine: "SyncEngine",
    pair: SyncPair,
    dry_run: bool = False,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> SyncResult:
    """Run ``engine.sync(pair)`` under a retry policy.

    Lock failures are not recoverable and propagate on the first attempt.

    Examples:
        >>> result = retry_sync(engine, pair, policy=RetryPolicy(max_attempts=5))
    """
    controller = RetryController(policy, sleep=sleep)
    return controller.run(lambda: engine.sync(pair, dry_run=dry_run))
