"""rsync invocation and output parsing.

The engine never copies file trees itself: every transfer is handed to
rsync and the ``--stats`` block it prints is the only record of what
happened. Parsing is deliberately forgiving; a missing statistic simply
stays at zero.
"""

import logging
import re
import subprocess
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Union

from .result import SyncError, SyncErrorCode, SyncResult, SyncStatus

logger = logging.getLogger(__name__)

BASE_ARGUMENTS: tuple[str, ...] = (
    "-av",  # Archive mode + verbose
    "--recursive",
    "--times",  # Preserve file modification times
    "--omit-dir-times",  # ... but not directory times
    "--no-perms",  # Cloud volumes reject permission changes
    "--no-owner",
    "--no-group",
    "--stats",  # Statistics block parsed by parse_rsync_output
    "--partial",  # Keep partial files for resume
    "--append-verify",  # Resume with verification
    "--timeout=300",  # I/O timeout
    "--contimeout=30",  # Connection timeout
)

# rsync exit codes that still mean "the transfer happened"
EXIT_SUCCESS = 0
EXIT_PARTIAL_TRANSFER = 23
EXIT_VANISHED_FILES = 24

_STAT_FIELDS = {
    "Number of created files:": "files_added",
    "Number of deleted files:": "files_deleted",
    "Number of regular files transferred:": "files_updated",
}

_BYTES_PATTERN = re.compile(r"([\d,]+)\s*bytes", re.IGNORECASE)

_ERROR_MARKERS = ("error:", "failed:", "permission denied")

PathLike = Union[str, Path]


@dataclass
class TransferReport:
    """Structured view of one rsync run."""

    files_added: int = 0
    files_updated: int = 0
    files_deleted: int = 0
    bytes_transferred: int = 0
    errors: list[SyncError] = field(default_factory=list)
    status: SyncStatus = SyncStatus.COMPLETED
    exit_code: Optional[int] = None
    output: str = ""

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def to_result(
        self, pair_id: str, start_time: datetime, dry_run: bool
    ) -> SyncResult:
        """Wrap this report in a SyncResult for a single-pass sync."""
        return SyncResult(
            pair_id=pair_id,
            start_time=start_time,
            files_added=self.files_added,
            files_updated=self.files_updated,
            files_deleted=self.files_deleted,
            bytes_transferred=self.bytes_transferred,
            errors=tuple(self.errors),
            is_dry_run=dry_run,
            status=self.status,
        )


def build_arguments(
    source: PathLike,
    destination: PathLike,
    excludes: Sequence[str] = (),
    includes: Sequence[str] = (),
    max_size: Optional[int] = None,
    dry_run: bool = False,
    delete: bool = False,
) -> list[str]:
    """Build the rsync argument list (without the executable).

    Patterns keep the caller's order because rsync filter rules are
    order-sensitive. The source gets a trailing slash so that the
    directory contents are copied rather than the directory itself.

    Args:
        source: Directory to copy from
        destination: Directory to copy into
        excludes: Exclude patterns, one ``--exclude`` each
        includes: Include patterns, one ``--include`` each
        max_size: Skip files larger than this many bytes
        dry_run: Only report what would change
        delete: Delete destination files missing from the source (mirror)

    Returns:
        List of arguments
    """
    args = list(BASE_ARGUMENTS)

    if delete:
        # Deletions run after the transfer so an interrupted run never
        # leaves the destination with less than it had before
        args.extend(["--delete", "--delete-after"])

    if dry_run:
        args.append("--dry-run")

    args.extend(f"--exclude={pattern}" for pattern in excludes)
    args.extend(f"--include={pattern}" for pattern in includes)

    if max_size is not None:
        args.append(f"--max-size={max_size}")

    source_str = str(source)
    args.append(source_str if source_str.endswith("/") else f"{source_str}/")
    args.append(str(destination))
    return args


def _extract_number(line: str) -> Optional[int]:
    """Return the first integer after the colon in an rsync stats line."""
    _, _, value = line.partition(":")
    for token in value.split():
        token = token.replace(",", "")
        if token.isdigit():
            return int(token)
    return None


def _extract_bytes(line: str) -> Optional[int]:
    """Return N from a line like ``Total transferred file size: 1,234 bytes``."""
    match = _BYTES_PATTERN.search(line)
    if match is None:
        return None
    digits = match.group(1).replace(",", "")
    return int(digits) if digits else None


def _classify_error_line(line: str) -> SyncErrorCode:
    lowered = line.lower()
    if "permission denied" in lowered:
        return SyncErrorCode.PERMISSION_DENIED
    if "no space left" in lowered:
        return SyncErrorCode.INSUFFICIENT_SPACE
    return SyncErrorCode.RSYNC_FAILED


def parse_rsync_output(output: str, exit_code: int) -> TransferReport:
    """Parse rsync's combined output and exit code into a TransferReport.

    Exit code policy:
        0  -> completed
        23 -> completed, plus a recoverable "partial transfer" error
        24 -> completed, plus a recoverable "files vanished" error
        other -> failed, plus a non-recoverable error with the code

    Args:
        output: Combined stdout and stderr text
        exit_code: Process exit status

    Returns:
        TransferReport
    """
    report = TransferReport(exit_code=exit_code, output=output)

    for line in output.splitlines():
        for marker, attr in _STAT_FIELDS.items():
            if marker in line:
                count = _extract_number(line)
                if count is not None:
                    setattr(report, attr, count)
                break
        else:
            if "Total transferred file size:" in line:
                size = _extract_bytes(line)
                if size is not None:
                    report.bytes_transferred = size

        lowered = line.lower()
        if any(marker in lowered for marker in _ERROR_MARKERS):
            report.errors.append(
                SyncError(
                    code=_classify_error_line(line),
                    message=line.strip(),
                    is_recoverable=True,
                )
            )

    if exit_code == EXIT_SUCCESS:
        report.status = SyncStatus.COMPLETED
    elif exit_code == EXIT_PARTIAL_TRANSFER:
        report.errors.append(
            SyncError(
                code=SyncErrorCode.RSYNC_FAILED,
                message="Partial transfer completed with some errors",
                is_recoverable=True,
            )
        )
        report.status = SyncStatus.COMPLETED
    elif exit_code == EXIT_VANISHED_FILES:
        report.errors.append(
            SyncError(
                code=SyncErrorCode.PATH_NOT_FOUND,
                message="Some source files vanished during transfer",
                is_recoverable=True,
            )
        )
        report.status = SyncStatus.COMPLETED
    else:
        report.errors.append(
            SyncError(
                code=SyncErrorCode.RSYNC_FAILED,
                message=f"rsync failed with exit code {exit_code}",
                is_recoverable=False,
            )
        )
        report.status = SyncStatus.FAILED

    return report


class RsyncRunner:
    """Runs rsync as a subprocess and parses its report."""

    def __init__(self, rsync_path: str = "rsync", timeout: Optional[float] = None):
        """Initialize the runner.

        Args:
            rsync_path: rsync executable (name on PATH or absolute path)
            timeout: Kill rsync after this many seconds (None = no limit)
        """
        self.rsync_path = rsync_path
        self.timeout = timeout

    def run_one_way(
        self,
        source: PathLike,
        destination: PathLike,
        excludes: Sequence[str] = (),
        includes: Sequence[str] = (),
        max_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> TransferReport:
        """Copy new and changed files from source to destination."""
        args = build_arguments(
            source, destination, excludes, includes, max_size, dry_run, delete=False
        )
        return self._run(args)

    def run_mirror(
        self,
        source: PathLike,
        destination: PathLike,
        excludes: Sequence[str] = (),
        includes: Sequence[str] = (),
        max_size: Optional[int] = None,
        dry_run: bool = False,
    ) -> TransferReport:
        """Like :meth:`run_one_way`, but also delete extraneous destination files."""
        args = build_arguments(
            source, destination, excludes, includes, max_size, dry_run, delete=True
        )
        return self._run(args)

    def _run(self, args: list[str]) -> TransferReport:
        try:
            output, exit_code = self._execute(args)
        except FileNotFoundError:
            logger.error(f"rsync executable not found: {self.rsync_path}")
            return TransferReport(
                errors=[
                    SyncError(
                        code=SyncErrorCode.RSYNC_FAILED,
                        message=f"rsync executable not found: {self.rsync_path}",
                        is_recoverable=False,
                    )
                ],
                status=SyncStatus.FAILED,
            )
        except subprocess.TimeoutExpired as e:
            logger.error(f"rsync timed out after {self.timeout}s")
            return TransferReport(
                errors=[
                    SyncError(
                        code=SyncErrorCode.NETWORK_TIMEOUT,
                        message=f"rsync timed out after {self.timeout}s",
                        is_recoverable=True,
                    )
                ],
                status=SyncStatus.FAILED,
                output=_decode(e.output),
            )

        logger.debug(f"rsync exited with code {exit_code}")
        return parse_rsync_output(output, exit_code)

    def _execute(self, args: list[str]) -> tuple[str, int]:
        """Run rsync and wait for it, returning (combined output, exit code).

        The wait blocks only the calling thread. On timeout the process is
        killed before ``subprocess.TimeoutExpired`` propagates.
        """
        cmd = [self.rsync_path, *args]
        logger.debug(f"Executing: {' '.join(cmd)}")

        process = subprocess.Popen(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            errors="replace",
        )
        try:
            stdout, stderr = process.communicate(timeout=self.timeout)
        except subprocess.TimeoutExpired:
            process.kill()
            stdout, stderr = process.communicate()
            raise subprocess.TimeoutExpired(
                cmd, self.timeout or 0, output=(stdout or "") + "\n" + (stderr or "")
            ) from None

        return (stdout or "") + "\n" + (stderr or ""), process.returncode


def _decode(value: Union[str, bytes, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
