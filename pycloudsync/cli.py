"""Command-line interface for pycloudsync."""

import logging
from pathlib import Path
from typing import Any, Optional, Union

import click

from .config import Config
from .exceptions import (
    CloudSyncError,
    ConfigError,
    LockAcquisitionError,
    PairValidationError,
)
from .output import OutputFormatter
from .storage import SyncStorage
from .sync import (
    ConflictResolution,
    LockManager,
    RetryPolicy,
    SyncEngine,
    SyncMode,
    SyncPair,
    SyncResult,
    SyncStatus,
    get_recovery_action,
    retry_sync,
    sync_many,
)
from .utils import (
    format_duration,
    format_interval,
    format_relative_time,
    format_size,
)

logger = logging.getLogger(__name__)

MODE_CHOICES = ", ".join(m.value.replace("_", "-") for m in SyncMode)
CONFLICT_CHOICES = ", ".join(c.value.replace("_", "-") for c in ConflictResolution)


@click.group()
@click.option(
    "--config-dir",
    type=click.Path(file_okay=False),
    envvar="PYCLOUDSYNC_HOME",
    help="Directory for pairs, history and locks",
)
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(package_name="pycloudsync")
@click.pass_context
def main(
    ctx: Any,
    config_dir: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """PyCloudSync - Keep folders in sync between cloud drives using rsync."""
    ctx.ensure_object(dict)
    out = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["out"] = out
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("pycloudsync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)

    try:
        config = Config.load(Path(config_dir) if config_dir else None)
    except ConfigError as e:
        out.error(str(e))
        ctx.exit(1)
    ctx.obj["config"] = config
    ctx.obj["storage"] = SyncStorage(config.data_dir)


def _require_pair(ctx: Any, name: str) -> SyncPair:
    """Look a pair up by name or id, exiting with an error when missing."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]

    pair = storage.find_pair(name)
    if pair is None:
        out.error(f"Sync pair not found: {name}")
        ctx.exit(1)
    return pair


def _parse_mode(ctx: Any, value: str) -> SyncMode:
    try:
        return SyncMode.parse(value)
    except ValueError:
        ctx.obj["out"].error(f"Invalid sync mode '{value}'. Use: {MODE_CHOICES}")
        ctx.exit(1)


def _parse_conflict(ctx: Any, value: str) -> ConflictResolution:
    try:
        return ConflictResolution.parse(value)
    except ValueError:
        ctx.obj["out"].error(
            f"Invalid conflict resolution '{value}'. Use: {CONFLICT_CHOICES}"
        )
        ctx.exit(1)


def _show_result(out: OutputFormatter, pair: SyncPair, result: SyncResult) -> None:
    if result.status == SyncStatus.COMPLETED:
        out.success(f"{pair.name}: {result.summary}")
    else:
        out.error(f"{pair.name}: sync failed ({result.summary})")

    if result.bytes_transferred:
        out.info(f"  Transferred: {format_size(result.bytes_transferred)}")
    out.info(f"  Duration: {format_duration(result.duration)}")

    for conflict in result.conflicts:
        detail = f" -> {conflict.resolved_path}" if conflict.resolved_path else ""
        out.info(
            f"  Conflict: {conflict.path} "
            f"({conflict.resolution.display_name}){detail}"
        )

    for error in result.errors:
        action = get_recovery_action(error)
        out.warning(f"{error}")
        if action.is_user_actionable:
            out.info(f"  Suggestion: {action.description}")


@main.command()
@click.argument("name")
@click.argument("source")
@click.argument("destination")
@click.option(
    "--mode",
    "-m",
    default="one-way",
    show_default=True,
    help=f"Sync mode: {MODE_CHOICES}",
)
@click.option(
    "--conflict",
    "-c",
    default="latest-wins",
    show_default=True,
    help=f"Conflict resolution: {CONFLICT_CHOICES}",
)
@click.option(
    "--interval",
    "-i",
    type=click.IntRange(min=1),
    default=300,
    show_default=True,
    help="Sync interval in seconds",
)
@click.option(
    "--exclude",
    "-e",
    multiple=True,
    help="Extra exclude pattern (repeatable, added after the defaults)",
)
@click.option("--include", multiple=True, help="Include pattern (repeatable)")
@click.option(
    "--max-size",
    type=click.IntRange(min=1),
    default=None,
    help="Skip files larger than this many bytes",
)
@click.option("--enable", is_flag=True, help="Enable sync immediately")
@click.pass_context
def add(
    ctx: Any,
    name: str,
    source: str,
    destination: str,
    mode: str,
    conflict: str,
    interval: int,
    exclude: tuple[str, ...],
    include: tuple[str, ...],
    max_size: Optional[int],
    enable: bool,
) -> None:
    """Add a new folder sync pair.

    Examples:
        pycloudsync add Docs ~/iCloud/Docs ~/GoogleDrive/Docs
        pycloudsync add Photos ~/Pictures /Volumes/Backup/Pictures -m mirror
        pycloudsync add Notes ~/iCloud/Notes ~/Drive/Notes -m two-way -c keep-both
    """
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]

    pair = SyncPair(
        name=name,
        source=source,
        destination=destination,
        sync_mode=_parse_mode(ctx, mode),
        enabled=enable,
        conflict_resolution=_parse_conflict(ctx, conflict),
        sync_interval=interval,
        max_file_size=max_size,
    )
    pair.exclude_patterns.extend(exclude)
    pair.include_patterns.extend(include)

    try:
        pair.validate()
    except PairValidationError as e:
        out.error(str(e))
        ctx.exit(1)

    for existing in storage.get_all_pairs():
        if existing.name.lower() == name.lower():
            out.error(f"A sync pair named '{existing.name}' already exists")
            ctx.exit(1)
        if (
            existing.source == pair.source
            and existing.destination == pair.destination
        ):
            out.error(f"A pair with these paths already exists: {existing.name}")
            ctx.exit(1)

    storage.save_pair(pair)

    if out.json_output:
        out.output_json(pair.to_dict())
        return

    out.success(f"Added sync pair: {pair.name}")
    out.print_summary(
        "Sync Pair",
        [
            ("Source", str(pair.source)),
            ("Destination", str(pair.destination)),
            ("Mode", pair.sync_mode.display_name),
            ("Interval", format_interval(pair.sync_interval)),
            ("Status", "Enabled" if pair.enabled else "Disabled"),
        ],
    )


@main.command(name="list")
@click.pass_context
def list_pairs(ctx: Any) -> None:
    """List all sync pairs."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]

    pairs = storage.get_all_pairs()

    if out.json_output:
        out.output_json([pair.to_dict() for pair in pairs])
        return

    if not pairs:
        out.info("No sync pairs configured.")
        out.info("Use 'pycloudsync add' to create your first pair.")
        return

    table_data = [
        {
            "status": "on" if pair.enabled else "off",
            "name": pair.name,
            "mode": pair.sync_mode.display_name,
            "source": str(pair.source),
            "destination": str(pair.destination),
            "last": (
                format_relative_time(pair.last_sync_time)
                if pair.last_sync_time
                else "never"
            ),
        }
        for pair in pairs
    ]
    out.output_table(
        table_data,
        ["status", "name", "mode", "source", "destination", "last"],
        {
            "status": "",
            "name": "Name",
            "mode": "Mode",
            "source": "Source",
            "destination": "Destination",
            "last": "Last Sync",
        },
        title=f"Sync Pairs ({len(pairs)})",
    )


@main.command()
@click.argument("name")
@click.option("--source", "-s", help="New source path")
@click.option("--destination", "-d", help="New destination path")
@click.option("--mode", "-m", help=f"New sync mode: {MODE_CHOICES}")
@click.option("--conflict", "-c", help=f"New conflict resolution: {CONFLICT_CHOICES}")
@click.option("--interval", "-i", type=click.IntRange(min=1), help="New interval")
@click.option("--rename", help="New display name")
@click.pass_context
def edit(
    ctx: Any,
    name: str,
    source: Optional[str],
    destination: Optional[str],
    mode: Optional[str],
    conflict: Optional[str],
    interval: Optional[int],
    rename: Optional[str],
) -> None:
    """Edit a sync pair."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]

    pair = _require_pair(ctx, name)

    changes: dict[str, Any] = {}
    if source is not None:
        changes["source"] = source
    if destination is not None:
        changes["destination"] = destination
    if mode is not None:
        changes["sync_mode"] = _parse_mode(ctx, mode)
    if conflict is not None:
        changes["conflict_resolution"] = _parse_conflict(ctx, conflict)
    if interval is not None:
        changes["sync_interval"] = interval
    if rename is not None:
        changes["name"] = rename

    if not changes:
        out.warning("Nothing to change")
        return

    try:
        pair.update(**changes)
    except PairValidationError as e:
        out.error(str(e))
        ctx.exit(1)

    storage.save_pair(pair)

    if out.json_output:
        out.output_json(pair.to_dict())
    else:
        out.success(f"Updated sync pair: {pair.name}")


@main.command()
@click.argument("name")
@click.option("--force", "-f", is_flag=True, help="Delete without confirmation")
@click.pass_context
def delete(ctx: Any, name: str, force: bool) -> None:
    """Delete a sync pair and its history."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]
    config: Config = ctx.obj["config"]

    pair = _require_pair(ctx, name)

    if not force and not click.confirm(
        f"Are you sure you want to delete '{pair.name}'?", default=False
    ):
        out.info("Cancelled.")
        return

    storage.delete_pair(pair.id)
    LockManager(config.lock_dir).release(pair.id)
    out.success(f"Deleted sync pair: {pair.name}")


def _set_enabled(ctx: Any, name: str, enabled: bool) -> None:
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]
    word = "enabled" if enabled else "disabled"

    pair = _require_pair(ctx, name)
    if pair.enabled == enabled:
        out.info(f"Sync pair '{pair.name}' is already {word}.")
        return

    pair.enabled = enabled
    storage.save_pair(pair)
    out.success(f"{word.capitalize()} sync pair: {pair.name}")


@main.command()
@click.argument("name")
@click.pass_context
def enable(ctx: Any, name: str) -> None:
    """Enable a sync pair."""
    _set_enabled(ctx, name, True)


@main.command()
@click.argument("name")
@click.pass_context
def disable(ctx: Any, name: str) -> None:
    """Disable a sync pair."""
    _set_enabled(ctx, name, False)


@main.command()
@click.argument("name")
@click.option("--retry", "-r", is_flag=True, help="Retry recoverable failures")
@click.option(
    "--workers",
    "-w",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of pairs to sync in parallel (with 'all')",
)
@click.pass_context
def sync(ctx: Any, name: str, retry: bool, workers: int) -> None:
    """Manually trigger a sync.

    NAME: Name of the pair to sync, or 'all' for all enabled pairs

    Examples:
        pycloudsync sync Docs
        pycloudsync sync all --workers 4 --retry
    """
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]
    config: Config = ctx.obj["config"]

    if name.lower() == "all":
        pairs = [pair for pair in storage.get_all_pairs() if pair.enabled]
        if not pairs:
            out.info("No enabled pairs to sync.")
            return
    else:
        pairs = [_require_pair(ctx, name)]

    engine = SyncEngine(config)
    policy = RetryPolicy(
        max_attempts=config.max_attempts,
        base_delay=config.base_delay,
        max_delay=config.max_delay,
    )

    def run_pair(pair: SyncPair) -> SyncResult:
        out.progress_message(f"Syncing: {pair.name}...")
        if retry:
            return retry_sync(engine, pair, policy=policy)
        return engine.sync(pair)

    outcomes = sync_many(engine, pairs, max_workers=workers, sync_func=run_pair)
    failed = _record_outcomes(ctx, pairs, outcomes)

    if failed:
        ctx.exit(1)


def _record_outcomes(
    ctx: Any,
    pairs: list[SyncPair],
    outcomes: dict[str, Union[SyncResult, LockAcquisitionError]],
) -> int:
    """Persist results, advance last sync times and report.

    Returns:
        Number of pairs that failed or were locked
    """
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]

    failed = 0
    json_report = []
    for pair in pairs:
        outcome = outcomes.get(pair.id)
        if isinstance(outcome, LockAcquisitionError):
            failed += 1
            out.error(f"{pair.name}: {outcome}")
            json_report.append(
                {"pair": pair.name, "status": "locked", "error": str(outcome)}
            )
            continue
        if outcome is None:
            continue

        storage.save_result(outcome)
        if outcome.status == SyncStatus.COMPLETED and not outcome.is_dry_run:
            storage.update_last_sync_time(pair.id, outcome.end_time)
        if outcome.status == SyncStatus.FAILED:
            failed += 1

        if out.json_output:
            json_report.append({"pair": pair.name, **outcome.to_dict()})
        else:
            _show_result(out, pair, outcome)

    if out.json_output:
        out.output_json(json_report)
    return failed


@main.command(name="dry-run")
@click.argument("name")
@click.pass_context
def dry_run(ctx: Any, name: str) -> None:
    """Preview what would be synced without making changes."""
    out: OutputFormatter = ctx.obj["out"]
    config: Config = ctx.obj["config"]

    pair = _require_pair(ctx, name)

    engine = SyncEngine(config)
    try:
        result = engine.sync(pair, dry_run=True)
    except LockAcquisitionError as e:
        out.error(str(e))
        ctx.exit(1)

    if out.json_output:
        out.output_json(result.to_dict())
        return

    out.info(f"Dry run for: {pair.name}")
    out.info(f"  Source: {pair.source}")
    out.info(f"  Destination: {pair.destination}")

    items = [
        ("Files to add", result.files_added),
        ("Files to update", result.files_updated),
    ]
    if pair.sync_mode.allows_delete or result.files_deleted:
        items.append(("Files to delete", result.files_deleted))
    if result.conflicts:
        items.append(("Conflicts detected", len(result.conflicts)))
    out.print_summary("Preview of changes", items)

    for conflict in result.conflicts:
        out.info(f"  - {conflict.path}")
    for error in result.errors:
        out.warning(str(error))

    out.info("\nNo changes were made (dry run mode)")
    if result.status == SyncStatus.FAILED:
        ctx.exit(1)


@main.command()
@click.pass_context
def status(ctx: Any) -> None:
    """Show sync status for all pairs."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]
    config: Config = ctx.obj["config"]

    pairs = storage.get_all_pairs()
    locks = LockManager(config.lock_dir)

    rows = []
    for pair in pairs:
        last_results = storage.get_results(pair.id, limit=1)
        last = last_results[0] if last_results else None

        if locks.is_locked(pair.id):
            state = "syncing"
        elif not pair.enabled:
            state = "disabled"
        elif last is None:
            state = "never synced"
        else:
            state = last.status.value

        rows.append(
            {
                "name": pair.name,
                "id": pair.id,
                "state": state,
                "last_sync": (
                    format_relative_time(pair.last_sync_time)
                    if pair.last_sync_time
                    else "never"
                ),
                "result": last.summary if last else "-",
            }
        )

    if out.json_output:
        out.output_json(rows)
        return

    if not pairs:
        out.info("No sync pairs configured.")
        return

    enabled_count = sum(1 for pair in pairs if pair.enabled)
    out.info(f"Pairs: {len(pairs)} total, {enabled_count} enabled")
    out.output_table(
        rows,
        ["name", "state", "last_sync", "result"],
        {
            "name": "Name",
            "state": "Status",
            "last_sync": "Last Sync",
            "result": "Last Result",
        },
    )


@main.command()
@click.argument("name", required=False)
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(min=1),
    default=10,
    show_default=True,
    help="Number of log entries to show",
)
@click.option("--errors", "-e", "errors_only", is_flag=True, help="Only failures")
@click.pass_context
def logs(ctx: Any, name: Optional[str], limit: int, errors_only: bool) -> None:
    """View sync history."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]

    pair_id = _require_pair(ctx, name).id if name else None
    names = {pair.id: pair.name for pair in storage.get_all_pairs()}

    # Filtering happens before the limit so --errors still shows `limit` rows
    results = storage.get_results(pair_id, limit=0)
    if errors_only:
        results = [r for r in results if r.has_errors]
    results = results[:limit]

    if out.json_output:
        out.output_json(
            [{"pair": names.get(r.pair_id), **r.to_dict()} for r in results]
        )
        return

    if not results:
        out.info(f"No sync history for '{name}'" if name else "No sync history")
        return

    rows = [
        {
            "time": r.start_time.astimezone().strftime("%Y-%m-%d %H:%M:%S"),
            "pair": names.get(r.pair_id, r.pair_id),
            "status": r.status.value,
            "summary": r.summary,
            "errors": "; ".join(e.message for e in r.errors) or "-",
        }
        for r in results
    ]
    columns = ["time", "status", "summary", "errors"]
    if pair_id is None:
        columns.insert(1, "pair")
    out.output_table(
        rows,
        columns,
        {
            "time": "Started",
            "pair": "Pair",
            "status": "Status",
            "summary": "Summary",
            "errors": "Errors",
        },
    )


@main.command()
@click.option(
    "--days",
    "-d",
    type=click.IntRange(min=0),
    default=None,
    help="Remove history older than this many days (default from config)",
)
@click.pass_context
def cleanup(ctx: Any, days: Optional[int]) -> None:
    """Remove old sync history."""
    out: OutputFormatter = ctx.obj["out"]
    storage: SyncStorage = ctx.obj["storage"]
    config: Config = ctx.obj["config"]

    days = config.history_days if days is None else days
    removed = storage.cleanup_older_than(days)

    if out.json_output:
        out.output_json({"removed": removed, "days": days})
    else:
        out.success(f"Removed {removed} result(s) older than {days} day(s)")


@main.command()
@click.argument("name", required=False)
@click.option("--all", "all_pairs", is_flag=True, help="Remove every lock marker")
@click.pass_context
def unlock(ctx: Any, name: Optional[str], all_pairs: bool) -> None:
    """Remove a leftover lock marker.

    Only needed when a sync was killed; live syncs hold their lock until
    they finish.
    """
    out: OutputFormatter = ctx.obj["out"]
    config: Config = ctx.obj["config"]
    locks = LockManager(config.lock_dir)

    if all_pairs:
        removed = locks.cleanup_all()
        out.success(f"Removed {removed} lock marker(s)")
        return

    if not name:
        out.error("Give a pair name or --all")
        ctx.exit(1)

    pair = _require_pair(ctx, name)
    if not locks.is_locked(pair.id):
        out.info(f"Sync pair '{pair.name}' is not locked.")
        return

    owner = locks.read_owner(pair.id)
    locks.release(pair.id)
    held_by = f" (held by pid {owner.pid} on {owner.hostname})" if owner else ""
    out.success(f"Unlocked {pair.name}{held_by}")


def run() -> None:
    """Console script entry point."""
    try:
        main(obj={})
    except CloudSyncError as e:
        OutputFormatter().error(str(e))
        raise SystemExit(1) from e


if __name__ == "__main__":
    run()
