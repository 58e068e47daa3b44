"""Unit tests for the pycloudsync CLI commands."""

import json
import subprocess
from datetime import timedelta
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from pycloudsync.cli import main
from pycloudsync.storage import SyncStorage
from pycloudsync.sync import LockManager, SyncPair, SyncResult, SyncStatus
from pycloudsync.sync.result import SyncError, SyncErrorCode
from pycloudsync.utils import utc_now

STATS_OUTPUT = """\
Number of created files: 2
Number of deleted files: 0
Number of regular files transferred: 5
Total transferred file size: 2,048 bytes
"""


@pytest.fixture
def runner():
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture
def home(tmp_path):
    """Configuration directory that never waits for locks."""
    config_dir = tmp_path / "home"
    config_dir.mkdir()
    (config_dir / "config.json").write_text(json.dumps({"lock_timeout": 0}))
    return config_dir


@pytest.fixture
def storage(home):
    return SyncStorage(home)


@pytest.fixture
def folders(tmp_path):
    source = tmp_path / "source"
    destination = tmp_path / "destination"
    source.mkdir()
    destination.mkdir()
    return source, destination


@pytest.fixture
def pair(storage, folders):
    """A saved, enabled pair."""
    source, destination = folders
    pair = SyncPair("Docs", source, destination)
    storage.save_pair(pair)
    return pair


@pytest.fixture
def rsync():
    """Patch the rsync process launcher."""
    with patch(
        "pycloudsync.sync.transfer.RsyncRunner._execute",
        return_value=(STATS_OUTPUT, 0),
    ) as mock:
        yield mock


def invoke(runner, home, *args, **kwargs):
    return runner.invoke(main, ["--config-dir", str(home), *args], **kwargs)


class TestMainGroup:
    """Tests for the main CLI group."""

    def test_main_help(self, runner):
        """Test main help shows all commands."""
        result = runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        assert "PyCloudSync" in result.output
        for command in (
            "add",
            "list",
            "edit",
            "delete",
            "sync",
            "dry-run",
            "enable",
            "disable",
            "status",
            "logs",
            "cleanup",
            "unlock",
        ):
            assert command in result.output

    def test_malformed_config(self, runner, home):
        """Test that a broken config file exits with an error."""
        (home / "config.json").write_text("{")

        result = invoke(runner, home, "list")

        assert result.exit_code == 1
        assert "Cannot read" in result.output


class TestAddCommand:
    """Tests for the add command."""

    def test_add_pair(self, runner, home, storage, folders):
        """Test adding a pair with options."""
        source, destination = folders

        result = invoke(
            runner,
            home,
            "add",
            "Docs",
            str(source),
            str(destination),
            "--mode",
            "two-way",
            "--conflict",
            "keep-both",
            "--interval",
            "600",
            "--exclude",
            "*.bak",
            "--max-size",
            "1000",
            "--enable",
        )

        assert result.exit_code == 0, result.output
        assert "Added sync pair: Docs" in result.output
        pair = storage.find_pair("Docs")
        assert pair.sync_mode.value == "two_way"
        assert pair.conflict_resolution.value == "keep_both"
        assert pair.sync_interval == 600
        assert pair.exclude_patterns[-1] == "*.bak"
        assert pair.max_file_size == 1000
        assert pair.enabled is True

    def test_add_defaults_to_disabled(self, runner, home, storage, folders):
        """Test that pairs start disabled unless --enable is given."""
        source, destination = folders

        result = invoke(runner, home, "add", "Docs", str(source), str(destination))

        assert result.exit_code == 0
        assert storage.find_pair("Docs").enabled is False

    def test_add_invalid_mode(self, runner, home, folders):
        """Test rejecting an unknown mode."""
        source, destination = folders

        result = invoke(
            runner, home, "add", "Docs", str(source), str(destination), "-m", "up"
        )

        assert result.exit_code == 1
        assert "Invalid sync mode" in result.output

    def test_add_missing_source(self, runner, home, tmp_path, folders):
        """Test that validation errors are reported."""
        _, destination = folders

        result = invoke(
            runner, home, "add", "Docs", str(tmp_path / "nope"), str(destination)
        )

        assert result.exit_code == 1
        assert "Source path not found" in result.output

    def test_add_nested(self, runner, home, folders):
        """Test that nested folders are rejected."""
        source, _ = folders
        (source / "inner").mkdir()

        result = invoke(
            runner, home, "add", "Docs", str(source), str(source / "inner")
        )

        assert result.exit_code == 1
        assert "Recursive mapping" in result.output

    def test_add_duplicate_name(self, runner, home, pair, tmp_path):
        """Test that pair names must be unique."""
        other_src = tmp_path / "o1"
        other_dst = tmp_path / "o2"
        other_src.mkdir()
        other_dst.mkdir()

        result = invoke(runner, home, "add", "docs", str(other_src), str(other_dst))

        assert result.exit_code == 1
        assert "already exists" in result.output

    def test_add_duplicate_paths(self, runner, home, pair):
        """Test that the same folder mapping cannot be added twice."""
        result = invoke(
            runner, home, "add", "Again", str(pair.source), str(pair.destination)
        )

        assert result.exit_code == 1
        assert "these paths already exist" in result.output


class TestListCommand:
    """Tests for the list command."""

    def test_list_empty(self, runner, home):
        """Test listing with no pairs."""
        result = invoke(runner, home, "list")

        assert result.exit_code == 0
        assert "No sync pairs configured" in result.output

    def test_list_json(self, runner, home, pair):
        """Test JSON listing."""
        result = invoke(runner, home, "--json", "list")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert [p["name"] for p in data] == ["Docs"]
        assert data[0]["id"] == pair.id

    def test_list_table(self, runner, home, pair):
        """Test the table view."""
        result = invoke(runner, home, "list")

        assert result.exit_code == 0
        assert "Docs" in result.output
        assert "never" in result.output


class TestEditCommand:
    """Tests for the edit command."""

    def test_edit_pair(self, runner, home, storage, pair):
        """Test changing mode and interval."""
        result = invoke(
            runner, home, "edit", "Docs", "--mode", "mirror", "--interval", "60"
        )

        assert result.exit_code == 0, result.output
        edited = storage.get_pair(pair.id)
        assert edited.sync_mode.value == "mirror"
        assert edited.sync_interval == 60

    def test_edit_rename(self, runner, home, storage, pair):
        """Test renaming keeps the id."""
        result = invoke(runner, home, "edit", "Docs", "--rename", "Documents")

        assert result.exit_code == 0
        assert storage.find_pair("Documents").id == pair.id

    def test_edit_invalid_destination(self, runner, home, storage, pair):
        """Test that an invalid edit is rejected and not saved."""
        result = invoke(
            runner, home, "edit", "Docs", "--destination", str(pair.source)
        )

        assert result.exit_code == 1
        assert storage.get_pair(pair.id).destination == pair.destination

    def test_edit_missing_pair(self, runner, home):
        """Test editing an unknown pair."""
        result = invoke(runner, home, "edit", "Nope", "--interval", "60")

        assert result.exit_code == 1
        assert "Sync pair not found: Nope" in result.output


class TestDeleteCommand:
    """Tests for the delete command."""

    def test_delete_force(self, runner, home, storage, pair):
        """Test deleting without confirmation also clears the lock."""
        locks = LockManager(home / "locks")
        locks.acquire(pair.id, timeout=0)

        result = invoke(runner, home, "delete", "Docs", "--force")

        assert result.exit_code == 0
        assert storage.get_pair(pair.id) is None
        assert not locks.is_locked(pair.id)

    def test_delete_cancelled(self, runner, home, storage, pair):
        """Test answering no at the prompt."""
        result = invoke(runner, home, "delete", "Docs", input="n\n")

        assert result.exit_code == 0
        assert "Cancelled" in result.output
        assert storage.get_pair(pair.id) is not None


class TestEnableDisable:
    """Tests for enable and disable."""

    def test_disable_then_enable(self, runner, home, storage, pair):
        """Test toggling the enabled flag."""
        result = invoke(runner, home, "disable", "Docs")
        assert result.exit_code == 0
        assert storage.get_pair(pair.id).enabled is False

        result = invoke(runner, home, "enable", "Docs")
        assert result.exit_code == 0
        assert storage.get_pair(pair.id).enabled is True

    def test_enable_already_enabled(self, runner, home, pair):
        """Test enabling an enabled pair."""
        result = invoke(runner, home, "enable", "Docs")

        assert result.exit_code == 0
        assert "already enabled" in result.output


class TestSyncCommand:
    """Tests for the sync command."""

    def test_sync_pair(self, runner, home, storage, pair, rsync):
        """Test a successful sync is stored and advances last sync time."""
        result = invoke(runner, home, "sync", "Docs")

        assert result.exit_code == 0, result.output
        assert "2 added, 5 updated" in result.output
        args = rsync.call_args[0][0]
        assert args[-2:] == [f"{pair.source}/", str(pair.destination)]
        results = storage.get_results(pair.id)
        assert len(results) == 1
        assert results[0].status == SyncStatus.COMPLETED
        assert storage.get_pair(pair.id).last_sync_time == results[0].end_time

    def test_sync_failure(self, runner, home, storage, pair, rsync):
        """Test that a hard rsync failure exits 1 and keeps last sync time."""
        rsync.return_value = ("rsync error: unexplained error (code 12)", 12)

        result = invoke(runner, home, "sync", "Docs")

        assert result.exit_code == 1
        assert storage.get_results(pair.id)[0].status == SyncStatus.FAILED
        assert storage.get_pair(pair.id).last_sync_time is None
        assert "Suggestion" not in result.output

    def test_sync_permission_error_suggests_fix(self, runner, home, pair, rsync):
        """Test that errors a person can fix come with a suggestion."""
        rsync.return_value = (
            STATS_OUTPUT + "rsync: open \"a.txt\" failed: Permission denied (13)\n",
            23,
        )

        result = invoke(runner, home, "sync", "Docs")

        assert result.exit_code == 0, result.output
        assert "Suggestion" in result.output

    def test_sync_locked_pair(self, runner, home, storage, pair, rsync):
        """Test that a running sync blocks a second one."""
        LockManager(home / "locks").acquire(pair.id, timeout=0)

        result = invoke(runner, home, "sync", "Docs")

        assert result.exit_code == 1
        assert "already running" in result.output
        rsync.assert_not_called()
        assert storage.get_results(pair.id) == []

    def test_sync_all_only_enabled(self, runner, home, storage, pair, tmp_path, rsync):
        """Test that 'all' skips disabled pairs."""
        (tmp_path / "x1").mkdir()
        (tmp_path / "x2").mkdir()
        disabled = SyncPair("Off", tmp_path / "x1", tmp_path / "x2", enabled=False)
        storage.save_pair(disabled)

        result = invoke(runner, home, "sync", "all", "--workers", "2")

        assert result.exit_code == 0, result.output
        assert len(storage.get_results(pair.id)) == 1
        assert storage.get_results(disabled.id) == []

    def test_sync_all_none_enabled(self, runner, home):
        """Test 'all' with nothing to do."""
        result = invoke(runner, home, "sync", "all")

        assert result.exit_code == 0
        assert "No enabled pairs" in result.output

    def test_sync_with_retry(self, runner, home, storage, pair, rsync):
        """Test that --retry retries a timed out transfer."""
        (home / "config.json").write_text(
            json.dumps({"lock_timeout": 0, "base_delay": 0, "max_delay": 0})
        )
        rsync.side_effect = [
            subprocess.TimeoutExpired("rsync", 1),
            (STATS_OUTPUT, 0),
        ]

        result = invoke(runner, home, "sync", "Docs", "--retry")

        assert result.exit_code == 0, result.output
        assert rsync.call_count == 2
        assert storage.get_results(pair.id)[0].status == SyncStatus.COMPLETED

    def test_sync_missing_pair(self, runner, home):
        """Test syncing an unknown pair."""
        result = invoke(runner, home, "sync", "Nope")

        assert result.exit_code == 1

    def test_sync_json(self, runner, home, pair, rsync):
        """Test JSON output of a sync."""
        result = invoke(runner, home, "--json", "sync", "Docs")

        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data[0]["pair"] == "Docs"
        assert data[0]["files_updated"] == 5


class TestDryRunCommand:
    """Tests for the dry-run command."""

    def test_dry_run(self, runner, home, storage, pair, rsync):
        """Test that dry-run passes --dry-run and stores nothing."""
        result = invoke(runner, home, "dry-run", "Docs")

        assert result.exit_code == 0, result.output
        assert "--dry-run" in rsync.call_args[0][0]
        assert "Preview of changes" in result.output
        assert "No changes were made" in result.output
        assert storage.get_results(pair.id) == []


class TestStatusCommand:
    """Tests for the status command."""

    def test_status_states(self, runner, home, storage, pair, tmp_path):
        """Test status values for locked and never-synced pairs."""
        (tmp_path / "y1").mkdir()
        (tmp_path / "y2").mkdir()
        idle = SyncPair("Idle", tmp_path / "y1", tmp_path / "y2")
        storage.save_pair(idle)
        LockManager(home / "locks").acquire(pair.id, timeout=0)

        result = invoke(runner, home, "--json", "status")

        assert result.exit_code == 0
        states = {row["name"]: row["state"] for row in json.loads(result.output)}
        assert states == {"Docs": "syncing", "Idle": "never synced"}

    def test_status_last_result(self, runner, home, storage, pair):
        """Test that the latest result status is shown."""
        storage.save_result(
            SyncResult(pair_id=pair.id, start_time=utc_now(), files_added=3)
        )

        result = invoke(runner, home, "--json", "status")

        row = json.loads(result.output)[0]
        assert row["state"] == "completed"
        assert row["result"] == "3 added"


class TestLogsCommand:
    """Tests for the logs command."""

    def test_logs_errors_only(self, runner, home, storage, pair):
        """Test filtering history to failures."""
        now = utc_now()
        storage.save_result(SyncResult(pair_id=pair.id, start_time=now))
        storage.save_result(
            SyncResult(
                pair_id=pair.id,
                start_time=now - timedelta(hours=1),
                errors=[SyncError(SyncErrorCode.PERMISSION_DENIED, "denied")],
                status=SyncStatus.FAILED,
            )
        )

        result = invoke(runner, home, "--json", "logs", "Docs", "--errors")

        data = json.loads(result.output)
        assert len(data) == 1
        assert data[0]["status"] == "failed"
        assert data[0]["pair"] == "Docs"

    def test_logs_empty(self, runner, home, pair):
        """Test a pair without history."""
        result = invoke(runner, home, "logs", "Docs")

        assert result.exit_code == 0
        assert "No sync history for 'Docs'" in result.output


class TestCleanupCommand:
    """Tests for the cleanup command."""

    def test_cleanup(self, runner, home, storage, pair):
        """Test removing old history."""
        old = utc_now() - timedelta(days=60)
        storage.save_result(
            SyncResult(pair_id=pair.id, start_time=old, end_time=old)
        )
        storage.save_result(SyncResult(pair_id=pair.id, start_time=utc_now()))

        result = invoke(runner, home, "--json", "cleanup", "--days", "30")

        assert json.loads(result.output) == {"removed": 1, "days": 30}
        assert len(storage.get_results(pair.id)) == 1


class TestUnlockCommand:
    """Tests for the unlock command."""

    def test_unlock_pair(self, runner, home, pair):
        """Test removing a leftover lock marker."""
        locks = LockManager(home / "locks")
        locks.acquire(pair.id, timeout=0)

        result = invoke(runner, home, "unlock", "Docs")

        assert result.exit_code == 0
        assert "Unlocked Docs" in result.output
        assert not locks.is_locked(pair.id)

    def test_unlock_all(self, runner, home):
        """Test removing every marker."""
        locks = LockManager(home / "locks")
        locks.acquire("a", timeout=0)
        locks.acquire("b", timeout=0)

        result = invoke(runner, home, "unlock", "--all")

        assert result.exit_code == 0
        assert "Removed 2 lock marker(s)" in result.output

    def test_unlock_requires_target(self, runner, home):
        """Test that a name or --all is required."""
        result = invoke(runner, home, "unlock")

        assert result.exit_code == 1
