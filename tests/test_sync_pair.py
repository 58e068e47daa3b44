"""Unit tests for sync pairs."""

from datetime import datetime, timezone

import pytest

from pycloudsync.exceptions import PairValidationError
from pycloudsync.sync.modes import ConflictResolution, SyncMode
from pycloudsync.sync.pair import DEFAULT_EXCLUDES, SyncPair, paths_overlap
from pycloudsync.sync.result import SyncErrorCode


@pytest.fixture
def dirs(tmp_path):
    """Create a source and a destination directory."""
    source = tmp_path / "source"
    destination = tmp_path / "destination"
    source.mkdir()
    destination.mkdir()
    return source, destination


class TestSyncPair:
    """Tests for SyncPair class."""

    def test_create_sync_pair(self, dirs):
        """Test creating a basic sync pair with defaults."""
        source, destination = dirs
        pair = SyncPair("Docs", source, destination)

        assert pair.name == "Docs"
        assert pair.source == source
        assert pair.destination == destination
        assert pair.sync_mode == SyncMode.ONE_WAY
        assert pair.conflict_resolution == ConflictResolution.LATEST_WINS
        assert pair.enabled is True
        assert pair.sync_interval == 300
        assert pair.last_sync_time is None
        assert pair.exclude_patterns == list(DEFAULT_EXCLUDES)
        assert pair.include_patterns == []
        assert pair.id

    def test_each_pair_gets_its_own_id_and_excludes(self, dirs):
        """Test that defaults are not shared between instances."""
        source, destination = dirs
        first = SyncPair("A", source, destination)
        second = SyncPair("B", source, destination)

        first.exclude_patterns.append("*.bak")

        assert first.id != second.id
        assert "*.bak" not in second.exclude_patterns

    def test_paths_are_normalized(self, monkeypatch, tmp_path):
        """Test that ~ is expanded and relative paths become absolute."""
        monkeypatch.setenv("HOME", str(tmp_path))
        monkeypatch.chdir(tmp_path)

        pair = SyncPair("Docs", "~/iCloud/Docs", "drive/Docs")

        assert pair.source == tmp_path / "iCloud" / "Docs"
        assert pair.destination == tmp_path / "drive" / "Docs"

    def test_string_enums_are_parsed(self, dirs):
        """Test that mode and policy accept dash spellings."""
        source, destination = dirs
        pair = SyncPair(
            "Docs",
            source,
            destination,
            sync_mode="two-way",
            conflict_resolution="keep-both",
        )

        assert pair.sync_mode == SyncMode.TWO_WAY
        assert pair.conflict_resolution == ConflictResolution.KEEP_BOTH

    def test_id_cannot_change(self, dirs):
        """Test that the id is fixed after creation."""
        source, destination = dirs
        pair = SyncPair("Docs", source, destination)

        with pytest.raises(AttributeError):
            pair.id = "other"

    def test_str(self, dirs):
        """Test string representation."""
        source, destination = dirs
        pair = SyncPair("Docs", source, destination, sync_mode=SyncMode.MIRROR)

        assert str(pair) == f"Docs: {source} -> {destination} (mirror)"


class TestSyncPairValidation:
    """Tests for SyncPair.validate."""

    def test_valid_pair(self, dirs):
        """Test that sibling directories validate."""
        source, destination = dirs
        SyncPair("Docs", source, destination).validate()

    def test_missing_source(self, tmp_path, dirs):
        """Test that a missing source is reported first."""
        _, destination = dirs
        missing = tmp_path / "missing"

        with pytest.raises(PairValidationError, match="Source path not found") as exc:
            SyncPair("Docs", missing, destination).validate()

        assert exc.value.path == str(missing)
        assert exc.value.code == SyncErrorCode.PATH_NOT_FOUND

    def test_missing_destination(self, tmp_path, dirs):
        """Test that a missing destination is reported."""
        source, _ = dirs

        with pytest.raises(PairValidationError, match="Destination path not found"):
            SyncPair("Docs", source, tmp_path / "missing").validate()

    def test_source_checked_before_destination(self, tmp_path):
        """Test validation order when both paths are missing."""
        pair = SyncPair("Docs", tmp_path / "a", tmp_path / "b")

        with pytest.raises(PairValidationError) as exc:
            pair.validate()

        assert exc.value.path == str(tmp_path / "a")

    def test_source_is_file(self, tmp_path, dirs):
        """Test that a file is not accepted as source."""
        _, destination = dirs
        file_path = tmp_path / "file.txt"
        file_path.write_text("x")

        with pytest.raises(PairValidationError, match="not a directory"):
            SyncPair("Docs", file_path, destination).validate()

    def test_destination_inside_source(self, tmp_path):
        """Test that nesting destination inside source is rejected."""
        source = tmp_path / "data"
        destination = source / "backup"
        destination.mkdir(parents=True)

        with pytest.raises(PairValidationError, match="Recursive mapping") as exc:
            SyncPair("Docs", source, destination).validate()

        assert exc.value.code == SyncErrorCode.UNKNOWN

    def test_source_inside_destination(self, tmp_path):
        """Test that nesting source inside destination is rejected."""
        destination = tmp_path / "data"
        source = destination / "inner"
        source.mkdir(parents=True)

        with pytest.raises(PairValidationError, match="Recursive mapping"):
            SyncPair("Docs", source, destination).validate()

    def test_same_directory(self, dirs):
        """Test that identical paths are rejected."""
        source, _ = dirs

        with pytest.raises(PairValidationError, match="Recursive mapping"):
            SyncPair("Docs", source, source).validate()

    def test_shared_name_prefix_is_not_nesting(self, tmp_path):
        """Test that /data/A and /data/AB are siblings, not nested."""
        (tmp_path / "A").mkdir()
        (tmp_path / "AB").mkdir()

        SyncPair("Docs", tmp_path / "A", tmp_path / "AB").validate()


class TestPathsOverlap:
    """Tests for paths_overlap helper."""

    @pytest.mark.parametrize(
        "first, second, expected",
        [
            ("/data/A", "/data/AB", False),
            ("/data/AB", "/data/A", False),
            ("/data/A", "/data/A/b", True),
            ("/data/A/b", "/data/A", True),
            ("/data/A", "/data/A/", True),
            ("/data/A", "/data/B", False),
            ("/data/A/../B", "/data/B/c", True),
        ],
    )
    def test_paths_overlap(self, first, second, expected):
        """Test component-wise overlap detection."""
        assert paths_overlap(first, second) is expected


class TestSyncPairUpdate:
    """Tests for SyncPair.update."""

    def test_update_applies_changes(self, dirs):
        """Test that changes are applied and updated_at moves forward."""
        source, destination = dirs
        pair = SyncPair("Docs", source, destination)
        before = pair.updated_at

        pair.update(sync_mode="mirror", sync_interval=60, name="Documents")

        assert pair.sync_mode == SyncMode.MIRROR
        assert pair.sync_interval == 60
        assert pair.name == "Documents"
        assert pair.updated_at >= before

    def test_update_rejects_invalid_edit(self, dirs):
        """Test that a failing edit leaves the pair untouched."""
        source, destination = dirs
        pair = SyncPair("Docs", source, destination)

        with pytest.raises(PairValidationError):
            pair.update(destination=source / "nested")

        assert pair.destination == destination

    def test_update_refuses_id(self, dirs):
        """Test that the id cannot be changed through update."""
        source, destination = dirs
        pair = SyncPair("Docs", source, destination)

        with pytest.raises(AttributeError, match="id"):
            pair.update(id="new-id")


class TestSyncPairSerialization:
    """Tests for to_dict / from_dict."""

    def test_round_trip(self, dirs):
        """Test that a fully populated pair survives serialization."""
        source, destination = dirs
        pair = SyncPair(
            "Docs",
            source,
            destination,
            sync_mode=SyncMode.TWO_WAY,
            enabled=False,
            exclude_patterns=["*.log", ".git"],
            include_patterns=["*.md"],
            conflict_resolution=ConflictResolution.SOURCE_WINS,
            max_file_size=1024,
            sync_interval=60,
            last_sync_time=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        )

        restored = SyncPair.from_dict(pair.to_dict())

        assert restored == pair

    def test_to_dict_uses_plain_values(self, dirs):
        """Test that to_dict output is JSON friendly."""
        source, destination = dirs
        data = SyncPair("Docs", source, destination).to_dict()

        assert data["source"] == str(source)
        assert data["sync_mode"] == "one_way"
        assert data["conflict_resolution"] == "latest_wins"
        assert data["last_sync_time"] is None

    def test_from_dict_defaults(self):
        """Test that optional keys fall back to defaults."""
        pair = SyncPair.from_dict(
            {"name": "Docs", "source": "/a", "destination": "/b"}
        )

        assert pair.sync_mode == SyncMode.ONE_WAY
        assert pair.exclude_patterns == list(DEFAULT_EXCLUDES)
        assert pair.enabled is True

    def test_from_dict_keeps_empty_excludes(self):
        """Test that an explicit empty exclude list is respected."""
        pair = SyncPair.from_dict(
            {
                "name": "Docs",
                "source": "/a",
                "destination": "/b",
                "exclude_patterns": [],
            }
        )

        assert pair.exclude_patterns == []

    def test_from_dict_missing_fields(self):
        """Test error on missing required fields."""
        with pytest.raises(ValueError, match="Missing required fields: destination"):
            SyncPair.from_dict({"name": "Docs", "source": "/a"})

    def test_from_dict_invalid_mode(self):
        """Test error on an unknown sync mode."""
        with pytest.raises(ValueError, match="Invalid sync mode"):
            SyncPair.from_dict(
                {
                    "name": "Docs",
                    "source": "/a",
                    "destination": "/b",
                    "sync_mode": "sideways",
                }
            )


class TestSyncModes:
    """Tests for mode and policy enums."""

    def test_mode_properties(self):
        """Test mode helper properties."""
        assert SyncMode.MIRROR.allows_delete is True
        assert SyncMode.ONE_WAY.allows_delete is False
        assert SyncMode.TWO_WAY.is_bidirectional is True
        assert SyncMode.TWO_WAY.display_name == "Two-way"

    @pytest.mark.parametrize(
        "value, expected",
        [
            ("one-way", SyncMode.ONE_WAY),
            ("two_way", SyncMode.TWO_WAY),
            ("MIRROR", SyncMode.MIRROR),
            (SyncMode.MIRROR, SyncMode.MIRROR),
        ],
    )
    def test_parse_mode(self, value, expected):
        """Test mode parsing."""
        assert SyncMode.parse(value) == expected

    def test_parse_policy(self):
        """Test policy parsing and display names."""
        policy = ConflictResolution.parse("destination-wins")

        assert policy == ConflictResolution.DESTINATION_WINS
        assert policy.display_name == "Destination wins"

    def test_parse_policy_invalid(self):
        """Test that unknown policies list the valid ones."""
        with pytest.raises(ValueError, match="latest-wins"):
            ConflictResolution.parse("newest")
