"""Sync modes and conflict resolution policies."""

from enum import Enum
from typing import Union


class SyncMode(str, Enum):
    """How files move between the source and destination of a pair."""

    ONE_WAY = "one_way"
    """Copy new and modified files from source to destination"""

    TWO_WAY = "two_way"
    """Sync changes in both directions"""

    MIRROR = "mirror"
    """Make destination an exact copy of source (includes deletions)"""

    @property
    def display_name(self) -> str:
        return {
            SyncMode.ONE_WAY: "One-way",
            SyncMode.TWO_WAY: "Two-way",
            SyncMode.MIRROR: "Mirror",
        }[self]

    @property
    def allows_delete(self) -> bool:
        """Whether the destination may lose files absent from the source."""
        return self == SyncMode.MIRROR

    @property
    def is_bidirectional(self) -> bool:
        return self == SyncMode.TWO_WAY

    @classmethod
    def parse(cls, value: Union[str, "SyncMode"]) -> "SyncMode":
        """Parse a sync mode, accepting ``two-way`` as well as ``two_way``.

        Args:
            value: Mode name or SyncMode

        Returns:
            SyncMode

        Raises:
            ValueError: If the value is not a known mode
        """
        if isinstance(value, SyncMode):
            return value
        normalized = value.strip().lower().replace("-", "_")
        for mode in cls:
            if mode.value == normalized:
                return mode
        valid = ", ".join(m.value.replace("_", "-") for m in cls)
        raise ValueError(f"Invalid sync mode '{value}'. Use: {valid}")


class ConflictResolution(str, Enum):
    """Policy applied to a file that changed on both sides since the last sync."""

    LATEST_WINS = "latest_wins"
    KEEP_BOTH = "keep_both"
    SOURCE_WINS = "source_wins"
    DESTINATION_WINS = "destination_wins"

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").capitalize()

    @classmethod
    def parse(cls, value: Union[str, "ConflictResolution"]) -> "ConflictResolution":
        """Parse a policy name, accepting dashes or underscores.

        Raises:
            ValueError: If the value is not a known policy
        """
        if isinstance(value, ConflictResolution):
            return value
        normalized = value.strip().lower().replace("-", "_")
        for policy in cls:
            if policy.value == normalized:
                return policy
        valid = ", ".join(p.value.replace("_", "-") for p in cls)
        raise ValueError(f"Invalid conflict resolution '{value}'. Use: {valid}")
