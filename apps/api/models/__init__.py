"""Models package."""

from .snapshot_record import SnapshotRecord
