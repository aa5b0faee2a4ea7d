from .fakes import (
    CountingRepairer,
    FakeExchange,
    FakeSnapshotProvider,
    RecordingNotifier,
    make_position,
    make_snapshot,
)

__all__ = [
    "CountingRepairer",
    "FakeExchange",
    "FakeSnapshotProvider",
    "RecordingNotifier",
    "make_position",
    "make_snapshot",
]
