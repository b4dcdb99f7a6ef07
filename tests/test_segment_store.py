"""Tests for the segment store lifecycle, read-back and background compression."""

from __future__ import annotations

import threading
from typing import Iterator, List

import pytest

from track_storage.accumulator import FixDecision
from track_storage.compressor import SegmentCompressor
from track_storage.errors import CompressionFailure, SegmentIntegrityViolation
from track_storage.models import CompressionStatus, Segment, SegmentState
from track_storage.policy import PolicySelection
from track_storage.records import dumps_record, loads_record
from track_storage.services import SegmentStore

from conftest import START_TS, make_fix, straight_line


class BlockingCompressor(SegmentCompressor):
    """Waits for ``release`` and ignores cancellation, like a slow worker."""

    def __init__(self) -> None:
        super().__init__()
        self.started = threading.Event()
        self.release = threading.Event()

    def compress(self, points, *, selection=None, cancel_event=None):
        self.started.set()
        assert self.release.wait(5.0)
        return super().compress(points, selection=selection)


class FlakyCompressor(SegmentCompressor):
    def __init__(self, failures: int, error: Exception) -> None:
        super().__init__()
        self.failures = failures
        self.error = error
        self.calls = 0

    def compress(self, points, *, selection=None, cancel_event=None):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return super().compress(points, selection=selection, cancel_event=cancel_event)


@pytest.fixture
def store() -> Iterator[SegmentStore]:
    with SegmentStore(auto_compress=False) as segment_store:
        yield segment_store


def _record(store: SegmentStore, trip_id: str, start_t: float, count: int = 20) -> Segment:
    handle = store.open_segment(trip_id)
    for i in range(count):
        store.append(handle, make_fix(0.0, (start_t + i * 10.0) * 2.0, start_t + i * 10.0))
    return store.close_segment(handle)


def test_segment_lifecycle(store: SegmentStore) -> None:
    handle = store.open_segment("trip")
    line = straight_line(50, 1000.0)
    decisions = [store.append(handle, fix) for fix in line]
    assert all(decision.accepted for decision in decisions)

    live = store.live_segment("trip")
    assert live is not None and live.is_live
    assert len(live.points) == 50
    assert live.start_timestamp == line[0].timestamp

    closed = store.close_segment(handle)
    assert closed.state is SegmentState.CLOSED
    assert closed.compression_status is CompressionStatus.PENDING
    assert closed.original_point_count == 50
    assert closed.end_timestamp == line[-1].timestamp
    assert store.live_segment("trip") is None

    assert store.compress_segment(closed.segment_id) is True
    compressed = store.segment(closed.segment_id)
    assert compressed.state is SegmentState.COMPRESSED
    assert compressed.compression_status is CompressionStatus.COMPRESSED
    assert compressed.original_point_count == 50
    assert compressed.policy_used == "conservative"
    assert 0.0 < compressed.compression_ratio < 1.0
    assert list(store.read("trip")) == list(compressed.points)
    # Already compressed segments are a no-op.
    assert store.compress_segment(compressed) is True


def test_integrity_violations(store: SegmentStore) -> None:
    handle = store.open_segment("trip")
    with pytest.raises(SegmentIntegrityViolation):
        store.open_segment("trip")
    with pytest.raises(SegmentIntegrityViolation):
        store.compress_segment(handle.segment_id)
    store.close_segment(handle)
    with pytest.raises(SegmentIntegrityViolation):
        store.append(handle, make_fix())
    with pytest.raises(SegmentIntegrityViolation):
        store.close_segment(handle)
    with pytest.raises(KeyError):
        store.compress_segment("missing")
    with pytest.raises(KeyError):
        store.compression_status("missing")


def test_empty_segment_compresses_to_zero_ratio(store: SegmentStore) -> None:
    handle = store.open_segment("trip")
    closed = store.close_segment(handle)
    assert closed.points == ()
    assert closed.start_timestamp is None

    assert store.compress_segment(closed.segment_id) is True
    compressed = store.segment(closed.segment_id)
    assert compressed.compression_ratio == 0.0
    assert compressed.compression_status is CompressionStatus.COMPRESSED
    assert list(store.read("trip")) == []


def test_invalid_fix_is_dropped_and_recording_continues(store: SegmentStore) -> None:
    handle = store.open_segment("trip")
    for i in range(5):
        store.append(handle, make_fix(0.0, i * 20.0, i * 10.0))
    before = store.live_segment("trip").points

    assert store.append(handle, make_fix(0.0, 200.0, 25.0)) is FixDecision.REJECTED_INVALID
    assert store.live_segment("trip").points == before
    assert store.append(handle, make_fix(0.0, 200.0, 50.0)) is FixDecision.ACCEPTED


def test_read_is_ordered_regardless_of_completion_order() -> None:
    with SegmentStore(auto_compress=False, max_workers=4) as store:
        segments = [_record(store, "trip", start) for start in (0.0, 1000.0, 2000.0, 3000.0)]
        # Compress the later segments first.
        store.compress_segment(segments[3].segment_id)
        store.compress_segment(segments[1].segment_id)
        handle = store.open_segment("trip")
        store.append(handle, make_fix(0.0, 9000.0, 4000.0))
        store.append(handle, make_fix(0.0, 9050.0, 4010.0))
        futures = store.compress_pending("trip")
        assert len(futures) == 2
        assert all(future.result(timeout=10) for future in futures)

        track = store.read("trip")
        timestamps = [fix.timestamp for fix in track]
        assert timestamps == sorted(timestamps)
        assert timestamps[-1] == make_fix(t=4010.0).timestamp
        # Restartable: iterating again yields the same sequence.
        assert [fix.timestamp for fix in track] == timestamps
        assert [s.sequence for s in track.segments()] == [0, 1, 2, 3, 4]


def test_cancel_then_discard_prevents_write_back() -> None:
    compressor = BlockingCompressor()
    with SegmentStore(compressor, auto_compress=False) as store:
        seen: List[Segment] = []
        store.add_listener(seen.append)
        closed = _record(store, "trip", 0.0)
        future = store.schedule_compression(closed.segment_id)
        assert compressor.started.wait(5.0)
        assert store.compression_status(closed.segment_id) is CompressionStatus.COMPRESSING

        assert store.cancel_compression(closed.segment_id) is True
        assert store.discard_segment(closed.segment_id) is True
        compressor.release.set()

        assert future.result(timeout=5.0) is False
        assert store.segment(closed.segment_id) is None
        assert store.segments("trip") == []
        assert list(store.read("trip")) == []
        assert not any(s.compression_status is CompressionStatus.COMPRESSED for s in seen)


def test_cancelled_segment_stays_retryable() -> None:
    compressor = BlockingCompressor()
    with SegmentStore(compressor, auto_compress=False) as store:
        closed = _record(store, "trip", 0.0)
        future = store.schedule_compression(closed.segment_id)
        assert compressor.started.wait(5.0)
        assert store.cancel_compression(closed.segment_id) is True
        assert store.cancel_compression(closed.segment_id) is False
        compressor.release.set()
        assert future.result(timeout=5.0) is False

        segment = store.segment(closed.segment_id)
        assert segment.state is SegmentState.CLOSED
        assert segment.compression_status is CompressionStatus.PENDING
        assert segment.points == closed.points

        assert store.compress_segment(closed.segment_id) is True
        assert store.segment(closed.segment_id).is_compressed


@pytest.mark.parametrize(
    "error", [CompressionFailure("bad buffer"), RuntimeError("unexpected")]
)
def test_failed_compression_is_recorded_and_retryable(error: Exception) -> None:
    with SegmentStore(FlakyCompressor(1, error), auto_compress=False) as store:
        closed = _record(store, "trip", 0.0)
        assert store.compress_segment(closed.segment_id) is False

        failed = store.segment(closed.segment_id)
        assert failed.state is SegmentState.CLOSED
        assert failed.compression_status is CompressionStatus.FAILED
        assert str(error) in failed.failure_reason
        assert store.statistics().failed_segments == 1
        assert [s.segment_id for s in store.compressible_segments()] == [closed.segment_id]

        futures = store.compress_pending()
        assert [future.result(timeout=5.0) for future in futures] == [True]
        retried = store.segment(closed.segment_id)
        assert retried.is_compressed
        assert retried.failure_reason is None


def test_auto_compress_on_close() -> None:
    with SegmentStore() as store:
        closed = _record(store, "trip", 0.0, count=60)
        assert store.wait_for_compressions(timeout=10.0)
        assert store.segment(closed.segment_id).is_compressed


def test_rollover_continues_under_same_handle() -> None:
    with SegmentStore(auto_compress=False, max_segment_points=10) as store:
        handle = store.open_segment("trip")
        for i in range(25):
            assert store.append(handle, make_fix(0.0, i * 20.0, i * 10.0)).accepted

        segments = store.segments("trip")
        assert [len(s.points) for s in segments] == [10, 10, 5]
        assert [s.state for s in segments] == [
            SegmentState.CLOSED,
            SegmentState.CLOSED,
            SegmentState.LIVE,
        ]
        assert len(list(store.read("trip"))) == 25
        store.close_segment(handle)
        assert store.live_segment("trip") is None


def test_selection_is_carried_per_trip() -> None:
    with SegmentStore(auto_compress=False) as store:
        handle = store.open_segment("trip", selection=PolicySelection.manual("highway"))
        for fix in straight_line(30, 600.0):
            store.append(handle, fix)
        closed = store.close_segment(handle)
        assert store.live_policy_name("trip") == "highway"
        store.compress_segment(closed.segment_id)
        assert store.segment(closed.segment_id).policy_used == "highway"

        other = _record(store, "other", 0.0)
        store.compress_segment(
            other.segment_id, selection=PolicySelection.manual("aggressive")
        )
        assert store.segment(other.segment_id).policy_used == "aggressive"


def test_listener_errors_do_not_break_the_store(store: SegmentStore) -> None:
    statuses: List[CompressionStatus] = []

    def broken(_: Segment) -> None:
        raise RuntimeError("listener failure")

    store.add_listener(broken)
    store.add_listener(lambda segment: statuses.append(segment.compression_status))
    closed = _record(store, "trip", 0.0)
    store.compress_segment(closed.segment_id)
    assert statuses[-2:] == [CompressionStatus.COMPRESSING, CompressionStatus.COMPRESSED]

    store.remove_listener(broken)
    store.remove_listener(broken)


def test_statistics_and_records(store: SegmentStore) -> None:
    first = _record(store, "trip", 0.0, count=40)
    _record(store, "trip", 1000.0, count=30)
    store.compress_segment(first.segment_id)
    handle = store.open_segment("trip")
    store.append(handle, make_fix(0.0, 9000.0, 5000.0))

    stats = store.statistics()
    compressed = store.segment(first.segment_id)
    assert stats.total_segments == 3
    assert stats.live_segments == 1
    assert stats.compressed_segments == 1
    assert stats.original_points == 40 + 30 + 1
    assert stats.stored_points == len(compressed.points) + 30 + 1
    assert stats.saved_bytes == (40 - len(compressed.points)) * stats.bytes_per_point

    records = store.records("trip")
    assert len(records) == 2
    assert records[0].is_compressed and not records[1].is_compressed
    assert records[0].key == ("trip", first.segment_id)
    assert loads_record(dumps_record(records[0])) == records[0]


def test_delete_trip_and_shutdown() -> None:
    store = SegmentStore(auto_compress=False)
    closed = _record(store, "trip", 0.0)
    _record(store, "trip", 1000.0)
    assert store.delete_trip("trip") == 2
    assert store.delete_trip("trip") == 0
    assert store.segment(closed.segment_id) is None
    assert store.discard_segment(closed.segment_id) is False

    store.shutdown()
    other = _record(store, "other", 0.0)
    with pytest.raises(RuntimeError):
        store.schedule_compression(other.segment_id)


def test_dropped_fixes_never_roll_a_full_segment_over() -> None:
    with SegmentStore(max_segment_points=3) as store:
        handle = store.open_segment("trip")
        for i in range(3):
            assert store.append(handle, make_fix(0.0, i * 20.0, i * 10.0)).accepted

        backwards = make_fix(0.0, 80.0, 5.0)
        assert store.append(handle, backwards) is FixDecision.REJECTED_INVALID
        burst = make_fix(0.0, 80.0, 20.5)
        assert store.append(handle, burst) is FixDecision.SKIPPED_BURST

        segments = store.segments("trip")
        assert len(segments) == 1
        assert segments[0].is_live and len(segments[0].points) == 3
        assert store.compressible_segments() == []

        assert store.append(handle, make_fix(0.0, 80.0, 30.0)).accepted
        assert store.wait_for_compressions(timeout=10.0)
        full, live = store.segments("trip")
        assert full.is_compressed and full.original_point_count == 3
        assert live.is_live and len(live.points) == 1


def test_compressible_segments_filter_by_age(store: SegmentStore) -> None:
    first = _record(store, "trip", 0.0)
    second = _record(store, "trip", 1000.0)
    _record(store, "trip", 2000.0)
    store.close_segment(store.open_segment("empty"))

    old = store.compressible_segments(older_than=START_TS + 1500.0)
    assert [s.segment_id for s in old] == [first.segment_id, second.segment_id]
    assert store.compressible_segments("trip", older_than=START_TS) == []
    assert len(store.compressible_segments()) == 4

    futures = store.compress_pending(older_than=START_TS + 500.0)
    assert [future.result(timeout=5.0) for future in futures] == [True]
    assert store.segment(first.segment_id).is_compressed
    assert not store.segment(second.segment_id).is_compressed


def test_max_workers_must_be_positive() -> None:
    with pytest.raises(ValueError):
        SegmentStore(max_workers=0)
    with pytest.raises(ValueError):
        SegmentStore(max_workers=-2)


def test_listeners_hear_about_removed_segments(store: SegmentStore) -> None:
    seen: List[Segment] = []
    store.add_listener(seen.append)

    first = _record(store, "trip", 0.0)
    assert store.discard_segment(first.segment_id) is True
    assert seen[-1].segment_id == first.segment_id
    assert seen[-1].state is SegmentState.DISCARDED
    assert len(seen[-1].points) == 20

    kept = [_record(store, "trip", start).segment_id for start in (1000.0, 2000.0)]
    seen.clear()
    assert store.delete_trip("trip") == 2
    assert [s.segment_id for s in seen] == kept
    assert all(s.state is SegmentState.DISCARDED for s in seen)


def test_shutdown_with_cancel_notifies_reset_segments() -> None:
    compressor = BlockingCompressor()
    store = SegmentStore(compressor, auto_compress=False)
    seen: List[Segment] = []
    store.add_listener(seen.append)
    closed = _record(store, "trip", 0.0)
    future = store.schedule_compression(closed.segment_id)
    assert compressor.started.wait(5.0)

    store.shutdown(wait=False, cancel_pending=True)
    assert seen[-1].segment_id == closed.segment_id
    assert seen[-1].compression_status is CompressionStatus.PENDING

    compressor.release.set()
    assert future.result(timeout=5.0) is False
    assert store.compression_status(closed.segment_id) is CompressionStatus.PENDING
