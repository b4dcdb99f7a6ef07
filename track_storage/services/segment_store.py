"""Segment store (application layer).

Owns every segment of every trip, drives the live accumulator for each trip
and dispatches compression of closed segments to a background thread pool so
fix ingestion never waits for simplification work.
"""

from __future__ import annotations

from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, field, replace
import itertools
import logging
import math
import threading
import uuid
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from ..accumulator import FixDecision, GateSettings, LiveSegmentAccumulator
from ..compressor import CompressionResult, SegmentCompressor
from ..config import (
    COMPRESSION_AUTO_ON_CLOSE,
    COMPRESSION_MAX_WORKERS,
    ESTIMATED_FIX_BYTES,
    SEGMENT_MAX_POINTS,
)
from ..errors import (
    CompressionCancelled,
    CompressionFailure,
    InvalidFix,
    SegmentIntegrityViolation,
    StaleCompressionWrite,
)
from ..models import CompressionStatus, Fix, Segment, SegmentHandle, SegmentState
from ..policy import PolicySelection
from ..records import SegmentRecord, segment_to_record
from ..stats import StorageStatistics

StatusListener = Callable[[Segment], None]


@dataclass(slots=True)
class _CompressionAttempt:
    token: int
    cancel_event: threading.Event = field(default_factory=threading.Event)
    future: Optional[Future] = None


@dataclass(slots=True)
class _TripState:
    accumulator: LiveSegmentAccumulator
    selection: Optional[PolicySelection] = None
    segment_ids: List[str] = field(default_factory=list)
    live_segment_id: Optional[str] = None
    # Segment id returned in the handle of the current recording session;
    # rollovers keep the session (and the handle) alive.
    session_id: Optional[str] = None
    next_sequence: int = 0


class TripTrack:
    """Lazy, restartable view over a trip's fixes in timestamp order.

    Every iteration takes a fresh snapshot of the trip's segments, so a track
    can be iterated again after more fixes arrive or compressions finish.
    """

    def __init__(self, store: "SegmentStore", trip_id: str) -> None:
        self._store = store
        self.trip_id = trip_id

    def __iter__(self) -> Iterator[Fix]:
        for segment in self._store.segments(self.trip_id):
            yield from segment.points

    def segments(self) -> List[Segment]:
        return self._store.segments(self.trip_id)


class SegmentStore:
    def __init__(
        self,
        compressor: SegmentCompressor | None = None,
        *,
        max_workers: int | None = None,
        max_segment_points: int = SEGMENT_MAX_POINTS,
        auto_compress: bool = COMPRESSION_AUTO_ON_CLOSE,
        gates: GateSettings | None = None,
    ) -> None:
        self.max_workers = (
            COMPRESSION_MAX_WORKERS if max_workers is None else max_workers
        )
        if self.max_workers <= 0:
            raise ValueError("max_workers must be positive")
        if max_segment_points < 0:
            raise ValueError("max_segment_points must be non-negative")
        self.max_segment_points = max_segment_points
        self.auto_compress = auto_compress
        self._compressor = compressor or SegmentCompressor()
        self._gates = gates
        self._log = logging.getLogger(self.__class__.__name__)
        self._lock = threading.RLock()
        self._segments: Dict[str, Segment] = {}
        self._trips: Dict[str, _TripState] = {}
        self._attempts: Dict[str, _CompressionAttempt] = {}
        self._tokens = itertools.count(1)
        self._listeners: List[StatusListener] = []
        self._shut_down = False
        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="segment-compress"
        )

    def __enter__(self) -> "SegmentStore":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown(wait=True)

    # ------------------------------------------------------------------
    # Live recording
    # ------------------------------------------------------------------
    def open_segment(
        self, trip_id: str, *, selection: PolicySelection | None = None
    ) -> SegmentHandle:
        """Start recording a new live segment for ``trip_id``.

        Raises:
            SegmentIntegrityViolation: The trip already has a live segment.
        """

        with self._lock:
            trip = self._trips.get(trip_id)
            if trip is None:
                trip = _TripState(
                    accumulator=LiveSegmentAccumulator(
                        trip_id, gates=self._gates, selection=selection
                    ),
                    selection=selection,
                )
                self._trips[trip_id] = trip
            elif trip.live_segment_id is not None:
                raise SegmentIntegrityViolation(
                    f"Trip {trip_id} already has live segment {trip.live_segment_id}"
                )
            elif selection is not None and selection != trip.selection:
                trip.selection = selection
                trip.accumulator.set_selection(selection)
            segment = self._start_segment(trip_id, trip)
            trip.session_id = segment.segment_id
        self._log.info("Opened segment %s for trip %s", segment.segment_id, trip_id)
        self._notify([segment])
        return SegmentHandle(trip_id=trip_id, segment_id=segment.segment_id)

    def append(self, handle: SegmentHandle, fix: Fix) -> FixDecision:
        """Feed one fix to the trip's live segment.

        Invalid fixes are logged and dropped (``REJECTED_INVALID``); recording
        continues. Once the live segment holds ``max_segment_points`` fixes it
        is closed when the next accepted fix arrives, and that fix starts a
        fresh segment under the same handle. Skipped or rejected fixes never
        roll a segment over.
        """

        changed: List[Segment] = []
        with self._lock:
            trip = self._require_session(handle)
            if (
                self.max_segment_points
                and trip.accumulator.point_count >= self.max_segment_points
                and trip.accumulator.preview(fix).accepted
            ):
                changed.append(self._close_live(handle.trip_id, trip))
                changed.append(self._start_segment(handle.trip_id, trip))
            try:
                decision = trip.accumulator.ingest(fix)
            except InvalidFix as exc:
                self._log.warning(
                    "Dropped invalid fix for trip %s: %s", handle.trip_id, exc
                )
                decision = FixDecision.REJECTED_INVALID
        if changed:
            self._log.info(
                "Segment %s reached %d points; continuing in %s",
                changed[0].segment_id,
                changed[0].original_point_count,
                changed[1].segment_id,
            )
            self._notify(changed)
            if self.auto_compress:
                self.schedule_compression(changed[0].segment_id)
        return decision

    def close_segment(self, handle: SegmentHandle) -> Segment:
        """Close the live segment behind ``handle`` and return the closed snapshot."""

        with self._lock:
            trip = self._require_session(handle)
            closed = self._close_live(handle.trip_id, trip)
            trip.session_id = None
        self._notify([closed])
        if self.auto_compress:
            self.schedule_compression(closed.segment_id)
        return closed

    # ------------------------------------------------------------------
    # Compression
    # ------------------------------------------------------------------
    def compress_segment(
        self,
        segment: Segment | str,
        *,
        selection: PolicySelection | None = None,
    ) -> bool:
        """Compress a closed segment in the calling thread.

        Returns ``True`` when a compressed representation is in place
        (including segments that were already compressed) and ``False`` when
        the attempt failed, was cancelled or was superseded.
        """

        segment_id = segment if isinstance(segment, str) else segment.segment_id
        started = self._begin_attempt(segment_id)
        if started is None:
            return True
        attempt, snapshot = started
        self._notify([snapshot])
        return self._run_attempt(segment_id, attempt, snapshot, selection)

    def schedule_compression(
        self,
        segment_id: str,
        *,
        selection: PolicySelection | None = None,
    ) -> "Future[bool]":
        """Dispatch compression of a closed segment to the background pool."""

        with self._lock:
            if self._shut_down:
                raise RuntimeError("SegmentStore has been shut down")
            started = self._begin_attempt(segment_id)
        if started is None:
            done: "Future[bool]" = Future()
            done.set_result(True)
            return done
        attempt, snapshot = started
        # Announce the status before the worker can report a result.
        self._notify([snapshot])
        with self._lock:
            try:
                future = self._executor.submit(
                    self._run_attempt, segment_id, attempt, snapshot, selection
                )
            except RuntimeError:
                self._finish_unsuccessful(segment_id, attempt, None)
                raise
            attempt.future = future
        return future

    def cancel_compression(self, segment_id: str) -> bool:
        """Cancel an in-flight compression; its result will never be written back."""

        with self._lock:
            reset = self._cancel_attempt(segment_id)
            if reset is None:
                return False
        self._log.info("Cancelled compression of segment %s", segment_id)
        if reset is not True:
            self._notify([reset])
        return True

    def compress_pending(
        self, trip_id: str | None = None, *, older_than: float | None = None
    ) -> List["Future[bool]"]:
        """Schedule every closed, uncompressed segment (e.g. retry after failures)."""

        return [
            self.schedule_compression(segment.segment_id)
            for segment in self.compressible_segments(trip_id, older_than=older_than)
        ]

    def wait_for_compressions(self, timeout: float | None = None) -> bool:
        """Block until scheduled compressions finish; ``False`` on timeout."""

        with self._lock:
            futures = [a.future for a in self._attempts.values() if a.future]
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    # ------------------------------------------------------------------
    # Removal
    # ------------------------------------------------------------------
    def discard_segment(self, segment_id: str) -> bool:
        """Remove a segment, cancelling any compression still running for it."""

        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return False
            self._cancel_attempt(segment_id)
            trip = self._trips.get(segment.trip_id)
            gone = self._discarded(self._segments[segment_id], trip)
            if trip is not None:
                if trip.live_segment_id == segment_id:
                    trip.accumulator.close()
                    trip.live_segment_id = None
                    trip.session_id = None
                if segment_id in trip.segment_ids:
                    trip.segment_ids.remove(segment_id)
            del self._segments[segment_id]
        self._log.info("Discarded segment %s of trip %s", segment_id, segment.trip_id)
        self._notify([gone])
        return True

    def delete_trip(self, trip_id: str) -> int:
        """Remove a trip and all its segments; returns the number removed."""

        gone: List[Segment] = []
        with self._lock:
            trip = self._trips.pop(trip_id, None)
            if trip is None:
                return 0
            for segment_id in trip.segment_ids:
                self._cancel_attempt(segment_id)
                segment = self._segments.pop(segment_id, None)
                if segment is not None:
                    gone.append(self._discarded(segment, trip))
            removed = len(trip.segment_ids)
        self._log.info("Deleted trip %s (%d segments)", trip_id, removed)
        self._notify(gone)
        return removed

    # ------------------------------------------------------------------
    # Read-back
    # ------------------------------------------------------------------
    def read(self, trip_id: str) -> TripTrack:
        return TripTrack(self, trip_id)

    def segments(self, trip_id: str) -> List[Segment]:
        """Snapshots of a trip's segments ordered by start timestamp."""

        with self._lock:
            trip = self._trips.get(trip_id)
            if trip is None:
                return []
            snapshots = [
                self._materialize(self._segments[segment_id], trip)
                for segment_id in trip.segment_ids
            ]
        return sorted(snapshots, key=lambda s: s.sort_key)

    def segment(self, segment_id: str) -> Optional[Segment]:
        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                return None
            return self._materialize(segment, self._trips.get(segment.trip_id))

    def live_segment(self, trip_id: str) -> Optional[Segment]:
        with self._lock:
            trip = self._trips.get(trip_id)
            if trip is None or trip.live_segment_id is None:
                return None
            return self._materialize(self._segments[trip.live_segment_id], trip)

    def live_policy_name(self, trip_id: str) -> Optional[str]:
        """Tier currently suggested by the trip's smoothed live speed."""

        with self._lock:
            trip = self._trips.get(trip_id)
            if trip is None or trip.accumulator.current_policy is None:
                return None
            return trip.accumulator.current_policy.name

    def compression_status(self, segment_id: str) -> CompressionStatus:
        with self._lock:
            try:
                return self._segments[segment_id].compression_status
            except KeyError:
                raise KeyError(f"Unknown segment {segment_id}") from None

    def compressible_segments(
        self, trip_id: str | None = None, *, older_than: float | None = None
    ) -> List[Segment]:
        """Closed segments without a compressed representation or running attempt.

        ``older_than`` keeps only segments whose last fix is earlier than that
        timestamp (empty segments have none and are left out). Results are
        ordered by end timestamp.
        """

        with self._lock:
            candidates = [
                segment
                for segment in self._segments.values()
                if segment.state is SegmentState.CLOSED
                and segment.segment_id not in self._attempts
                and (trip_id is None or segment.trip_id == trip_id)
                and (
                    older_than is None
                    or (
                        segment.end_timestamp is not None
                        and segment.end_timestamp < older_than
                    )
                )
            ]
        return sorted(candidates, key=_end_order)

    def records(self, trip_id: str) -> List[SegmentRecord]:
        """Persistence records for every closed or compressed segment of a trip."""

        return [
            segment_to_record(segment)
            for segment in self.segments(trip_id)
            if not segment.is_live
        ]

    def statistics(self) -> StorageStatistics:
        with self._lock:
            snapshots = [
                self._materialize(segment, self._trips.get(segment.trip_id))
                for segment in self._segments.values()
            ]
        original = 0
        stored = 0
        for segment in snapshots:
            if segment.is_compressed:
                original += segment.original_point_count
            else:
                original += len(segment.points)
            stored += len(segment.points)
        return StorageStatistics(
            total_segments=len(snapshots),
            live_segments=sum(1 for s in snapshots if s.is_live),
            compressed_segments=sum(1 for s in snapshots if s.is_compressed),
            failed_segments=sum(
                1
                for s in snapshots
                if s.compression_status is CompressionStatus.FAILED
            ),
            original_points=original,
            stored_points=stored,
            bytes_per_point=ESTIMATED_FIX_BYTES,
        )

    # ------------------------------------------------------------------
    # Listeners / lifecycle
    # ------------------------------------------------------------------
    def add_listener(self, listener: StatusListener) -> None:
        """Subscribe to segment snapshots emitted on every status change."""

        with self._lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: StatusListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    def shutdown(self, *, wait: bool = True, cancel_pending: bool = False) -> None:
        reset: List[Segment] = []
        with self._lock:
            self._shut_down = True
            if cancel_pending:
                for segment_id in list(self._attempts):
                    snapshot = self._cancel_attempt(segment_id)
                    if isinstance(snapshot, Segment):
                        reset.append(snapshot)
        self._notify(reset)
        self._executor.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # Internals (callers hold ``self._lock`` unless noted)
    # ------------------------------------------------------------------
    def _require_session(self, handle: SegmentHandle) -> _TripState:
        trip = self._trips.get(handle.trip_id)
        if (
            trip is None
            or trip.live_segment_id is None
            or trip.session_id != handle.segment_id
        ):
            raise SegmentIntegrityViolation(
                f"Segment {handle.segment_id} of trip {handle.trip_id} is not live"
            )
        return trip

    def _start_segment(self, trip_id: str, trip: _TripState) -> Segment:
        segment_id = uuid.uuid4().hex
        trip.accumulator.start(segment_id)
        segment = Segment(
            trip_id=trip_id,
            segment_id=segment_id,
            sequence=trip.next_sequence,
            state=SegmentState.LIVE,
            compression_status=CompressionStatus.PENDING,
            selection=trip.selection,
        )
        trip.next_sequence += 1
        trip.live_segment_id = segment_id
        trip.segment_ids.append(segment_id)
        self._segments[segment_id] = segment
        return segment

    def _close_live(self, trip_id: str, trip: _TripState) -> Segment:
        segment_id = trip.live_segment_id
        if segment_id is None:
            raise SegmentIntegrityViolation(f"Trip {trip_id} has no live segment")
        points = trip.accumulator.close()
        closed = replace(
            self._segments[segment_id],
            state=SegmentState.CLOSED,
            compression_status=CompressionStatus.PENDING,
            points=points,
            start_timestamp=points[0].timestamp if points else None,
            end_timestamp=points[-1].timestamp if points else None,
            original_point_count=len(points),
            compression_ratio=0.0,
        )
        self._segments[segment_id] = closed
        trip.live_segment_id = None
        self._log.info(
            "Closed segment %s of trip %s with %d fixes",
            segment_id,
            trip_id,
            len(points),
        )
        return closed

    def _discarded(self, segment: Segment, trip: Optional[_TripState]) -> Segment:
        return replace(self._materialize(segment, trip), state=SegmentState.DISCARDED)

    def _materialize(self, segment: Segment, trip: Optional[_TripState]) -> Segment:
        if not segment.is_live or trip is None:
            return segment
        points = trip.accumulator.snapshot()
        return replace(
            segment,
            points=points,
            start_timestamp=points[0].timestamp if points else None,
            end_timestamp=points[-1].timestamp if points else None,
            original_point_count=len(points),
        )

    def _begin_attempt(
        self, segment_id: str
    ) -> Optional[Tuple[_CompressionAttempt, Segment]]:
        """Register a new attempt and mark the segment compressing; callers notify."""

        with self._lock:
            segment = self._segments.get(segment_id)
            if segment is None:
                raise KeyError(f"Unknown segment {segment_id}")
            if segment.is_live:
                raise SegmentIntegrityViolation(
                    f"Segment {segment_id} is still live and cannot be compressed"
                )
            if segment.is_compressed:
                return None
            previous = self._attempts.get(segment_id)
            if previous is not None:
                previous.cancel_event.set()
            attempt = _CompressionAttempt(token=next(self._tokens))
            self._attempts[segment_id] = attempt
            changed = replace(
                segment,
                compression_status=CompressionStatus.COMPRESSING,
                failure_reason=None,
            )
            self._segments[segment_id] = changed
        return attempt, changed

    def _run_attempt(
        self,
        segment_id: str,
        attempt: _CompressionAttempt,
        snapshot: Segment,
        selection: PolicySelection | None,
    ) -> bool:
        """Compress outside the lock, then write back through the stale guard."""

        try:
            result = self._compressor.compress(
                snapshot.points,
                selection=selection or snapshot.selection,
                cancel_event=attempt.cancel_event,
            )
        except CompressionCancelled:
            self._log.debug("Compression of segment %s stopped early", segment_id)
            self._finish_unsuccessful(segment_id, attempt, None)
            return False
        except CompressionFailure as exc:
            self._log.warning(
                "Compression failed for segment %s: %s", segment_id, exc, exc_info=True
            )
            self._finish_unsuccessful(segment_id, attempt, str(exc))
            return False
        except Exception as exc:  # noqa: BLE001
            self._log.warning(
                "Unexpected compression error for segment %s: %s",
                segment_id,
                exc,
                exc_info=True,
            )
            self._finish_unsuccessful(segment_id, attempt, str(exc))
            return False

        try:
            compressed = self._write_back(segment_id, attempt, result)
        except StaleCompressionWrite as exc:
            self._log.debug("Discarded compression result: %s", exc)
            return False
        self._log.info(
            "Compressed segment %s: %d -> %d fixes (%.0f%% saved, tier %s)",
            segment_id,
            result.original_point_count,
            len(result.points),
            result.compression_ratio * 100.0,
            result.policy.name,
        )
        self._notify([compressed])
        return True

    def _write_back(
        self,
        segment_id: str,
        attempt: _CompressionAttempt,
        result: CompressionResult,
    ) -> Segment:
        with self._lock:
            current = self._segments.get(segment_id)
            if current is None:
                raise StaleCompressionWrite(f"Segment {segment_id} no longer exists")
            if (
                self._attempts.get(segment_id) is not attempt
                or attempt.cancel_event.is_set()
            ):
                raise StaleCompressionWrite(
                    f"Compression attempt {attempt.token} for segment {segment_id} "
                    "was cancelled or superseded"
                )
            compressed = replace(
                current,
                state=SegmentState.COMPRESSED,
                compression_status=CompressionStatus.COMPRESSED,
                points=result.points,
                original_point_count=result.original_point_count,
                compression_ratio=result.compression_ratio,
                policy_used=result.policy.name,
                statistics=result.statistics,
                failure_reason=None,
            )
            self._segments[segment_id] = compressed
            del self._attempts[segment_id]
        return compressed

    def _finish_unsuccessful(
        self,
        segment_id: str,
        attempt: _CompressionAttempt,
        failure: Optional[str],
    ) -> None:
        with self._lock:
            current = self._segments.get(segment_id)
            if current is None or self._attempts.get(segment_id) is not attempt:
                return
            del self._attempts[segment_id]
            status = (
                CompressionStatus.FAILED if failure else CompressionStatus.PENDING
            )
            updated = replace(
                current, compression_status=status, failure_reason=failure
            )
            self._segments[segment_id] = updated
        self._notify([updated])

    def _cancel_attempt(self, segment_id: str) -> Segment | bool | None:
        """Cancel the running attempt; returns the reset snapshot, ``True`` or ``None``."""

        attempt = self._attempts.pop(segment_id, None)
        if attempt is None:
            return None
        attempt.cancel_event.set()
        if attempt.future is not None:
            attempt.future.cancel()
        current = self._segments.get(segment_id)
        if (
            current is not None
            and current.compression_status is CompressionStatus.COMPRESSING
        ):
            reset = replace(current, compression_status=CompressionStatus.PENDING)
            self._segments[segment_id] = reset
            return reset
        return True

    def _notify(self, segments: List[Segment]) -> None:
        """Call listeners outside the lock; listener errors never propagate."""

        with self._lock:
            listeners = list(self._listeners)
        for segment in segments:
            for listener in listeners:
                try:
                    listener(segment)
                except Exception:
                    self._log.debug(
                        "Status listener failed for segment %s",
                        segment.segment_id,
                        exc_info=True,
                    )


def _end_order(segment: Segment) -> Tuple[float, str, int]:
    end = segment.end_timestamp
    return (end if end is not None else -math.inf, segment.trip_id, segment.sequence)


__all__ = ["SegmentStore", "StatusListener", "TripTrack"]
