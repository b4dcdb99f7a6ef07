"""Live segment accumulator: gated in-memory buffering of incoming fixes."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
from typing import List, Optional, Tuple

from .config import (
    ACCUMULATOR_MAX_GAP_S,
    ACCUMULATOR_MAX_HORIZONTAL_ACCURACY_M,
    ACCUMULATOR_MIN_INTERVAL_S,
    ACCUMULATOR_STATIONARY_BEARING_DEG,
    ACCUMULATOR_STATIONARY_DISTANCE_M,
)
from .errors import InvalidFix, SegmentIntegrityViolation
from .geometry.projection import bearing_change_deg, haversine_m, initial_bearing_deg
from .models import Fix, OptimizationPolicy, validate_fix
from .policy import AdaptivePolicySelector, PolicySelection


class AccumulatorState(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    CLOSED = "closed"


class FixDecision(str, Enum):
    ACCEPTED = "accepted"
    ACCEPTED_FIRST = "accepted_first"
    ACCEPTED_GAP = "accepted_gap"
    SKIPPED_BURST = "skipped_burst"
    SKIPPED_INACCURATE = "skipped_inaccurate"
    SKIPPED_STATIONARY = "skipped_stationary"
    REJECTED_INVALID = "rejected_invalid"

    @property
    def accepted(self) -> bool:
        return self in (
            FixDecision.ACCEPTED,
            FixDecision.ACCEPTED_FIRST,
            FixDecision.ACCEPTED_GAP,
        )


@dataclass(frozen=True, slots=True)
class GateSettings:
    """Thresholds used to decide whether a live fix is worth buffering."""

    min_interval_s: float = ACCUMULATOR_MIN_INTERVAL_S
    max_gap_s: float = ACCUMULATOR_MAX_GAP_S
    stationary_distance_m: float = ACCUMULATOR_STATIONARY_DISTANCE_M
    stationary_bearing_deg: float = ACCUMULATOR_STATIONARY_BEARING_DEG
    max_horizontal_accuracy_m: float = ACCUMULATOR_MAX_HORIZONTAL_ACCURACY_M

    def __post_init__(self) -> None:
        if self.min_interval_s < 0:
            raise ValueError("min_interval_s must be non-negative")
        if self.max_gap_s <= self.min_interval_s:
            raise ValueError("max_gap_s must be greater than min_interval_s")


@dataclass(slots=True)
class IngestCounters:
    received: int = 0
    accepted: int = 0
    skipped: int = 0
    rejected: int = 0


class LiveSegmentAccumulator:
    """Per-trip state machine buffering the fixes of the live segment.

    Fixes are processed one at a time in arrival order. Timestamps must not go
    backwards across the whole trip, which keeps consecutive segments from
    overlapping.
    """

    def __init__(
        self,
        trip_id: str,
        *,
        gates: GateSettings | None = None,
        selection: PolicySelection | None = None,
    ) -> None:
        self.trip_id = trip_id
        self.gates = gates or GateSettings()
        self._log = logging.getLogger(self.__class__.__name__)
        self._state = AccumulatorState.IDLE
        self._segment_id: Optional[str] = None
        self._buffer: List[Fix] = []
        self._last_seen_timestamp: Optional[float] = None
        self._last_bearing: Optional[float] = None
        self._selector = AdaptivePolicySelector(selection)
        self.counters = IngestCounters()

    @property
    def state(self) -> AccumulatorState:
        return self._state

    @property
    def segment_id(self) -> Optional[str]:
        return self._segment_id

    @property
    def point_count(self) -> int:
        return len(self._buffer)

    @property
    def last_timestamp(self) -> Optional[float]:
        return self._last_seen_timestamp

    @property
    def current_policy(self) -> Optional[OptimizationPolicy]:
        """Tier suggested by the smoothed live speed (``None`` before any fix)."""

        return self._selector.current

    def set_selection(self, selection: PolicySelection | None) -> None:
        """Swap the tier selection; the live speed history starts over."""

        self._selector = AdaptivePolicySelector(selection)

    def start(self, segment_id: str) -> None:
        if self._state is AccumulatorState.RECORDING:
            raise SegmentIntegrityViolation(
                f"Trip {self.trip_id} already records segment {self._segment_id}; "
                f"cannot start {segment_id}"
            )
        self._state = AccumulatorState.RECORDING
        self._segment_id = segment_id
        self._buffer = []
        self._last_bearing = None
        self.counters = IngestCounters()
        self._log.debug("Recording segment %s for trip %s", segment_id, self.trip_id)

    def ingest(self, fix: Fix) -> FixDecision:
        """Evaluate ``fix`` against the gates and buffer it when useful.

        Raises:
            InvalidFix: Coordinates are out of range or the timestamp is older
                than the last fix seen for this trip. The buffer is unchanged.
            SegmentIntegrityViolation: No segment is being recorded.
        """

        if self._state is not AccumulatorState.RECORDING:
            raise SegmentIntegrityViolation(
                f"Trip {self.trip_id} is not recording (state={self._state.value})"
            )
        self.counters.received += 1
        try:
            self._check(fix)
        except InvalidFix:
            self.counters.rejected += 1
            raise
        self._last_seen_timestamp = fix.timestamp

        decision = self._evaluate(fix)
        if decision.accepted:
            self._append(fix)
            self.counters.accepted += 1
        else:
            self.counters.skipped += 1
            self._log.debug(
                "Skipped fix at %.3f for trip %s: %s",
                fix.timestamp,
                self.trip_id,
                decision.value,
            )
        return decision

    def preview(self, fix: Fix) -> FixDecision:
        """Decide what :meth:`ingest` would do with ``fix`` without buffering it."""

        try:
            self._check(fix)
        except InvalidFix:
            return FixDecision.REJECTED_INVALID
        return self._evaluate(fix)

    def snapshot(self) -> Tuple[Fix, ...]:
        return tuple(self._buffer)

    def close(self) -> Tuple[Fix, ...]:
        """Freeze the live buffer and hand it over; the accumulator may restart."""

        if self._state is not AccumulatorState.RECORDING:
            raise SegmentIntegrityViolation(
                f"Trip {self.trip_id} has no live segment to close"
            )
        frozen = tuple(self._buffer)
        self._buffer = []
        self._state = AccumulatorState.CLOSED
        self._log.debug(
            "Closed segment %s for trip %s with %d fixes",
            self._segment_id,
            self.trip_id,
            len(frozen),
        )
        return frozen

    def _check(self, fix: Fix) -> None:
        validate_fix(fix)
        if (
            self._last_seen_timestamp is not None
            and fix.timestamp < self._last_seen_timestamp
        ):
            raise InvalidFix(
                f"Timestamp {fix.timestamp} is earlier than the previous fix "
                f"({self._last_seen_timestamp})"
            )

    def _evaluate(self, fix: Fix) -> FixDecision:
        if not self._buffer:
            return FixDecision.ACCEPTED_FIRST
        last = self._buffer[-1]
        elapsed = fix.timestamp - last.timestamp
        if elapsed > self.gates.max_gap_s:
            return FixDecision.ACCEPTED_GAP
        if elapsed < self.gates.min_interval_s:
            return FixDecision.SKIPPED_BURST
        accuracy = fix.horizontal_accuracy
        if accuracy < 0 or accuracy > self.gates.max_horizontal_accuracy_m:
            return FixDecision.SKIPPED_INACCURATE
        distance = haversine_m(last.latlon, fix.latlon)
        turn = 0.0
        if self._last_bearing is not None and distance > 0:
            turn = bearing_change_deg(
                self._last_bearing, initial_bearing_deg(last.latlon, fix.latlon)
            )
        if (
            distance < self.gates.stationary_distance_m
            and turn < self.gates.stationary_bearing_deg
        ):
            return FixDecision.SKIPPED_STATIONARY
        return FixDecision.ACCEPTED

    def _append(self, fix: Fix) -> None:
        if self._buffer:
            last = self._buffer[-1]
            if last.latlon != fix.latlon:
                self._last_bearing = initial_bearing_deg(last.latlon, fix.latlon)
        self._buffer.append(fix)
        self._selector.observe(fix.speed_kmh)


__all__ = [
    "AccumulatorState",
    "FixDecision",
    "GateSettings",
    "IngestCounters",
    "LiveSegmentAccumulator",
]
