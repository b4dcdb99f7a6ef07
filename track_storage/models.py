"""Dataclasses describing fixes, optimization policies and stored segments."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
from typing import TYPE_CHECKING, Optional, Tuple

from .errors import InvalidFix

if TYPE_CHECKING:
    from .policy import PolicySelection
    from .stats import OptimizationStats


LatLon = Tuple[float, float]


@dataclass(frozen=True, slots=True)
class Fix:
    """One raw GPS observation. Negative speed or accuracy means "unknown"."""

    latitude: float
    longitude: float
    timestamp: float
    altitude: float = 0.0
    speed: float = -1.0
    horizontal_accuracy: float = 5.0
    vertical_accuracy: float = 5.0

    @property
    def latlon(self) -> LatLon:
        return (self.latitude, self.longitude)

    @property
    def has_valid_speed(self) -> bool:
        return math.isfinite(self.speed) and self.speed >= 0

    @property
    def speed_kmh(self) -> Optional[float]:
        if not self.has_valid_speed:
            return None
        return self.speed * 3.6


def validate_fix(fix: Fix) -> None:
    """Raise :class:`InvalidFix` when coordinates or timestamp are unusable."""

    for name in ("latitude", "longitude", "timestamp", "altitude"):
        value = getattr(fix, name)
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidFix(f"Fix {name} must be a finite number, got {value!r}")
    if not -90.0 <= fix.latitude <= 90.0:
        raise InvalidFix(f"Latitude out of range: {fix.latitude}")
    if not -180.0 <= fix.longitude <= 180.0:
        raise InvalidFix(f"Longitude out of range: {fix.longitude}")


@dataclass(frozen=True, slots=True)
class OptimizationPolicy:
    """Named simplification parameter set (one tier)."""

    name: str
    max_deviation_m: float
    min_distance_m: float
    max_distance_m: float
    angle_threshold_deg: float
    min_time_interval_s: float
    # Scales min_distance_m above 50 km/h; see policy.adaptive_min_distance_m.
    speed_factor: float = 1.0


class SegmentState(str, Enum):
    LIVE = "live"
    CLOSED = "closed"
    COMPRESSED = "compressed"
    # Only seen by status listeners; the store no longer holds the segment.
    DISCARDED = "discarded"


class CompressionStatus(str, Enum):
    PENDING = "pending"
    COMPRESSING = "compressing"
    COMPRESSED = "compressed"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class SegmentHandle:
    """Opaque reference to a trip's live recording returned by ``open_segment``."""

    trip_id: str
    segment_id: str


@dataclass(frozen=True, slots=True)
class Segment:
    """Immutable snapshot of one stored segment.

    The store never mutates a snapshot; every transition (close, compression
    start, compression result) swaps in a new instance, so a reader holding a
    reference always sees one consistent state.
    """

    trip_id: str
    segment_id: str
    sequence: int
    state: SegmentState
    compression_status: CompressionStatus
    points: Tuple[Fix, ...] = ()
    start_timestamp: Optional[float] = None
    end_timestamp: Optional[float] = None
    original_point_count: int = 0
    compression_ratio: float = 0.0
    policy_used: Optional[str] = None
    selection: Optional["PolicySelection"] = None
    statistics: Optional["OptimizationStats"] = None
    failure_reason: Optional[str] = None

    @property
    def is_compressed(self) -> bool:
        return self.state is SegmentState.COMPRESSED

    @property
    def is_live(self) -> bool:
        return self.state is SegmentState.LIVE

    @property
    def sort_key(self) -> Tuple[float, int]:
        """Order by start time; empty segments fall back to their sequence."""

        start = self.start_timestamp
        return (start if start is not None else math.inf, self.sequence)


__all__ = [
    "CompressionStatus",
    "Fix",
    "LatLon",
    "OptimizationPolicy",
    "Segment",
    "SegmentHandle",
    "SegmentState",
    "validate_fix",
]
