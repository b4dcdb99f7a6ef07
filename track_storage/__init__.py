"""GPS track storage package: live segment recording and adaptive compression."""

from .accumulator import FixDecision, GateSettings, LiveSegmentAccumulator
from .compressor import CompressionResult, SegmentCompressor
from .errors import (
    CompressionCancelled,
    CompressionFailure,
    InvalidFix,
    SegmentIntegrityViolation,
    StaleCompressionWrite,
    TrackStorageError,
)
from .geometry import simplify
from .models import (
    CompressionStatus,
    Fix,
    OptimizationPolicy,
    Segment,
    SegmentHandle,
    SegmentState,
)
from .policy import PolicySelection, SpeedTierTable, get_tier, select_policy
from .services import SegmentStore, TripTrack

__all__ = [
    "CompressionCancelled",
    "CompressionFailure",
    "CompressionResult",
    "CompressionStatus",
    "Fix",
    "FixDecision",
    "GateSettings",
    "InvalidFix",
    "LiveSegmentAccumulator",
    "OptimizationPolicy",
    "PolicySelection",
    "Segment",
    "SegmentCompressor",
    "SegmentHandle",
    "SegmentIntegrityViolation",
    "SegmentState",
    "SegmentStore",
    "SpeedTierTable",
    "StaleCompressionWrite",
    "TrackStorageError",
    "TripTrack",
    "get_tier",
    "select_policy",
    "simplify",
]
