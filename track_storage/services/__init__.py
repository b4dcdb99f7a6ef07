"""Service layer package.

Exports the segment store consumed by recording / presentation layers.
"""

from .segment_store import SegmentStore, StatusListener, TripTrack

__all__ = ["SegmentStore", "StatusListener", "TripTrack"]
