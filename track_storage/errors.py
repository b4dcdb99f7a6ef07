"""Central error types used across the engine."""

from __future__ import annotations


class TrackStorageError(RuntimeError):
    """Base error for track storage failures."""


class InvalidFix(TrackStorageError, ValueError):
    """Raised when a fix has out-of-range coordinates or goes back in time."""


class CompressionFailure(TrackStorageError):
    """Raised when a closed segment cannot be compressed. The segment stays retryable."""


class CompressionCancelled(TrackStorageError):
    """Raised inside a compression run once its cancel event has been set."""


class SegmentIntegrityViolation(TrackStorageError):
    """Raised on contract violations such as two live segments for one trip."""


class StaleCompressionWrite(TrackStorageError):
    """Raised when a cancelled or superseded compression tries to write back."""


__all__ = [
    "TrackStorageError",
    "InvalidFix",
    "CompressionFailure",
    "CompressionCancelled",
    "SegmentIntegrityViolation",
    "StaleCompressionWrite",
]
