"""Statistics describing optimization results and overall storage usage."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import shapely
from shapely.geometry import LineString, Point

from .geometry.projection import MetricArray, path_length_m


@dataclass(frozen=True, slots=True)
class OptimizationStats:
    """Before/after comparison of one simplified point sequence."""

    original_count: int
    optimized_count: int
    original_distance_m: float
    optimized_distance_m: float
    max_deviation_m: float

    @property
    def saved_points(self) -> int:
        return self.original_count - self.optimized_count

    @property
    def reduction_percentage(self) -> float:
        if self.original_count == 0:
            return 0.0
        return self.saved_points / self.original_count * 100.0


def compute_optimization_stats(
    original: MetricArray, optimized: MetricArray
) -> OptimizationStats:
    """Compare a projected track with its optimized version.

    ``max_deviation_m`` is the largest distance from any original point to the
    optimized polyline (or to the single retained point).
    """

    original = np.asarray(original, dtype=float).reshape(-1, 2)
    optimized = np.asarray(optimized, dtype=float).reshape(-1, 2)
    return OptimizationStats(
        original_count=len(original),
        optimized_count=len(optimized),
        original_distance_m=path_length_m(original),
        optimized_distance_m=path_length_m(optimized),
        max_deviation_m=max_deviation_m(original, optimized),
    )


def max_deviation_m(original: MetricArray, optimized: MetricArray) -> float:
    if len(original) == 0 or len(optimized) == 0:
        return 0.0
    if len(optimized) == 1 or np.all(optimized == optimized[0]):
        geometry = Point(optimized[0])
    else:
        geometry = LineString(optimized)
    distances = shapely.distance(geometry, shapely.points(original))
    return float(np.max(distances))


@dataclass(frozen=True, slots=True)
class StorageStatistics:
    """Aggregate storage usage across the segments held by a store."""

    total_segments: int = 0
    live_segments: int = 0
    compressed_segments: int = 0
    failed_segments: int = 0
    original_points: int = 0
    stored_points: int = 0
    bytes_per_point: int = 0

    @property
    def original_bytes(self) -> int:
        return self.original_points * self.bytes_per_point

    @property
    def stored_bytes(self) -> int:
        return self.stored_points * self.bytes_per_point

    @property
    def saved_bytes(self) -> int:
        return self.original_bytes - self.stored_bytes

    @property
    def compression_ratio(self) -> float:
        if self.original_points == 0:
            return 0.0
        return 1.0 - self.stored_points / self.original_points


__all__ = [
    "OptimizationStats",
    "StorageStatistics",
    "compute_optimization_stats",
    "max_deviation_m",
]
