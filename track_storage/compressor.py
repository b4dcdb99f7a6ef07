"""Segment compressor: adaptive simplification of a closed segment's fixes."""

from __future__ import annotations

from dataclasses import dataclass
import logging
import threading
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from numpy.typing import NDArray

from .errors import CompressionCancelled, CompressionFailure, InvalidFix
from .geometry.projection import MetricArray, haversine_m, project_fixes
from .geometry.simplify import simplify_indices
from .models import Fix, OptimizationPolicy, validate_fix
from .policy import (
    PolicySelection,
    adaptive_min_distance_m,
    representative_speed_kmh,
    select_policy,
)
from .stats import OptimizationStats, compute_optimization_stats

Simplifier = Callable[[MetricArray, float], NDArray[np.intp]]


@dataclass(frozen=True, slots=True)
class CompressionResult:
    """Outcome of compressing one closed point buffer."""

    points: Tuple[Fix, ...]
    original_point_count: int
    compression_ratio: float
    policy: OptimizationPolicy
    representative_speed_kmh: float
    statistics: OptimizationStats


class SegmentCompressor:
    """Reduce a closed buffer with Douglas-Peucker plus spacing constraints.

    The policy comes from the representative speed of the whole raw buffer
    (or from a pinned tier). Douglas-Peucker runs with the policy's
    ``max_deviation_m``; the result is then post-processed in three passes:

    1. sharp turns (``angle_threshold_deg``) are retained even when within
       tolerance, provided both legs are at least ``min_distance_m`` long;
    2. points closer than the speed-adjusted ``min_distance_m`` or
       ``min_time_interval_s`` to the previously retained point are thinned
       out (endpoints always stay);
    3. gaps longer than ``max_distance_m`` are bridged with original fixes.

    The input sequence is never modified.
    """

    def __init__(self, *, simplifier: Simplifier = simplify_indices) -> None:
        self._simplifier = simplifier
        self._log = logging.getLogger(self.__class__.__name__)

    def compress(
        self,
        points: Sequence[Fix],
        *,
        selection: PolicySelection | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CompressionResult:
        """Return the compressed representation of ``points``.

        An empty buffer is valid and yields an empty result with a ratio of 0.

        Raises:
            CompressionFailure: The buffer is malformed (non-finite or
                out-of-range coordinates, timestamps going backwards) or the
                simplifier failed.
            CompressionCancelled: ``cancel_event`` was set during the run.
        """

        fixes = tuple(points)
        try:
            _validate_buffer(fixes)
            speed_kmh = self.representative_speed(fixes)
            policy = select_policy(selection, speed_kmh)
            metric = project_fixes(fixes)
            _check_cancel(cancel_event)
            if len(fixes) < 3:
                indices: List[int] = list(range(len(fixes)))
            else:
                kept = [int(i) for i in self._simplifier(metric, policy.max_deviation_m)]
                _check_cancel(cancel_event)
                indices = self._post_process(metric, fixes, kept, policy, speed_kmh)
            _check_cancel(cancel_event)
            statistics = compute_optimization_stats(metric, metric[indices])
        except (CompressionFailure, CompressionCancelled):
            raise
        except Exception as exc:
            raise CompressionFailure(f"Compression failed: {exc}") from exc

        compressed = tuple(fixes[i] for i in indices)
        original_count = len(fixes)
        ratio = 1.0 - len(compressed) / original_count if original_count else 0.0
        self._log.debug(
            "Compressed %d -> %d fixes with tier %s (%.1f km/h)",
            original_count,
            len(compressed),
            policy.name,
            speed_kmh,
        )
        return CompressionResult(
            points=compressed,
            original_point_count=original_count,
            compression_ratio=ratio,
            policy=policy,
            representative_speed_kmh=speed_kmh,
            statistics=statistics,
        )

    @staticmethod
    def representative_speed(points: Sequence[Fix]) -> float:
        """Mean reported speed in km/h; falls back to distance over duration."""

        reported = [p.speed_kmh for p in points if p.speed_kmh is not None]
        if reported:
            return representative_speed_kmh(reported)
        if len(points) < 2:
            return 0.0
        duration = points[-1].timestamp - points[0].timestamp
        if duration <= 0:
            return 0.0
        distance = sum(
            haversine_m(a.latlon, b.latlon) for a, b in zip(points, points[1:])
        )
        return distance / duration * 3.6

    def _post_process(
        self,
        metric: MetricArray,
        fixes: Sequence[Fix],
        kept: List[int],
        policy: OptimizationPolicy,
        speed_kmh: float,
    ) -> List[int]:
        times = np.fromiter((f.timestamp for f in fixes), dtype=float, count=len(fixes))
        indices = _retain_turns(metric, kept, policy)
        min_distance = adaptive_min_distance_m(policy, speed_kmh)
        indices = _thin_spacing(
            metric, times, indices, min_distance, policy.min_time_interval_s
        )
        return _bridge_gaps(metric, indices, policy.max_distance_m)


def _validate_buffer(fixes: Sequence[Fix]) -> None:
    previous: Optional[float] = None
    for position, fix in enumerate(fixes):
        try:
            validate_fix(fix)
        except InvalidFix as exc:
            raise CompressionFailure(f"Malformed fix at index {position}: {exc}") from exc
        if previous is not None and fix.timestamp < previous:
            raise CompressionFailure(
                f"Timestamps go backwards at index {position} "
                f"({fix.timestamp} < {previous})"
            )
        previous = fix.timestamp


def _check_cancel(cancel_event: threading.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise CompressionCancelled("Compression cancelled")


def _retain_turns(
    metric: MetricArray, kept: List[int], policy: OptimizationPolicy
) -> List[int]:
    """Add interior points where the track turns sharper than the threshold."""

    result = set(kept)
    stack = list(zip(kept, kept[1:]))
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        interior = metric[first + 1 : last]
        incoming = interior - metric[first]
        outgoing = metric[last] - interior
        in_len = np.linalg.norm(incoming, axis=1)
        out_len = np.linalg.norm(outgoing, axis=1)
        cross = incoming[:, 0] * outgoing[:, 1] - incoming[:, 1] * outgoing[:, 0]
        dot = np.einsum("ij,ij->i", incoming, outgoing)
        angles = np.degrees(np.arctan2(np.abs(cross), dot))
        eligible = (in_len >= policy.min_distance_m) & (
            out_len >= policy.min_distance_m
        )
        angles = np.where(eligible, angles, -1.0)
        offset = int(np.argmax(angles))
        if angles[offset] > policy.angle_threshold_deg:
            split = first + 1 + offset
            result.add(split)
            stack.append((split, last))
            stack.append((first, split))
    return sorted(result)


def _thin_spacing(
    metric: MetricArray,
    times: NDArray[np.float64],
    indices: List[int],
    min_distance_m: float,
    min_time_interval_s: float,
) -> List[int]:
    """Drop interior points too close in space or time to the last kept one."""

    if len(indices) < 3:
        return list(indices)

    def too_close(a: int, b: int) -> bool:
        distance = float(np.linalg.norm(metric[b] - metric[a]))
        return (
            distance < min_distance_m
            or times[b] - times[a] < min_time_interval_s
        )

    result = [indices[0]]
    for index in indices[1:-1]:
        if too_close(result[-1], index):
            continue
        result.append(index)
    last = indices[-1]
    while len(result) > 1 and too_close(result[-1], last):
        result.pop()
    result.append(last)
    return result


def _bridge_gaps(
    metric: MetricArray, indices: List[int], max_distance_m: float
) -> List[int]:
    """Insert original points so no retained gap exceeds ``max_distance_m``.

    A gap between two consecutive raw fixes is left as is.
    """

    if len(indices) < 2:
        return list(indices)
    result = [indices[0]]
    for target in indices[1:]:
        current = result[-1]
        while (
            target - current > 1
            and np.linalg.norm(metric[target] - metric[current]) > max_distance_m
        ):
            candidates = metric[current + 1 : target]
            distances = np.linalg.norm(candidates - metric[current], axis=1)
            within = np.flatnonzero(distances <= max_distance_m)
            step = int(within[-1]) if within.size else 0
            current = current + 1 + step
            result.append(current)
        result.append(target)
    return result


__all__ = ["CompressionResult", "SegmentCompressor"]
