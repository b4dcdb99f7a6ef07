"""Douglas-Peucker simplification of fix sequences."""

from __future__ import annotations

from typing import List, Sequence

import numpy as np
from numpy.typing import NDArray

from ..models import Fix
from .projection import MetricArray, project_fixes, segment_distances

IndexArray = NDArray[np.intp]


def simplify(points: Sequence[Fix], epsilon_m: float) -> List[Fix]:
    """Return the fixes retained by Douglas-Peucker at tolerance ``epsilon_m``.

    The first and last fix are always retained. A fix is kept only when its
    distance to the chord between the surrounding retained fixes is strictly
    greater than ``epsilon_m``; a distance exactly equal to the tolerance is
    discarded. The input is never modified and the returned fixes are the
    original objects.
    """

    if epsilon_m < 0:
        raise ValueError("epsilon_m must be non-negative")
    fixes = list(points)
    if len(fixes) < 3:
        return fixes
    indices = simplify_indices(project_fixes(fixes), epsilon_m)
    return [fixes[i] for i in indices]


def simplify_indices(points: MetricArray, epsilon_m: float) -> IndexArray:
    """Douglas-Peucker on a projected ``(n, 2)`` array; returns retained indices."""

    if epsilon_m < 0:
        raise ValueError("epsilon_m must be non-negative")
    array = np.asarray(points, dtype=float)
    if array.ndim != 2 or (array.size and array.shape[1] != 2):
        raise ValueError("Expected a sequence of 2D coordinates")
    count = len(array)
    if count < 3:
        return np.arange(count, dtype=np.intp)

    keep = np.zeros(count, dtype=bool)
    keep[0] = keep[-1] = True
    # Explicit stack instead of recursion: segments hold thousands of points.
    stack = [(0, count - 1)]
    while stack:
        first, last = stack.pop()
        if last - first < 2:
            continue
        interior = array[first + 1 : last]
        distances = segment_distances(interior, array[first], array[last])
        offset = int(np.argmax(distances))
        if distances[offset] > epsilon_m:
            split = first + 1 + offset
            keep[split] = True
            stack.append((split, last))
            stack.append((first, split))
    return np.flatnonzero(keep).astype(np.intp, copy=False)


__all__ = ["simplify", "simplify_indices"]
