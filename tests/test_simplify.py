"""Tests for Douglas-Peucker simplification and the metric projection."""

from __future__ import annotations

import math

import numpy as np
import pytest

from track_storage.geometry import (
    bearing_change_deg,
    haversine_m,
    initial_bearing_deg,
    path_length_m,
    project_fixes,
    simplify,
    simplify_indices,
)
from track_storage.geometry.projection import segment_distances
from track_storage.policy import TIERS
from track_storage.stats import compute_optimization_stats

from conftest import make_fix, straight_line, wiggly_track


@pytest.mark.parametrize("epsilon", [0.5, 2.0, 5.0, 12.0, 30.0])
def test_simplify_is_idempotent(epsilon: float) -> None:
    track = wiggly_track()
    once = simplify(track, epsilon)
    assert simplify(once, epsilon) == once


@pytest.mark.parametrize("epsilon", [0.0, 1.0, 10.0, 100.0])
def test_simplify_preserves_endpoints(epsilon: float) -> None:
    track = wiggly_track(120)
    result = simplify(track, epsilon)
    assert result[0] is track[0]
    assert result[-1] is track[-1]


def test_simplify_reduction_is_monotonic_in_epsilon() -> None:
    track = wiggly_track()
    counts = [len(simplify(track, eps)) for eps in (0.5, 1.0, 2.0, 5.0, 10.0, 20.0, 50.0)]
    assert counts[0] <= len(track)
    assert counts == sorted(counts, reverse=True)
    # Larger tolerances keep a subset of the points kept by smaller ones.
    loose = set(map(id, simplify(track, 20.0)))
    tight = set(map(id, simplify(track, 5.0)))
    assert loose <= tight


@pytest.mark.parametrize("epsilon", [1.0, 5.0, 10.0])
def test_simplify_respects_tolerance_bound(epsilon: float) -> None:
    track = wiggly_track()
    result = simplify(track, epsilon)
    stats = compute_optimization_stats(project_fixes(track), project_fixes(result))
    assert stats.max_deviation_m <= epsilon + 1e-6
    assert stats.optimized_count == len(result)


@pytest.mark.parametrize("policy", TIERS, ids=lambda p: p.name)
def test_straight_line_reduces_to_endpoints_for_every_tier(policy) -> None:
    line = straight_line(1000, 2000.0)
    result = simplify(line, policy.max_deviation_m)
    assert result == [line[0], line[-1]]


def test_short_inputs_are_returned_unchanged() -> None:
    assert simplify([], 5.0) == []
    single = [make_fix()]
    assert simplify(single, 5.0) == single
    pair = [make_fix(), make_fix(0.0, 500.0, 10.0)]
    assert simplify(pair, 5.0) == pair


def test_negative_epsilon_is_rejected() -> None:
    with pytest.raises(ValueError):
        simplify(wiggly_track(10), -1.0)
    with pytest.raises(ValueError):
        simplify_indices(np.zeros((4, 2)), -0.1)


def test_input_sequence_is_not_modified() -> None:
    track = wiggly_track(80)
    before = list(track)
    simplify(track, 5.0)
    assert track == before


def test_distance_equal_to_epsilon_is_discarded() -> None:
    points = np.array([[0.0, 0.0], [5.0, 3.0], [10.0, 0.0]])
    assert simplify_indices(points, 3.0).tolist() == [0, 2]
    assert simplify_indices(points, 2.999).tolist() == [0, 1, 2]


def test_zero_length_chord_measures_distance_to_endpoint() -> None:
    loop = np.array([[0.0, 0.0], [3.0, 4.0], [0.0, 0.0]])
    assert simplify_indices(loop, 4.9).tolist() == [0, 1, 2]
    assert simplify_indices(loop, 5.0).tolist() == [0, 2]


def test_segment_distances_clamp_to_segment_ends() -> None:
    points = np.array([[-3.0, 4.0], [5.0, 2.0], [14.0, 0.0]])
    distances = segment_distances(points, np.array([0.0, 0.0]), np.array([10.0, 0.0]))
    assert distances.tolist() == pytest.approx([5.0, 2.0, 4.0])


def test_projection_is_metric_and_anchored_on_first_fix() -> None:
    track = straight_line(11, 1000.0)
    metric = project_fixes(track)
    assert metric.shape == (11, 2)
    assert path_length_m(metric) == pytest.approx(1000.0, rel=5e-3)
    subset = [track[0], track[5], track[10]]
    np.testing.assert_array_equal(project_fixes(subset), metric[[0, 5, 10]])


def test_geodesy_helpers() -> None:
    assert haversine_m((50.0, 8.0), (51.0, 8.0)) == pytest.approx(111_195.0, rel=1e-3)
    assert initial_bearing_deg((50.0, 8.0), (50.0, 8.1)) == pytest.approx(90.0, abs=0.1)
    assert initial_bearing_deg((50.0, 8.0), (49.0, 8.0)) == pytest.approx(180.0)
    assert bearing_change_deg(350.0, 10.0) == pytest.approx(20.0)
    assert bearing_change_deg(10.0, 190.0) == pytest.approx(180.0)
    assert math.isclose(bearing_change_deg(45.0, 45.0), 0.0)
