"""Deterministic synthetic movement profiles for demos and benchmarks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, List, Tuple

import numpy as np
from numpy.typing import NDArray

from ..models import Fix

FloatArray = NDArray[np.float64]
# (progress in [0, 1), rng) -> (latitude offsets, longitude offsets) in degrees
MovementPattern = Callable[[FloatArray, np.random.Generator], Tuple[FloatArray, FloatArray]]

BASE_LATLON = (50.0, 8.0)
DEFAULT_START_TIMESTAMP = 1_700_000_000.0


@dataclass(frozen=True, slots=True)
class MovementProfile:
    name: str
    point_count: int
    interval_s: float
    speed_range_ms: Tuple[float, float]
    pattern: MovementPattern


def _highway(progress: FloatArray, rng: np.random.Generator) -> Tuple[FloatArray, FloatArray]:
    return progress * 0.5, progress * 0.1 + np.sin(progress * 2) * 0.001


def _city(progress: FloatArray, rng: np.random.Generator) -> Tuple[FloatArray, FloatArray]:
    return (
        np.sin(progress * 20) * 0.01 + progress * 0.1,
        np.cos(progress * 15) * 0.015 + progress * 0.05,
    )


def _walking(progress: FloatArray, rng: np.random.Generator) -> Tuple[FloatArray, FloatArray]:
    return (
        np.sin(progress * 30) * 0.002 + progress * 0.02,
        np.cos(progress * 35) * 0.003 + progress * 0.015,
    )


def _rural(progress: FloatArray, rng: np.random.Generator) -> Tuple[FloatArray, FloatArray]:
    return (
        np.sin(progress * 8) * 0.005 + progress * 0.3,
        np.cos(progress * 6) * 0.008 + progress * 0.2,
    )


def _pause(progress: FloatArray, rng: np.random.Generator) -> Tuple[FloatArray, FloatArray]:
    size = len(progress)
    return rng.uniform(-0.0001, 0.0001, size), rng.uniform(-0.0001, 0.0001, size)


PROFILES: Dict[str, MovementProfile] = {
    profile.name: profile
    for profile in (
        MovementProfile("highway", 1000, 30.0, (25.0, 35.0), _highway),
        MovementProfile("city", 800, 20.0, (4.0, 12.0), _city),
        MovementProfile("walking", 500, 10.0, (1.0, 1.6), _walking),
        MovementProfile("rural", 600, 20.0, (14.0, 22.0), _rural),
        MovementProfile("pause", 200, 30.0, (0.0, 0.3), _pause),
    )
}


def generate_profile(
    name: str,
    *,
    seed: int = 0,
    start_timestamp: float = DEFAULT_START_TIMESTAMP,
) -> List[Fix]:
    """Return the fixes of profile ``name``; identical for identical seeds."""

    try:
        profile = PROFILES[name]
    except KeyError:
        known = ", ".join(PROFILES)
        raise ValueError(f"Unknown profile {name!r}; expected one of {known}") from None

    rng = np.random.default_rng(seed)
    progress = np.arange(profile.point_count, dtype=float) / profile.point_count
    d_lat, d_lon = profile.pattern(progress, rng)
    speeds = rng.uniform(*profile.speed_range_ms, profile.point_count)
    altitudes = 100.0 + rng.uniform(-20.0, 50.0, profile.point_count)
    base_lat, base_lon = BASE_LATLON
    return [
        Fix(
            latitude=float(base_lat + d_lat[i]),
            longitude=float(base_lon + d_lon[i]),
            timestamp=start_timestamp + i * profile.interval_s,
            altitude=float(altitudes[i]),
            speed=float(speeds[i]),
        )
        for i in range(profile.point_count)
    ]


__all__ = ["MovementProfile", "PROFILES", "generate_profile"]
