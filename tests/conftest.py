"""Global pytest fixtures & helpers.

Adds project root to path and provides reusable fix factories for the
simplifier, accumulator, compressor and store tests.
"""
from __future__ import annotations

import math
import os
import sys
from typing import Callable, List, Sequence, Tuple

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from track_storage.models import Fix

BASE_LAT = 50.0
BASE_LON = 8.0
START_TS = 1_700_000_000.0
_M_PER_DEG_LAT = 111_320.0


# --- Factory helpers -------------------------------------------------
def offset_latlon(north_m: float, east_m: float) -> Tuple[float, float]:
    """Approximate (lat, lon) of a point offset in metres from the base point."""
    lat = BASE_LAT + north_m / _M_PER_DEG_LAT
    lon = BASE_LON + east_m / (_M_PER_DEG_LAT * math.cos(math.radians(BASE_LAT)))
    return lat, lon


def make_fix(north_m: float = 0.0, east_m: float = 0.0, t: float = 0.0, **kwargs) -> Fix:
    lat, lon = offset_latlon(north_m, east_m)
    return Fix(latitude=lat, longitude=lon, timestamp=START_TS + t, **kwargs)


def make_track(
    offsets: Sequence[Tuple[float, float]],
    *,
    interval_s: float = 10.0,
    speed: float = -1.0,
) -> List[Fix]:
    return [
        make_fix(north, east, i * interval_s, speed=speed)
        for i, (north, east) in enumerate(offsets)
    ]


def straight_line(count: int, length_m: float, **kwargs) -> List[Fix]:
    step = length_m / (count - 1)
    return make_track([(0.0, i * step) for i in range(count)], **kwargs)


def wiggly_track(count: int = 400, *, amplitude_m: float = 15.0, step_m: float = 3.0) -> List[Fix]:
    return make_track(
        [
            (amplitude_m * math.sin(i / 7.0) + 4.0 * math.sin(i / 2.3), i * step_m)
            for i in range(count)
        ]
    )


# --- Fixtures --------------------------------------------------------
@pytest.fixture
def fix_factory() -> Callable[..., Fix]:
    return make_fix


@pytest.fixture
def track_factory() -> Callable[..., List[Fix]]:
    return make_track
