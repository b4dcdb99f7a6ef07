"""Geodesy helpers and local metric projection for fix sequences."""

from __future__ import annotations

from functools import lru_cache
import math
from typing import Sequence

import numpy as np
from numpy.typing import NDArray
from pyproj import CRS, Transformer

from ..models import Fix, LatLon

MetricArray = NDArray[np.float64]

_EARTH_RADIUS_M = 6_371_000.0


def haversine_m(first: LatLon, second: LatLon) -> float:
    """Great-circle distance in metres between two (lat, lon) pairs."""

    lat1, lon1 = first
    lat2, lon2 = second
    sin = math.sin
    cos = math.cos
    radians = math.radians
    lat1_rad = radians(lat1)
    lat2_rad = radians(lat2)
    delta_lat = lat2_rad - lat1_rad
    delta_lon = radians(lon2 - lon1)
    sin_half_lat = sin(delta_lat / 2.0)
    sin_half_lon = sin(delta_lon / 2.0)
    a = sin_half_lat**2 + cos(lat1_rad) * cos(lat2_rad) * sin_half_lon**2
    c = 2.0 * math.atan2(math.sqrt(a), math.sqrt(1.0 - a))
    return _EARTH_RADIUS_M * c


def initial_bearing_deg(first: LatLon, second: LatLon) -> float:
    """Initial bearing from ``first`` to ``second`` in degrees [0, 360)."""

    lat1, lon1 = map(math.radians, first)
    lat2, lon2 = map(math.radians, second)
    delta_lon = lon2 - lon1
    x = math.sin(delta_lon) * math.cos(lat2)
    y = math.cos(lat1) * math.sin(lat2) - math.sin(lat1) * math.cos(lat2) * math.cos(
        delta_lon
    )
    return (math.degrees(math.atan2(x, y)) + 360.0) % 360.0


def bearing_change_deg(first: float, second: float) -> float:
    """Absolute difference between two bearings folded into [0, 180]."""

    diff = abs(second - first) % 360.0
    if diff > 180.0:
        diff = 360.0 - diff
    return diff


def project_fixes(points: Sequence[Fix]) -> MetricArray:
    """Project fixes into a local metric (UTM) plane anchored on the first fix.

    The zone depends only on the first fix, so any subsequence that keeps the
    first fix projects to exactly the same coordinates.
    """

    if not points:
        return np.empty((0, 2), dtype=float)
    transformer = local_transformer(points[0].latitude, points[0].longitude)
    lats = np.fromiter((p.latitude for p in points), dtype=float, count=len(points))
    lons = np.fromiter((p.longitude for p in points), dtype=float, count=len(points))
    xs, ys = transformer.transform(lons, lats)
    return np.column_stack((xs, ys)).astype(float, copy=False)


def local_transformer(latitude: float, longitude: float) -> Transformer:
    """Return the WGS84 -> UTM transformer for the zone containing a position."""

    zone = int((longitude + 180.0) // 6.0) + 1
    zone = max(1, min(zone, 60))
    if latitude >= 0:
        epsg = 32600 + zone
    else:
        epsg = 32700 + zone
    return _transformer_for_epsg(epsg)


@lru_cache(maxsize=32)
def _transformer_for_epsg(epsg: int) -> Transformer:
    try:
        target_crs = CRS.from_epsg(epsg)
    except Exception:
        target_crs = CRS.from_epsg(3857)
    return Transformer.from_crs(CRS.from_epsg(4326), target_crs, always_xy=True)


def path_length_m(points: MetricArray) -> float:
    """Return the summed segment length of a projected polyline."""

    if len(points) < 2:
        return 0.0
    deltas = np.diff(points, axis=0)
    return float(np.linalg.norm(deltas, axis=1).sum())


def segment_distances(
    points: MetricArray, start: MetricArray, end: MetricArray
) -> MetricArray:
    """Distance of each point to the line segment ``start``-``end``.

    A zero-length segment degenerates to the distance to ``start``.
    """

    if len(points) == 0:
        return np.empty(0, dtype=float)
    chord = end - start
    length_sq = float(np.dot(chord, chord))
    offsets = points - start
    if length_sq == 0.0:
        return np.linalg.norm(offsets, axis=1)
    t = np.clip(offsets @ chord / length_sq, 0.0, 1.0)
    nearest = start + t[:, None] * chord
    return np.linalg.norm(points - nearest, axis=1)


__all__ = [
    "MetricArray",
    "bearing_change_deg",
    "haversine_m",
    "initial_bearing_deg",
    "local_transformer",
    "path_length_m",
    "project_fixes",
    "segment_distances",
]
