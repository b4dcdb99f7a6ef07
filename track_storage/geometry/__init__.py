"""Geometry utilities: geodesy, local projection and polyline simplification."""

from .projection import (
    MetricArray,
    bearing_change_deg,
    haversine_m,
    initial_bearing_deg,
    path_length_m,
    project_fixes,
)
from .simplify import simplify, simplify_indices

__all__ = [
    "MetricArray",
    "bearing_change_deg",
    "haversine_m",
    "initial_bearing_deg",
    "path_length_m",
    "project_fixes",
    "simplify",
    "simplify_indices",
]
