"""Central configuration for the track storage engine.

All values are constants imported by the rest of the package. Adjust as needed
for your environment. Every value can be overridden from environment variables
(optionally via a local `.env`).
"""

from __future__ import annotations

import importlib
import os


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_bool(key: str, default: bool) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


# Load .env variables when python-dotenv is available.
_load_dotenv = None
try:
    _dotenv_mod = importlib.import_module("dotenv")
    _load_dotenv = getattr(_dotenv_mod, "load_dotenv", None)
except Exception:
    _load_dotenv = None

if callable(_load_dotenv):
    # Load .env from the current directory or any parent folder.
    _load_dotenv()


# ---------------------------------------------------------------------------
# Live ingestion gates
# ---------------------------------------------------------------------------
# Fixes arriving sooner than this after the last buffered fix are dropped as
# duplicates / bursts.
ACCUMULATOR_MIN_INTERVAL_S = _env_float("ACCUMULATOR_MIN_INTERVAL_S", 1.0)

# A fix arriving later than this after the last buffered fix is always kept so
# long silences are never merged into a straight line unnoticed.
ACCUMULATOR_MAX_GAP_S = _env_float("ACCUMULATOR_MAX_GAP_S", 300.0)

# Stationary suppression: a fix is dropped when it moved less than this many
# metres AND turned less than the bearing threshold.
ACCUMULATOR_STATIONARY_DISTANCE_M = _env_float(
    "ACCUMULATOR_STATIONARY_DISTANCE_M", 2.0
)
ACCUMULATOR_STATIONARY_BEARING_DEG = _env_float(
    "ACCUMULATOR_STATIONARY_BEARING_DEG", 10.0
)

# Fixes reporting a worse (larger) horizontal accuracy are dropped. Negative
# accuracy means the receiver could not estimate it and is dropped as well.
ACCUMULATOR_MAX_HORIZONTAL_ACCURACY_M = _env_float(
    "ACCUMULATOR_MAX_HORIZONTAL_ACCURACY_M", 100.0
)


# ---------------------------------------------------------------------------
# Segment storage
# ---------------------------------------------------------------------------
# Close the live segment and continue in a fresh one after this many buffered
# points. Set to 0 to disable automatic rollover.
SEGMENT_MAX_POINTS = _env_int("SEGMENT_MAX_POINTS", 500)

# Threads used for background segment compression.
COMPRESSION_MAX_WORKERS = _env_int("COMPRESSION_MAX_WORKERS", 2)

# Dispatch compression automatically when a segment is closed.
COMPRESSION_AUTO_ON_CLOSE = _env_bool("COMPRESSION_AUTO_ON_CLOSE", True)

# Rough per-fix storage cost (lat, lon, altitude, speed, timestamp + overhead)
# used for storage statistics.
ESTIMATED_FIX_BYTES = _env_int("ESTIMATED_FIX_BYTES", 50)

# Precision (decimal places) of encoded polylines in export payloads.
POLYLINE_PRECISION = _env_int("POLYLINE_PRECISION", 5)


# ---------------------------------------------------------------------------
# Adaptive policy selection
# ---------------------------------------------------------------------------
# Number of recent speed samples averaged before a tier lookup.
SPEED_SMOOTHING_WINDOW = _env_int("SPEED_SMOOTHING_WINDOW", 10)

# The smoothed speed must cross a tier boundary by this margin (km/h) before
# the live tier changes.
SPEED_HYSTERESIS_KMH = _env_float("SPEED_HYSTERESIS_KMH", 5.0)
