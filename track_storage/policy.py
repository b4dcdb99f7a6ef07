"""Optimization tiers and the speed-driven policy selector."""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass
import math
from typing import Deque, Dict, Optional, Sequence, Tuple

from .config import SPEED_HYSTERESIS_KMH, SPEED_SMOOTHING_WINDOW
from .models import OptimizationPolicy

CONSERVATIVE = OptimizationPolicy(
    name="conservative",
    max_deviation_m=5.0,
    min_distance_m=30.0,
    max_distance_m=250.0,
    angle_threshold_deg=15.0,
    min_time_interval_s=20.0,
    speed_factor=0.5,
)
BALANCED = OptimizationPolicy(
    name="balanced",
    max_deviation_m=10.0,
    min_distance_m=50.0,
    max_distance_m=500.0,
    angle_threshold_deg=25.0,
    min_time_interval_s=30.0,
    speed_factor=1.2,
)
AGGRESSIVE = OptimizationPolicy(
    name="aggressive",
    max_deviation_m=20.0,
    min_distance_m=100.0,
    max_distance_m=800.0,
    angle_threshold_deg=35.0,
    min_time_interval_s=60.0,
    speed_factor=2.0,
)
EXPRESSWAY = OptimizationPolicy(
    name="expressway",
    max_deviation_m=25.0,
    min_distance_m=150.0,
    max_distance_m=1000.0,
    angle_threshold_deg=40.0,
    min_time_interval_s=90.0,
    speed_factor=2.5,
)
HIGHWAY = OptimizationPolicy(
    name="highway",
    max_deviation_m=30.0,
    min_distance_m=200.0,
    max_distance_m=1200.0,
    angle_threshold_deg=45.0,
    min_time_interval_s=120.0,
    speed_factor=3.0,
)

# Ordered from tightest to loosest tolerance.
TIERS: Tuple[OptimizationPolicy, ...] = (
    CONSERVATIVE,
    BALANCED,
    AGGRESSIVE,
    EXPRESSWAY,
    HIGHWAY,
)
_TIERS_BY_NAME: Dict[str, OptimizationPolicy] = {tier.name: tier for tier in TIERS}

_TRANSPORT_MODES: Dict[str, OptimizationPolicy] = {
    "walking": CONSERVATIVE,
    "hiking": CONSERVATIVE,
    "running": CONSERVATIVE,
    "cycling": BALANCED,
    "bicycle": BALANCED,
    "bike": BALANCED,
    "car": AGGRESSIVE,
    "driving": AGGRESSIVE,
    "highway": EXPRESSWAY,
    "rural": EXPRESSWAY,
    "train": HIGHWAY,
    "bus": HIGHWAY,
    "airplane": HIGHWAY,
}


def get_tier(name: str) -> OptimizationPolicy:
    """Return the tier called ``name`` (case-insensitive)."""

    try:
        return _TIERS_BY_NAME[name.strip().lower()]
    except KeyError:
        known = ", ".join(_TIERS_BY_NAME)
        raise ValueError(
            f"Unknown optimization tier {name!r}; expected one of {known}"
        ) from None


def policy_for_transport_mode(mode: Optional[str]) -> OptimizationPolicy:
    """Map a declared transport mode to a tier, defaulting to ``balanced``."""

    if not mode:
        return BALANCED
    return _TRANSPORT_MODES.get(mode.strip().lower(), BALANCED)


@dataclass(frozen=True, slots=True)
class SpeedTierTable:
    """Ordered ``(upper_bound_kmh, policy)`` pairs.

    A speed maps to the first entry whose bound is strictly greater than the
    speed. The last entry must be unbounded so every speed resolves.
    """

    entries: Tuple[Tuple[float, OptimizationPolicy], ...]

    def __post_init__(self) -> None:
        if not self.entries:
            raise ValueError("SpeedTierTable needs at least one entry")
        bounds = [bound for bound, _ in self.entries]
        if any(later <= earlier for earlier, later in zip(bounds, bounds[1:])):
            raise ValueError("Tier bounds must be strictly increasing")
        if not math.isinf(bounds[-1]):
            raise ValueError("The last tier bound must be infinite")

    def lookup(self, speed_kmh: float) -> OptimizationPolicy:
        for upper_bound, policy in self.entries:
            if speed_kmh < upper_bound:
                return policy
        return self.entries[-1][1]

    def bounds_for(self, policy: OptimizationPolicy) -> Tuple[float, float]:
        """Return the ``[lower, upper)`` speed range covered by ``policy``."""

        lower = 0.0
        for upper_bound, candidate in self.entries:
            if candidate == policy:
                return lower, upper_bound
            lower = upper_bound
        raise ValueError(f"Policy {policy.name!r} is not part of this table")

    @classmethod
    def from_thresholds(
        cls,
        walking_max: float = 20.0,
        cycling_max: float = 35.0,
        moped_max: float = 60.0,
        driving_max: float = 87.0,
    ) -> "SpeedTierTable":
        """Five-band table using all tiers, with user-chosen boundaries."""

        return cls(
            (
                (walking_max, CONSERVATIVE),
                (cycling_max, BALANCED),
                (moped_max, AGGRESSIVE),
                (driving_max, EXPRESSWAY),
                (math.inf, HIGHWAY),
            )
        )


DEFAULT_TIER_TABLE = SpeedTierTable(
    (
        (20.0, CONSERVATIVE),
        (50.0, BALANCED),
        (80.0, AGGRESSIVE),
        (math.inf, HIGHWAY),
    )
)


@dataclass(frozen=True, slots=True)
class PolicySelection:
    """Per-trip choice between automatic (speed-driven) and a pinned tier."""

    tier: Optional[OptimizationPolicy] = None
    table: SpeedTierTable = DEFAULT_TIER_TABLE

    @property
    def is_automatic(self) -> bool:
        return self.tier is None

    @property
    def label(self) -> str:
        return "automatic" if self.tier is None else f"manual:{self.tier.name}"

    @classmethod
    def automatic(cls, table: SpeedTierTable | None = None) -> "PolicySelection":
        return cls(tier=None, table=table or DEFAULT_TIER_TABLE)

    @classmethod
    def manual(cls, tier: OptimizationPolicy | str) -> "PolicySelection":
        if isinstance(tier, str):
            tier = get_tier(tier)
        return cls(tier=tier)


def select_policy(
    selection: PolicySelection | None, speed_kmh: Optional[float]
) -> OptimizationPolicy:
    """Resolve the policy for a representative speed under ``selection``."""

    selection = selection or PolicySelection.automatic()
    if selection.tier is not None:
        return selection.tier
    return selection.table.lookup(_sanitize_speed(speed_kmh))


class AdaptivePolicySelector:
    """Smoothed, hysteresis-guarded tier selection for live speed samples.

    Speeds are averaged over the last ``window`` samples. The current tier is
    only abandoned once the smoothed speed leaves its range by more than
    ``hysteresis_kmh``, which keeps noisy speeds around a boundary from
    flipping tiers back and forth.
    """

    def __init__(
        self,
        selection: PolicySelection | None = None,
        *,
        window: int = SPEED_SMOOTHING_WINDOW,
        hysteresis_kmh: float = SPEED_HYSTERESIS_KMH,
    ) -> None:
        if window < 1:
            raise ValueError("window must be >= 1")
        if hysteresis_kmh < 0:
            raise ValueError("hysteresis_kmh must be non-negative")
        self.selection = selection or PolicySelection.automatic()
        self._hysteresis = hysteresis_kmh
        self._samples: Deque[float] = deque(maxlen=window)
        self._current: Optional[OptimizationPolicy] = self.selection.tier

    @property
    def current(self) -> Optional[OptimizationPolicy]:
        return self._current

    @property
    def smoothed_speed_kmh(self) -> Optional[float]:
        if not self._samples:
            return None
        return sum(self._samples) / len(self._samples)

    def observe(self, speed_kmh: Optional[float]) -> OptimizationPolicy:
        """Feed one speed sample (km/h, ``None`` if unknown) and return the tier."""

        if self.selection.tier is not None:
            return self.selection.tier
        if speed_kmh is not None and math.isfinite(speed_kmh) and speed_kmh >= 0:
            self._samples.append(speed_kmh)
        smoothed = self.smoothed_speed_kmh or 0.0
        candidate = self.selection.table.lookup(smoothed)
        if self._current is None or candidate == self._current:
            self._current = candidate
            return candidate
        lower, upper = self.selection.table.bounds_for(self._current)
        if smoothed >= upper + self._hysteresis or smoothed < lower - self._hysteresis:
            self._current = candidate
        return self._current

    def reset(self) -> None:
        self._samples.clear()
        self._current = self.selection.tier


def representative_speed_kmh(speeds: Sequence[float]) -> float:
    """Mean of valid (finite, non-negative) speeds in km/h, 0 when none."""

    valid = [s for s in speeds if math.isfinite(s) and s >= 0]
    if not valid:
        return 0.0
    return sum(valid) / len(valid)


def adaptive_min_distance_m(policy: OptimizationPolicy, speed_kmh: Optional[float]) -> float:
    """Minimum spacing for ``policy`` at ``speed_kmh``.

    Above 50 km/h the spacing grows by ``speed_factor`` per extra 50 km/h;
    below 20 km/h it shrinks to 60%.
    """

    speed = _sanitize_speed(speed_kmh)
    if speed > 50.0:
        return policy.min_distance_m * (1.0 + (speed - 50.0) / 50.0 * policy.speed_factor)
    if speed < 20.0:
        return policy.min_distance_m * 0.6
    return policy.min_distance_m


def _sanitize_speed(speed_kmh: Optional[float]) -> float:
    if speed_kmh is None or not math.isfinite(speed_kmh) or speed_kmh < 0:
        return 0.0
    return speed_kmh


__all__ = [
    "AGGRESSIVE",
    "AdaptivePolicySelector",
    "BALANCED",
    "CONSERVATIVE",
    "DEFAULT_TIER_TABLE",
    "EXPRESSWAY",
    "HIGHWAY",
    "PolicySelection",
    "SpeedTierTable",
    "TIERS",
    "adaptive_min_distance_m",
    "get_tier",
    "policy_for_transport_mode",
    "representative_speed_kmh",
    "select_policy",
]
