"""Compare storage savings of each tier on the synthetic movement profiles.

Usage:
    python -m track_storage.tools.compression_report [--tier highway] [--output report.csv]
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import time
from typing import Dict, Iterable, List, Optional, Sequence

import pandas as pd

from ..policy import TIERS, PolicySelection
from ..services import SegmentStore
from .profiles import PROFILES, generate_profile

LOGGER = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "profile",
    "tier",
    "received",
    "original",
    "stored",
    "segments",
    "ratio",
    "max_deviation_m",
    "seconds",
]


def run_profile(
    name: str,
    *,
    selection: PolicySelection | None = None,
    seed: int = 0,
) -> Dict[str, object]:
    """Record profile ``name`` through a fresh store and summarise the result."""

    fixes = generate_profile(name, seed=seed)
    started = time.perf_counter()
    with SegmentStore() as store:
        handle = store.open_segment(name, selection=selection)
        for fix in fixes:
            store.append(handle, fix)
        store.close_segment(handle)
        store.wait_for_compressions()
        segments = store.segments(name)
    elapsed = time.perf_counter() - started

    original = sum(segment.original_point_count for segment in segments)
    stored = sum(len(segment.points) for segment in segments)
    tiers = sorted({segment.policy_used for segment in segments if segment.policy_used})
    deviations = [
        segment.statistics.max_deviation_m
        for segment in segments
        if segment.statistics is not None
    ]
    return {
        "profile": name,
        "tier": "/".join(tiers) or "-",
        "received": len(fixes),
        "original": original,
        "stored": stored,
        "segments": len(segments),
        "ratio": 1.0 - stored / original if original else 0.0,
        "max_deviation_m": max(deviations, default=0.0),
        "seconds": elapsed,
    }


def build_report(
    profiles: Iterable[str],
    *,
    selection: PolicySelection | None = None,
    seed: int = 0,
) -> pd.DataFrame:
    rows: List[Dict[str, object]] = []
    for name in profiles:
        LOGGER.info("Running profile %s (%s)", name, _label(selection))
        rows.append(run_profile(name, selection=selection, seed=seed))
    return pd.DataFrame(rows, columns=REPORT_COLUMNS)


def _label(selection: PolicySelection | None) -> str:
    return selection.label if selection is not None else "automatic"


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Report point reduction per movement profile and tier",
    )
    parser.add_argument(
        "--profile",
        action="append",
        choices=sorted(PROFILES),
        help="Profile to run (repeatable, defaults to all)",
    )
    parser.add_argument(
        "--tier",
        choices=[tier.name for tier in TIERS],
        help="Pin a tier instead of automatic speed-based selection",
    )
    parser.add_argument(
        "--seed",
        type=int,
        default=0,
        help="Random seed for the synthetic profiles",
    )
    parser.add_argument(
        "--output",
        help="Write the report as CSV to this path",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Python logging level",
    )
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Entry point for the compression report tool."""
    args = _build_parser().parse_args(argv)
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=getattr(logging, args.log_level),
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )

    selection = PolicySelection.manual(args.tier) if args.tier else None
    profiles = args.profile or list(PROFILES)
    report = build_report(profiles, selection=selection, seed=args.seed)
    print(report.to_string(index=False, float_format=lambda v: f"{v:.3f}"))

    if args.output:
        output_path = Path(args.output)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        report.to_csv(output_path, index=False)
        LOGGER.info("Report written to %s", output_path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
