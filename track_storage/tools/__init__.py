"""Supplementary tooling: synthetic profiles and the compression report."""

from .compression_report import build_report, run_profile
from .profiles import PROFILES, generate_profile

__all__ = ["PROFILES", "build_report", "generate_profile", "run_profile"]
