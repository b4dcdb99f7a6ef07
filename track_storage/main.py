"""Package entry point: runs the compression report over every profile."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from .tools.compression_report import main as _report_main


def _setup_logging() -> None:
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(
            level=logging.INFO,
            format="[%(asctime)s] %(levelname)s %(name)s: %(message)s",
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    _setup_logging()
    return _report_main(argv)
