#!/usr/bin/env python3
"""Convenience runner for the track storage compression report.

Usage:
    python run.py [--tier highway] [--output report.csv]
"""
import logging
import sys

from track_storage.main import main

if __name__ == "__main__":
    if not logging.getLogger().hasHandlers():
        logging.basicConfig(level=logging.INFO, format="[%(asctime)s] %(levelname)s %(name)s: %(message)s")
    sys.exit(main(sys.argv[1:]))
