# ruff: noqa: INP001
"""Pytest configuration shared across board tests."""

import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# Deterministic settings during import-time initialization, regardless of shell env.
os.environ["PERSISTENCE_BASE_URL"] = "http://persistence.test/api/v1"
os.environ["SPRINT_ID"] = "sprint-1"
os.environ["ACTING_USER_ID"] = ""
os.environ["SNAPSHOT_POLL_SECONDS"] = "0"
os.environ["LOG_LEVEL"] = "WARNING"
