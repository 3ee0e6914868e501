"""
Pytest configuration for the promising simulator test suite.

    python -m pytest                 # everything
    python -m pytest -m "not explore"  # skip whole-catalogue exploration
"""

import os
import sys

ROOT = os.path.dirname(os.path.abspath(__file__))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "explore: exhaustive exploration of multi-thread litmus tests (slower)")
