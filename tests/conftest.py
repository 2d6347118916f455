"""
Pytest configuration for the backtest engine test suite.

Puts the repository root on sys.path so the top-level packages (core, data,
risk, backtesting, ...) import without an editable install, and keeps the
engine's structured monitor quiet unless a test configures it.
"""

import logging
import sys
from pathlib import Path

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))


@pytest.fixture(autouse=True)
def quiet_engine_loggers():
    """Engine runs log every step at DEBUG/INFO; keep test output readable."""
    names = ("backtesting", "risk", "strategies", "ai")
    previous = {name: logging.getLogger(name).level for name in names}
    for name in names:
        logging.getLogger(name).setLevel(logging.WARNING)
    yield
    for name, level in previous.items():
        logging.getLogger(name).setLevel(level)
