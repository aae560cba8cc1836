"""Pytest configuration and fixtures."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).parent.parent

SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

FIXTURES_DIR = Path(__file__).parent / "fixtures"


@pytest.fixture
def python() -> str:
    """Path of the running interpreter, used as the child executable."""
    return sys.executable


@pytest.fixture
def repl_args() -> list[str]:
    """Arguments that make the interpreter run the test REPL."""
    return ["-u", str(FIXTURES_DIR / "repl.py")]
