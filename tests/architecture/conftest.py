"""Architecture test fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest
from pytestarch import EvaluableArchitecture, get_evaluable_architecture

# tests/architecture/conftest.py -> tests/ -> repository root
_TESTS_DIR = Path(__file__).resolve().parent.parent
_PKG_DIR = _TESTS_DIR.parent / "src" / "task_market_service"


@pytest.fixture(scope="session")
def evaluable() -> EvaluableArchitecture:
    """Build the evaluable architecture graph for task_market_service."""
    return get_evaluable_architecture(str(_PKG_DIR), str(_PKG_DIR))
