from __future__ import annotations

import sys
from pathlib import Path
from typing import Iterator

import pytest


# Ensure `import src...` works when running `pytest` from repo root.
REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from src.storage.run_registry import InMemoryRunRegistry, RunRegistry  # noqa: E402
from src.storage.sqlite_store import SQLiteRunRegistry  # noqa: E402


@pytest.fixture(params=["memory", "sqlite"])
def registry(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[RunRegistry]:
    """Every registry contract test runs against both backends."""
    reg: RunRegistry
    if request.param == "memory":
        reg = InMemoryRunRegistry()
    else:
        reg = SQLiteRunRegistry(tmp_path / "runner.db")
    try:
        yield reg
    finally:
        reg.close()
