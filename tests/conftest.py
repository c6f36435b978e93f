"""
Shared test fixtures and configuration.
"""

from pathlib import Path

import pytest

from stackwire.adapters.memory import InMemoryEngine
from stackwire.core.exports import ExportStore
from stackwire.resources import build_default_registry
from stackwire.resources.base import ProvisionParams


@pytest.fixture
def engine() -> InMemoryEngine:
    """In-memory engine with synchronous outputs."""
    return InMemoryEngine()


@pytest.fixture
def async_engine() -> InMemoryEngine:
    """In-memory engine resolving outputs on timer threads."""
    return InMemoryEngine(async_outputs=True, default_delay=0.01)


@pytest.fixture
def store(engine: InMemoryEngine) -> ExportStore:
    return ExportStore(engine.state)


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def params() -> ProvisionParams:
    return ProvisionParams(project="acme", region="europe-west1", init_job_timeout=5.0)


@pytest.fixture
def tmp_state_dir(tmp_path: Path) -> Path:
    """Return a temporary directory for state files."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir

