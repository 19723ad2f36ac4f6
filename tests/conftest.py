"""Pytest configuration and shared fixtures."""

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import pytest_asyncio

from patchflow.checkpoint.service import CheckpointService
from patchflow.config.settings import DiagnosisConfig, PruningConfig
from patchflow.diagnosis.service import DiagnosisService
from patchflow.enums import WorkflowState
from patchflow.models import Workflow
from patchflow.storage.memory import InMemoryStore


class FakeClock:
    """Deterministic clock that moves forward one second per reading.

    Every record the store creates gets a distinct timestamp, so "created
    after a checkpoint" is unambiguous in tests.
    """

    def __init__(self, start: datetime | None = None, tick: timedelta = timedelta(seconds=1)) -> None:
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=UTC)
        self.tick = tick

    def __call__(self) -> datetime:
        self.now += self.tick
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    """Ticking fake clock."""
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> InMemoryStore:
    """In-memory store driven by the fake clock."""
    return InMemoryStore(clock=clock)


@pytest.fixture
def temp_state_dir(tmp_path: Path) -> Path:
    """Temporary state directory."""
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    return state_dir


@pytest_asyncio.fixture
async def workflow(store: InMemoryStore) -> Workflow:
    """Workflow waiting for approval, with a base revision."""
    return await store.create_workflow(
        state=WorkflowState.WAITING_USER_APPROVAL,
        base_sha="abc123",
        workflow_id="wf-1",
    )


@pytest.fixture
def checkpoint_service(store: InMemoryStore) -> CheckpointService:
    """Checkpoint service with the default retention policy."""
    return CheckpointService(store, PruningConfig())


@pytest.fixture
def diagnosis_service(store: InMemoryStore) -> DiagnosisService:
    """Heuristic-only diagnosis service."""
    return DiagnosisService(store, config=DiagnosisConfig())
