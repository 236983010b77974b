"""
Shared fixtures for the test suite.

Centralizes reusable test infrastructure (fake clock, recording sleep,
orchestrator and API client) so individual test files don't repeat it.
"""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from api.deps import get_orchestrator
from api.main import app
from infrastructure.orchestrator import ResilienceOrchestrator
from support import FAST_CONFIG, FakeClock, RecordingSleep

# ---------------------------------------------------------------------------
# Orchestrator fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sleep(clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(clock)


@pytest.fixture()
def orchestrator(clock: FakeClock, sleep: RecordingSleep) -> ResilienceOrchestrator:
    """Orchestrator on a fake clock with a recording sleep."""
    return ResilienceOrchestrator(FAST_CONFIG, clock=clock, sleep=sleep, request_id_prefix="test")


# ---------------------------------------------------------------------------
# FastAPI test client fixture
# ---------------------------------------------------------------------------


@pytest.fixture()
def api_client(orchestrator: ResilienceOrchestrator):
    """FastAPI ``TestClient`` whose orchestrator is the ``orchestrator`` fixture."""
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()
