"""
Pytest fixtures for claim workflow tests.
"""
import pytest

from claimflow.agents.base import StageCollaborators
from claimflow.agents.orchestrator import WorkflowOrchestrator
from claimflow.core.config import ProcessingConfig
from claimflow.monitors.event_bus import EventBus
from claimflow.services.queue import InMemoryReviewQueue
from claimflow.services.store import InMemoryClaimStore
from claimflow.state_machine.manager import StateManager


@pytest.fixture
def config():
    return ProcessingConfig()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def events(event_bus):
    """Every event published on the bus, in order."""
    recorded = []
    event_bus.register_catch_all(recorded.append)
    return recorded


@pytest.fixture
def store():
    return InMemoryClaimStore()


@pytest.fixture
def review_queue():
    return InMemoryReviewQueue()


@pytest.fixture
def state_manager(store, event_bus, config):
    return StateManager(store, event_bus, config)


@pytest.fixture
def make_orchestrator(state_manager, review_queue):
    """Factory building an orchestrator around the shared state manager."""
    def _make(**stages):
        return WorkflowOrchestrator(state_manager, review_queue, stages=StageCollaborators(**stages))
    return _make
