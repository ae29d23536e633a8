"""
Claim Workflow System

Entry point wiring the state manager, review queue, event bus and
orchestrator together, plus a small demo run.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Optional

from claimflow.agents.base import StageCollaborators
from claimflow.agents.orchestrator import WorkflowOrchestrator
from claimflow.agents.simulated import simulated_collaborators
from claimflow.core.config import LOG_LEVEL, ProcessingConfig
from claimflow.core.models import DocumentInput
from claimflow.core.states import Priority
from claimflow.monitors.event_bus import EventBus
from claimflow.monitors.events import ClaimEvent
from claimflow.services.queue import InMemoryReviewQueue
from claimflow.services.store import InMemoryClaimStore
from claimflow.state_machine.manager import StateManager

logger = logging.getLogger(__name__)


def configure_logging(level: str = LOG_LEVEL) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@dataclass
class ClaimSystem:
    """Explicitly constructed components of one claim processing system."""
    store: InMemoryClaimStore
    review_queue: InMemoryReviewQueue
    event_bus: EventBus
    state_manager: StateManager
    orchestrator: WorkflowOrchestrator


def build_system(
    config: Optional[ProcessingConfig] = None,
    stages: Optional[StageCollaborators] = None
) -> ClaimSystem:
    """Wire a complete system; every call returns independent instances."""
    config = config or ProcessingConfig.from_env()
    store = InMemoryClaimStore()
    review_queue = InMemoryReviewQueue()
    event_bus = EventBus()
    state_manager = StateManager(store, event_bus, config)
    orchestrator = WorkflowOrchestrator(state_manager, review_queue, stages=stages, config=config)
    return ClaimSystem(store, review_queue, event_bus, state_manager, orchestrator)


SAMPLE_CLAIM = {
    "document_type": "cms_1500",
    "patient": {"member_id": "MBR-001", "first_name": "Jane", "last_name": "Doe"},
    "provider": {"npi": "1234567893", "name": "Main Street Clinic"},
    "diagnoses": [{"code": "J06.9", "is_primary": True}],
    "service_lines": [
        {"procedure_code": "99213", "charge": 125.0},
        {"procedure_code": "87880", "charge": 35.0},
    ],
}


async def run_demo() -> None:
    system = build_system(stages=simulated_collaborators())

    def log_event(event: ClaimEvent) -> None:
        logger.info(f"event {event.name}: {event.model_dump(mode='json', exclude={'timestamp'})}")

    system.event_bus.register_catch_all(log_event)

    content = b"%PDF-1.4\n/Type /Page\n" + json.dumps(SAMPLE_CLAIM).encode()
    result = await system.orchestrator.process_document(
        DocumentInput(content=content, filename="sample.pdf", mime_type="application/pdf", priority=Priority.HIGH)
    )

    logger.info(
        f"Claim {result.claim_id} finished as {result.final_status.value} "
        f"in {result.processing_time_ms:.1f}ms (success={result.success})"
    )
    logger.info(f"Statistics: {system.orchestrator.get_statistics()['state_stats']}")


def main() -> None:
    configure_logging()
    logger.info("Starting claim workflow demo")
    asyncio.run(run_demo())
    logger.info("Claim workflow demo finished")


if __name__ == "__main__":
    main()
