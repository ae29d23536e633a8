# Monitors module - typed event bus and event definitions
from .event_bus import EventBus
from .events import (
    ClaimEvent,
    StateEvent,
    StateCreated,
    StateTransitioned,
    StateUpdated,
    StateCompleted,
    StateFailed,
    StateReviewRequired,
    StateDeleted,
    WorkflowEvent,
    WorkflowStarted,
    StageStarted,
    StageCompleted,
    WorkflowCompleted,
    WorkflowFailed,
    WorkflowReviewRequired,
)

__all__ = [
    "EventBus",
    "ClaimEvent",
    "StateEvent",
    "StateCreated",
    "StateTransitioned",
    "StateUpdated",
    "StateCompleted",
    "StateFailed",
    "StateReviewRequired",
    "StateDeleted",
    "WorkflowEvent",
    "WorkflowStarted",
    "StageStarted",
    "StageCompleted",
    "WorkflowCompleted",
    "WorkflowFailed",
    "WorkflowReviewRequired",
]
