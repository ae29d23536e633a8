"""
Claim Event Definitions

Every event is an immutable model carrying at least the claim id and a
timestamp. The name attribute is the wire name external consumers see.
"""
from datetime import datetime
from typing import Any, ClassVar, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field

from claimflow.core.states import ClaimStatus, Priority


class ClaimEvent(BaseModel):
    """Base class for all events published on the bus."""
    model_config = ConfigDict(frozen=True)

    name: ClassVar[str] = "claim:event"

    claim_id: str
    timestamp: datetime = Field(default_factory=datetime.now)

    def to_message(self) -> Dict[str, Any]:
        """Flatten into a JSON-ready dict for bridges such as websockets."""
        return {"event": self.name, **self.model_dump(mode="json")}


# ============================================
# STATE EVENTS
# ============================================

class StateEvent(ClaimEvent):
    name: ClassVar[str] = "state:event"


class StateCreated(StateEvent):
    name: ClassVar[str] = "state:created"
    status: ClaimStatus = ClaimStatus.RECEIVED
    priority: Priority = Priority.NORMAL


class StateTransitioned(StateEvent):
    name: ClassVar[str] = "state:transition"
    from_status: ClaimStatus
    to_status: ClaimStatus
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class StateUpdated(StateEvent):
    name: ClassVar[str] = "state:updated"
    field: str


class StateCompleted(StateEvent):
    name: ClassVar[str] = "state:completed"


class StateFailed(StateEvent):
    name: ClassVar[str] = "state:failed"
    error: Optional[str] = None


class StateReviewRequired(StateEvent):
    name: ClassVar[str] = "state:review_required"
    reason: Optional[str] = None


class StateDeleted(StateEvent):
    name: ClassVar[str] = "state:deleted"


# ============================================
# WORKFLOW EVENTS
# ============================================

class WorkflowEvent(ClaimEvent):
    name: ClassVar[str] = "workflow:event"


class WorkflowStarted(WorkflowEvent):
    name: ClassVar[str] = "workflow:started"


class StageStarted(WorkflowEvent):
    name: ClassVar[str] = "workflow:stage_started"
    stage: str


class StageCompleted(WorkflowEvent):
    name: ClassVar[str] = "workflow:stage_completed"
    stage: str
    success: bool = True


class WorkflowCompleted(WorkflowEvent):
    name: ClassVar[str] = "workflow:completed"
    processing_time_ms: float = 0.0


class WorkflowFailed(WorkflowEvent):
    name: ClassVar[str] = "workflow:failed"
    error: str
    processing_time_ms: float = 0.0


class WorkflowReviewRequired(WorkflowEvent):
    name: ClassVar[str] = "workflow:review_required"
    reason: str
    priority: Priority = Priority.NORMAL
