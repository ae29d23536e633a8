"""
Stage Collaborator Contracts

Every pipeline stage is an external collaborator with the same narrow
shape: (payload, context) -> StageResult.
"""
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, Field

from claimflow.core.models import StageResult, ValidationOutcome
from claimflow.core.states import ClaimStatus, Priority


class StageContext(BaseModel):
    """Claim context handed to a stage alongside its payload."""
    claim_id: str
    status: ClaimStatus
    priority: Priority = Priority.NORMAL
    document_id: str = ""
    metadata: Dict[str, str] = Field(default_factory=dict)
    correction_attempts: int = 0
    validation: Optional[ValidationOutcome] = None


class Stage(Protocol):
    """A pipeline stage backed by an external collaborator."""
    name: str

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult: ...


class FunctionStage:
    """Adapts a coroutine function to the Stage protocol."""

    def __init__(
        self,
        name: str,
        fn: Callable[[Dict[str, Any], StageContext], Awaitable[StageResult]]
    ):
        self.name = name
        self._fn = fn

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        return await self._fn(payload, context)

    def __repr__(self) -> str:
        return f"FunctionStage({self.name!r})"


@dataclass
class StageCollaborators:
    """
    The collaborators an orchestrator drives.

    Any stage may be left out; the orchestrator skips optional stages and
    escalates when it has no way to obtain extracted data.
    """
    parser: Optional[Stage] = None
    extractor: Optional[Stage] = None
    enricher: Optional[Stage] = None
    validator: Optional[Stage] = None
    corrector: Optional[Stage] = None
    quality: Optional[Stage] = None
    adjudicator: Optional[Stage] = None
    indexer: Optional[Stage] = None

    def configured(self) -> Dict[str, str]:
        """Map of stage slot to collaborator name for the stages that are set."""
        return {
            f.name: getattr(self, f.name).name
            for f in fields(self)
            if getattr(self, f.name) is not None
        }
