"""
Shared test helpers: fake stage collaborators and payload builders.
"""
import asyncio
from typing import Any, Dict, Iterable, Optional

from claimflow.agents.base import FunctionStage, StageContext
from claimflow.core.models import StageResult
from claimflow.services.store import InMemoryClaimStore


class SlowClaimStore(InMemoryClaimStore):
    """Store that yields to the event loop on every call, like real I/O."""

    async def put(self, claim_id, record):
        await asyncio.sleep(0.001)
        await super().put(claim_id, record)

    async def get(self, claim_id):
        # The answer may be stale by the time it arrives
        record = await super().get(claim_id)
        await asyncio.sleep(0.001)
        return record


class BrokenWriteClaimStore(InMemoryClaimStore):
    """Store whose writes can be switched to fail."""

    def __init__(self):
        super().__init__()
        self.fail_writes = False

    async def put(self, claim_id, record):
        if self.fail_writes:
            raise ConnectionError("claim store unavailable")
        await super().put(claim_id, record)


def extracted_claim(score: float = 0.9, **overrides) -> Dict[str, Any]:
    """A small extracted claim whose every field has the given confidence."""
    fields = {
        "member_id": "MBR-001",
        "provider_npi": "1234567893",
        "total_charges": 160.0,
    }
    fields.update(overrides)
    return {**fields, "confidence_scores": {name: score for name in fields}}


def static_stage(name: str, data: Optional[Dict[str, Any]] = None, confidence: Optional[float] = None) -> FunctionStage:
    """Stage that always succeeds with a copy of data (or the payload when data is None)."""
    calls = []

    async def run(payload: Dict[str, Any], context: StageContext) -> StageResult:
        calls.append((dict(payload), context))
        return StageResult(success=True, data=dict(payload if data is None else data), confidence_score=confidence)

    stage = FunctionStage(name, run)
    stage.calls = calls
    return stage


def failing_stage(name: str, error: str = "boom") -> FunctionStage:
    async def run(payload: Dict[str, Any], context: StageContext) -> StageResult:
        raise RuntimeError(error)

    return FunctionStage(name, run)


def reporting_failure_stage(name: str, error: str) -> FunctionStage:
    async def run(payload: Dict[str, Any], context: StageContext) -> StageResult:
        return StageResult(success=False, error=error)

    return FunctionStage(name, run)


def validator(is_valid: bool = True, errors: Iterable[str] = (), low_confidence_fields: Iterable[str] = ()) -> FunctionStage:
    """Validator with a fixed outcome."""
    return static_stage(
        "validator",
        data={
            "is_valid": is_valid,
            "errors": list(errors),
            "warnings": [],
            "low_confidence_fields": list(low_confidence_fields),
        },
    )
