"""
Claim State Manager

Single source of truth for claim lifecycle state. Validates transitions
against the state machine, persists every change to the claim store and
publishes state events.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from claimflow.core.config import ProcessingConfig
from claimflow.core.errors import (
    ClaimNotFoundError,
    DuplicateClaimError,
    MaxCorrectionAttemptsExceededError,
)
from claimflow.core.locks import KeyedLock
from claimflow.core.models import ClaimRecord, ClaimState
from claimflow.core.states import ClaimStatus, NextAction, Priority
from claimflow.monitors.event_bus import EventBus
from claimflow.monitors.events import (
    ClaimEvent,
    StateCompleted,
    StateCreated,
    StateDeleted,
    StateFailed,
    StateReviewRequired,
    StateTransitioned,
    StateUpdated,
)
from claimflow.services.store import ClaimStore

from .machine import ClaimStateMachine

logger = logging.getLogger(__name__)


class StateManager:
    """
    Owns the authoritative ClaimState of every claim.

    All mutators for one claim id are serialized by a per-claim lock.
    A mutation is applied to a copy of the state, persisted, and only then
    swapped into the cache, so a failed store write leaves both untouched.
    Readers get deep-copied snapshots and only take the lock on a cache
    miss. Events are published after the lock is released so handlers may
    call back in.
    """

    def __init__(
        self,
        store: ClaimStore,
        event_bus: EventBus,
        config: Optional[ProcessingConfig] = None,
        state_machine: Optional[ClaimStateMachine] = None
    ):
        self.store = store
        self.event_bus = event_bus
        self.config = config or ProcessingConfig()
        self.state_machine = state_machine or ClaimStateMachine()
        self._states: Dict[str, ClaimState] = {}
        self._locks = KeyedLock()

    # ============================================
    # INTERNALS
    # ============================================

    @asynccontextmanager
    async def _locked(self, claim_id: str) -> AsyncIterator[None]:
        async with self._locks.hold(claim_id):
            yield

    async def _load(self, claim_id: str) -> Optional[ClaimState]:
        """
        Return the cached state, repopulating the cache from the store on a miss.

        Callers must hold the claim lock.
        """
        state = self._states.get(claim_id)
        if state is not None:
            return state

        record = await self.store.get(claim_id)
        if record is None:
            return None

        state = ClaimState(
            claim=record,
            extracted_claim=record.extracted_claim,
            correction_attempts=record.correction_attempts,
        )
        self._states[claim_id] = state
        logger.debug(f"Claim {claim_id} loaded from store with status {record.status.value}")
        return state

    async def _require(self, claim_id: str) -> ClaimState:
        state = await self._load(claim_id)
        if state is None:
            raise ClaimNotFoundError(claim_id)
        return state

    async def _persist(self, state: ClaimState) -> None:
        state.claim.extracted_claim = state.extracted_claim
        state.claim.correction_attempts = state.correction_attempts
        await self.store.put(state.claim.id, state.claim)

    async def _commit(self, state: ClaimState, persist: bool = True) -> ClaimState:
        """Persist a modified copy and make it the cached state."""
        if persist:
            await self._persist(state)
        self._states[state.claim_id] = state
        return state

    async def _publish(self, *events: ClaimEvent) -> None:
        for event in events:
            await self.event_bus.publish(event)

    async def _set_field(self, claim_id: str, field: str, value: Any, persist: bool = False) -> None:
        async with self._locked(claim_id):
            state = (await self._require(claim_id)).model_copy(deep=True)
            setattr(state, field, value)
            await self._commit(state, persist)

        await self._publish(StateUpdated(claim_id=claim_id, field=field))

    # ============================================
    # LIFECYCLE
    # ============================================

    async def create_state(
        self,
        claim_id: str,
        document_id: str,
        document_hash: str,
        priority: Priority = Priority.NORMAL,
        metadata: Optional[Dict[str, str]] = None
    ) -> ClaimState:
        """
        Create a new claim state in RECEIVED status.

        Raises:
            DuplicateClaimError: If the claim id is already known
        """
        async with self._locked(claim_id):
            if await self._load(claim_id) is not None:
                raise DuplicateClaimError(claim_id)

            record = ClaimRecord.create(claim_id, document_id, document_hash, priority, metadata)
            state = await self._commit(ClaimState(claim=record))
            snapshot = state.model_copy(deep=True)

        logger.info(f"Claim {claim_id} state created ({priority.value})")
        await self._publish(StateCreated(claim_id=claim_id, priority=priority))
        return snapshot

    async def get_state(self, claim_id: str) -> Optional[ClaimState]:
        """
        Get a snapshot of a claim's state.

        Reads the in-memory cache first and falls back to the claim store.
        """
        state = self._states.get(claim_id)
        if state is None:
            # Cold load under the lock so a concurrent delete cannot be undone
            async with self._locked(claim_id):
                state = await self._load(claim_id)
        return state.model_copy(deep=True) if state is not None else None

    async def transition_to(
        self,
        claim_id: str,
        new_status: ClaimStatus,
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> ClaimState:
        """
        Transition a claim to a new status.

        Args:
            claim_id: The claim to transition
            new_status: The desired status
            message: Reason recorded in the processing history
            metadata: Extra data carried on the transition event

        Returns:
            Snapshot of the updated state

        Raises:
            ClaimNotFoundError: If the claim is unknown
            InvalidTransitionError: If the transition is not in the graph
        """
        async with self._locked(claim_id):
            state = (await self._require(claim_id)).model_copy(deep=True)
            transition = self.state_machine.transition(state.claim, new_status, message, metadata)
            if new_status == ClaimStatus.FAILED:
                state.last_error = message
            await self._commit(state)
            snapshot = state.model_copy(deep=True)

        logger.info(
            f"Claim {claim_id} transitioned {transition.from_status.value} -> {new_status.value}"
            + (f": {message}" if message else "")
        )

        events: List[ClaimEvent] = [
            StateTransitioned(
                claim_id=claim_id,
                timestamp=transition.timestamp,
                from_status=transition.from_status,
                to_status=transition.to_status,
                message=message,
                metadata=metadata,
            )
        ]
        if new_status == ClaimStatus.COMPLETED:
            events.append(StateCompleted(claim_id=claim_id))
        elif new_status == ClaimStatus.FAILED:
            events.append(StateFailed(claim_id=claim_id, error=message))
        elif new_status == ClaimStatus.PENDING_REVIEW:
            events.append(StateReviewRequired(claim_id=claim_id, reason=message))

        await self._publish(*events)
        return snapshot

    # ============================================
    # PAYLOADS
    # ============================================

    async def set_extracted_claim(self, claim_id: str, extracted_claim: Dict[str, Any]) -> None:
        await self._set_field(claim_id, "extracted_claim", dict(extracted_claim), persist=True)

    async def set_parsed_document(self, claim_id: str, parsed_document: Dict[str, Any]) -> None:
        await self._set_field(claim_id, "parsed_document", parsed_document)

    async def set_validation_result(self, claim_id: str, validation_result: Optional[Dict[str, Any]]) -> None:
        await self._set_field(claim_id, "validation_result", validation_result)

    async def set_adjudication_result(self, claim_id: str, adjudication_result: Optional[Dict[str, Any]]) -> None:
        await self._set_field(claim_id, "adjudication_result", adjudication_result)

    async def set_quality_result(self, claim_id: str, quality_result: Optional[Dict[str, Any]]) -> None:
        await self._set_field(claim_id, "quality_result", quality_result)

    async def set_error(self, claim_id: str, error: str) -> None:
        await self._set_field(claim_id, "last_error", error)

    # ============================================
    # CORRECTION BUDGET & ROUTING
    # ============================================

    async def increment_correction_attempts(self, claim_id: str) -> int:
        """
        Record a correction attempt.

        Raises:
            MaxCorrectionAttemptsExceededError: If the budget is already spent
        """
        async with self._locked(claim_id):
            state = (await self._require(claim_id)).model_copy(deep=True)
            if state.correction_attempts >= self.config.max_correction_attempts:
                raise MaxCorrectionAttemptsExceededError(claim_id, state.correction_attempts)
            state.correction_attempts += 1
            await self._commit(state)
            count = state.correction_attempts

        await self._publish(StateUpdated(claim_id=claim_id, field="correction_attempts"))
        return count

    def can_attempt_correction(self, state: ClaimState) -> bool:
        """Check if more correction attempts are allowed."""
        return state.correction_attempts < self.config.max_correction_attempts

    def determine_next_action(self, confidence: float) -> NextAction:
        """
        Route a confidence score.

        Lower bounds are inclusive: a score equal to a threshold takes
        the higher branch.
        """
        if confidence >= self.config.auto_process_threshold:
            return NextAction.AUTO_PROCESS
        if confidence >= self.config.correction_threshold:
            return NextAction.CORRECT
        return NextAction.REVIEW

    # ============================================
    # QUERIES & ADMINISTRATION
    # ============================================

    async def list_states(
        self,
        status: Optional[ClaimStatus] = None,
        priority: Optional[Priority] = None,
        from_date: Optional[datetime] = None,
        to_date: Optional[datetime] = None
    ) -> List[ClaimState]:
        """List snapshots of cached claims matching every given filter."""
        results = []
        for state in list(self._states.values()):
            claim = state.claim
            if status is not None and claim.status != status:
                continue
            if priority is not None and claim.priority != priority:
                continue
            if from_date is not None and claim.created_at < from_date:
                continue
            if to_date is not None and claim.created_at > to_date:
                continue
            results.append(state.model_copy(deep=True))
        return results

    async def get_claims_by_status(self, status: ClaimStatus) -> List[ClaimState]:
        return await self.list_states(status=status)

    async def get_pending_review(self) -> List[ClaimState]:
        return await self.list_states(status=ClaimStatus.PENDING_REVIEW)

    def get_statistics(self) -> Dict[str, Any]:
        """Point-in-time processing statistics over cached claims."""
        states = list(self._states.values())
        by_status = {s.value: 0 for s in ClaimStatus}
        total_attempts = 0

        for state in states:
            by_status[state.claim.status.value] += 1
            total_attempts += state.correction_attempts

        return {
            "total": len(states),
            "by_status": by_status,
            "average_correction_attempts": total_attempts / len(states) if states else 0.0,
        }

    async def find_by_document_hash(self, document_hash: str) -> Optional[str]:
        for state in list(self._states.values()):
            if state.claim.document_hash == document_hash:
                return state.claim.id
        return await self.store.find_by_document_hash(document_hash)

    async def delete_state(self, claim_id: str) -> bool:
        """Administratively delete a claim from cache and store."""
        async with self._locked(claim_id):
            cached = self._states.pop(claim_id, None) is not None
            stored = await self.store.delete(claim_id)

        if not (cached or stored):
            return False

        logger.info(f"Claim {claim_id} deleted")
        await self._publish(StateDeleted(claim_id=claim_id))
        return True

    def clear(self) -> None:
        """Drop the in-memory cache (the store is left untouched)."""
        self._states.clear()
