"""
Tests for the StateManager: lifecycle, payloads, routing and concurrency.
"""
import asyncio
from datetime import datetime, timedelta

import pytest

from claimflow.core.config import ProcessingConfig
from claimflow.core.errors import (
    ClaimNotFoundError,
    DuplicateClaimError,
    InvalidTransitionError,
    MaxCorrectionAttemptsExceededError,
)
from claimflow.core.states import ClaimStatus, NextAction, Priority
from claimflow.monitors.event_bus import EventBus
from claimflow.monitors.events import (
    StateCompleted,
    StateCreated,
    StateDeleted,
    StateFailed,
    StateReviewRequired,
    StateTransitioned,
    StateUpdated,
)
from claimflow.state_machine.manager import StateManager

from helpers import BrokenWriteClaimStore, SlowClaimStore, extracted_claim


async def advance(manager, claim_id, *statuses):
    for status in statuses:
        await manager.transition_to(claim_id, status)


class TestCreateAndLoad:

    @pytest.mark.asyncio
    async def test_create_state(self, state_manager, store, events):
        state = await state_manager.create_state("CLM-1", "DOC-1", "hash-1", Priority.HIGH, {"source": "fax"})

        assert state.status == ClaimStatus.RECEIVED
        assert state.claim.priority == Priority.HIGH
        assert state.claim.metadata == {"source": "fax"}
        assert state.correction_attempts == 0
        assert len(state.claim.processing_history) == 1
        assert (await store.get("CLM-1")).status == ClaimStatus.RECEIVED

        assert len(events) == 1
        assert isinstance(events[0], StateCreated)
        assert events[0].priority == Priority.HIGH

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")

        with pytest.raises(DuplicateClaimError):
            await state_manager.create_state("CLM-1", "DOC-2", "hash-2")

    @pytest.mark.asyncio
    async def test_duplicate_detected_from_store(self, store, event_bus, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        fresh = StateManager(store, event_bus)

        with pytest.raises(DuplicateClaimError):
            await fresh.create_state("CLM-1", "DOC-1", "hash-1")

    @pytest.mark.asyncio
    async def test_get_unknown_returns_none(self, state_manager):
        assert await state_manager.get_state("CLM-MISSING") is None

    @pytest.mark.asyncio
    async def test_cache_miss_repopulates_from_store(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.transition_to("CLM-1", ClaimStatus.PARSING)
        await state_manager.set_extracted_claim("CLM-1", extracted_claim())
        state_manager.clear()

        state = await state_manager.get_state("CLM-1")

        assert state.status == ClaimStatus.PARSING
        assert state.extracted_claim["member_id"] == "MBR-001"
        assert [e.status for e in state.claim.processing_history] == [
            ClaimStatus.RECEIVED, ClaimStatus.PARSING
        ]

    @pytest.mark.asyncio
    async def test_snapshots_are_isolated(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        snapshot = await state_manager.get_state("CLM-1")

        snapshot.claim.processing_history.clear()
        snapshot.correction_attempts = 99

        state = await state_manager.get_state("CLM-1")
        assert len(state.claim.processing_history) == 1
        assert state.correction_attempts == 0


class TestTransitions:

    @pytest.mark.asyncio
    async def test_happy_path_history(self, state_manager, events):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await advance(state_manager, "CLM-1", ClaimStatus.PARSING, ClaimStatus.EXTRACTING, ClaimStatus.VALIDATING)

        assert state_manager.determine_next_action(0.92) == NextAction.AUTO_PROCESS
        await advance(state_manager, "CLM-1", ClaimStatus.ADJUDICATING, ClaimStatus.COMPLETED)

        state = await state_manager.get_state("CLM-1")
        assert state.status == ClaimStatus.COMPLETED
        assert len(state.claim.processing_history) == 6

        transitions = [e for e in events if isinstance(e, StateTransitioned)]
        assert [e.to_status for e in transitions] == [
            ClaimStatus.PARSING, ClaimStatus.EXTRACTING, ClaimStatus.VALIDATING,
            ClaimStatus.ADJUDICATING, ClaimStatus.COMPLETED,
        ]
        assert isinstance(events[-1], StateCompleted)

    @pytest.mark.asyncio
    async def test_invalid_transition_leaves_state_unchanged(self, state_manager, store, events):
        await state_manager.create_state("CLM-2", "DOC-2", "hash-2")
        events.clear()

        with pytest.raises(InvalidTransitionError) as exc_info:
            await state_manager.transition_to("CLM-2", ClaimStatus.COMPLETED)

        assert exc_info.value.from_status == ClaimStatus.RECEIVED
        assert exc_info.value.to_status == ClaimStatus.COMPLETED
        state = await state_manager.get_state("CLM-2")
        assert state.status == ClaimStatus.RECEIVED
        assert len(state.claim.processing_history) == 1
        assert (await store.get("CLM-2")).status == ClaimStatus.RECEIVED
        assert events == []

    @pytest.mark.asyncio
    async def test_transition_unknown_claim(self, state_manager):
        with pytest.raises(ClaimNotFoundError):
            await state_manager.transition_to("CLM-MISSING", ClaimStatus.PARSING)

    @pytest.mark.asyncio
    async def test_failed_records_error(self, state_manager, events):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        state = await state_manager.transition_to("CLM-1", ClaimStatus.FAILED, "parser crashed")

        assert state.last_error == "parser crashed"
        assert isinstance(events[-1], StateFailed)
        assert events[-1].error == "parser crashed"

    @pytest.mark.asyncio
    async def test_review_event(self, state_manager, events):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await advance(state_manager, "CLM-1", ClaimStatus.PARSING, ClaimStatus.EXTRACTING)
        await state_manager.transition_to("CLM-1", ClaimStatus.PENDING_REVIEW, "needs a human")

        assert isinstance(events[-1], StateReviewRequired)
        assert events[-1].reason == "needs a human"

    @pytest.mark.asyncio
    async def test_transition_persists_history(self, state_manager, store):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.transition_to("CLM-1", ClaimStatus.PARSING, "Parsing document")

        record = await store.get("CLM-1")
        assert record.status == ClaimStatus.PARSING
        assert record.processing_history[-1].message == "Parsing document"

    @pytest.mark.asyncio
    async def test_transition_event_carries_metadata(self, state_manager, events):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.transition_to("CLM-1", ClaimStatus.PARSING, "go", {"worker": "w1"})

        event = events[-1]
        assert event.from_status == ClaimStatus.RECEIVED
        assert event.metadata == {"worker": "w1"}


class TestPayloads:

    @pytest.mark.asyncio
    async def test_setters_publish_updates(self, state_manager, events):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        events.clear()

        await state_manager.set_parsed_document("CLM-1", {"text": "..."})
        await state_manager.set_extracted_claim("CLM-1", extracted_claim())
        await state_manager.set_validation_result("CLM-1", {"is_valid": True})
        await state_manager.set_adjudication_result("CLM-1", {"decision": "approved"})
        await state_manager.set_quality_result("CLM-1", {"overall_score": 0.9})
        await state_manager.set_error("CLM-1", "warning only")

        assert [e.field for e in events if isinstance(e, StateUpdated)] == [
            "parsed_document", "extracted_claim", "validation_result",
            "adjudication_result", "quality_result", "last_error",
        ]
        state = await state_manager.get_state("CLM-1")
        assert state.parsed_document == {"text": "..."}
        assert state.adjudication_result == {"decision": "approved"}
        assert state.last_error == "warning only"
        assert state.status == ClaimStatus.RECEIVED

    @pytest.mark.asyncio
    async def test_setter_unknown_claim(self, state_manager):
        with pytest.raises(ClaimNotFoundError):
            await state_manager.set_extracted_claim("CLM-MISSING", {})

    @pytest.mark.asyncio
    async def test_extracted_claim_is_persisted(self, state_manager, store):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.set_extracted_claim("CLM-1", extracted_claim(member_id="MBR-777"))

        record = await store.get("CLM-1")
        assert record.extracted_claim["member_id"] == "MBR-777"


class TestCorrectionBudget:

    @pytest.mark.asyncio
    async def test_increment_is_bounded(self, state_manager, store):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")

        assert [await state_manager.increment_correction_attempts("CLM-1") for _ in range(3)] == [1, 2, 3]

        with pytest.raises(MaxCorrectionAttemptsExceededError):
            await state_manager.increment_correction_attempts("CLM-1")

        state = await state_manager.get_state("CLM-1")
        assert state.correction_attempts == 3
        assert not state_manager.can_attempt_correction(state)
        assert (await store.get("CLM-1")).correction_attempts == 3

    @pytest.mark.asyncio
    async def test_attempts_survive_reload(self, store, event_bus, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.increment_correction_attempts("CLM-1")
        await state_manager.increment_correction_attempts("CLM-1")

        reloaded = await StateManager(store, event_bus).get_state("CLM-1")
        assert reloaded.correction_attempts == 2

    @pytest.mark.asyncio
    async def test_zero_budget(self, store, event_bus):
        manager = StateManager(store, event_bus, ProcessingConfig(max_correction_attempts=0))
        state = await manager.create_state("CLM-1", "DOC-1", "hash-1")

        assert not manager.can_attempt_correction(state)
        with pytest.raises(MaxCorrectionAttemptsExceededError):
            await manager.increment_correction_attempts("CLM-1")


class TestRouting:

    @pytest.mark.parametrize("confidence,expected", [
        (0.92, NextAction.AUTO_PROCESS),
        (0.85, NextAction.AUTO_PROCESS),
        (1.0, NextAction.AUTO_PROCESS),
        (0.8499, NextAction.CORRECT),
        (0.70, NextAction.CORRECT),
        (0.60, NextAction.CORRECT),
        (0.5999, NextAction.REVIEW),
        (0.40, NextAction.REVIEW),
        (0.0, NextAction.REVIEW),
    ])
    def test_determine_next_action(self, state_manager, confidence, expected):
        assert state_manager.determine_next_action(confidence) == expected

    def test_custom_thresholds(self, store, event_bus):
        manager = StateManager(
            store, event_bus, ProcessingConfig(auto_process_threshold=0.95, correction_threshold=0.5)
        )
        assert manager.determine_next_action(0.9) == NextAction.CORRECT
        assert manager.determine_next_action(0.95) == NextAction.AUTO_PROCESS
        assert manager.determine_next_action(0.49) == NextAction.REVIEW


class TestQueries:

    @pytest.mark.asyncio
    async def test_list_states_filters(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1", Priority.NORMAL)
        await state_manager.create_state("CLM-2", "DOC-2", "hash-2", Priority.URGENT)
        await state_manager.create_state("CLM-3", "DOC-3", "hash-3", Priority.URGENT)
        await state_manager.transition_to("CLM-3", ClaimStatus.PARSING)

        urgent = await state_manager.list_states(priority=Priority.URGENT)
        assert sorted(s.claim_id for s in urgent) == ["CLM-2", "CLM-3"]

        parsing = await state_manager.get_claims_by_status(ClaimStatus.PARSING)
        assert [s.claim_id for s in parsing] == ["CLM-3"]

        received_urgent = await state_manager.list_states(status=ClaimStatus.RECEIVED, priority=Priority.URGENT)
        assert [s.claim_id for s in received_urgent] == ["CLM-2"]

        future = datetime.now() + timedelta(days=1)
        assert await state_manager.list_states(from_date=future) == []
        assert len(await state_manager.list_states(to_date=future)) == 3

    @pytest.mark.asyncio
    async def test_pending_review(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await advance(state_manager, "CLM-1", ClaimStatus.PARSING, ClaimStatus.EXTRACTING, ClaimStatus.PENDING_REVIEW)
        await state_manager.create_state("CLM-2", "DOC-2", "hash-2")

        pending = await state_manager.get_pending_review()
        assert [s.claim_id for s in pending] == ["CLM-1"]

    @pytest.mark.asyncio
    async def test_statistics(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.create_state("CLM-2", "DOC-2", "hash-2")
        await state_manager.transition_to("CLM-2", ClaimStatus.FAILED, "bad")
        await state_manager.increment_correction_attempts("CLM-1")
        await state_manager.increment_correction_attempts("CLM-1")

        stats = state_manager.get_statistics()
        assert stats["total"] == 2
        assert stats["by_status"]["received"] == 1
        assert stats["by_status"]["failed"] == 1
        assert stats["by_status"]["completed"] == 0
        assert stats["average_correction_attempts"] == 1.0

    def test_statistics_empty(self, state_manager):
        stats = state_manager.get_statistics()
        assert stats["total"] == 0
        assert stats["average_correction_attempts"] == 0.0

    @pytest.mark.asyncio
    async def test_find_by_document_hash(self, store, event_bus, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")

        assert await state_manager.find_by_document_hash("hash-1") == "CLM-1"
        assert await StateManager(store, event_bus).find_by_document_hash("hash-1") == "CLM-1"
        assert await state_manager.find_by_document_hash("hash-other") is None

    @pytest.mark.asyncio
    async def test_delete_state(self, state_manager, store, events):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")

        assert await state_manager.delete_state("CLM-1") is True
        assert isinstance(events[-1], StateDeleted)
        assert await state_manager.get_state("CLM-1") is None
        assert await store.get("CLM-1") is None
        assert await state_manager.delete_state("CLM-1") is False


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_transitions_serialize(self):
        manager = StateManager(SlowClaimStore(), EventBus())
        await manager.create_state("CLM-1", "DOC-1", "hash-1")

        results = await asyncio.gather(
            *(manager.transition_to("CLM-1", ClaimStatus.PARSING) for _ in range(10)),
            return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, InvalidTransitionError)]
        assert len(succeeded) == 1
        assert len(rejected) == 9

        state = await manager.get_state("CLM-1")
        assert [e.status for e in state.claim.processing_history] == [
            ClaimStatus.RECEIVED, ClaimStatus.PARSING
        ]

    @pytest.mark.asyncio
    async def test_concurrent_mutators_keep_history_ordered(self):
        manager = StateManager(SlowClaimStore(), EventBus())
        await manager.create_state("CLM-1", "DOC-1", "hash-1")

        await asyncio.gather(
            advance(manager, "CLM-1", ClaimStatus.PARSING, ClaimStatus.EXTRACTING, ClaimStatus.VALIDATING),
            manager.set_extracted_claim("CLM-1", extracted_claim()),
            manager.increment_correction_attempts("CLM-1"),
            manager.set_validation_result("CLM-1", {"is_valid": True}),
        )

        state = await manager.get_state("CLM-1")
        assert state.status == ClaimStatus.VALIDATING
        assert state.correction_attempts == 1
        assert state.extracted_claim is not None
        stamps = [e.timestamp for e in state.claim.processing_history]
        assert all(a < b for a, b in zip(stamps, stamps[1:]))

    @pytest.mark.asyncio
    async def test_concurrent_increments_respect_budget(self):
        manager = StateManager(SlowClaimStore(), EventBus())
        await manager.create_state("CLM-1", "DOC-1", "hash-1")

        results = await asyncio.gather(
            *(manager.increment_correction_attempts("CLM-1") for _ in range(6)),
            return_exceptions=True
        )

        assert sorted(r for r in results if isinstance(r, int)) == [1, 2, 3]
        assert sum(isinstance(r, MaxCorrectionAttemptsExceededError) for r in results) == 3

    @pytest.mark.asyncio
    async def test_cold_cache_loads_once(self):
        manager = StateManager(SlowClaimStore(), EventBus())
        await manager.create_state("CLM-1", "DOC-1", "hash-1")
        manager.clear()

        results = await asyncio.gather(
            manager.transition_to("CLM-1", ClaimStatus.PARSING),
            manager.increment_correction_attempts("CLM-1"),
        )

        state = await manager.get_state("CLM-1")
        assert state.status == ClaimStatus.PARSING
        assert state.correction_attempts == 1
        assert results[1] == 1

    @pytest.mark.asyncio
    async def test_cold_read_does_not_resurrect_deleted_claim(self):
        manager = StateManager(SlowClaimStore(), EventBus())
        await manager.create_state("CLM-1", "DOC-1", "hash-1")
        manager.clear()

        snapshot, deleted = await asyncio.gather(
            manager.get_state("CLM-1"),
            manager.delete_state("CLM-1"),
        )

        assert snapshot.claim_id == "CLM-1"
        assert deleted is True
        assert await manager.get_state("CLM-1") is None
        assert manager.get_statistics()["total"] == 0

    @pytest.mark.asyncio
    async def test_locks_are_released(self, state_manager):
        await state_manager.create_state("CLM-1", "DOC-1", "hash-1")
        await state_manager.transition_to("CLM-1", ClaimStatus.PARSING)
        with pytest.raises(ClaimNotFoundError):
            await state_manager.transition_to("CLM-MISSING", ClaimStatus.PARSING)
        await state_manager.delete_state("CLM-1")

        assert len(state_manager._locks) == 0

    @pytest.mark.asyncio
    async def test_clear_keeps_in_flight_mutations_serialized(self):
        manager = StateManager(SlowClaimStore(), EventBus())
        await manager.create_state("CLM-1", "DOC-1", "hash-1")

        async def clear_then_transition():
            await asyncio.sleep(0)
            manager.clear()
            return await manager.transition_to("CLM-1", ClaimStatus.PARSING)

        results = await asyncio.gather(
            manager.transition_to("CLM-1", ClaimStatus.PARSING),
            clear_then_transition(),
            return_exceptions=True
        )

        assert isinstance(results[1], InvalidTransitionError)
        state = await manager.get_state("CLM-1")
        assert [e.status for e in state.claim.processing_history] == [
            ClaimStatus.RECEIVED, ClaimStatus.PARSING
        ]


class TestStoreFailures:
    """A failed store write leaves both cache and store at the last persisted state."""

    @pytest.fixture
    def broken_store(self):
        return BrokenWriteClaimStore()

    @pytest.fixture
    def manager(self, broken_store, event_bus):
        return StateManager(broken_store, event_bus)

    @pytest.mark.asyncio
    async def test_failed_transition_is_not_cached(self, manager, broken_store, events):
        await manager.create_state("CLM-1", "DOC-1", "hash-1")
        events.clear()
        broken_store.fail_writes = True

        with pytest.raises(ConnectionError):
            await manager.transition_to("CLM-1", ClaimStatus.PARSING)

        state = await manager.get_state("CLM-1")
        assert state.status == ClaimStatus.RECEIVED
        assert len(state.claim.processing_history) == 1
        assert (await broken_store.get("CLM-1")).status == ClaimStatus.RECEIVED
        assert events == []

        broken_store.fail_writes = False
        await manager.transition_to("CLM-1", ClaimStatus.PARSING)
        assert (await broken_store.get("CLM-1")).status == ClaimStatus.PARSING

    @pytest.mark.asyncio
    async def test_failed_increment_is_not_cached(self, manager, broken_store):
        await manager.create_state("CLM-1", "DOC-1", "hash-1")
        broken_store.fail_writes = True

        with pytest.raises(ConnectionError):
            await manager.increment_correction_attempts("CLM-1")

        assert (await manager.get_state("CLM-1")).correction_attempts == 0

    @pytest.mark.asyncio
    async def test_failed_payload_write_is_not_cached(self, manager, broken_store):
        await manager.create_state("CLM-1", "DOC-1", "hash-1")
        broken_store.fail_writes = True

        with pytest.raises(ConnectionError):
            await manager.set_extracted_claim("CLM-1", extracted_claim())

        assert (await manager.get_state("CLM-1")).extracted_claim is None

    @pytest.mark.asyncio
    async def test_failed_create_leaves_no_claim(self, manager, broken_store):
        broken_store.fail_writes = True

        with pytest.raises(ConnectionError):
            await manager.create_state("CLM-1", "DOC-1", "hash-1")

        assert await manager.get_state("CLM-1") is None
