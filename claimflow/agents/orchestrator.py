"""
Workflow Orchestrator

Drives claims through the processing pipeline, routes them on confidence
after validation, bounds the correction loop and escalates to human review.
Every status or payload change goes through the StateManager.
"""
import logging
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from claimflow.core.config import ProcessingConfig
from claimflow.core.errors import (
    ClaimNotFoundError,
    IntakeRejectedError,
    InvalidReviewStateError,
    MaxCorrectionAttemptsExceededError,
    StageExecutionError,
)
from claimflow.core.locks import KeyedLock
from claimflow.core.models import ClaimState, DocumentInput, StageResult, ValidationOutcome, WorkflowResult
from claimflow.core.states import ClaimStatus, NextAction, Priority, ReviewDecision
from claimflow.monitors.event_bus import EventBus
from claimflow.monitors.events import (
    StageCompleted,
    StageStarted,
    WorkflowCompleted,
    WorkflowFailed,
    WorkflowReviewRequired,
    WorkflowStarted,
)
from claimflow.services.queue import ReviewQueue, ReviewRecord
from claimflow.state_machine.manager import StateManager

from .base import Stage, StageCollaborators, StageContext
from .confidence import ConfidencePolicy, default_confidence_policy, low_confidence_fields
from .intake import IntakeStage, calculate_document_hash, generate_claim_id

logger = logging.getLogger(__name__)

REASON_MAX_CORRECTIONS = "max correction attempts reached"
REASON_LOW_CONFIDENCE = "low confidence - human review required"
REASON_MANUAL_EXTRACTION = "manual extraction required"


class WorkflowOrchestrator:
    """
    Sequences stage execution for claims.

    One logical worker per claim: runs for the same claim id are
    serialized, runs for different claims proceed concurrently.

    Escalation to PENDING_REVIEW is a suspend point, not a failure: the
    run returns and resumes later through submit_review.
    """

    def __init__(
        self,
        state_manager: StateManager,
        review_queue: ReviewQueue,
        stages: Optional[StageCollaborators] = None,
        event_bus: Optional[EventBus] = None,
        config: Optional[ProcessingConfig] = None,
        confidence_policy: ConfidencePolicy = default_confidence_policy
    ):
        self.state_manager = state_manager
        self.review_queue = review_queue
        self.stages = stages or StageCollaborators()
        self.event_bus = event_bus or state_manager.event_bus
        self.config = config or state_manager.config
        self.confidence_policy = confidence_policy
        self.intake = IntakeStage(state_manager, self.config)

        self._workers = KeyedLock()
        # Intake runs one at a time per document hash so duplicates cannot race
        self._intake = KeyedLock()
        # Documents received by this process, held only while their first run is in flight
        self._documents: Dict[str, Tuple[DocumentInput, int]] = {}

    # ============================================
    # PUBLIC OPERATIONS
    # ============================================

    async def process_document(self, document: DocumentInput) -> WorkflowResult:
        """
        Run a new document through intake and the full pipeline.

        Intake rejections return a failed result with an empty claim id.
        The document bytes are released when the run returns, whatever
        the outcome.
        """
        start = time.perf_counter()
        document_hash = calculate_document_hash(document.content)

        async with self._intake.hold(document_hash):
            try:
                intake = await self.intake.run(document, document_hash)
            except IntakeRejectedError as e:
                logger.warning(f"Intake rejected {document.filename}: {e}")
                elapsed = self._elapsed_ms(start)
                await self.event_bus.publish(WorkflowFailed(claim_id="", error=str(e), processing_time_ms=elapsed))
                return WorkflowResult(
                    success=False,
                    claim_id="",
                    final_status=ClaimStatus.FAILED,
                    error=str(e),
                    processing_time_ms=elapsed,
                )

            claim_id = intake.claim_id
            await self.state_manager.create_state(
                claim_id,
                intake.document_id,
                intake.document_hash,
                document.priority,
                document.metadata,
            )

        async with self._worker(claim_id):
            self._documents[claim_id] = (document, intake.page_count)
            try:
                await self.event_bus.publish(WorkflowStarted(claim_id=claim_id))
                await self.event_bus.publish(StageStarted(claim_id=claim_id, stage="intake"))
                await self.event_bus.publish(StageCompleted(claim_id=claim_id, stage="intake"))

                return await self._execute(claim_id, start, lambda: self._run_from_status(claim_id))
            finally:
                self._documents.pop(claim_id, None)

    async def process_claim(self, claim_id: str) -> WorkflowResult:
        """
        Drive an existing claim from its last persisted status.

        Raises:
            ClaimNotFoundError: If the claim is unknown
        """
        start = time.perf_counter()

        async with self._worker(claim_id):
            await self._state(claim_id)
            await self.event_bus.publish(WorkflowStarted(claim_id=claim_id))
            return await self._execute(claim_id, start, lambda: self._run_from_status(claim_id))

    async def process_extracted_claim(
        self,
        extracted_claim: Dict[str, Any],
        priority: Priority = Priority.NORMAL,
        claim_id: Optional[str] = None
    ) -> WorkflowResult:
        """
        Process a claim whose fields were extracted elsewhere.

        Parsing and extraction are fast-forwarded; the run starts at validation.

        Raises:
            DuplicateClaimError: If the claim id already exists
        """
        start = time.perf_counter()
        claim_id = claim_id or extracted_claim.get("id") or generate_claim_id()

        async with self._worker(claim_id):
            await self.state_manager.create_state(claim_id, f"extracted_{claim_id}", f"hash_{claim_id}", priority)
            await self.state_manager.set_extracted_claim(claim_id, extracted_claim)
            await self.state_manager.transition_to(claim_id, ClaimStatus.PARSING, "Skipping parsing - pre-extracted")
            await self.state_manager.transition_to(claim_id, ClaimStatus.EXTRACTING, "Skipping extraction - pre-extracted")
            await self.state_manager.transition_to(claim_id, ClaimStatus.VALIDATING, "Starting validation")

            await self.event_bus.publish(WorkflowStarted(claim_id=claim_id))
            return await self._execute(
                claim_id, start, lambda: self._run_validation_and_beyond(claim_id, enrich=True)
            )

    async def submit_review(
        self,
        claim_id: str,
        decision: Union[ReviewDecision, str],
        corrections: Optional[Dict[str, Any]] = None,
        notes: Optional[str] = None,
        reviewer_id: str = "reviewer"
    ) -> WorkflowResult:
        """
        Apply a human review decision and resume the claim.

        approve -> adjudication; reject -> FAILED with the notes as reason;
        correct -> corrections merged into the extracted claim, then validation.

        Raises:
            ClaimNotFoundError: If the claim is unknown
            InvalidReviewStateError: If the claim is not pending review
        """
        decision = ReviewDecision(decision)
        start = time.perf_counter()

        async with self._worker(claim_id):
            state = await self._state(claim_id)
            if state.status != ClaimStatus.PENDING_REVIEW:
                raise InvalidReviewStateError(claim_id, state.status)

            await self.review_queue.dequeue(claim_id)
            await self.review_queue.record_decision(
                claim_id,
                ReviewRecord(decision=decision, reviewer_id=reviewer_id, corrections=corrections or {}, notes=notes),
            )
            logger.info(f"Review decision '{decision.value}' for claim {claim_id} by {reviewer_id}")

            if decision == ReviewDecision.APPROVE:
                await self.state_manager.transition_to(
                    claim_id, ClaimStatus.ADJUDICATING, f"Approved by {reviewer_id}" + (f": {notes}" if notes else "")
                )
                return await self._execute(claim_id, start, lambda: self._run_adjudication(claim_id))

            if decision == ReviewDecision.REJECT:
                reason = f"Rejected by reviewer: {notes or 'no reason given'}"
                await self.state_manager.transition_to(claim_id, ClaimStatus.FAILED, reason)
                elapsed = self._elapsed_ms(start)
                await self.event_bus.publish(WorkflowFailed(claim_id=claim_id, error=reason, processing_time_ms=elapsed))
                rejected = await self._state(claim_id)
                return self._result(rejected, success=False, error=reason, processing_time_ms=elapsed)

            await self.state_manager.set_extracted_claim(
                claim_id, self._apply_corrections(state.extracted_claim, corrections)
            )
            await self.state_manager.transition_to(claim_id, ClaimStatus.VALIDATING, f"Corrected by {reviewer_id}")
            return await self._execute(
                claim_id, start, lambda: self._run_validation_and_beyond(claim_id, enrich=False)
            )

    async def resubmit_claim(self, claim_id: str) -> WorkflowResult:
        """
        Operator-triggered resubmission of a FAILED claim.

        Raises:
            ClaimNotFoundError: If the claim is unknown
            InvalidTransitionError: If the claim is not FAILED
        """
        start = time.perf_counter()

        async with self._worker(claim_id):
            await self.state_manager.transition_to(claim_id, ClaimStatus.RECEIVED, "Resubmitted by operator")
            await self.event_bus.publish(WorkflowStarted(claim_id=claim_id))
            return await self._execute(claim_id, start, lambda: self._run_from_status(claim_id))

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "state_stats": self.state_manager.get_statistics(),
            "config": self.config.model_dump(),
            "stages": self.stages.configured(),
        }

    # ============================================
    # RUN CONTROL
    # ============================================

    @asynccontextmanager
    async def _worker(self, claim_id: str) -> AsyncIterator[None]:
        async with self._workers.hold(claim_id):
            yield

    async def _execute(
        self,
        claim_id: str,
        start: float,
        step: Callable[[], Awaitable[WorkflowResult]]
    ) -> WorkflowResult:
        """Run a pipeline segment, turning any failure into a FAILED claim."""
        try:
            result = await step()
        except Exception as e:
            return await self._fail(claim_id, e, start)

        result = result.model_copy(update={"processing_time_ms": self._elapsed_ms(start)})
        if result.success:
            logger.info(f"Claim {claim_id} completed in {result.processing_time_ms:.1f}ms")
            await self.event_bus.publish(
                WorkflowCompleted(claim_id=claim_id, processing_time_ms=result.processing_time_ms)
            )
        return result

    async def _fail(self, claim_id: str, error: Exception, start: float) -> WorkflowResult:
        message = str(error)
        if isinstance(error, StageExecutionError):
            logger.error(f"Workflow failed for claim {claim_id}: {message}")
        else:
            logger.exception(f"Workflow failed for claim {claim_id}")

        state = await self.state_manager.get_state(claim_id)
        if state is not None and self.state_manager.state_machine.can_transition(state.status, ClaimStatus.FAILED):
            state = await self.state_manager.transition_to(claim_id, ClaimStatus.FAILED, message)
        elif state is not None:
            await self.state_manager.set_error(claim_id, message)

        elapsed = self._elapsed_ms(start)
        await self.event_bus.publish(WorkflowFailed(claim_id=claim_id, error=message, processing_time_ms=elapsed))

        if state is None:
            return WorkflowResult(
                success=False, claim_id=claim_id, final_status=ClaimStatus.FAILED,
                error=message, processing_time_ms=elapsed,
            )
        return self._result(state, success=False, error=message, processing_time_ms=elapsed)

    async def _run_from_status(self, claim_id: str) -> WorkflowResult:
        """
        Resume a claim from wherever its persisted status left it.

        Each stage is safe to re-enter, so an abandoned run can be picked up
        by reloading state from the store.
        """
        state = await self._state(claim_id)
        status = state.status

        if status == ClaimStatus.COMPLETED:
            return self._result(state, success=True)
        if status == ClaimStatus.FAILED:
            return self._result(state, success=False, error=state.last_error or "Claim has failed")
        if status == ClaimStatus.PENDING_REVIEW:
            return self._result(state, success=False, error="Awaiting human review")

        if status == ClaimStatus.RECEIVED:
            await self.state_manager.transition_to(claim_id, ClaimStatus.PARSING, "Parsing document")
            status = ClaimStatus.PARSING

        if status == ClaimStatus.PARSING:
            await self._run_parsing(claim_id)
            await self.state_manager.transition_to(claim_id, ClaimStatus.EXTRACTING, "Extracting fields")
            status = ClaimStatus.EXTRACTING

        if status == ClaimStatus.EXTRACTING:
            if not await self._run_extraction(claim_id):
                return await self._escalate(claim_id, REASON_MANUAL_EXTRACTION)
            await self.state_manager.transition_to(claim_id, ClaimStatus.VALIDATING, "Starting validation")
            return await self._run_validation_and_beyond(claim_id, enrich=True)

        if status == ClaimStatus.CORRECTING:
            await self.state_manager.transition_to(claim_id, ClaimStatus.VALIDATING, "Resuming validation")
            return await self._run_validation_and_beyond(claim_id, enrich=False)

        if status == ClaimStatus.VALIDATING:
            return await self._run_validation_and_beyond(claim_id, enrich=True)

        return await self._run_adjudication(claim_id)

    # ============================================
    # STAGES
    # ============================================

    async def _run_stage(self, stage_name: str, stage: Stage, payload: Dict[str, Any], claim_id: str,
                         validation: Optional[ValidationOutcome] = None) -> StageResult:
        """
        Invoke one collaborator with stage events around it.

        Raises:
            StageExecutionError: If the collaborator throws or reports failure
        """
        state = await self._state(claim_id)
        context = StageContext(
            claim_id=claim_id,
            status=state.status,
            priority=state.claim.priority,
            document_id=state.claim.document_id,
            metadata=state.claim.metadata,
            correction_attempts=state.correction_attempts,
            validation=validation,
        )

        await self.event_bus.publish(StageStarted(claim_id=claim_id, stage=stage_name))
        try:
            result = await stage.run(payload, context)
            if not result.success:
                raise StageExecutionError(stage_name, result.error or "stage reported failure")
        except Exception as e:
            await self.event_bus.publish(StageCompleted(claim_id=claim_id, stage=stage_name, success=False))
            if isinstance(e, StageExecutionError):
                raise
            raise StageExecutionError(stage_name, str(e) or type(e).__name__) from e

        await self.event_bus.publish(StageCompleted(claim_id=claim_id, stage=stage_name))
        logger.info(f"Claim {claim_id}: stage '{stage_name}' completed via {stage.name}")
        return result

    async def _run_parsing(self, claim_id: str) -> None:
        if self.stages.parser is None:
            logger.debug(f"Claim {claim_id}: no parser configured, skipping parsing")
            return

        state = await self._state(claim_id)
        payload: Dict[str, Any] = {"document_id": state.claim.document_id}
        if claim_id in self._documents:
            document, page_count = self._documents[claim_id]
            payload.update(
                filename=document.filename,
                mime_type=document.mime_type,
                content=document.content,
                page_count=page_count,
            )

        result = await self._run_stage("parsing", self.stages.parser, payload, claim_id)
        await self.state_manager.set_parsed_document(claim_id, result.data or {})
        self._documents.pop(claim_id, None)

    async def _run_extraction(self, claim_id: str) -> bool:
        """Make sure the claim has extracted data; False means a human must supply it."""
        state = await self._state(claim_id)
        if state.extracted_claim:
            return True
        if self.stages.extractor is None:
            return False

        result = await self._run_stage("extraction", self.stages.extractor, state.parsed_document or {}, claim_id)
        if not result.data:
            return False
        await self.state_manager.set_extracted_claim(claim_id, result.data)
        return True

    async def _validate(self, claim_id: str) -> Tuple[ValidationOutcome, float]:
        state = await self._state(claim_id)
        extracted = state.extracted_claim or {}

        if self.stages.validator is None:
            outcome = ValidationOutcome(is_valid=True)
        else:
            result = await self._run_stage("validation", self.stages.validator, extracted, claim_id)
            outcome = ValidationOutcome.model_validate(result.data or {})
        await self.state_manager.set_validation_result(claim_id, outcome.model_dump())

        confidence = self.confidence_policy(extracted, outcome)
        return outcome, confidence

    async def _run_validation_and_beyond(self, claim_id: str, enrich: bool) -> WorkflowResult:
        state = await self._state(claim_id)
        if not state.extracted_claim:
            raise StageExecutionError("validation", "No extracted claim data")

        if enrich and self.stages.enricher is not None:
            result = await self._run_stage("enrichment", self.stages.enricher, state.extracted_claim, claim_id)
            if result.data:
                await self.state_manager.set_extracted_claim(claim_id, result.data)

        outcome, confidence = await self._validate(claim_id)
        action = self.state_manager.determine_next_action(confidence)
        logger.info(
            f"Claim {claim_id} validated: valid={outcome.is_valid}, errors={len(outcome.errors)}, "
            f"confidence={confidence:.2f}, next={action.value}"
        )

        while action == NextAction.CORRECT:
            state = await self._state(claim_id)
            if not self.state_manager.can_attempt_correction(state):
                return await self._escalate(claim_id, REASON_MAX_CORRECTIONS, outcome)

            try:
                attempt = await self.state_manager.increment_correction_attempts(claim_id)
            except MaxCorrectionAttemptsExceededError:
                return await self._escalate(claim_id, REASON_MAX_CORRECTIONS, outcome)

            await self.state_manager.transition_to(
                claim_id, ClaimStatus.CORRECTING,
                f"Attempting auto-correction {attempt}/{self.config.max_correction_attempts} "
                f"(confidence {confidence:.2f})"
            )
            await self._run_correction(claim_id, outcome)
            await self.state_manager.transition_to(claim_id, ClaimStatus.VALIDATING, "Re-validating after correction")

            outcome, confidence = await self._validate(claim_id)
            action = self.state_manager.determine_next_action(confidence)
            logger.info(f"Claim {claim_id} re-validated after correction {attempt}: confidence={confidence:.2f}, next={action.value}")

        if action == NextAction.REVIEW:
            return await self._escalate(claim_id, REASON_LOW_CONFIDENCE, outcome)

        escalation = await self._run_quality(claim_id)
        if escalation is not None:
            return escalation

        await self.state_manager.transition_to(claim_id, ClaimStatus.ADJUDICATING, "Starting adjudication")
        return await self._run_adjudication(claim_id)

    async def _run_correction(self, claim_id: str, outcome: ValidationOutcome) -> None:
        if self.stages.corrector is None:
            logger.info(f"Claim {claim_id}: no corrector configured, re-validating unchanged data")
            return

        state = await self._state(claim_id)
        result = await self._run_stage(
            "correction", self.stages.corrector, state.extracted_claim or {}, claim_id, validation=outcome
        )
        if result.data:
            await self.state_manager.set_extracted_claim(claim_id, result.data)

    async def _run_quality(self, claim_id: str) -> Optional[WorkflowResult]:
        """Optional quality gate; returns an escalation result when quality is too low."""
        if not self.config.enable_quality_assessment or self.stages.quality is None:
            return None

        state = await self._state(claim_id)
        result = await self._run_stage("quality", self.stages.quality, state.extracted_claim or {}, claim_id)
        data = dict(result.data or {})
        score = result.confidence_score
        if score is None:
            score = float(data.get("overall_score", 0.0))
        data.setdefault("overall_score", score)
        await self.state_manager.set_quality_result(claim_id, data)

        if score < self.config.auto_process_threshold:
            grade = data.get("grade")
            reason = f"quality score {score:.2f} below auto-process threshold" + (f" (grade {grade})" if grade else "")
            return await self._escalate(claim_id, reason)
        return None

    async def _run_adjudication(self, claim_id: str) -> WorkflowResult:
        state = await self._state(claim_id)
        if not state.extracted_claim:
            raise StageExecutionError("adjudication", "No extracted claim data")

        if self.stages.adjudicator is not None:
            result = await self._run_stage("adjudication", self.stages.adjudicator, state.extracted_claim, claim_id)
            await self.state_manager.set_adjudication_result(claim_id, result.data)

        if self.config.enable_indexing and self.stages.indexer is not None:
            try:
                await self._run_stage("indexing", self.stages.indexer, state.extracted_claim, claim_id)
            except StageExecutionError as e:
                # Indexing is best-effort
                logger.warning(f"Claim {claim_id}: indexing failed, continuing: {e}")

        await self.state_manager.transition_to(claim_id, ClaimStatus.COMPLETED, "Processing completed")
        return self._result(await self._state(claim_id), success=True)

    # ============================================
    # ESCALATION & HELPERS
    # ============================================

    async def _escalate(
        self,
        claim_id: str,
        reason: str,
        outcome: Optional[ValidationOutcome] = None
    ) -> WorkflowResult:
        """Suspend the claim in PENDING_REVIEW and queue it for a human."""
        state = await self.state_manager.transition_to(claim_id, ClaimStatus.PENDING_REVIEW, reason)

        fields: List[str] = list(outcome.low_confidence_fields) if outcome else []
        for name in low_confidence_fields(state.extracted_claim or {}, self.config.correction_threshold):
            if name not in fields:
                fields.append(name)

        priority = state.claim.priority
        await self.review_queue.enqueue(claim_id, reason, priority, fields)
        await self.event_bus.publish(WorkflowReviewRequired(claim_id=claim_id, reason=reason, priority=priority))

        logger.warning(f"Claim {claim_id} escalated to review: {reason}")
        return self._result(state, success=False, error=reason)

    async def _state(self, claim_id: str) -> ClaimState:
        state = await self.state_manager.get_state(claim_id)
        if state is None:
            raise ClaimNotFoundError(claim_id)
        return state

    @staticmethod
    def _apply_corrections(
        extracted: Optional[Dict[str, Any]],
        corrections: Optional[Dict[str, Any]]
    ) -> Dict[str, Any]:
        """Merge reviewer corrections; corrected fields are fully trusted."""
        merged = dict(extracted or {})
        corrections = dict(corrections or {})
        scores = dict(merged.get("confidence_scores") or {})
        scores.update(corrections.pop("confidence_scores", None) or {})

        for name, value in corrections.items():
            merged[name] = value
            if name in scores:
                scores[name] = 1.0

        if scores:
            merged["confidence_scores"] = scores
        return merged

    @staticmethod
    def _result(
        state: ClaimState,
        success: bool,
        error: Optional[str] = None,
        processing_time_ms: float = 0.0
    ) -> WorkflowResult:
        return WorkflowResult(
            success=success,
            claim_id=state.claim_id,
            final_status=state.status,
            error=error,
            processing_time_ms=processing_time_ms,
            extracted_claim=state.extracted_claim,
            validation_result=state.validation_result,
            adjudication_result=state.adjudication_result,
            quality_result=state.quality_result,
        )

    @staticmethod
    def _elapsed_ms(start: float) -> float:
        return (time.perf_counter() - start) * 1000
