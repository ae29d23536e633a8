"""
Claim Processing Errors

Caller errors (not found, duplicate, invalid transition, invalid review
state) are raised synchronously and leave state untouched. Stage errors are
recovered per claim by the orchestrator.
"""
from typing import Iterable, Optional


class ClaimFlowError(Exception):
    """Base class for all claim processing errors."""


class ClaimNotFoundError(ClaimFlowError):
    """Raised when a claim id is unknown to the state manager."""

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Claim not found: {claim_id}")


# Shorter alias used throughout the public API
NotFoundError = ClaimNotFoundError


class DuplicateClaimError(ClaimFlowError):
    """Raised when creating a claim whose id already exists."""

    def __init__(self, claim_id: str):
        self.claim_id = claim_id
        super().__init__(f"Claim already exists: {claim_id}")


class InvalidTransitionError(ClaimFlowError):
    """Raised when a status pair is not part of the transition graph."""

    def __init__(
        self,
        claim_id: str,
        from_status,
        to_status,
        valid: Optional[Iterable] = None
    ):
        self.claim_id = claim_id
        self.from_status = from_status
        self.to_status = to_status
        self.valid = sorted(s.value for s in (valid or []))
        super().__init__(
            f"Invalid transition for claim {claim_id} from {from_status.value} to {to_status.value}. "
            f"Valid transitions: {self.valid}"
        )


class StageExecutionError(ClaimFlowError):
    """Raised when a stage collaborator throws or reports failure."""

    def __init__(self, stage: str, message: str):
        self.stage = stage
        self.message = message
        super().__init__(f"Stage '{stage}' failed: {message}")


class MaxCorrectionAttemptsExceededError(ClaimFlowError):
    """
    Raised when the correction budget for a claim is spent.

    The orchestrator turns this into an escalation to human review,
    never into a failed claim.
    """

    def __init__(self, claim_id: str, attempts: int):
        self.claim_id = claim_id
        self.attempts = attempts
        super().__init__(f"Claim {claim_id}: max correction attempts reached ({attempts})")


class InvalidReviewStateError(ClaimFlowError):
    """Raised when a review is submitted for a claim that is not pending review."""

    def __init__(self, claim_id: str, status):
        self.claim_id = claim_id
        self.status = status
        super().__init__(f"Claim {claim_id} is not pending review: {status.value}")


class IntakeRejectedError(ClaimFlowError):
    """Raised when an inbound document fails intake checks."""
