"""
Claim Status Definitions

Defines the lifecycle statuses, priorities and routing vocabulary
for claims moving through the processing pipeline.
"""
from enum import Enum


class ClaimStatus(str, Enum):
    """
    Enum representing the lifecycle status of a claim.

    Happy path: RECEIVED -> PARSING -> EXTRACTING -> VALIDATING -> ADJUDICATING -> COMPLETED
    With correction: VALIDATING -> CORRECTING -> VALIDATING (bounded)
    With escalation: ... -> PENDING_REVIEW -> (VALIDATING | ADJUDICATING | COMPLETED | FAILED)
    """
    RECEIVED = "received"
    PARSING = "parsing"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    CORRECTING = "correcting"
    PENDING_REVIEW = "pending_review"  # Suspend point - waits for a human decision
    ADJUDICATING = "adjudicating"
    COMPLETED = "completed"  # Terminal
    FAILED = "failed"  # Only way out is an operator resubmission


class Priority(str, Enum):
    """Processing priority of a claim."""
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {Priority.NORMAL: 1, Priority.HIGH: 2, Priority.URGENT: 3}


class NextAction(str, Enum):
    """Routing decision derived from a confidence score."""
    AUTO_PROCESS = "auto_process"
    CORRECT = "correct"
    REVIEW = "review"


class ReviewDecision(str, Enum):
    """Decision a human reviewer can submit for a claim in PENDING_REVIEW."""
    APPROVE = "approve"
    REJECT = "reject"
    CORRECT = "correct"
