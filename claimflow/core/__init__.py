# Core module - statuses, models, errors and configuration
from .states import ClaimStatus, Priority, NextAction, ReviewDecision
from .models import (
    ClaimRecord,
    ClaimState,
    DocumentInput,
    ProcessingHistoryEntry,
    StageResult,
    StateTransition,
    ValidationOutcome,
    WorkflowResult,
)
from .errors import (
    ClaimFlowError,
    ClaimNotFoundError,
    NotFoundError,
    DuplicateClaimError,
    InvalidTransitionError,
    StageExecutionError,
    MaxCorrectionAttemptsExceededError,
    InvalidReviewStateError,
    IntakeRejectedError,
)
from .config import ProcessingConfig

__all__ = [
    "ClaimStatus",
    "Priority",
    "NextAction",
    "ReviewDecision",
    "ClaimRecord",
    "ClaimState",
    "DocumentInput",
    "ProcessingHistoryEntry",
    "StageResult",
    "StateTransition",
    "ValidationOutcome",
    "WorkflowResult",
    "ClaimFlowError",
    "ClaimNotFoundError",
    "NotFoundError",
    "DuplicateClaimError",
    "InvalidTransitionError",
    "StageExecutionError",
    "MaxCorrectionAttemptsExceededError",
    "InvalidReviewStateError",
    "IntakeRejectedError",
    "ProcessingConfig",
]
