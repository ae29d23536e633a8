"""
Post-validation Confidence

The orchestrator takes the confidence policy as a plain callable so the
scoring formula can be swapped without touching routing.
"""
from typing import Any, Callable, Dict, Optional

from claimflow.core.models import ValidationOutcome

ConfidencePolicy = Callable[[Dict[str, Any], Optional[ValidationOutcome]], float]

DEFAULT_FIELD_CONFIDENCE = 0.8
ERROR_PENALTY = 0.05
MAX_ERROR_PENALTY = 0.3
VALID_BONUS = 0.1


def default_confidence_policy(
    extracted_claim: Dict[str, Any],
    validation: Optional[ValidationOutcome] = None
) -> float:
    """
    Score extraction plus validation in [0, 1].

    Mean of the per-field confidence scores, minus a capped penalty per
    validation error, plus a bonus when validation passed.
    """
    scores = [float(s) for s in (extracted_claim.get("confidence_scores") or {}).values()]
    base = sum(scores) / len(scores) if scores else DEFAULT_FIELD_CONFIDENCE

    penalty = 0.0
    bonus = 0.0
    if validation is not None:
        penalty = min(MAX_ERROR_PENALTY, len(validation.errors) * ERROR_PENALTY)
        bonus = VALID_BONUS if validation.is_valid else 0.0

    return min(1.0, max(0.0, base - penalty + bonus))


def low_confidence_fields(extracted_claim: Dict[str, Any], threshold: float) -> list:
    """Fields whose extraction confidence falls below threshold."""
    scores = extracted_claim.get("confidence_scores") or {}
    return sorted(name for name, score in scores.items() if float(score) < threshold)
