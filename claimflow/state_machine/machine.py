"""
Claim State Machine

Owns the transition graph and applies validated status changes to claim records.
"""
from typing import Dict, FrozenSet, List, Optional

from claimflow.core.errors import InvalidTransitionError
from claimflow.core.models import ClaimRecord, StateTransition
from claimflow.core.states import ClaimStatus


class ClaimStateMachine:
    """
    State machine for claim lifecycle transitions.

    The graph is fixed: COMPLETED has no way out and FAILED can only
    go back to RECEIVED for an operator resubmission.
    """

    # Define valid transitions (from_status -> set of valid to_statuses)
    TRANSITIONS: Dict[ClaimStatus, FrozenSet[ClaimStatus]] = {
        ClaimStatus.RECEIVED: frozenset({ClaimStatus.PARSING, ClaimStatus.FAILED}),
        ClaimStatus.PARSING: frozenset({ClaimStatus.EXTRACTING, ClaimStatus.FAILED}),
        ClaimStatus.EXTRACTING: frozenset({
            ClaimStatus.VALIDATING, ClaimStatus.PENDING_REVIEW, ClaimStatus.FAILED
        }),
        ClaimStatus.VALIDATING: frozenset({
            ClaimStatus.CORRECTING, ClaimStatus.PENDING_REVIEW, ClaimStatus.ADJUDICATING, ClaimStatus.FAILED
        }),
        ClaimStatus.CORRECTING: frozenset({
            ClaimStatus.VALIDATING, ClaimStatus.PENDING_REVIEW, ClaimStatus.FAILED
        }),
        ClaimStatus.PENDING_REVIEW: frozenset({
            ClaimStatus.VALIDATING, ClaimStatus.ADJUDICATING, ClaimStatus.COMPLETED, ClaimStatus.FAILED
        }),
        ClaimStatus.ADJUDICATING: frozenset({
            ClaimStatus.COMPLETED, ClaimStatus.PENDING_REVIEW, ClaimStatus.FAILED
        }),
        ClaimStatus.COMPLETED: frozenset(),  # Terminal state
        ClaimStatus.FAILED: frozenset({ClaimStatus.RECEIVED}),  # Operator resubmission only
    }

    def get_valid_transitions(self, status: ClaimStatus) -> List[ClaimStatus]:
        """Get the statuses reachable in one step from status."""
        return sorted(self.TRANSITIONS.get(status, frozenset()), key=lambda s: s.value)

    def can_transition(self, from_status: ClaimStatus, to_status: ClaimStatus) -> bool:
        """Check if a transition is part of the graph."""
        return to_status in self.TRANSITIONS.get(from_status, frozenset())

    def is_terminal(self, status: ClaimStatus) -> bool:
        return not self.TRANSITIONS.get(status)

    def validate_transition(self, claim: ClaimRecord, target: ClaimStatus) -> None:
        """
        Raise InvalidTransitionError unless claim may move to target.
        """
        if not self.can_transition(claim.status, target):
            raise InvalidTransitionError(
                claim.id,
                claim.status,
                target,
                valid=self.TRANSITIONS.get(claim.status, frozenset())
            )

    def transition(
        self,
        claim: ClaimRecord,
        target: ClaimStatus,
        message: Optional[str] = None,
        metadata: Optional[dict] = None
    ) -> StateTransition:
        """
        Execute a status transition on a claim record.

        Args:
            claim: The record to transition (mutated in place)
            target: The desired next status
            message: Optional reason stored in the processing history
            metadata: Optional data carried on the emitted transition

        Returns:
            The immutable StateTransition describing the change

        Raises:
            InvalidTransitionError: If the transition is not in the graph
        """
        self.validate_transition(claim, target)

        from_status = claim.status
        entry = claim.record_status_change(target, message)

        return StateTransition(
            claim_id=claim.id,
            from_status=from_status,
            to_status=target,
            timestamp=entry.timestamp,
            message=message,
            metadata=metadata,
        )
