"""
Review Queue

Holds claims escalated for a human decision. The orchestrator only
enqueues and dequeues; reviewer assignment and history are for the
review tooling built on top.
"""
import logging
from datetime import datetime
from typing import Dict, List, Literal, Optional, Protocol, Tuple

from pydantic import BaseModel, Field

from claimflow.core.states import Priority, ReviewDecision

logger = logging.getLogger(__name__)


class ReviewQueueItem(BaseModel):
    """A claim waiting for human review."""
    claim_id: str
    priority: Priority
    reason: str
    added_at: datetime = Field(default_factory=datetime.now)
    assigned_to: Optional[str] = None
    assigned_at: Optional[datetime] = None
    low_confidence_fields: List[str] = Field(default_factory=list)


class ReviewRecord(BaseModel):
    """A decision a reviewer submitted for a claim."""
    decision: ReviewDecision
    reviewer_id: str = "reviewer"
    corrections: Dict[str, object] = Field(default_factory=dict)
    notes: Optional[str] = None
    decided_at: datetime = Field(default_factory=datetime.now)


class QueueFilters(BaseModel):
    """Filtering, sorting and pagination options for listing the queue."""
    priority: Optional[Priority] = None
    assigned_to: Optional[str] = None
    sort_by: Literal["priority", "added_at"] = "priority"
    sort_order: Literal["asc", "desc"] = "desc"
    limit: int = Field(default=50, gt=0)
    offset: int = Field(default=0, ge=0)


class ReviewQueue(Protocol):
    """Contract the orchestrator relies on."""

    async def enqueue(
        self,
        claim_id: str,
        reason: str,
        priority: Priority,
        low_confidence_fields: Optional[List[str]] = None
    ) -> ReviewQueueItem: ...

    async def dequeue(self, claim_id: str) -> bool: ...

    async def list(self, filters: Optional[QueueFilters] = None) -> Tuple[List[ReviewQueueItem], int]: ...

    async def record_decision(self, claim_id: str, record: ReviewRecord) -> None: ...


class InMemoryReviewQueue:
    """Review queue kept in process memory."""

    def __init__(self):
        self._queue: Dict[str, ReviewQueueItem] = {}
        self._history: Dict[str, List[ReviewRecord]] = {}

    async def enqueue(
        self,
        claim_id: str,
        reason: str,
        priority: Priority,
        low_confidence_fields: Optional[List[str]] = None
    ) -> ReviewQueueItem:
        item = ReviewQueueItem(
            claim_id=claim_id,
            priority=priority,
            reason=reason,
            low_confidence_fields=list(low_confidence_fields or []),
        )
        self._queue[claim_id] = item

        logger.info(
            f"Claim {claim_id} added to review queue "
            f"(priority={priority.value}, fields={len(item.low_confidence_fields)}): {reason}"
        )
        return item

    async def dequeue(self, claim_id: str) -> bool:
        removed = self._queue.pop(claim_id, None) is not None
        if removed:
            logger.info(f"Claim {claim_id} removed from review queue")
        return removed

    async def list(self, filters: Optional[QueueFilters] = None) -> Tuple[List[ReviewQueueItem], int]:
        """
        List queued items.

        Returns:
            Tuple of (page of items, total matching items)
        """
        filters = filters or QueueFilters()
        items = list(self._queue.values())

        if filters.priority is not None:
            items = [i for i in items if i.priority == filters.priority]
        if filters.assigned_to is not None:
            items = [i for i in items if i.assigned_to == filters.assigned_to]

        if filters.sort_by == "priority":
            # Oldest first within a priority band
            items.sort(key=lambda i: i.added_at)
            items.sort(key=lambda i: i.priority.rank, reverse=filters.sort_order == "desc")
        else:
            items.sort(key=lambda i: i.added_at, reverse=filters.sort_order == "desc")

        total = len(items)
        return items[filters.offset:filters.offset + filters.limit], total

    async def get(self, claim_id: str) -> Optional[ReviewQueueItem]:
        return self._queue.get(claim_id)

    async def assign_reviewer(self, claim_id: str, reviewer_id: str) -> bool:
        item = self._queue.get(claim_id)
        if item is None:
            return False

        item.assigned_to = reviewer_id
        item.assigned_at = datetime.now()
        logger.info(f"Reviewer {reviewer_id} assigned to claim {claim_id}")
        return True

    async def unassign_reviewer(self, claim_id: str) -> bool:
        item = self._queue.get(claim_id)
        if item is None:
            return False

        item.assigned_to = None
        item.assigned_at = None
        logger.info(f"Reviewer unassigned from claim {claim_id}")
        return True

    async def get_claims_by_reviewer(self, reviewer_id: str) -> List[ReviewQueueItem]:
        return [i for i in self._queue.values() if i.assigned_to == reviewer_id]

    async def update_priority(self, claim_id: str, priority: Priority) -> bool:
        item = self._queue.get(claim_id)
        if item is None:
            return False

        old = item.priority
        item.priority = priority
        logger.info(f"Claim {claim_id} queue priority changed {old.value} -> {priority.value}")
        return True

    async def record_decision(self, claim_id: str, record: ReviewRecord) -> None:
        self._history.setdefault(claim_id, []).append(record)
        logger.info(f"Review decision '{record.decision.value}' recorded for claim {claim_id} by {record.reviewer_id}")

    async def get_review_history(self, claim_id: str) -> List[ReviewRecord]:
        return list(self._history.get(claim_id, []))

    async def get_stats(self) -> dict:
        """Summary statistics over the current queue."""
        items = list(self._queue.values())
        now = datetime.now()

        by_priority = {p.value: 0 for p in Priority}
        assigned = 0
        total_wait_ms = 0.0
        for item in items:
            by_priority[item.priority.value] += 1
            if item.assigned_to:
                assigned += 1
            total_wait_ms += (now - item.added_at).total_seconds() * 1000

        return {
            "total": len(items),
            "by_priority": by_priority,
            "assigned": assigned,
            "unassigned": len(items) - assigned,
            "average_wait_time_ms": total_wait_ms / len(items) if items else 0.0,
        }

    async def clear(self) -> None:
        self._queue.clear()
        logger.warning("Review queue cleared")

    def __contains__(self, claim_id: str) -> bool:
        return claim_id in self._queue

    def __len__(self) -> int:
        return len(self._queue)
