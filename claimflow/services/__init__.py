# Services module - claim store and review queue collaborators
from .store import ClaimStore, InMemoryClaimStore
from .queue import ReviewQueue, InMemoryReviewQueue, ReviewQueueItem, ReviewRecord, QueueFilters

__all__ = [
    "ClaimStore",
    "InMemoryClaimStore",
    "ReviewQueue",
    "InMemoryReviewQueue",
    "ReviewQueueItem",
    "ReviewRecord",
    "QueueFilters",
]
