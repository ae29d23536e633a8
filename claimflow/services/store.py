"""
Claim Store

Persistence contract for claim records and an in-memory implementation.
"""
import logging
from typing import Dict, Optional, Protocol

from claimflow.core.models import ClaimRecord

logger = logging.getLogger(__name__)


class ClaimStore(Protocol):
    """Key-value persistence for claim records, keyed by claim id."""

    async def put(self, claim_id: str, record: ClaimRecord) -> None: ...

    async def get(self, claim_id: str) -> Optional[ClaimRecord]: ...

    async def delete(self, claim_id: str) -> bool: ...

    async def find_by_document_hash(self, document_hash: str) -> Optional[str]: ...


class InMemoryClaimStore:
    """
    Claim store backed by a dict of JSON-mode dumps.

    Records are serialized on put and rebuilt on get, so callers never
    share objects with the store.
    """

    def __init__(self):
        self._records: Dict[str, dict] = {}

    async def put(self, claim_id: str, record: ClaimRecord) -> None:
        self._records[claim_id] = record.model_dump(mode="json")
        logger.debug(f"Claim {claim_id} stored with status {record.status.value}")

    async def get(self, claim_id: str) -> Optional[ClaimRecord]:
        data = self._records.get(claim_id)
        if data is None:
            return None
        return ClaimRecord.model_validate(data)

    async def delete(self, claim_id: str) -> bool:
        return self._records.pop(claim_id, None) is not None

    async def find_by_document_hash(self, document_hash: str) -> Optional[str]:
        for claim_id, data in self._records.items():
            if data.get("document_hash") == document_hash:
                return claim_id
        return None

    def __len__(self) -> int:
        return len(self._records)
