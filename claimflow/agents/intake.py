"""
Intake Agent Module

Checks inbound documents before a claim exists for them and mints the
claim identity.
"""
import hashlib
import logging
import re
import time
import uuid
from typing import Optional

from pydantic import BaseModel

from claimflow.core.config import ProcessingConfig
from claimflow.core.errors import IntakeRejectedError
from claimflow.core.models import DocumentInput
from claimflow.state_machine.manager import StateManager

logger = logging.getLogger(__name__)

SUPPORTED_MIME_TYPES = (
    "application/pdf",
    "image/png",
    "image/jpeg",
    "image/tiff",
)

_PDF_PAGE_MARKER = re.compile(rb"/Type\s*/Page[^s]")


class IntakeResult(BaseModel):
    """Identity assigned to an accepted document."""
    claim_id: str
    document_id: str
    document_hash: str
    page_count: int = 1


def calculate_document_hash(content: bytes) -> str:
    return hashlib.sha256(content).hexdigest()


def generate_claim_id() -> str:
    return f"CLM-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8].upper()}"


def estimate_pdf_page_count(content: bytes) -> int:
    """Rough page count from '/Type /Page' markers."""
    return max(len(_PDF_PAGE_MARKER.findall(content)), 1)


class IntakeStage:
    """
    Accepts or rejects an inbound document.

    Rejections: unsupported MIME type, oversize file, or a document whose
    hash is already attached to another claim.
    """
    name = "intake"

    def __init__(self, state_manager: StateManager, config: Optional[ProcessingConfig] = None):
        self.state_manager = state_manager
        self.config = config or state_manager.config

    async def run(self, document: DocumentInput, document_hash: Optional[str] = None) -> IntakeResult:
        """
        Run intake checks on a document.

        Args:
            document: The inbound document
            document_hash: Precomputed SHA-256 of the content, if the caller has it

        Raises:
            IntakeRejectedError: If the document cannot be accepted
        """
        if document.mime_type not in SUPPORTED_MIME_TYPES:
            raise IntakeRejectedError(
                f"Unsupported file type: {document.mime_type}. Supported types: PDF, PNG, JPEG, TIFF"
            )

        max_size = (
            self.config.max_pdf_size_bytes
            if document.mime_type == "application/pdf"
            else self.config.max_image_size_bytes
        )
        size = len(document.content)
        if size == 0:
            raise IntakeRejectedError(f"Document {document.filename} is empty")
        if size > max_size:
            raise IntakeRejectedError(f"File size {size} exceeds maximum {max_size} bytes")

        document_hash = document_hash or calculate_document_hash(document.content)
        existing = await self.state_manager.find_by_document_hash(document_hash)
        if existing:
            raise IntakeRejectedError(f"Duplicate document detected. Existing claim ID: {existing}")

        page_count = 1
        if document.mime_type == "application/pdf":
            page_count = estimate_pdf_page_count(document.content)

        result = IntakeResult(
            claim_id=generate_claim_id(),
            document_id=f"DOC-{uuid.uuid4().hex[:12]}",
            document_hash=document_hash,
            page_count=page_count,
        )
        logger.info(
            f"Accepted {document.filename} ({document.mime_type}, {size} bytes, "
            f"{page_count} page(s)) as claim {result.claim_id}"
        )
        return result
