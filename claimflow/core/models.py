"""
Claim Pydantic Models

Defines the data models for claims, their working state and the
results exchanged with stage collaborators.
"""
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .states import ClaimStatus, Priority


class ProcessingHistoryEntry(BaseModel):
    """Entry in the claim processing history."""
    status: ClaimStatus = Field(..., description="Status the claim entered")
    timestamp: datetime = Field(default_factory=datetime.now, description="When the status was entered")
    message: Optional[str] = Field(default=None, description="Why the status changed")


class ClaimRecord(BaseModel):
    """
    Durable claim record

    The identity of a unit of work with an append-only processing history.
    The last history entry always mirrors the current status.
    """
    id: str = Field(..., min_length=1, description="Unique claim identifier")
    status: ClaimStatus = Field(default=ClaimStatus.RECEIVED, description="Current lifecycle status")
    priority: Priority = Field(default=Priority.NORMAL, description="Processing priority")
    document_id: str = Field(..., description="Identifier of the source document")
    document_hash: str = Field(..., description="SHA-256 hash of the source document")
    document_type: Optional[str] = Field(default=None, description="Classified document type if known")
    created_at: datetime = Field(default_factory=datetime.now, description="Timestamp when claim was created")
    updated_at: datetime = Field(default_factory=datetime.now, description="Timestamp of last update")
    processing_history: List[ProcessingHistoryEntry] = Field(
        default_factory=list,
        description="Ordered history of every status the claim has entered"
    )
    metadata: Dict[str, str] = Field(default_factory=dict, description="Opaque caller metadata")
    extracted_claim: Optional[Dict[str, Any]] = Field(
        default=None,
        description="Extracted claim payload, persisted so processing can resume"
    )
    correction_attempts: int = Field(
        default=0,
        ge=0,
        description="Correction attempts spent, persisted so the budget survives restarts"
    )

    @model_validator(mode="after")
    def _check_history(self) -> "ClaimRecord":
        if not self.processing_history:
            raise ValueError("processing_history must contain at least one entry")
        if self.processing_history[-1].status != self.status:
            raise ValueError(
                f"last history status {self.processing_history[-1].status.value} "
                f"does not match status {self.status.value}"
            )
        return self

    @classmethod
    def create(
        cls,
        claim_id: str,
        document_id: str,
        document_hash: str,
        priority: Priority = Priority.NORMAL,
        metadata: Optional[Dict[str, str]] = None
    ) -> "ClaimRecord":
        """Create a new record in RECEIVED status."""
        now = datetime.now()
        return cls(
            id=claim_id,
            status=ClaimStatus.RECEIVED,
            priority=priority,
            document_id=document_id,
            document_hash=document_hash,
            created_at=now,
            updated_at=now,
            processing_history=[
                ProcessingHistoryEntry(status=ClaimStatus.RECEIVED, timestamp=now, message="Claim received")
            ],
            metadata=dict(metadata or {}),
        )

    def record_status_change(self, status: ClaimStatus, message: Optional[str] = None) -> ProcessingHistoryEntry:
        """
        Record a status change in history.

        Timestamps are kept strictly increasing even when two changes
        land within the clock's resolution.
        """
        now = datetime.now()
        last = self.processing_history[-1].timestamp
        if now <= last:
            now = last + timedelta(microseconds=1)

        entry = ProcessingHistoryEntry(status=status, timestamp=now, message=message)
        self.processing_history.append(entry)
        self.status = status
        self.updated_at = now
        return entry


class ClaimState(BaseModel):
    """
    Working state of a claim

    Owns one ClaimRecord plus the opaque payloads produced by stage collaborators.
    """
    claim: ClaimRecord
    extracted_claim: Optional[Dict[str, Any]] = None
    parsed_document: Optional[Dict[str, Any]] = None
    validation_result: Optional[Dict[str, Any]] = None
    adjudication_result: Optional[Dict[str, Any]] = None
    quality_result: Optional[Dict[str, Any]] = None
    correction_attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    @property
    def claim_id(self) -> str:
        return self.claim.id

    @property
    def status(self) -> ClaimStatus:
        return self.claim.status


class StateTransition(BaseModel):
    """Immutable record of a single status change."""
    model_config = ConfigDict(frozen=True)

    claim_id: str
    from_status: ClaimStatus
    to_status: ClaimStatus
    timestamp: datetime
    message: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class StageResult(BaseModel):
    """Response shape every stage collaborator returns."""
    success: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    confidence_score: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class ValidationOutcome(BaseModel):
    """Structured view over a validation stage's data."""
    is_valid: bool = False
    errors: List[Any] = Field(default_factory=list)
    warnings: List[Any] = Field(default_factory=list)
    low_confidence_fields: List[str] = Field(default_factory=list)


class DocumentInput(BaseModel):
    """Inbound document submitted for processing."""
    content: bytes = Field(..., description="Raw document bytes")
    filename: str = Field(..., min_length=1)
    mime_type: str = Field(..., description="Declared MIME type of the document")
    priority: Priority = Priority.NORMAL
    metadata: Dict[str, str] = Field(default_factory=dict)


class WorkflowResult(BaseModel):
    """Outcome of driving a claim through (part of) the pipeline."""
    success: bool
    claim_id: str
    final_status: ClaimStatus
    error: Optional[str] = None
    processing_time_ms: float = 0.0
    extracted_claim: Optional[Dict[str, Any]] = None
    validation_result: Optional[Dict[str, Any]] = None
    adjudication_result: Optional[Dict[str, Any]] = None
    quality_result: Optional[Dict[str, Any]] = None
