"""
Simulated Stage Collaborators

Stand-ins for the OCR, extraction, enrichment, validation, correction,
quality, adjudication and indexing services. Each simulates a little I/O
latency and applies simple heuristics so the pipeline can be exercised
end to end without external services.
"""
import asyncio
import json
import logging
from typing import Any, Dict, List

from claimflow.core.models import StageResult

from .base import StageCollaborators, StageContext

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = ("patient", "provider", "service_lines")
DEFAULT_ALLOWED_RATIO = 0.8


class SimulatedParser:
    """
    Parser: pulls the text layer out of a document.

    The simulated documents carry their content as an embedded JSON body.
    """
    name = "simulated-parser"

    def __init__(self, latency: float = 0.01):
        self.latency = latency

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        content: bytes = payload.get("content") or b""
        text = content.decode("latin-1")
        if not text.strip():
            return StageResult(success=False, error="Document has no text layer")

        return StageResult(
            success=True,
            data={"text": text, "page_count": payload.get("page_count", 1)},
            confidence_score=0.95,
        )


class SimulatedExtractor:
    """Extractor: turns parsed text into structured claim fields."""
    name = "simulated-extractor"

    def __init__(self, latency: float = 0.01, field_confidence: float = 0.9):
        self.latency = latency
        self.field_confidence = field_confidence

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        text = payload.get("text", "")
        start, end = text.find("{"), text.rfind("}")
        if start == -1 or end <= start:
            return StageResult(success=False, error="No structured content found in document")

        try:
            fields = json.loads(text[start:end + 1])
        except json.JSONDecodeError as e:
            return StageResult(success=False, error=f"Unreadable claim content: {e}")

        scores = fields.pop("confidence_scores", None) or {
            name: self.field_confidence for name in fields
        }
        extracted = {"id": context.claim_id, **fields, "confidence_scores": scores}

        logger.info(f"Extracted {len(fields)} field(s) for claim {context.claim_id}")
        return StageResult(
            success=True,
            data=extracted,
            confidence_score=sum(scores.values()) / len(scores) if scores else 0.0,
        )


class SimulatedEnricher:
    """Enricher: normalizes codes and fills derived totals."""
    name = "simulated-enricher"

    def __init__(self, latency: float = 0.01):
        self.latency = latency

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        enriched = dict(payload)
        lines = enriched.get("service_lines") or []
        enriched["service_lines"] = [
            {**line, "procedure_code": str(line.get("procedure_code", "")).strip().upper()}
            for line in lines
        ]
        if "total_charges" not in enriched and lines:
            enriched["total_charges"] = round(sum(float(l.get("charge", 0)) for l in lines), 2)

        return StageResult(success=True, data=enriched)


class SimulatedValidator:
    """Validator: checks required fields and charge consistency."""
    name = "simulated-validator"

    def __init__(self, latency: float = 0.01):
        self.latency = latency

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        errors: List[str] = [f"Missing required field: {name}" for name in REQUIRED_FIELDS if not payload.get(name)]
        warnings: List[str] = []

        lines = payload.get("service_lines") or []
        if lines and "total_charges" in payload:
            line_total = round(sum(float(l.get("charge", 0)) for l in lines), 2)
            if abs(line_total - float(payload["total_charges"])) > 0.01:
                errors.append(
                    f"Total charges {payload['total_charges']} do not match service lines {line_total}"
                )
        if not payload.get("diagnoses"):
            warnings.append("No diagnosis codes present")

        scores = payload.get("confidence_scores") or {}
        low = sorted(name for name, score in scores.items() if score < 0.6)

        return StageResult(
            success=True,
            data={
                "is_valid": not errors,
                "errors": errors,
                "warnings": warnings,
                "low_confidence_fields": low,
            },
        )


class SimulatedCorrector:
    """Corrector: repairs mechanically fixable validation errors."""
    name = "simulated-corrector"

    def __init__(self, latency: float = 0.01):
        self.latency = latency

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        corrected = dict(payload)
        lines = corrected.get("service_lines") or []
        if lines:
            # Service lines are the source of truth for the total
            corrected["total_charges"] = round(sum(float(l.get("charge", 0)) for l in lines), 2)

        scores = dict(corrected.get("confidence_scores") or {})
        if "total_charges" in scores:
            scores["total_charges"] = max(scores["total_charges"], 0.9)
        corrected["confidence_scores"] = scores

        logger.info(f"Applied corrections for claim {context.claim_id} (attempt {context.correction_attempts})")
        return StageResult(success=True, data=corrected)


class SimulatedQualityAssessor:
    """Quality: grades the extraction from its field confidence."""
    name = "simulated-quality"

    def __init__(self, latency: float = 0.01):
        self.latency = latency

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        scores = list((payload.get("confidence_scores") or {}).values())
        overall = sum(scores) / len(scores) if scores else 0.0
        grade = "A" if overall >= 0.9 else "B" if overall >= 0.8 else "C" if overall >= 0.7 else "D"

        return StageResult(
            success=True,
            data={"overall_score": round(overall, 4), "grade": grade, "requires_review": grade in ("C", "D")},
            confidence_score=min(1.0, max(0.0, overall)),
        )


class SimulatedAdjudicator:
    """Adjudicator: applies a flat allowed ratio to billed charges."""
    name = "simulated-adjudicator"

    def __init__(self, latency: float = 0.01, allowed_ratio: float = DEFAULT_ALLOWED_RATIO):
        self.latency = latency
        self.allowed_ratio = allowed_ratio

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)

        billed = float(payload.get("total_charges", 0))
        allowed = round(billed * self.allowed_ratio, 2)

        return StageResult(
            success=True,
            data={
                "decision": "approved" if billed > 0 else "denied",
                "billed_amount": billed,
                "allowed_amount": allowed,
                "patient_responsibility": round(billed - allowed, 2),
            },
        )


class SimulatedIndexer:
    """Indexer: records which claims were indexed."""
    name = "simulated-indexer"

    def __init__(self, latency: float = 0.01):
        self.latency = latency
        self.indexed: List[str] = []

    async def run(self, payload: Dict[str, Any], context: StageContext) -> StageResult:
        await asyncio.sleep(self.latency)
        self.indexed.append(context.claim_id)
        return StageResult(success=True, data={"indexed": True})


def simulated_collaborators(latency: float = 0.01) -> StageCollaborators:
    """Build a full set of simulated collaborators."""
    return StageCollaborators(
        parser=SimulatedParser(latency),
        extractor=SimulatedExtractor(latency),
        enricher=SimulatedEnricher(latency),
        validator=SimulatedValidator(latency),
        corrector=SimulatedCorrector(latency),
        quality=SimulatedQualityAssessor(latency),
        adjudicator=SimulatedAdjudicator(latency),
        indexer=SimulatedIndexer(latency),
    )
