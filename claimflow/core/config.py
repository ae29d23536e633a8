"""
Processing Configuration

Settings are read from the environment once at import time; a
ProcessingConfig built from them is what components receive.
"""
import os

from pydantic import BaseModel, Field, model_validator

# Routing and retry policy
MAX_CORRECTION_ATTEMPTS = int(os.getenv("MAX_CORRECTION_ATTEMPTS", "3"))
AUTO_PROCESS_CONFIDENCE_THRESHOLD = float(os.getenv("AUTO_PROCESS_CONFIDENCE_THRESHOLD", "0.85"))
CORRECTION_CONFIDENCE_THRESHOLD = float(os.getenv("CORRECTION_CONFIDENCE_THRESHOLD", "0.60"))

# Optional pipeline stages
ENABLE_QUALITY_ASSESSMENT = os.getenv("ENABLE_QUALITY_ASSESSMENT", "true").lower() == "true"
ENABLE_INDEXING = os.getenv("ENABLE_INDEXING", "true").lower() == "true"

# Intake limits
MAX_PDF_SIZE_BYTES = int(os.getenv("MAX_PDF_SIZE_BYTES", str(50 * 1024 * 1024)))
MAX_IMAGE_SIZE_BYTES = int(os.getenv("MAX_IMAGE_SIZE_BYTES", str(20 * 1024 * 1024)))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")


class ProcessingConfig(BaseModel):
    """Validated processing settings shared by the state manager and orchestrator."""
    max_correction_attempts: int = Field(default=3, ge=0)
    auto_process_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    correction_threshold: float = Field(default=0.60, ge=0.0, le=1.0)
    enable_quality_assessment: bool = True
    enable_indexing: bool = True
    max_pdf_size_bytes: int = Field(default=50 * 1024 * 1024, gt=0)
    max_image_size_bytes: int = Field(default=20 * 1024 * 1024, gt=0)

    @model_validator(mode="after")
    def _check_thresholds(self) -> "ProcessingConfig":
        if self.auto_process_threshold <= self.correction_threshold:
            raise ValueError(
                f"auto_process_threshold ({self.auto_process_threshold}) must be greater than "
                f"correction_threshold ({self.correction_threshold})"
            )
        return self

    @classmethod
    def from_env(cls) -> "ProcessingConfig":
        """Build a config from the environment-derived module settings."""
        return cls(
            max_correction_attempts=MAX_CORRECTION_ATTEMPTS,
            auto_process_threshold=AUTO_PROCESS_CONFIDENCE_THRESHOLD,
            correction_threshold=CORRECTION_CONFIDENCE_THRESHOLD,
            enable_quality_assessment=ENABLE_QUALITY_ASSESSMENT,
            enable_indexing=ENABLE_INDEXING,
            max_pdf_size_bytes=MAX_PDF_SIZE_BYTES,
            max_image_size_bytes=MAX_IMAGE_SIZE_BYTES,
        )
