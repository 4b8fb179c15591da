"""Base models and common types for the extraction pipeline."""

from datetime import datetime
from enum import Enum
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class JobStatus(str, Enum):
    """Lifecycle of an extraction job."""

    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)


class BatchState(str, Enum):
    """Per-batch state machine driven by the runner."""

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    SUCCEEDED = "succeeded"
    FAILED_RETRYABLE = "failed_retryable"
    FAILED_TERMINAL = "failed_terminal"


class ExtractionMode(str, Enum):
    """How page content reaches the provider."""

    OCR_TEXT = "ocr_text"  # OCR text (and tables) in the user prompt
    VISION_PAGE = "vision_page"  # one rendered page image per call
    PDF_BATCH = "pdf_batch"  # all page images of a batch in one call


class ResultStatus(str, Enum):
    """Review status of a stored extraction result."""

    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EDITED = "edited"
    SUPERSEDED = "superseded"


class ConfidenceLevel(str, Enum):
    """Confidence classification for extracted values."""

    HIGH = "high"  # >0.9 confidence
    MEDIUM = "medium"  # 0.7-0.9 confidence
    LOW = "low"  # 0.5-0.7 confidence
    VERY_LOW = "very_low"  # <0.5 confidence


class BaseIRModel(BaseModel):
    """Base class for all IR models with common fields."""

    id: UUID = Field(default_factory=uuid4)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Config:
        from_attributes = True  # For SQLAlchemy compatibility


def confidence_to_level(confidence: float) -> ConfidenceLevel:
    """Convert numeric confidence to confidence level.

    Args:
        confidence: Confidence score (0-100 or 0-1).

    Returns:
        ConfidenceLevel enum value.
    """
    # Normalize to 0-1 range
    if confidence > 1:
        confidence = confidence / 100.0

    if confidence >= 0.9:
        return ConfidenceLevel.HIGH
    elif confidence >= 0.7:
        return ConfidenceLevel.MEDIUM
    elif confidence >= 0.5:
        return ConfidenceLevel.LOW
    else:
        return ConfidenceLevel.VERY_LOW
