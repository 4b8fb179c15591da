"""Extracted item models: raw provider items, clean results and evidence."""

from typing import Any, Optional
from uuid import UUID

from pydantic import BaseModel, Field

from .base import BaseIRModel, ResultStatus

# Evidence-only keys a provider (or the parser) may attach to an item.
SOURCE_TEXT_KEYS = ("sourceText", "originalSnippet")
LOCATION_KEYS = ("location", "locationInDocument")
CONFIDENCE_KEYS = ("confidence", "confidenceScore")
BOUNDING_BOX_KEYS = ("boundingBox", "bbox")
PAGE_NUMBER_KEY = "pageNumber"
EXTRACTION_METHOD_KEY = "extractionMethod"
SOURCE_TEXT_INCOMPLETE_KEY = "sourceTextIncomplete"
MISSING_FIELDS_KEY = "missingFieldsInSourceText"
TRUNCATED_KEY = "truncated"


def _first_present(fields: dict[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = fields.get(key)
        if value not in (None, ""):
            return value
    return None


class RawItem(BaseIRModel):
    """One record as emitted by a single batch call."""

    batch_id: UUID
    document_id: Optional[UUID] = None
    page_start: int = Field(..., ge=1)
    page_end: int = Field(..., ge=1)
    fields: dict[str, Any] = Field(default_factory=dict)


class Evidence(BaseModel):
    """Provenance of an extracted record.

    ``fields`` holds the evidence keys exactly as they appeared on the raw
    item; the properties give typed access to the common ones.
    """

    fields: dict[str, Any] = Field(default_factory=dict)

    @property
    def source_text(self) -> Optional[str]:
        value = _first_present(self.fields, SOURCE_TEXT_KEYS)
        return None if value is None else str(value)

    @property
    def location(self) -> Optional[str]:
        value = _first_present(self.fields, LOCATION_KEYS)
        return None if value is None else str(value)

    @property
    def confidence(self) -> Optional[float]:
        value = _first_present(self.fields, CONFIDENCE_KEYS)
        if isinstance(value, bool) or value is None:
            return None
        try:
            return float(value)
        except (TypeError, ValueError):
            return None

    @property
    def bounding_box(self) -> Any:
        return _first_present(self.fields, BOUNDING_BOX_KEYS)

    @property
    def page_number(self) -> Optional[int]:
        value = self.fields.get(PAGE_NUMBER_KEY)
        try:
            return int(value) if value is not None else None
        except (TypeError, ValueError):
            return None

    @property
    def extraction_method(self) -> Optional[str]:
        return self.fields.get(EXTRACTION_METHOD_KEY)

    @property
    def source_text_incomplete(self) -> bool:
        return bool(self.fields.get(SOURCE_TEXT_INCOMPLETE_KEY, False))

    @property
    def truncated(self) -> bool:
        """True when the reply was cut inside this record and fields may be lost."""
        return bool(self.fields.get(TRUNCATED_KEY, False))


class CleanResult(BaseIRModel):
    """Raw item with every evidence-only field removed."""

    raw_item_id: Optional[UUID] = None
    batch_id: Optional[UUID] = None
    document_id: Optional[UUID] = None
    page_start: Optional[int] = Field(None, ge=1)
    page_end: Optional[int] = Field(None, ge=1)
    data: dict[str, Any] = Field(default_factory=dict)


class ExtractionResult(CleanResult):
    """Stored result: clean data plus its evidence and review state.

    ``superseded_by`` is a lookup-only back reference to the primary a
    result was merged into.
    """

    job_id: Optional[UUID] = None
    evidence: Evidence = Field(default_factory=Evidence)
    status: ResultStatus = Field(default=ResultStatus.PENDING)
    superseded_by: Optional[UUID] = None
    verified_data: Optional[dict[str, Any]] = None

    @property
    def is_superseded(self) -> bool:
        return self.status == ResultStatus.SUPERSEDED

    @property
    def confidence(self) -> Optional[float]:
        return self.evidence.confidence


class MergeRequest(BaseModel):
    """Consolidation of two or more results into ``primary_id``."""

    primary_id: UUID
    secondary_ids: list[UUID] = Field(default_factory=list)
    merged_data: dict[str, Any] = Field(default_factory=dict)


class JobSummary(BaseModel):
    """Per-job aggregates computed from the in-memory result set."""

    job_id: Optional[UUID] = None
    total_items: int = 0
    superseded_items: int = 0
    average_confidence: float = 0.0
    processed_files: int = 0
    total_files: int = 0
    total_batches: int = 0
    failed_batches: int = 0
