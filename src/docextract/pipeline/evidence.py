"""Evidence Separator - split raw items into clean data and provenance.

The evidence field set is fixed and closed. Every raw field ends up in
exactly one of the two outputs: evidence keys go to ``Evidence.fields``,
everything else passes through unchanged into ``CleanResult.data``.
"""

from typing import Optional
from uuid import UUID

from docextract.models import CleanResult, Evidence, ExtractionResult, RawItem
from docextract.models.result import (
    BOUNDING_BOX_KEYS,
    CONFIDENCE_KEYS,
    EXTRACTION_METHOD_KEY,
    LOCATION_KEYS,
    MISSING_FIELDS_KEY,
    PAGE_NUMBER_KEY,
    SOURCE_TEXT_INCOMPLETE_KEY,
    SOURCE_TEXT_KEYS,
    TRUNCATED_KEY,
)

EVIDENCE_FIELDS = frozenset(
    (
        *SOURCE_TEXT_KEYS,
        *LOCATION_KEYS,
        *CONFIDENCE_KEYS,
        *BOUNDING_BOX_KEYS,
        PAGE_NUMBER_KEY,
        EXTRACTION_METHOD_KEY,
        SOURCE_TEXT_INCOMPLETE_KEY,
        MISSING_FIELDS_KEY,
        TRUNCATED_KEY,
    )
)


def separate_evidence(raw_item: RawItem) -> tuple[CleanResult, Evidence]:
    """Partition a raw item into ``(clean_result, evidence)``.

    The field partition is deterministic: the same item always splits the
    same way. The clean result is a new record with its own ID and
    timestamps; it keeps the raw item's ID as ``raw_item_id`` along with its
    batch, document and page range.
    """
    data = {}
    evidence = {}
    for name, value in raw_item.fields.items():
        if name in EVIDENCE_FIELDS:
            evidence[name] = value
        else:
            data[name] = value

    clean = CleanResult(
        raw_item_id=raw_item.id,
        batch_id=raw_item.batch_id,
        document_id=raw_item.document_id,
        page_start=raw_item.page_start,
        page_end=raw_item.page_end,
        data=data,
    )
    return clean, Evidence(fields=evidence)


def to_extraction_result(raw_item: RawItem, job_id: Optional[UUID] = None) -> ExtractionResult:
    """Separate a raw item and wrap both halves as a storable result."""
    clean, evidence = separate_evidence(raw_item)
    return ExtractionResult(
        **clean.model_dump(exclude={"id", "created_at", "updated_at"}),
        job_id=job_id,
        evidence=evidence,
    )
