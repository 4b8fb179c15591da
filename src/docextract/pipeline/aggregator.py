"""Result Aggregator - consolidation, merge and per-job statistics.

Works purely on the in-memory result set of a job. Superseded results are
never removed: they stay in the set with a ``superseded_by`` back reference
to the result they were merged into.
"""

import logging
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from docextract.errors import MergeError
from docextract.models import (
    ExtractionJob,
    ExtractionResult,
    JobSummary,
    RawItem,
    ResultStatus,
)
from docextract.models.result import CONFIDENCE_KEYS, LOCATION_KEYS, PAGE_NUMBER_KEY, SOURCE_TEXT_KEYS
from docextract.pipeline.evidence import to_extraction_result

logger = logging.getLogger(__name__)


def _is_empty(value: Any) -> bool:
    return value is None or value == "" or value == [] or value == {}


def _normalize(value: Any) -> Any:
    if isinstance(value, str):
        return " ".join(value.lower().split())
    return value


def _position(result: ExtractionResult) -> tuple:
    return (
        str(result.document_id or ""),
        result.page_start or 0,
        result.page_end or 0,
    )


class ResultAggregator:
    """Collects the results of one job.

    Example:
        aggregator = ResultAggregator(job_id=job.id)
        aggregator.add_raw_items(batch_result.items)
        aggregator.consolidate()
        summary = aggregator.summary(processed_files=1, total_files=1)
    """

    def __init__(
        self,
        job_id: Optional[UUID] = None,
        results: Optional[Iterable[ExtractionResult]] = None,
    ):
        self.job_id = job_id
        self._results: dict[UUID, ExtractionResult] = {}
        if results is not None:
            self.add_many(results)

    def __len__(self) -> int:
        return len(self._results)

    def add(self, result: ExtractionResult) -> ExtractionResult:
        if result.job_id is None and self.job_id is not None:
            result.job_id = self.job_id
        self._results[result.id] = result
        return result

    def add_many(self, results: Iterable[ExtractionResult]) -> list[ExtractionResult]:
        return [self.add(result) for result in results]

    def add_raw_items(self, raw_items: Iterable[RawItem]) -> list[ExtractionResult]:
        """Separate evidence from raw items and collect the results."""
        return [self.add(to_extraction_result(item, job_id=self.job_id)) for item in raw_items]

    def get(self, result_id: UUID) -> Optional[ExtractionResult]:
        return self._results.get(result_id)

    @property
    def results(self) -> list[ExtractionResult]:
        """Every result, superseded ones included, in document order."""
        return sorted(self._results.values(), key=_position)

    def active(self) -> list[ExtractionResult]:
        """Results that have not been merged into another one."""
        return [result for result in self.results if not result.is_superseded]

    # ------------------------------------------------------------------
    # Confidence
    # ------------------------------------------------------------------

    def average_confidence(self) -> float:
        """Mean of the positive confidence scores of active results.

        Results without a score (or with zero) are left out rather than
        counted as zero.
        """
        scores = [
            result.confidence
            for result in self.active()
            if result.confidence is not None and result.confidence > 0
        ]
        if not scores:
            return 0.0
        return sum(scores) / len(scores)

    # ------------------------------------------------------------------
    # Cross-batch consolidation
    # ------------------------------------------------------------------

    def consolidate(self, identity_fields: Optional[Sequence[str]] = None) -> list[ExtractionResult]:
        """Fold partial items of one entity split across adjacent batches.

        Two results are the same entity when they come from the same
        document, from different batches whose page ranges touch, and

        - with ``identity_fields``: every identity field is non-empty in
          both and the values are equal (case and whitespace insensitive);
        - without: they share at least one non-empty field, all shared
          non-empty fields agree and the shared fields make up at least
          half of the fields either of them has.

        The earlier result stays primary: it takes over fields it was
        missing, joins evidence and widens its page range. The later one is
        marked superseded.

        Returns:
            Primaries that absorbed at least one result.
        """
        primaries: list[ExtractionResult] = []
        changed: dict[UUID, ExtractionResult] = {}

        for result in self.active():
            target = next(
                (
                    primary
                    for primary in reversed(primaries)
                    if self._same_entity(primary, result, identity_fields)
                ),
                None,
            )
            if target is None:
                primaries.append(result)
                continue
            self._absorb(target, result)
            changed[target.id] = target

        if changed:
            logger.info("Consolidated cross-batch duplicates into %d result(s)", len(changed))
        return list(changed.values())

    @staticmethod
    def _same_entity(
        primary: ExtractionResult,
        candidate: ExtractionResult,
        identity_fields: Optional[Sequence[str]],
    ) -> bool:
        if primary.document_id != candidate.document_id:
            return False
        if primary.batch_id is not None and primary.batch_id == candidate.batch_id:
            return False
        if primary.page_end is None or candidate.page_start is None:
            return False
        if candidate.page_start > primary.page_end + 1:
            return False

        if identity_fields:
            for name in identity_fields:
                left = primary.data.get(name)
                right = candidate.data.get(name)
                if _is_empty(left) or _is_empty(right) or _normalize(left) != _normalize(right):
                    return False
            return True

        left_fields = {name for name, value in primary.data.items() if not _is_empty(value)}
        right_fields = {name for name, value in candidate.data.items() if not _is_empty(value)}
        shared = left_fields & right_fields
        if not shared:
            return False
        if any(_normalize(primary.data[name]) != _normalize(candidate.data[name]) for name in shared):
            return False
        return len(shared) * 2 >= len(left_fields | right_fields)

    def _absorb(self, primary: ExtractionResult, secondary: ExtractionResult) -> None:
        merged = dict(primary.data)
        for name, value in secondary.data.items():
            if _is_empty(merged.get(name)) and not _is_empty(value):
                merged[name] = value
        primary.data = merged
        primary.evidence = primary.evidence.model_copy(
            update={"fields": _merge_evidence(primary.evidence.fields, secondary.evidence.fields)}
        )
        primary.page_end = max(primary.page_end or 0, secondary.page_end or 0)
        primary.updated_at = datetime.utcnow()
        self._supersede(secondary, primary.id)

    @staticmethod
    def _supersede(result: ExtractionResult, primary_id: UUID) -> None:
        result.status = ResultStatus.SUPERSEDED
        result.superseded_by = primary_id
        result.updated_at = datetime.utcnow()

    # ------------------------------------------------------------------
    # User-initiated merge
    # ------------------------------------------------------------------

    def merge(
        self,
        primary_id: UUID,
        secondary_ids: Sequence[UUID],
        merged_data: dict[str, Any],
    ) -> ExtractionResult:
        """Consolidate ``secondary_ids`` into ``primary_id``.

        The primary's data is replaced by ``merged_data`` and accepted; the
        secondaries are marked superseded. Nothing changes unless the whole
        request is valid.

        Raises:
            MergeError: Empty or duplicate secondaries, primary listed as a
                secondary, unknown ids, or results that are already
                superseded.
        """
        if not secondary_ids:
            raise MergeError("Merge needs at least one secondary result")
        if primary_id in secondary_ids:
            raise MergeError("Primary result cannot also be a secondary")
        if len(set(secondary_ids)) != len(secondary_ids):
            raise MergeError("Secondary results must be distinct")

        unknown = [str(rid) for rid in (primary_id, *secondary_ids) if rid not in self._results]
        if unknown:
            raise MergeError(f"Unknown result id(s): {', '.join(unknown)}")

        primary = self._results[primary_id]
        secondaries = [self._results[rid] for rid in secondary_ids]
        superseded = [str(result.id) for result in (primary, *secondaries) if result.is_superseded]
        if superseded:
            raise MergeError(f"Result(s) already superseded: {', '.join(superseded)}")

        primary.data = dict(merged_data)
        primary.verified_data = dict(merged_data)
        primary.status = ResultStatus.ACCEPTED
        primary.updated_at = datetime.utcnow()
        for secondary in secondaries:
            self._supersede(secondary, primary.id)

        logger.info("Merged %d result(s) into %s", len(secondaries), primary.id)
        return primary

    # ------------------------------------------------------------------
    # Summary
    # ------------------------------------------------------------------

    def summary(
        self,
        processed_files: int = 0,
        total_files: int = 0,
        job: Optional[ExtractionJob] = None,
    ) -> JobSummary:
        """Per-job aggregates computed from the in-memory result set."""
        active = self.active()
        return JobSummary(
            job_id=self.job_id or (job.id if job else None),
            total_items=len(active),
            superseded_items=len(self._results) - len(active),
            average_confidence=self.average_confidence(),
            processed_files=processed_files,
            total_files=total_files,
            total_batches=job.total_batches if job else 0,
            failed_batches=job.failed_batches if job else 0,
        )


def _merge_evidence(primary: dict[str, Any], secondary: dict[str, Any]) -> dict[str, Any]:
    merged = dict(primary)

    for keys, separator in ((SOURCE_TEXT_KEYS, " ... "), (LOCATION_KEYS, "; ")):
        key = next((k for k in keys if not _is_empty(merged.get(k))), keys[0])
        other = next((secondary[k] for k in keys if not _is_empty(secondary.get(k))), None)
        if other is None:
            continue
        current = merged.get(key)
        if _is_empty(current):
            merged[key] = other
        elif str(other) not in str(current):
            merged[key] = f"{current}{separator}{other}"

    scores = []
    for fields in (primary, secondary):
        for key in CONFIDENCE_KEYS:
            value = fields.get(key)
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                scores.append(float(value))
                break
    if scores:
        key = next((k for k in CONFIDENCE_KEYS if k in merged), CONFIDENCE_KEYS[0])
        merged[key] = max(scores)

    pages = [
        fields.get(PAGE_NUMBER_KEY)
        for fields in (primary, secondary)
        if isinstance(fields.get(PAGE_NUMBER_KEY), int)
    ]
    if pages:
        merged[PAGE_NUMBER_KEY] = min(pages)

    for name, value in secondary.items():
        merged.setdefault(name, value)
    return merged
