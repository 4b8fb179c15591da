"""Extraction service - runs a whole job end to end.

Plans batches for every document, streams them through the runner,
separates evidence, persists results as batches finish, consolidates
cross-batch duplicates and reports the final summary. Progress goes to the
job tracker through a queue drained by a background task, so a slow or
failing tracker never holds up extraction.
"""

import asyncio
import logging
from collections.abc import Sequence
from typing import Callable, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from docextract.config import settings
from docextract.models import (
    Batch,
    BatchResult,
    CompiledSchema,
    Document,
    ExtractionJob,
    ExtractionMode,
    ExtractionResult,
    ExtractionSchema,
    JobStatus,
    JobSummary,
    MergeRequest,
    ProgressEvent,
    RunnerEvent,
    TerminalFailure,
)
from docextract.pipeline.aggregator import ResultAggregator
from docextract.pipeline.batch_planner import plan_document
from docextract.pipeline.runner import ExtractionRunner
from docextract.providers.base import BlobStore, JobTracker, LlmProvider, ResultStore

logger = logging.getLogger(__name__)

_STOP = object()


class JobOutcome(BaseModel):
    """Final state of a job run."""

    job: ExtractionJob
    results: list[ExtractionResult] = Field(default_factory=list)
    summary: JobSummary


class _ProgressUpdate(BaseModel):
    job_id: UUID
    stage: str
    percent: int
    counts: dict[str, int] = Field(default_factory=dict)


class ProgressForwarder:
    """Delivers progress updates to a JobTracker in the background.

    Tracker errors are logged and dropped; they never reach the caller.
    """

    def __init__(self, tracker: JobTracker):
        self.tracker = tracker
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None

    def start(self) -> None:
        self._task = asyncio.create_task(self._drain())

    def publish(self, job_id: UUID, stage: str, percent: int, counts: dict[str, int]) -> None:
        self._queue.put_nowait(
            _ProgressUpdate(job_id=job_id, stage=stage, percent=percent, counts=counts)
        )

    async def close(self) -> None:
        """Deliver everything queued so far, then stop."""
        if self._task is None:
            return
        self._queue.put_nowait(_STOP)
        await self._task
        self._task = None

    async def _drain(self) -> None:
        while True:
            update = await self._queue.get()
            if update is _STOP:
                return
            try:
                await self.tracker.update_progress(
                    update.job_id, update.stage, update.percent, update.counts
                )
            except Exception:
                logger.warning(
                    "Job tracker update failed for job %s (%s %d%%)",
                    update.job_id,
                    update.stage,
                    update.percent,
                    exc_info=True,
                )


def _counts(job: ExtractionJob) -> dict[str, int]:
    return {
        "total_batches": job.total_batches,
        "completed_batches": job.completed_batches,
        "failed_batches": job.failed_batches,
        "extracted_items": job.extracted_items,
    }


class ExtractionService:
    """Orchestrates extraction jobs against injected collaborators."""

    def __init__(
        self,
        llm: LlmProvider,
        result_store: ResultStore,
        job_tracker: JobTracker,
        blob_store: Optional[BlobStore] = None,
        mode: ExtractionMode = ExtractionMode.OCR_TEXT,
        max_pages_per_batch: Optional[int] = None,
        identity_fields: Optional[Sequence[str]] = None,
        **runner_options,
    ):
        """Initialize service.

        Args:
            llm: Provider used by the runner.
            result_store: Sink for results and merge outcomes.
            job_tracker: Sink for progress and final job state.
            blob_store: Page image source for the vision modes.
            mode: Extraction mode for every job run by this service.
            max_pages_per_batch: Batch size (default from settings). Forced
                to 1 in VISION_PAGE mode.
            identity_fields: Fields identifying one entity when
                consolidating cross-batch duplicates.
            **runner_options: Passed to ``ExtractionRunner``.
        """
        self.result_store = result_store
        self.job_tracker = job_tracker
        self.mode = mode
        self.max_pages_per_batch = (
            1 if mode == ExtractionMode.VISION_PAGE else max_pages_per_batch or settings.max_pages_per_batch
        )
        self.identity_fields = identity_fields
        self.runner = ExtractionRunner(llm, mode=mode, blob_store=blob_store, **runner_options)

    def plan(self, documents: Sequence[Document]) -> list[Batch]:
        """Batches for every document, in document then page order."""
        batches: list[Batch] = []
        for document in documents:
            batches.extend(plan_document(document, self.max_pages_per_batch))
        return batches

    async def run_job(
        self,
        job: ExtractionJob,
        documents: Sequence[Document],
        schema: Optional[Union[ExtractionSchema, CompiledSchema]],
        cancel_event: Optional[asyncio.Event] = None,
        on_event: Optional[Callable[[RunnerEvent], None]] = None,
    ) -> JobOutcome:
        """Run ``job`` over ``documents`` and persist its results.

        Args:
            job: Job to drive; mutated in place.
            documents: Ingested documents of the job.
            schema: Extraction schema, or None for freeform extraction.
            cancel_event: Cooperative cancellation flag.
            on_event: Callback invoked with every runner event.

        Returns:
            JobOutcome with the job, every result and the summary.

        Raises:
            PlanningError: If a document has no pages.
        """
        if not job.document_ids:
            job.document_ids = [document.id for document in documents]
        if isinstance(schema, ExtractionSchema) and job.schema_id is None:
            job.schema_id = schema.id

        batches = self.plan(documents)
        remaining = {document.id: 0 for document in documents}
        for batch in batches:
            remaining[batch.document_id] += 1

        aggregator = ResultAggregator(job_id=job.id)
        forwarder = ProgressForwarder(self.job_tracker)
        forwarder.start()
        try:
            async for event in self.runner.run(job, batches, schema, documents, cancel_event=cancel_event):
                if isinstance(event, BatchResult):
                    results = aggregator.add_raw_items(event.items)
                    await self.result_store.upsert(results)
                    remaining[event.batch.document_id] -= 1
                elif isinstance(event, TerminalFailure):
                    remaining[event.batch.document_id] -= 1
                elif isinstance(event, ProgressEvent):
                    forwarder.publish(job.id, event.stage, event.percent, _counts(job))
                if on_event is not None:
                    on_event(event)

            forwarder.publish(job.id, "aggregating", job.progress, _counts(job))
            changed = aggregator.consolidate(self.identity_fields)
            if changed:
                changed_ids = {result.id for result in changed}
                absorbed = [r for r in aggregator.results if r.superseded_by in changed_ids]
                await self.result_store.upsert(changed + absorbed)

            processed_files = sum(1 for count in remaining.values() if count == 0)
            summary = aggregator.summary(
                processed_files=processed_files, total_files=len(documents), job=job
            )
            if job.status != JobStatus.CANCELLED:
                job.progress = 100
            forwarder.publish(job.id, job.status.value, job.progress, _counts(job))
        finally:
            await forwarder.close()

        try:
            await self.job_tracker.save_job(job)
            await self.job_tracker.save_summary(job.id, summary)
        except Exception:
            logger.warning("Could not save final state of job %s", job.id, exc_info=True)

        logger.info(
            "Job %s %s: %d item(s), average confidence %.2f, %d/%d file(s)",
            job.id,
            job.status.value,
            summary.total_items,
            summary.average_confidence,
            summary.processed_files,
            summary.total_files,
        )
        return JobOutcome(job=job, results=aggregator.results, summary=summary)

    async def merge_results(
        self,
        primary_id: UUID,
        secondary_ids: Sequence[UUID],
        merged_data: dict,
    ) -> ExtractionResult:
        """Apply a user merge to stored results and persist it in one write.

        Raises:
            MergeError: If the request is invalid; nothing is written.
        """
        request = MergeRequest(
            primary_id=primary_id, secondary_ids=list(secondary_ids), merged_data=merged_data
        )
        stored = await self.result_store.get_many([request.primary_id, *request.secondary_ids])
        aggregator = ResultAggregator(results=stored)
        merged = aggregator.merge(request.primary_id, request.secondary_ids, request.merged_data)
        await self.result_store.save_merge(merged, request)
        return merged
