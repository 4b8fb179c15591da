"""Extraction Runner - drive provider calls for every batch of a job.

Per-batch state machine::

    pending -> in_flight -> succeeded
                         -> failed_retryable -> pending
                         -> failed_terminal

Batches run on a bounded worker pool (an ``asyncio.Semaphore``). Each call
has its own timeout. Malformed JSON is repaired before it counts as a
failure; transient failures are retried with exponential backoff, fatal
ones end the batch at once. A terminal batch failure never aborts the job.

Cancellation is cooperative: the cancel event is checked before each
dispatch, in-flight batches run to completion and their results are kept.

Job counters are only touched under one lock, and progress events are
queued under the same lock so consumers see them in monotonic order.
"""

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable, Sequence
from pathlib import PurePosixPath
from typing import Callable, Optional, Union
from uuid import UUID

from docextract.config import settings
from docextract.errors import (
    PlanningError,
    ProviderError,
    ProviderFatalError,
    ProviderTransientError,
)
from docextract.models import (
    Batch,
    BatchFailure,
    BatchResult,
    BatchState,
    CompiledSchema,
    Document,
    ExtractionJob,
    ExtractionMode,
    ExtractionSchema,
    ProgressEvent,
    RawItem,
    RunnerEvent,
    TerminalFailure,
)
from docextract.pipeline.parsing import ParsedResponse, parse_items
from docextract.pipeline.prompt_builder import Prompt, PromptContent, build_prompt
from docextract.providers.base import Attachment, BlobStore, LlmProvider

logger = logging.getLogger(__name__)

_DONE = object()

SchemaInput = Optional[Union[ExtractionSchema, CompiledSchema]]


def progress_percent(processed: int, total: int, reserve: int) -> int:
    """``floor(processed / total * (100 - reserve))``; 0 when nothing is planned."""
    if total <= 0:
        return 0
    return processed * (100 - reserve) // total


def backoff_delay(attempt: int, base: float, ceiling: float) -> float:
    """Delay before retrying after failed ``attempt`` (1-indexed)."""
    return min(base * 2 ** (attempt - 1), ceiling)


class ExtractionRunner:
    """Runs the batches of one job against an LLM provider.

    The provider (and blob store, for vision modes) is injected; the runner
    holds no other shared state, so one runner may serve many jobs.
    """

    def __init__(
        self,
        llm: LlmProvider,
        mode: ExtractionMode = ExtractionMode.OCR_TEXT,
        blob_store: Optional[BlobStore] = None,
        concurrency: Optional[int] = None,
        max_attempts: Optional[int] = None,
        call_timeout: Optional[float] = None,
        backoff_base: Optional[float] = None,
        backoff_max: Optional[float] = None,
        progress_reserve: Optional[int] = None,
        max_examples: Optional[int] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        """Initialize runner.

        Args:
            llm: Provider used for every call.
            mode: How page content is sent.
            blob_store: Source of rendered page images (vision modes).
            concurrency: Worker pool width (default from settings).
            max_attempts: Attempts per batch including the first.
            call_timeout: Per-call timeout in seconds.
            backoff_base: First retry delay in seconds; doubles per attempt.
            backoff_max: Upper bound on a single retry delay.
            progress_reserve: Percent held back for post-processing.
            max_examples: Example records rendered into each prompt.
            sleep: Awaitable used for backoff (injectable for tests).
        """
        self.llm = llm
        self.mode = mode
        self.blob_store = blob_store
        self.concurrency = settings.max_concurrent_batches if concurrency is None else concurrency
        self.max_attempts = settings.max_attempts if max_attempts is None else max_attempts
        self.call_timeout = call_timeout or settings.call_timeout_seconds
        self.backoff_base = settings.retry_backoff_seconds if backoff_base is None else backoff_base
        self.backoff_max = settings.retry_backoff_max_seconds if backoff_max is None else backoff_max
        self.progress_reserve = (
            settings.progress_reserve_percent if progress_reserve is None else progress_reserve
        )
        self.max_examples = max_examples
        self.sleep = sleep

        if self.concurrency < 1:
            raise ValueError(f"concurrency must be at least 1, got {self.concurrency}")
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {self.max_attempts}")
        if not 0 <= self.progress_reserve < 100:
            raise ValueError(f"progress_reserve must be in [0, 100), got {self.progress_reserve}")

    async def run(
        self,
        job: ExtractionJob,
        batches: Sequence[Batch],
        schema: SchemaInput,
        documents: Union[Document, Sequence[Document]],
        cancel_event: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[RunnerEvent]:
        """Process ``batches`` and stream their outcomes.

        Yields ``BatchResult``, ``TerminalFailure`` and ``ProgressEvent``
        objects in completion order. When the stream ends, ``job`` is in a
        terminal state.

        Raises:
            PlanningError: If a batch references an unknown document.
        """
        document_map = self._document_map(batches, documents)
        compiled = schema.compiled if isinstance(schema, ExtractionSchema) else schema

        job.mark_running(len(batches))
        job.add_log(f"Started extraction of {len(batches)} batch(es) in {self.mode.value} mode")
        logger.info("Job %s: %d batch(es), concurrency %d", job.id, len(batches), self.concurrency)

        queue: asyncio.Queue = asyncio.Queue()
        lock = asyncio.Lock()
        semaphore = asyncio.Semaphore(self.concurrency)
        cancelled = False

        async def worker(batch: Batch) -> None:
            try:
                document = document_map[batch.document_id]
                outcome = await self._process_batch(job, batch, document, schema, compiled)
                async with lock:
                    await self._record(job, outcome, queue)
            finally:
                semaphore.release()

        async def dispatch() -> None:
            nonlocal cancelled
            tasks = []
            try:
                for batch in batches:
                    await semaphore.acquire()
                    if cancel_event is not None and cancel_event.is_set():
                        semaphore.release()
                        cancelled = True
                        break
                    tasks.append(asyncio.create_task(worker(batch)))
                await asyncio.gather(*tasks)
            finally:
                await queue.put(_DONE)

        await queue.put(self._progress(job))
        dispatcher = asyncio.create_task(dispatch())
        try:
            while True:
                event = await queue.get()
                if event is _DONE:
                    break
                yield event
            # Surface unexpected errors raised inside the pool
            await dispatcher
        finally:
            if not dispatcher.done():
                dispatcher.cancel()

        if cancelled:
            skipped = job.total_batches - job.processed_batches
            job.add_log(f"Cancelled; {skipped} batch(es) not dispatched", level="warn")
            logger.warning("Job %s cancelled with %d batch(es) not dispatched", job.id, skipped)
        job.mark_finished(cancelled=cancelled)
        job.add_log(
            f"Finished with status {job.status.value}: {job.completed_batches} succeeded, "
            f"{job.failed_batches} failed, {job.extracted_items} item(s)",
            level="error" if job.failed_batches else "info",
        )
        logger.info(
            "Job %s %s: %d/%d batch(es) succeeded, %d item(s)",
            job.id,
            job.status.value,
            job.completed_batches,
            job.total_batches,
            job.extracted_items,
        )

    def _document_map(
        self, batches: Sequence[Batch], documents: Union[Document, Sequence[Document]]
    ) -> dict[Optional[UUID], Document]:
        if isinstance(documents, Document):
            documents = [documents]
        mapping: dict[Optional[UUID], Document] = {doc.id: doc for doc in documents}
        if len(documents) == 1:
            mapping[None] = documents[0]

        for batch in batches:
            document = mapping.get(batch.document_id)
            if document is None:
                raise PlanningError(f"Batch {batch.label} references unknown document {batch.document_id}")
            if batch.end_page > document.page_count:
                raise PlanningError(
                    f"Batch {batch.label} exceeds {document.source_filename} ({document.page_count} pages)"
                )
        return mapping

    def _progress(self, job: ExtractionJob) -> ProgressEvent:
        percent = progress_percent(job.processed_batches, job.total_batches, self.progress_reserve)
        job.progress = max(job.progress, percent)
        return ProgressEvent(
            job_id=job.id,
            percent=job.progress,
            completed_batches=job.completed_batches,
            failed_batches=job.failed_batches,
            total_batches=job.total_batches,
            extracted_items=job.extracted_items,
        )

    async def _record(
        self,
        job: ExtractionJob,
        outcome: Union[BatchResult, TerminalFailure],
        queue: asyncio.Queue,
    ) -> None:
        """Apply a batch outcome to the job counters. Caller holds the lock."""
        batch = outcome.batch
        if isinstance(outcome, BatchResult):
            job.completed_batches += 1
            job.extracted_items += len(outcome.items)
            job.add_log(
                f"Batch {batch.label}: {len(outcome.items)} item(s) after {outcome.attempts} attempt(s)"
                + (" (repaired JSON)" if outcome.repaired else "")
            )
        else:
            job.failed_batches += 1
            job.failures.append(outcome.failure)
            job.add_log(f"Batch {batch.label} failed: {outcome.failure.reason}", level="error")
        await queue.put(outcome)
        await queue.put(self._progress(job))

    async def _process_batch(
        self,
        job: ExtractionJob,
        batch: Batch,
        document: Document,
        schema: SchemaInput,
        compiled: Optional[CompiledSchema],
    ) -> Union[BatchResult, TerminalFailure]:
        content = PromptContent.from_batch(batch, document)
        prompt = build_prompt(self.mode, schema, content, max_examples=self.max_examples)

        error: ProviderError = ProviderFatalError("Batch was never attempted")
        for attempt in range(1, self.max_attempts + 1):
            batch.attempts = attempt
            batch.state = BatchState.IN_FLIGHT
            logger.debug("Job %s: batch %s attempt %d", job.id, batch.label, attempt)
            try:
                parsed = await self._attempt(prompt, content, compiled, batch)
            except ProviderError as exc:
                error = exc
            else:
                batch.state = BatchState.SUCCEEDED
                batch.last_error = None
                items = [
                    RawItem(
                        batch_id=batch.id,
                        document_id=document.id,
                        page_start=batch.start_page,
                        page_end=batch.end_page,
                        fields=fields,
                    )
                    for fields in parsed.items
                ]
                if parsed.repaired:
                    logger.info(
                        "Job %s: batch %s succeeded with repaired JSON (%d char(s) discarded)",
                        job.id,
                        batch.label,
                        parsed.discarded_chars,
                    )
                return BatchResult(
                    batch=batch.model_copy(),
                    items=items,
                    attempts=attempt,
                    repaired=parsed.repaired,
                )

            batch.last_error = str(error)
            if isinstance(error, ProviderFatalError):
                logger.error("Job %s: batch %s fatal error: %s", job.id, batch.label, error)
                break
            if attempt < self.max_attempts:
                batch.state = BatchState.FAILED_RETRYABLE
                delay = backoff_delay(attempt, self.backoff_base, self.backoff_max)
                logger.warning(
                    "Job %s: batch %s attempt %d/%d failed (%s); retrying in %.1fs",
                    job.id,
                    batch.label,
                    attempt,
                    self.max_attempts,
                    error,
                    delay,
                )
                await self.sleep(delay)
                batch.state = BatchState.PENDING

        if isinstance(error, ProviderTransientError):
            error = ProviderFatalError(
                f"Retries exhausted after {batch.attempts} attempt(s): {error}",
                status_code=error.status_code,
            )
            logger.error("Job %s: batch %s %s", job.id, batch.label, error)

        batch.state = BatchState.FAILED_TERMINAL
        failure = BatchFailure(
            batch_id=batch.id,
            document_id=document.id,
            start_page=batch.start_page,
            end_page=batch.end_page,
            reason=str(error),
            error_type=type(error).__name__,
            attempts=batch.attempts,
        )
        return TerminalFailure(batch=batch.model_copy(), failure=failure)

    async def _attempt(
        self,
        prompt: Prompt,
        content: PromptContent,
        compiled: Optional[CompiledSchema],
        batch: Batch,
    ) -> ParsedResponse:
        """One provider call plus parse/repair. Errors come back as ProviderError."""
        attachments = self._attachments(content)
        try:
            raw = await asyncio.wait_for(
                self.llm.invoke(
                    prompt.system_prompt,
                    prompt.user_prompt,
                    schema_hint=prompt.schema_hint,
                    attachments=attachments,
                ),
                timeout=self.call_timeout,
            )
        except asyncio.TimeoutError as exc:
            raise ProviderTransientError(
                f"Provider call timed out after {self.call_timeout:g}s"
            ) from exc
        except ProviderError:
            raise
        except Exception as exc:
            logger.exception("Unexpected provider error for batch %s", batch.label)
            raise ProviderFatalError(f"Unexpected provider error: {exc}") from exc

        return parse_items(
            raw,
            compiled,
            page_number=batch.start_page,
            extraction_method=self.mode.value,
        )

    def _attachments(self, content: PromptContent) -> Optional[list[Attachment]]:
        if self.mode == ExtractionMode.OCR_TEXT:
            return None
        if self.blob_store is None:
            raise ProviderFatalError(f"{self.mode.value} mode requires a blob store for page images")

        attachments = []
        for page in content.pages:
            if not page.image_ref:
                raise ProviderFatalError(f"Page {page.page_number} has no rendered image")
            try:
                data = self.blob_store.get_object(page.image_ref)
            except (KeyError, OSError) as exc:
                raise ProviderFatalError(
                    f"Page {page.page_number} image {page.image_ref!r} unavailable: {exc}"
                ) from exc
            suffix = PurePosixPath(page.image_ref).suffix or ".png"
            attachments.append(
                Attachment(
                    data=data,
                    mime_type=page.image_type,
                    name=f"page_{page.page_number:04d}{suffix}",
                )
            )
        return attachments


async def run_extraction(
    job: ExtractionJob,
    batches: Sequence[Batch],
    schema: SchemaInput,
    llm: LlmProvider,
    documents: Union[Document, Sequence[Document]],
    mode: ExtractionMode = ExtractionMode.OCR_TEXT,
    cancel_event: Optional[asyncio.Event] = None,
    **runner_options,
) -> AsyncIterator[RunnerEvent]:
    """Stream the events of one job using a freshly configured runner."""
    runner = ExtractionRunner(llm, mode=mode, **runner_options)
    async for event in runner.run(job, batches, schema, documents, cancel_event=cancel_event):
        yield event
