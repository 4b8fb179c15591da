"""Job, batch and runner event models."""

from datetime import datetime
from typing import Literal, Optional, Union
from uuid import UUID

from pydantic import BaseModel, Field

from .base import BaseIRModel, BatchState, JobStatus
from .result import RawItem


class Batch(BaseIRModel):
    """Contiguous page range ``[start_page, end_page]`` of one document.

    The unit of provider invocation and of retry.
    """

    document_id: Optional[UUID] = None
    index: int = Field(..., ge=0, description="0-indexed position in the plan")
    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=1)
    state: BatchState = Field(default=BatchState.PENDING)
    attempts: int = Field(default=0, ge=0)
    last_error: Optional[str] = None

    @property
    def page_numbers(self) -> list[int]:
        return list(range(self.start_page, self.end_page + 1))

    @property
    def page_count(self) -> int:
        return self.end_page - self.start_page + 1

    @property
    def label(self) -> str:
        return f"pages {self.start_page}-{self.end_page} of {self.total_pages}"


class BatchFailure(BaseModel):
    """Terminal failure of one batch, kept on the job for the user."""

    batch_id: UUID
    document_id: Optional[UUID] = None
    start_page: int
    end_page: int
    reason: str
    error_type: str
    attempts: int = 0


class JobLogEntry(BaseModel):
    """Timestamped job log line."""

    timestamp: datetime = Field(default_factory=datetime.utcnow)
    level: Literal["info", "warn", "error"] = "info"
    message: str


class ExtractionJob(BaseIRModel):
    """An extraction job over one or more documents.

    Created by the orchestration layer; mutated only by the runner.
    """

    document_ids: list[UUID] = Field(default_factory=list)
    schema_id: Optional[UUID] = None
    status: JobStatus = Field(default=JobStatus.QUEUED)

    total_batches: int = Field(default=0, ge=0)
    completed_batches: int = Field(default=0, ge=0)
    failed_batches: int = Field(default=0, ge=0)
    extracted_items: int = Field(default=0, ge=0)
    progress: int = Field(default=0, ge=0, le=100)

    failures: list[BatchFailure] = Field(default_factory=list)
    logs: list[JobLogEntry] = Field(default_factory=list)

    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def processed_batches(self) -> int:
        """Batches that reached a terminal state, successful or not."""
        return self.completed_batches + self.failed_batches

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def add_log(self, message: str, level: str = "info") -> None:
        self.logs.append(JobLogEntry(level=level, message=message))

    def mark_running(self, total_batches: int) -> None:
        """Mark job as started with the planned batch count."""
        self.status = JobStatus.RUNNING
        self.total_batches = total_batches
        self.started_at = datetime.utcnow()
        self.updated_at = datetime.utcnow()

    def mark_finished(self, cancelled: bool = False) -> None:
        """Move to a terminal state.

        A job with at least one successful batch completes even when other
        batches failed; it fails only when every batch failed.
        """
        if cancelled:
            self.status = JobStatus.CANCELLED
        elif self.total_batches > 0 and self.completed_batches == 0:
            self.status = JobStatus.FAILED
        else:
            self.status = JobStatus.COMPLETED
        self.completed_at = datetime.utcnow()
        self.updated_at = datetime.utcnow()


class BatchResult(BaseModel):
    """A batch that produced items."""

    kind: Literal["batch_result"] = "batch_result"
    batch: Batch
    items: list[RawItem] = Field(default_factory=list)
    attempts: int = 1
    repaired: bool = False


class ProgressEvent(BaseModel):
    """Monotonic progress snapshot for the job tracker."""

    kind: Literal["progress"] = "progress"
    job_id: UUID
    stage: str = "extracting"
    percent: int = Field(..., ge=0, le=100)
    completed_batches: int
    failed_batches: int
    total_batches: int
    extracted_items: int


class TerminalFailure(BaseModel):
    """A batch that will not be retried again."""

    kind: Literal["terminal_failure"] = "terminal_failure"
    batch: Batch
    failure: BatchFailure


RunnerEvent = Union[BatchResult, ProgressEvent, TerminalFailure]
