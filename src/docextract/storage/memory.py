"""In-memory ResultStore and JobTracker for dry runs and tests."""

from typing import Sequence
from uuid import UUID

from pydantic import BaseModel, Field

from docextract.models import (
    ExtractionJob,
    ExtractionResult,
    JobSummary,
    MergeRequest,
    ResultStatus,
)


class ProgressUpdate(BaseModel):
    job_id: UUID
    stage: str
    percent: int
    counts: dict[str, int] = Field(default_factory=dict)


class InMemoryResultStore:
    """Keeps results in a dict keyed by ID."""

    def __init__(self):
        self.results: dict[UUID, ExtractionResult] = {}

    async def upsert(self, results: Sequence[ExtractionResult]) -> None:
        for result in results:
            self.results[result.id] = result.model_copy(deep=True)

    async def save_merge(self, merged: ExtractionResult, request: MergeRequest) -> None:
        secondaries = []
        for result_id in request.secondary_ids:
            stored = self.results.get(result_id)
            if stored is not None:
                secondaries.append(
                    stored.model_copy(
                        update={
                            "status": ResultStatus.SUPERSEDED,
                            "superseded_by": request.primary_id,
                        }
                    )
                )
        await self.upsert([merged, *secondaries])

    async def get_many(self, ids: Sequence[UUID]) -> list[ExtractionResult]:
        return [self.results[rid].model_copy(deep=True) for rid in ids if rid in self.results]


class InMemoryJobTracker:
    """Records every progress update, the last saved job state and its summary."""

    def __init__(self):
        self.updates: list[ProgressUpdate] = []
        self.jobs: dict[UUID, ExtractionJob] = {}
        self.summaries: dict[UUID, JobSummary] = {}

    async def update_progress(
        self, job_id: UUID, stage: str, percent: int, counts: dict[str, int]
    ) -> None:
        self.updates.append(
            ProgressUpdate(job_id=job_id, stage=stage, percent=percent, counts=dict(counts))
        )

    async def save_job(self, job: ExtractionJob) -> None:
        self.jobs[job.id] = job.model_copy(deep=True)

    async def save_summary(self, job_id: UUID, summary: JobSummary) -> None:
        self.summaries[job_id] = summary.model_copy()

    def percents(self, job_id: UUID) -> list[int]:
        return [update.percent for update in self.updates if update.job_id == job_id]
