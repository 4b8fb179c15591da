"""ResultStore and JobTracker backed by PostgreSQL.

Each call runs in its own session and commits on success, so a merge is
written in one transaction.
"""

from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import async_sessionmaker

from docextract.models import ExtractionJob, ExtractionResult, JobSummary, MergeRequest

from .database import get_session
from .repositories import JobRepository, ResultRepository


class SqlResultStore:
    """ResultStore persisting to the ``extraction_results`` table."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def upsert(self, results: Sequence[ExtractionResult]) -> None:
        async with get_session(self.session_factory) as session:
            await ResultRepository(session).upsert(results)

    async def save_merge(self, merged: ExtractionResult, request: MergeRequest) -> None:
        async with get_session(self.session_factory) as session:
            repository = ResultRepository(session)
            await repository.upsert([merged])
            await repository.mark_superseded(request.secondary_ids, request.primary_id)

    async def get_many(self, ids: Sequence[UUID]) -> list[ExtractionResult]:
        async with get_session(self.session_factory) as session:
            return await ResultRepository(session).get_many(ids)


class SqlJobTracker:
    """JobTracker writing progress to the ``extraction_jobs`` table."""

    def __init__(self, session_factory: Optional[async_sessionmaker] = None):
        self.session_factory = session_factory

    async def update_progress(
        self, job_id: UUID, stage: str, percent: int, counts: dict[str, int]
    ) -> None:
        async with get_session(self.session_factory) as session:
            await JobRepository(session).update_progress(job_id, stage, percent, counts)

    async def save_job(self, job: ExtractionJob) -> None:
        async with get_session(self.session_factory) as session:
            await JobRepository(session).save(job)

    async def save_summary(self, job_id: UUID, summary: JobSummary) -> None:
        async with get_session(self.session_factory) as session:
            await JobRepository(session).save_summary(job_id, summary)
