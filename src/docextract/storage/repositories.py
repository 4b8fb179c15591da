"""Repository layer for database CRUD operations."""

from typing import Optional, Sequence
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from docextract.models import (
    Evidence,
    ExtractionJob,
    ExtractionResult,
    JobSummary,
    ResultStatus,
)

from .orm_models import ExtractionJobORM, ExtractionResultORM


def job_to_orm(job: ExtractionJob, stage: Optional[str] = None) -> ExtractionJobORM:
    return ExtractionJobORM(
        id=job.id,
        schema_id=job.schema_id,
        document_ids=[str(doc_id) for doc_id in job.document_ids],
        status=job.status,
        stage=stage,
        progress=job.progress,
        total_batches=job.total_batches,
        completed_batches=job.completed_batches,
        failed_batches=job.failed_batches,
        extracted_items=job.extracted_items,
        failures=[failure.model_dump(mode="json") for failure in job.failures],
        logs=[entry.model_dump(mode="json") for entry in job.logs],
        started_at=job.started_at,
        completed_at=job.completed_at,
    )


def result_to_orm(result: ExtractionResult) -> ExtractionResultORM:
    return ExtractionResultORM(
        id=result.id,
        job_id=result.job_id,
        document_id=result.document_id,
        batch_id=result.batch_id,
        raw_item_id=result.raw_item_id,
        page_start=result.page_start,
        page_end=result.page_end,
        data=result.data,
        evidence=result.evidence.fields,
        verified_data=result.verified_data,
        confidence=result.confidence,
        status=result.status,
        superseded_by=result.superseded_by,
        created_at=result.created_at,
        updated_at=result.updated_at,
    )


def result_from_orm(orm_result: ExtractionResultORM) -> ExtractionResult:
    return ExtractionResult(
        id=orm_result.id,
        job_id=orm_result.job_id,
        document_id=orm_result.document_id,
        batch_id=orm_result.batch_id,
        raw_item_id=orm_result.raw_item_id,
        page_start=orm_result.page_start,
        page_end=orm_result.page_end,
        data=orm_result.data or {},
        evidence=Evidence(fields=orm_result.evidence or {}),
        verified_data=orm_result.verified_data,
        status=orm_result.status,
        superseded_by=orm_result.superseded_by,
        created_at=orm_result.created_at,
        updated_at=orm_result.updated_at,
    )


class JobRepository:
    """Repository for ExtractionJob operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def save(self, job: ExtractionJob, stage: Optional[str] = None) -> ExtractionJobORM:
        """Insert or update the full job state."""
        orm_job = await self.session.merge(job_to_orm(job, stage=stage))
        await self.session.flush()
        return orm_job

    async def update_progress(
        self,
        job_id: UUID,
        stage: str,
        percent: int,
        counts: dict[str, int],
    ) -> None:
        """Update the progress columns of a job."""
        values = {"stage": stage, "progress": percent}
        for column in ("total_batches", "completed_batches", "failed_batches", "extracted_items"):
            if column in counts:
                values[column] = counts[column]
        await self.session.execute(
            update(ExtractionJobORM).where(ExtractionJobORM.id == job_id).values(**values)
        )

    async def save_summary(self, job_id: UUID, summary: JobSummary) -> None:
        """Store the final aggregates of a job."""
        await self.session.execute(
            update(ExtractionJobORM)
            .where(ExtractionJobORM.id == job_id)
            .values(summary=summary.model_dump(mode="json"))
        )


class ResultRepository:
    """Repository for ExtractionResult operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def upsert(self, results: Sequence[ExtractionResult]) -> None:
        """Insert new results and overwrite existing ones by ID."""
        for result in results:
            await self.session.merge(result_to_orm(result))
        await self.session.flush()

    async def get_many(self, result_ids: Sequence[UUID]) -> list[ExtractionResult]:
        """Get results by ID (missing IDs are skipped)."""
        if not result_ids:
            return []
        result = await self.session.execute(
            select(ExtractionResultORM).where(ExtractionResultORM.id.in_(list(result_ids)))
        )
        return [result_from_orm(row) for row in result.scalars().all()]

    async def mark_superseded(self, result_ids: Sequence[UUID], primary_id: UUID) -> None:
        """Mark results as merged into ``primary_id``. Rows are never deleted."""
        if not result_ids:
            return
        await self.session.execute(
            update(ExtractionResultORM)
            .where(ExtractionResultORM.id.in_(list(result_ids)))
            .values(status=ResultStatus.SUPERSEDED, superseded_by=primary_id)
        )
