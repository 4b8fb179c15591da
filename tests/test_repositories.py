"""Tests for the storage layer (sessions are mocked)."""

import asyncio
from unittest.mock import AsyncMock, MagicMock
from uuid import uuid4

import pytest

from docextract.models import (
    BatchFailure,
    Evidence,
    ExtractionJob,
    ExtractionResult,
    JobStatus,
    JobSummary,
    MergeRequest,
    ResultStatus,
)
from docextract.storage import (
    ExtractionJobORM,
    ExtractionResultORM,
    JobRepository,
    ResultRepository,
    SqlJobTracker,
    SqlResultStore,
)
from docextract.storage.repositories import job_to_orm, result_from_orm, result_to_orm


@pytest.fixture
def session():
    mock_session = AsyncMock()
    mock_session.merge.side_effect = lambda instance: instance
    mock_session.execute.return_value = MagicMock()
    return mock_session


@pytest.fixture
def session_factory(session):
    factory = MagicMock()
    factory.return_value.__aenter__.return_value = session
    return factory


def make_result(**overrides):
    values = {
        "job_id": uuid4(),
        "batch_id": uuid4(),
        "document_id": uuid4(),
        "page_start": 1,
        "page_end": 2,
        "data": {"itemCode": "A1"},
        "evidence": Evidence(fields={"sourceText": "A1 Bolt", "confidence": 0.7}),
    }
    values.update(overrides)
    return ExtractionResult(**values)


class TestConverters:
    def test_job_to_orm(self):
        job = ExtractionJob(document_ids=[uuid4()], status=JobStatus.RUNNING, total_batches=3)
        job.failures.append(
            BatchFailure(batch_id=uuid4(), start_page=1, end_page=2, reason="boom", error_type="ProviderFatalError")
        )
        job.add_log("started")

        orm_job = job_to_orm(job, stage="extracting")

        assert isinstance(orm_job, ExtractionJobORM)
        assert orm_job.id == job.id
        assert orm_job.document_ids == [str(job.document_ids[0])]
        assert orm_job.status == JobStatus.RUNNING
        assert orm_job.stage == "extracting"
        assert orm_job.failures[0]["reason"] == "boom"
        assert isinstance(orm_job.failures[0]["batch_id"], str)
        assert orm_job.logs[0]["message"] == "started"

    def test_result_round_trip(self):
        result = make_result(status=ResultStatus.SUPERSEDED, superseded_by=uuid4())
        orm_result = result_to_orm(result)

        assert isinstance(orm_result, ExtractionResultORM)
        assert orm_result.confidence == 0.7
        assert orm_result.evidence == {"sourceText": "A1 Bolt", "confidence": 0.7}
        assert result_from_orm(orm_result) == result


class TestJobRepository:
    def test_save_merges_full_state(self, session):
        job = ExtractionJob()
        asyncio.run(JobRepository(session).save(job, stage="completed"))

        merged = session.merge.call_args[0][0]
        assert merged.id == job.id
        assert merged.stage == "completed"
        session.flush.assert_awaited_once()

    def test_update_progress(self, session):
        job_id = uuid4()
        counts = {"completed_batches": 2, "failed_batches": 1, "unrelated": 5}
        asyncio.run(JobRepository(session).update_progress(job_id, "extracting", 45, counts))

        statement = session.execute.call_args[0][0]
        params = statement.compile().params
        assert "extraction_jobs" in str(statement)
        assert params["stage"] == "extracting"
        assert params["progress"] == 45
        assert params["completed_batches"] == 2
        assert "unrelated" not in params


    def test_save_summary(self, session):
        job_id = uuid4()
        summary = JobSummary(job_id=job_id, total_items=3, average_confidence=0.8)
        asyncio.run(JobRepository(session).save_summary(job_id, summary))

        params = session.execute.call_args[0][0].compile().params
        assert params["summary"]["total_items"] == 3
        assert params["summary"]["job_id"] == str(job_id)


class TestResultRepository:
    def test_upsert(self, session):
        results = [make_result(), make_result()]
        asyncio.run(ResultRepository(session).upsert(results))

        assert session.merge.await_count == 2
        assert [call[0][0].id for call in session.merge.call_args_list] == [r.id for r in results]
        session.flush.assert_awaited_once()

    def test_get_many(self, session):
        orm_result = result_to_orm(make_result())
        session.execute.return_value.scalars.return_value.all.return_value = [orm_result]

        fetched = asyncio.run(ResultRepository(session).get_many([orm_result.id, uuid4()]))

        assert [result.id for result in fetched] == [orm_result.id]
        assert fetched[0].evidence.source_text == "A1 Bolt"

    def test_empty_id_lists_skip_the_database(self, session):
        repository = ResultRepository(session)
        assert asyncio.run(repository.get_many([])) == []
        asyncio.run(repository.mark_superseded([], uuid4()))
        session.execute.assert_not_called()

    def test_mark_superseded(self, session):
        primary_id = uuid4()
        asyncio.run(ResultRepository(session).mark_superseded([uuid4()], primary_id))

        params = session.execute.call_args[0][0].compile().params
        assert params["status"] == ResultStatus.SUPERSEDED
        assert params["superseded_by"] == primary_id


class TestSqlStores:
    """Each store call runs in its own committed session."""

    def test_result_store_commits(self, session_factory, session):
        asyncio.run(SqlResultStore(session_factory).upsert([make_result()]))
        session.commit.assert_awaited_once()

    def test_failure_rolls_back(self, session_factory, session):
        session.merge.side_effect = RuntimeError("db down")
        with pytest.raises(RuntimeError):
            asyncio.run(SqlResultStore(session_factory).upsert([make_result()]))
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()

    def test_job_tracker(self, session_factory, session):
        tracker = SqlJobTracker(session_factory)
        asyncio.run(tracker.update_progress(uuid4(), "extracting", 10, {}))
        asyncio.run(tracker.save_job(ExtractionJob()))
        asyncio.run(tracker.save_summary(uuid4(), JobSummary(total_items=1)))
        assert session.execute.await_count == 2
        assert session.merge.await_count == 1
        assert session.commit.await_count == 3

    def test_merge_is_one_transaction(self, session_factory, session):
        primary = make_result(status=ResultStatus.ACCEPTED)
        request = MergeRequest(primary_id=primary.id, secondary_ids=[uuid4()], merged_data=primary.data)

        asyncio.run(SqlResultStore(session_factory).save_merge(primary, request))

        session_factory.assert_called_once()
        assert session.merge.call_args[0][0].id == primary.id
        params = session.execute.call_args[0][0].compile().params
        assert params["superseded_by"] == primary.id
        session.commit.assert_awaited_once()

    def test_failed_supersede_rolls_back_primary(self, session_factory, session):
        """The primary write is undone when the secondaries cannot be superseded."""
        primary = make_result(status=ResultStatus.ACCEPTED)
        request = MergeRequest(primary_id=primary.id, secondary_ids=[uuid4()], merged_data=primary.data)
        session.execute.side_effect = RuntimeError("db down")

        with pytest.raises(RuntimeError):
            asyncio.run(SqlResultStore(session_factory).save_merge(primary, request))

        session.merge.assert_awaited_once()
        session.rollback.assert_awaited_once()
        session.commit.assert_not_awaited()
