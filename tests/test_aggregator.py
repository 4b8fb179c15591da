"""Tests for result aggregation."""

from uuid import uuid4

import pytest

from docextract.errors import MergeError
from docextract.models import Evidence, ExtractionJob, ExtractionResult, ResultStatus
from docextract.pipeline.aggregator import ResultAggregator

DOCUMENT_ID = uuid4()


def make_result(data, page_start=1, page_end=None, batch_id=None, document_id=DOCUMENT_ID, **evidence):
    return ExtractionResult(
        batch_id=batch_id or uuid4(),
        document_id=document_id,
        page_start=page_start,
        page_end=page_end or page_start,
        data=data,
        evidence=Evidence(fields=evidence),
    )


class TestAverageConfidence:
    def test_ignores_missing_and_zero_scores(self):
        aggregator = ResultAggregator(
            results=[
                make_result({"a": 1}, confidence=0.8),
                make_result({"a": 2}, confidence=0.6),
                make_result({"a": 3}),
                make_result({"a": 4}, confidence=0),
            ]
        )
        assert aggregator.average_confidence() == pytest.approx(0.7)

    def test_empty(self):
        assert ResultAggregator().average_confidence() == 0.0

    def test_superseded_results_are_excluded(self):
        primary = make_result({"a": 1}, confidence=0.9)
        secondary = make_result({"a": 2}, confidence=0.1)
        aggregator = ResultAggregator(results=[primary, secondary])
        aggregator.merge(primary.id, [secondary.id], {"a": 1})
        assert aggregator.average_confidence() == pytest.approx(0.9)


class TestConsolidate:
    """Tests for cross-batch duplicate folding."""

    def test_partial_items_across_adjacent_batches(self):
        first = make_result(
            {"itemCode": "X1", "itemName": "Steel beam", "quantity": None},
            page_start=1,
            page_end=2,
            sourceText="X1 Steel beam",
            location="Page 2",
            confidence=0.7,
            pageNumber=2,
        )
        second = make_result(
            {"itemCode": "x1 ", "itemName": "steel  beam", "quantity": 12},
            page_start=3,
            page_end=4,
            sourceText="X1 steel beam qty 12",
            location="Page 3",
            confidence=0.9,
            pageNumber=3,
        )
        aggregator = ResultAggregator(results=[second, first])

        changed = aggregator.consolidate()

        assert changed == [first]
        assert first.data == {"itemCode": "X1", "itemName": "Steel beam", "quantity": 12}
        assert (first.page_start, first.page_end) == (1, 4)
        assert first.evidence.source_text == "X1 Steel beam ... X1 steel beam qty 12"
        assert first.evidence.location == "Page 2; Page 3"
        assert first.evidence.confidence == 0.9
        assert first.evidence.page_number == 2
        assert second.status == ResultStatus.SUPERSEDED
        assert second.superseded_by == first.id
        assert aggregator.active() == [first]
        assert len(aggregator.results) == 2

    def test_distant_pages_are_not_merged(self):
        first = make_result({"itemCode": "X1"}, page_start=1, page_end=2)
        second = make_result({"itemCode": "X1"}, page_start=5, page_end=6)
        aggregator = ResultAggregator(results=[first, second])
        assert aggregator.consolidate() == []

    def test_same_batch_is_not_merged(self):
        """Two items from one call are distinct by construction."""
        batch_id = uuid4()
        first = make_result({"itemCode": "X1"}, batch_id=batch_id)
        second = make_result({"itemCode": "X1"}, batch_id=batch_id)
        assert ResultAggregator(results=[first, second]).consolidate() == []

    def test_other_document_is_not_merged(self):
        first = make_result({"itemCode": "X1"}, page_start=1)
        second = make_result({"itemCode": "X1"}, page_start=2, document_id=uuid4())
        assert ResultAggregator(results=[first, second]).consolidate() == []

    def test_conflicting_values_are_not_merged(self):
        first = make_result({"itemCode": "X1", "quantity": 3}, page_start=1)
        second = make_result({"itemCode": "X1", "quantity": 4}, page_start=2)
        assert ResultAggregator(results=[first, second]).consolidate() == []

    def test_identity_fields(self):
        """Identity fields decide alone; the primary keeps its own values."""
        first = make_result({"itemCode": "A", "quantity": 3, "unit": None}, page_start=1)
        second = make_result({"itemCode": "a", "quantity": 4, "unit": "pcs", "note": "x"}, page_start=2)

        assert ResultAggregator(results=[first.model_copy(deep=True), second]).consolidate() == []

        aggregator = ResultAggregator(results=[first, second])
        assert aggregator.consolidate(identity_fields=["itemCode"]) == [first]
        assert first.data == {"itemCode": "A", "quantity": 3, "unit": "pcs", "note": "x"}

    def test_empty_identity_value_never_matches(self):
        first = make_result({"itemCode": "", "itemName": "Bolt"}, page_start=1)
        second = make_result({"itemCode": "", "itemName": "Bolt"}, page_start=2)
        aggregator = ResultAggregator(results=[first, second])
        assert aggregator.consolidate(identity_fields=["itemCode"]) == []

    def test_chain_across_three_batches(self):
        parts = [
            make_result({"itemCode": "X1", "a": 1}, page_start=1),
            make_result({"itemCode": "X1", "b": 2}, page_start=2),
            make_result({"itemCode": "X1", "c": 3}, page_start=3),
        ]
        aggregator = ResultAggregator(results=parts)
        aggregator.consolidate(identity_fields=["itemCode"])
        assert aggregator.active() == [parts[0]]
        assert parts[0].data == {"itemCode": "X1", "a": 1, "b": 2, "c": 3}
        assert parts[0].page_end == 3


class TestMerge:
    """Tests for user-initiated merges."""

    @pytest.fixture
    def trio(self):
        results = [make_result({"itemCode": f"X{n}"}, page_start=n) for n in (1, 2, 3)]
        return ResultAggregator(results=results), results

    def test_merge(self, trio):
        aggregator, (primary, second, third) = trio
        merged = aggregator.merge(primary.id, [second.id, third.id], {"itemCode": "X", "qty": 5})

        assert merged is primary
        assert primary.data == {"itemCode": "X", "qty": 5}
        assert primary.verified_data == {"itemCode": "X", "qty": 5}
        assert primary.status == ResultStatus.ACCEPTED
        assert {second.superseded_by, third.superseded_by} == {primary.id}
        assert aggregator.active() == [primary]

    @pytest.mark.parametrize(
        "secondaries",
        [
            lambda p, s, t: [],
            lambda p, s, t: [p.id],
            lambda p, s, t: [s.id, s.id],
            lambda p, s, t: [s.id, uuid4()],
        ],
    )
    def test_invalid_requests_change_nothing(self, trio, secondaries):
        aggregator, (primary, second, third) = trio
        with pytest.raises(MergeError):
            aggregator.merge(primary.id, secondaries(primary, second, third), {"itemCode": "X"})
        assert primary.data == {"itemCode": "X1"}
        assert all(result.status == ResultStatus.PENDING for result in (primary, second, third))

    def test_unknown_primary(self, trio):
        aggregator, (_, second, _) = trio
        with pytest.raises(MergeError):
            aggregator.merge(uuid4(), [second.id], {})

    def test_already_superseded(self, trio):
        aggregator, (primary, second, third) = trio
        aggregator.merge(primary.id, [second.id], {"itemCode": "X"})
        with pytest.raises(MergeError):
            aggregator.merge(third.id, [second.id], {"itemCode": "Y"})
        with pytest.raises(MergeError):
            aggregator.merge(second.id, [third.id], {"itemCode": "Y"})


class TestSummary:
    def test_summary(self):
        job = ExtractionJob(total_batches=4, failed_batches=1)
        aggregator = ResultAggregator(job_id=job.id)
        first = aggregator.add(make_result({"a": 1}, confidence=0.5))
        second = aggregator.add(make_result({"a": 2}, confidence=1.0))
        aggregator.add(make_result({"a": 3}, confidence=0.9))
        aggregator.merge(first.id, [second.id], {"a": 1})

        summary = aggregator.summary(processed_files=1, total_files=2, job=job)

        assert summary.job_id == job.id
        assert summary.total_items == 2
        assert summary.superseded_items == 1
        assert summary.average_confidence == pytest.approx(0.7)
        assert (summary.processed_files, summary.total_files) == (1, 2)
        assert (summary.total_batches, summary.failed_batches) == (4, 1)
        assert first.job_id == job.id
