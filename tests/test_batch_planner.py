"""Tests for the batch planner."""

from uuid import uuid4

import pytest

from docextract.errors import PlanningError
from docextract.pipeline.batch_planner import plan_batches, plan_document


class TestPlanBatches:
    """Tests for page range partitioning."""

    def test_seven_pages_by_three(self):
        """The last batch holds the tail and is not padded."""
        batches = plan_batches(7, 3)
        assert [(b.start_page, b.end_page) for b in batches] == [(1, 3), (4, 6), (7, 7)]
        assert [b.index for b in batches] == [0, 1, 2]
        assert all(b.total_pages == 7 for b in batches)

    @pytest.mark.parametrize("page_count", [1, 2, 5, 10, 11, 37])
    @pytest.mark.parametrize("size", [1, 2, 3, 5, 10, 50])
    def test_exact_cover(self, page_count, size):
        """Batches are contiguous, non-overlapping and cover every page once."""
        batches = plan_batches(page_count, size)
        pages = [page for b in batches for page in range(b.start_page, b.end_page + 1)]
        assert pages == list(range(1, page_count + 1))
        assert all(1 <= b.end_page - b.start_page + 1 <= size for b in batches)
        assert len(batches) == -(-page_count // size)

    def test_single_page_document(self):
        batches = plan_batches(1, 10)
        assert len(batches) == 1
        assert batches[0].label == "pages 1-1 of 1"

    def test_document_id_recorded(self):
        document_id = uuid4()
        assert all(b.document_id == document_id for b in plan_batches(4, 2, document_id))

    def test_default_batch_size_from_settings(self, monkeypatch):
        """Without an explicit size the configured default applies."""
        from docextract.config import settings

        monkeypatch.setattr(settings, "max_pages_per_batch", 4)
        assert len(plan_batches(9)) == 3

    @pytest.mark.parametrize("size", [0, -1])
    def test_non_positive_batch_size(self, size):
        with pytest.raises(PlanningError):
            plan_batches(5, size)

    def test_empty_document(self):
        with pytest.raises(PlanningError):
            plan_batches(0, 3)


class TestPlanDocument:
    def test_uses_document_page_count(self, documents):
        document = documents(5)
        batches = plan_document(document, 2)
        assert [(b.start_page, b.end_page) for b in batches] == [(1, 2), (3, 4), (5, 5)]
        assert {b.document_id for b in batches} == {document.id}
