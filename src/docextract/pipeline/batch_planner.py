"""Batch Planner - partition a document's pages into contiguous batches.

A batch is the unit of provider invocation and of retry. Batches never
overlap and together cover ``[1..page_count]`` exactly; the last batch holds
the tail and is never padded.
"""

from typing import Optional
from uuid import UUID

from docextract.config import settings
from docextract.errors import PlanningError
from docextract.models import Batch, Document


def plan_batches(
    page_count: int,
    max_pages_per_batch: Optional[int] = None,
    document_id: Optional[UUID] = None,
) -> list[Batch]:
    """Split ``[1..page_count]`` into ranges of at most ``max_pages_per_batch``.

    Args:
        page_count: Number of pages in the document (>= 1).
        max_pages_per_batch: Batch size cap (default from settings).
        document_id: Owning document, recorded on every batch.

    Returns:
        Batches in page order.

    Raises:
        PlanningError: If the batch size is not positive or the document has
            no pages.
    """
    if max_pages_per_batch is None:
        max_pages_per_batch = settings.max_pages_per_batch
    if max_pages_per_batch <= 0:
        raise PlanningError(f"max_pages_per_batch must be positive, got {max_pages_per_batch}")
    if page_count < 1:
        raise PlanningError(f"page_count must be at least 1, got {page_count}")

    batches = []
    for index, start in enumerate(range(1, page_count + 1, max_pages_per_batch)):
        end = min(start + max_pages_per_batch - 1, page_count)
        batches.append(
            Batch(
                document_id=document_id,
                index=index,
                start_page=start,
                end_page=end,
                total_pages=page_count,
            )
        )
    return batches


def plan_document(document: Document, max_pages_per_batch: Optional[int] = None) -> list[Batch]:
    """Plan batches for an ingested document."""
    return plan_batches(document.page_count, max_pages_per_batch, document_id=document.id)
