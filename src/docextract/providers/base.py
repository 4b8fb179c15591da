"""Collaborator interfaces consumed by the extraction core.

Concrete adapters live beside this module; tests substitute fakes. Every
capability is passed into the component that uses it, never looked up from
module state.
"""

from collections.abc import Sequence
from typing import Any, Optional, Protocol, runtime_checkable
from uuid import UUID

from pydantic import BaseModel, Field

from docextract.models import ExtractionJob, ExtractionResult, JobSummary, MergeRequest, Table


class Attachment(BaseModel):
    """Binary content sent alongside a prompt (rendered page or PDF)."""

    data: bytes
    mime_type: str = "image/png"
    name: Optional[str] = None


class OcrResult(BaseModel):
    """Text extracted from one page image."""

    full_text: str = ""
    tables: list[Table] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


@runtime_checkable
class LlmProvider(Protocol):
    """Single structured-generation call. Safe for concurrent use."""

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        schema_hint: Optional[dict[str, Any]] = None,
        attachments: Optional[Sequence[Attachment]] = None,
    ) -> str:
        """Return the raw response text.

        Raises:
            ProviderTransientError: Timeout, rate limit or 5xx.
            ProviderFatalError: Any other rejected request.
        """
        ...


@runtime_checkable
class OcrProvider(Protocol):
    def extract_page(self, image: bytes, page_number: int) -> OcrResult:
        ...


@runtime_checkable
class BlobStore(Protocol):
    def get_file_as_string(self, key: str) -> str:
        ...

    def get_object(self, key: str) -> bytes:
        ...

    def put_object(self, key: str, data: bytes, content_type: Optional[str] = None) -> str:
        ...


@runtime_checkable
class JobTracker(Protocol):
    """Progress sink. Failures here never abort extraction."""

    async def update_progress(
        self, job_id: UUID, stage: str, percent: int, counts: dict[str, int]
    ) -> None:
        ...

    async def save_job(self, job: ExtractionJob) -> None:
        ...

    async def save_summary(self, job_id: UUID, summary: JobSummary) -> None:
        ...


@runtime_checkable
class ResultStore(Protocol):
    async def upsert(self, results: Sequence[ExtractionResult]) -> None:
        ...

    async def save_merge(self, merged: ExtractionResult, request: MergeRequest) -> None:
        """Write the merged primary and supersede the secondaries atomically."""
        ...

    async def get_many(self, ids: Sequence[UUID]) -> list[ExtractionResult]:
        ...
