"""Document and page models.

Pages are produced once by the OCR/vision collaborator and never mutated
afterwards; the extraction core only reads them.
"""

from typing import Any, Optional

from pydantic import Field

from .base import BaseIRModel


class Table(BaseIRModel):
    """Table extracted from a page, stored as header row plus body rows."""

    headers: list[str] = Field(default_factory=list)
    rows: list[list[str]] = Field(default_factory=list)

    @property
    def num_rows(self) -> int:
        return len(self.rows)

    def to_text(self) -> str:
        """Pipe-separated rendering used in prompts."""
        lines = [f"Headers: {' | '.join(self.headers)}"]
        lines.extend(" | ".join(row) for row in self.rows)
        return "\n".join(lines)


class Page(BaseIRModel):
    """Single page of a document."""

    page_number: int = Field(..., ge=1, description="1-indexed page number")
    text: str = Field(default="", description="Raw OCR or text-layer content")
    tables: list[Table] = Field(default_factory=list)
    image_ref: Optional[str] = Field(
        None, description="Blob key of the rendered page image, if any"
    )
    image_type: str = Field(default="image/png", description="MIME type of the page image")
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def has_tables(self) -> bool:
        """Check if page contains tables."""
        return len(self.tables) > 0


class Document(BaseIRModel):
    """An uploaded document and its ordered pages."""

    source_filename: str = Field(..., description="Original filename")
    source_key: Optional[str] = Field(None, description="Blob key of the source file")
    content_type: str = Field(default="application/pdf")
    pages: list[Page] = Field(default_factory=list)

    @property
    def page_count(self) -> int:
        return len(self.pages)

    def page(self, page_number: int) -> Page:
        """Return the page with the given 1-indexed number."""
        return self.pages[page_number - 1]

    def page_range(self, start: int, end: int) -> list[Page]:
        """Pages ``start..end`` inclusive, in document order."""
        return self.pages[start - 1 : end]
