"""Document ingestion - PDFs, images and CSV files into Document IR.

Source files are read from the blob store. PDFs use PyMuPDF: the text layer
and detected tables are taken per page, each page is rendered to PNG for the
vision modes, and pages without a text layer fall back to OCR. Images are a
one-page document read by OCR. CSV files are split into pages of a fixed
number of rows, each carrying one table with the CSV header.
"""

import csv
import hashlib
import io
import logging
from pathlib import PurePosixPath
from typing import Optional

import fitz  # PyMuPDF

from docextract.config import settings
from docextract.errors import IngestError
from docextract.models import Document, Page, Table
from docextract.providers.base import BlobStore, OcrProvider

logger = logging.getLogger(__name__)

PDF_SUFFIXES = {".pdf"}
IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".tif", ".tiff"}
CSV_SUFFIXES = {".csv"}

_CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".csv": "text/csv",
}


def compute_hash(data: bytes) -> str:
    """SHA-256 of the source bytes, used to key rendered pages."""
    return hashlib.sha256(data).hexdigest()


def _clean_cell(value: Optional[str]) -> str:
    return " ".join((value or "").split())


class DocumentLoader:
    """Builds ``Document`` objects from blobs.

    Rendered page images are written back to the blob store under
    ``renders/<hash prefix>/page_NNNN.png``.
    """

    def __init__(
        self,
        blob_store: BlobStore,
        ocr: Optional[OcrProvider] = None,
        dpi: Optional[int] = None,
        csv_rows_per_page: Optional[int] = None,
        render_pages: bool = True,
    ):
        """Initialize loader.

        Args:
            blob_store: Source of documents and sink for rendered pages.
            ocr: OCR provider for images and PDF pages without text.
            dpi: Rendering DPI (default from settings).
            csv_rows_per_page: CSV rows per page (default from settings).
            render_pages: Render every PDF page to PNG for the vision modes.
        """
        self.blob_store = blob_store
        self.ocr = ocr
        self.dpi = dpi or settings.render_dpi
        self.csv_rows_per_page = csv_rows_per_page or settings.csv_rows_per_page
        self.render_pages = render_pages

    def load(self, key: str, filename: Optional[str] = None) -> Document:
        """Load the blob at ``key``, dispatching on the file extension."""
        filename = filename or PurePosixPath(key).name
        suffix = PurePosixPath(filename).suffix.lower()
        if suffix in PDF_SUFFIXES:
            return self.load_pdf(key, filename)
        if suffix in IMAGE_SUFFIXES:
            return self.load_image(key, filename)
        if suffix in CSV_SUFFIXES:
            return self.load_csv(key, filename)
        raise IngestError(f"Unsupported file type: {filename}")

    def load_pdf(self, key: str, filename: Optional[str] = None) -> Document:
        data = self.blob_store.get_object(key)
        render_prefix = f"renders/{compute_hash(data)[:16]}"
        try:
            pdf_doc = fitz.open(stream=data, filetype="pdf")
        except RuntimeError as exc:
            raise IngestError(f"Cannot open PDF {key!r}: {exc}") from exc

        pages = []
        try:
            for index in range(len(pdf_doc)):
                pages.append(self._pdf_page(pdf_doc[index], index + 1, render_prefix))
        finally:
            pdf_doc.close()

        logger.info("Loaded %s: %d page(s)", filename or key, len(pages))
        return Document(
            source_filename=filename or PurePosixPath(key).name,
            source_key=key,
            content_type=_CONTENT_TYPES[".pdf"],
            pages=pages,
        )

    def _render(self, pdf_page: "fitz.Page", page_number: int, render_prefix: str) -> tuple[str, bytes]:
        # PDF base resolution is 72 DPI
        zoom = self.dpi / 72.0
        pixmap = pdf_page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), alpha=False)
        png = pixmap.tobytes("png")
        image_key = f"{render_prefix}/page_{page_number:04d}.png"
        self.blob_store.put_object(image_key, png, content_type="image/png")
        return image_key, png

    def _pdf_page(self, pdf_page: "fitz.Page", page_number: int, render_prefix: str) -> Page:
        text = pdf_page.get_text("text").strip()
        tables = self._pdf_tables(pdf_page)

        image_ref = None
        png = None
        if self.render_pages or (not text and self.ocr is not None):
            image_ref, png = self._render(pdf_page, page_number, render_prefix)

        text_source = "pdf"
        if not text and self.ocr is not None and png is not None:
            result = self.ocr.extract_page(png, page_number)
            text = result.full_text
            tables = tables or result.tables
            text_source = "ocr"
        elif not text:
            logger.warning("Page %d has no text layer and no OCR provider is configured", page_number)

        return Page(
            page_number=page_number,
            text=text,
            tables=tables,
            image_ref=image_ref,
            metadata={
                "text_source": text_source,
                "width": pdf_page.rect.width,
                "height": pdf_page.rect.height,
                "rotation": pdf_page.rotation,
            },
        )

    @staticmethod
    def _pdf_tables(pdf_page: "fitz.Page") -> list[Table]:
        tables = []
        for found in pdf_page.find_tables().tables:
            rows = [[_clean_cell(cell) for cell in row] for row in found.extract()]
            if not rows:
                continue
            if found.header.external:
                headers = [_clean_cell(name) for name in found.header.names]
            else:
                # Header is the first extracted row
                headers, rows = rows[0], rows[1:]
            tables.append(Table(headers=headers, rows=rows))
        return tables

    def load_image(self, key: str, filename: Optional[str] = None) -> Document:
        if self.ocr is None:
            raise IngestError(f"Image {key!r} needs an OCR provider")
        result = self.ocr.extract_page(self.blob_store.get_object(key), 1)
        suffix = PurePosixPath(filename or key).suffix.lower()
        content_type = _CONTENT_TYPES.get(suffix, "image/png")
        page = Page(
            page_number=1,
            text=result.full_text,
            tables=result.tables,
            image_ref=key,
            image_type=content_type,
            metadata={"text_source": "ocr", **result.metadata},
        )
        return Document(
            source_filename=filename or PurePosixPath(key).name,
            source_key=key,
            content_type=content_type,
            pages=[page],
        )

    def load_csv(self, key: str, filename: Optional[str] = None) -> Document:
        reader = csv.reader(io.StringIO(self.blob_store.get_file_as_string(key)))
        rows = [row for row in reader if any(cell.strip() for cell in row)]
        if not rows:
            raise IngestError(f"CSV {key!r} is empty")

        headers = [_clean_cell(cell) for cell in rows[0]]
        body = rows[1:] or [[]]
        pages = []
        for index, start in enumerate(range(0, len(body), self.csv_rows_per_page)):
            chunk = [[_clean_cell(cell) for cell in row] for row in body[start : start + self.csv_rows_per_page]]
            chunk = [row for row in chunk if row]
            lines = [", ".join(headers)] + [", ".join(row) for row in chunk]
            pages.append(
                Page(
                    page_number=index + 1,
                    text="\n".join(lines),
                    tables=[Table(headers=headers, rows=chunk)],
                    metadata={"text_source": "csv", "first_row": start + 1},
                )
            )

        logger.info("Loaded %s: %d row(s) in %d page(s)", filename or key, len(body), len(pages))
        return Document(
            source_filename=filename or PurePosixPath(key).name,
            source_key=key,
            content_type=_CONTENT_TYPES[".csv"],
            pages=pages,
        )
