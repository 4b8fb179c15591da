"""Tests for document ingestion."""

from unittest.mock import MagicMock

import fitz
import pytest

from docextract.errors import IngestError
from docextract.pipeline.ingest import DocumentLoader, compute_hash
from docextract.providers import LocalBlobStore, OcrResult


@pytest.fixture
def store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def ocr():
    mock_ocr = MagicMock()
    mock_ocr.extract_page.return_value = OcrResult(full_text="scanned text", metadata={"confidence": 0.8})
    return mock_ocr


@pytest.fixture
def pdf_key(store):
    """Two-page PDF: one page with a text layer, one blank page."""
    pdf_doc = fitz.open()
    page = pdf_doc.new_page()
    page.insert_text((72, 72), "Pos 01.002 Steel beam 12 pcs")
    pdf_doc.new_page()
    data = pdf_doc.tobytes()
    pdf_doc.close()
    return store.put_object("uploads/order.pdf", data)


class TestComputeHash:
    def test_hash_consistency(self):
        assert compute_hash(b"abc") == compute_hash(b"abc")
        assert len(compute_hash(b"abc")) == 64

    def test_hash_different_content(self):
        assert compute_hash(b"A") != compute_hash(b"B")


class TestLoadPdf:
    """Tests for PDF ingestion."""

    def test_text_layer_and_ocr_fallback(self, store, ocr, pdf_key):
        document = DocumentLoader(store, ocr=ocr, dpi=72).load(pdf_key)

        assert document.source_filename == "order.pdf"
        assert document.source_key == pdf_key
        assert document.page_count == 2
        first, second = document.pages
        assert "Steel beam" in first.text
        assert first.metadata["text_source"] == "pdf"
        assert second.text == "scanned text"
        assert second.metadata["text_source"] == "ocr"
        ocr.extract_page.assert_called_once()
        assert ocr.extract_page.call_args[0][1] == 2

    def test_pages_are_rendered(self, store, pdf_key):
        document = DocumentLoader(store, dpi=72).load(pdf_key)
        for page in document.pages:
            assert page.image_ref.endswith(f"page_{page.page_number:04d}.png")
            assert store.get_object(page.image_ref).startswith(b"\x89PNG")

    def test_rendering_can_be_disabled(self, store, pdf_key):
        document = DocumentLoader(store, render_pages=False).load(pdf_key)
        assert all(page.image_ref is None for page in document.pages)
        assert document.pages[1].text == ""

    def test_invalid_pdf(self, store):
        key = store.put_object("uploads/broken.pdf", b"this is not a pdf")
        with pytest.raises(IngestError):
            DocumentLoader(store).load(key)


class TestPdfTables:
    def _found_table(self, rows, external=False, names=None):
        found = MagicMock()
        found.extract.return_value = rows
        found.header.external = external
        found.header.names = names or []
        return found

    def test_first_row_is_header(self):
        page = MagicMock()
        page.find_tables.return_value.tables = [
            self._found_table([["Code", "Qty"], ["A1", " 4 "], ["A2", None]])
        ]
        (table,) = DocumentLoader._pdf_tables(page)
        assert table.headers == ["Code", "Qty"]
        assert table.rows == [["A1", "4"], ["A2", ""]]

    def test_external_header(self):
        page = MagicMock()
        page.find_tables.return_value.tables = [
            self._found_table([["A1", "4"]], external=True, names=["Code", "Qty"])
        ]
        (table,) = DocumentLoader._pdf_tables(page)
        assert table.headers == ["Code", "Qty"]
        assert table.rows == [["A1", "4"]]

    def test_empty_tables_are_skipped(self):
        page = MagicMock()
        page.find_tables.return_value.tables = [self._found_table([])]
        assert DocumentLoader._pdf_tables(page) == []


class TestLoadCsv:
    def test_rows_are_paged(self, store):
        key = store.put_object("uploads/items.csv", "\ufeffCode,Qty\nA1, 4\n,\nA2,5\nA3,6\n".encode())
        document = DocumentLoader(store, csv_rows_per_page=2).load(key)

        assert document.content_type == "text/csv"
        assert document.page_count == 2
        first, second = document.pages
        assert first.tables[0].headers == ["Code", "Qty"]
        assert first.tables[0].rows == [["A1", "4"], ["A2", "5"]]
        assert second.tables[0].rows == [["A3", "6"]]
        assert second.metadata["first_row"] == 3
        assert first.text.splitlines()[0] == "Code, Qty"

    def test_header_only(self, store):
        key = store.put_object("uploads/empty.csv", b"Code,Qty\n")
        document = DocumentLoader(store).load(key)
        assert document.page_count == 1
        assert document.pages[0].tables[0].rows == []

    def test_empty_file(self, store):
        key = store.put_object("uploads/blank.csv", b"\n\n")
        with pytest.raises(IngestError):
            DocumentLoader(store).load(key)


class TestLoadImage:
    def test_image_is_one_ocr_page(self, store, ocr):
        key = store.put_object("uploads/scan.jpg", b"jpeg bytes")
        document = DocumentLoader(store, ocr=ocr).load(key)

        assert document.content_type == "image/jpeg"
        (page,) = document.pages
        assert page.text == "scanned text"
        assert page.image_ref == key
        assert page.image_type == "image/jpeg"
        assert page.metadata["confidence"] == 0.8
        ocr.extract_page.assert_called_once_with(b"jpeg bytes", 1)

    def test_image_needs_ocr(self, store):
        key = store.put_object("uploads/scan.png", b"png bytes")
        with pytest.raises(IngestError):
            DocumentLoader(store).load(key)


def test_unsupported_type(store):
    key = store.put_object("uploads/notes.docx", b"x")
    with pytest.raises(IngestError):
        DocumentLoader(store).load(key)
