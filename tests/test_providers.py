"""Tests for provider adapters."""

import asyncio
import base64
from unittest.mock import AsyncMock, MagicMock, patch

import cv2
import httpx
import numpy as np
import pytesseract
import pytest
from openai import APIConnectionError, APIStatusError, RateLimitError

from docextract.errors import ProviderFatalError, ProviderTransientError
from docextract.providers import (
    Attachment,
    BlobStore,
    LocalBlobStore,
    OcrProvider,
    OpenAICompatibleLlm,
    TesseractOcr,
)
from docextract.providers.tesseract import deskew_image

REQUEST = httpx.Request("POST", "http://localhost:11434/v1/chat/completions")


def status_error(cls, status_code):
    return cls("error", response=httpx.Response(status_code, request=REQUEST), body=None)


def completion(content, finish_reason="stop"):
    choice = MagicMock(finish_reason=finish_reason)
    choice.message.content = content
    return MagicMock(choices=[choice])


@pytest.fixture
def client():
    mock_client = MagicMock()
    mock_client.chat.completions.create = AsyncMock(return_value=completion('[{"a": 1}]'))
    return mock_client


class TestOpenAICompatibleLlm:
    """Tests for the chat completions adapter."""

    def test_invoke_returns_message_text(self, client):
        llm = OpenAICompatibleLlm(model="llama3.1", temperature=0.0, max_output_tokens=100, client=client)
        text = asyncio.run(llm.invoke("system", "user"))

        assert text == '[{"a": 1}]'
        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "llama3.1"
        assert kwargs["max_tokens"] == 100
        assert kwargs["temperature"] == 0.0
        assert kwargs["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ]

    def test_attachments_become_data_urls(self, client):
        llm = OpenAICompatibleLlm(client=client)
        asyncio.run(llm.invoke("system", "user", attachments=[Attachment(data=b"png")]))

        content = client.chat.completions.create.call_args.kwargs["messages"][1]["content"]
        assert content[0] == {"type": "text", "text": "user"}
        encoded = base64.b64encode(b"png").decode("ascii")
        assert content[1]["image_url"]["url"] == f"data:image/png;base64,{encoded}"

    def test_empty_content(self, client):
        client.chat.completions.create.return_value = completion(None)
        assert asyncio.run(OpenAICompatibleLlm(client=client).invoke("s", "u")) == ""

    def test_truncated_output_is_returned(self, client):
        """Truncation is left to the JSON repair step."""
        client.chat.completions.create.return_value = completion('[{"a": 1', finish_reason="length")
        assert asyncio.run(OpenAICompatibleLlm(client=client).invoke("s", "u")) == '[{"a": 1'

    def test_no_choices_is_transient(self, client):
        client.chat.completions.create.return_value = MagicMock(choices=[])
        with pytest.raises(ProviderTransientError):
            asyncio.run(OpenAICompatibleLlm(client=client).invoke("s", "u"))

    @pytest.mark.parametrize(
        "error, expected",
        [
            (APIConnectionError(request=REQUEST), ProviderTransientError),
            (status_error(RateLimitError, 429), ProviderTransientError),
            (status_error(APIStatusError, 503), ProviderTransientError),
            (status_error(APIStatusError, 400), ProviderFatalError),
            (status_error(APIStatusError, 401), ProviderFatalError),
        ],
    )
    def test_error_mapping(self, client, error, expected):
        client.chat.completions.create.side_effect = error
        with pytest.raises(expected):
            asyncio.run(OpenAICompatibleLlm(client=client).invoke("s", "u"))

    def test_status_code_is_kept(self, client):
        client.chat.completions.create.side_effect = status_error(APIStatusError, 502)
        with pytest.raises(ProviderTransientError) as exc_info:
            asyncio.run(OpenAICompatibleLlm(client=client).invoke("s", "u"))
        assert exc_info.value.status_code == 502


def encode_png(image):
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


class TestTesseractOcr:
    """Tests for Tesseract OCR."""

    @pytest.fixture
    def page_image(self):
        return encode_png(np.full((40, 40), 255, dtype=np.uint8))

    def test_ocr_initialization(self):
        ocr = TesseractOcr(language="eng+deu", psm=6, config="--dpi 300")
        assert ocr.language == "eng+deu"
        assert ocr._build_config() == "--psm 6 --oem 3 --dpi 300"
        assert isinstance(ocr, OcrProvider)

    @patch("docextract.providers.tesseract.pytesseract.image_to_data")
    def test_words_are_grouped_into_lines(self, mock_data, page_image):
        mock_data.return_value = {
            "text": ["Steel", "beam", "", "12"],
            "conf": [90, 80, -1, 70],
            "block_num": [1, 1, 1, 1],
            "par_num": [1, 1, 1, 1],
            "line_num": [1, 1, 1, 2],
        }
        result = TesseractOcr(language="eng").extract_page(page_image, 3)

        assert result.full_text == "Steel beam\n12"
        assert result.metadata["page_number"] == 3
        assert result.metadata["word_count"] == 3
        assert result.metadata["confidence"] == pytest.approx(0.8)
        assert result.metadata["confidence_level"] == "medium"

    def test_undecodable_image(self):
        with pytest.raises(ProviderFatalError):
            TesseractOcr().extract_page(b"not an image", 1)

    @patch("docextract.providers.tesseract.pytesseract.image_to_data")
    def test_tesseract_failure_is_fatal(self, mock_data, page_image):
        mock_data.side_effect = pytesseract.TesseractError(1, "boom")
        with pytest.raises(ProviderFatalError):
            TesseractOcr().extract_page(page_image, 1)

    def test_deskew_blank_page(self):
        image = np.full((20, 20), 255, dtype=np.uint8)
        assert deskew_image(image) is image


class TestLocalBlobStore:
    def test_put_and_get(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        store.put_object("renders/abc/page_0001.png", b"png")
        assert store.exists("renders/abc/page_0001.png")
        assert store.get_object("renders/abc/page_0001.png") == b"png"
        assert isinstance(store, BlobStore)

    def test_text_drops_bom(self, tmp_path):
        store = LocalBlobStore(tmp_path)
        store.put_object("a.csv", "\ufeffCode".encode("utf-8"))
        assert store.get_file_as_string("a.csv") == "Code"

    def test_put_file_default_key(self, tmp_path):
        source = tmp_path / "order.pdf"
        source.write_bytes(b"%PDF")
        store = LocalBlobStore(tmp_path / "store")
        key = store.put_file(source)
        assert key.startswith("uploads/") and key.endswith("/order.pdf")
        assert store.get_object(key) == b"%PDF"

    def test_keys_cannot_escape_root(self, tmp_path):
        store = LocalBlobStore(tmp_path / "store")
        with pytest.raises(ValueError):
            store.get_object("../secret.txt")

    def test_missing_key(self, tmp_path):
        with pytest.raises(OSError):
            LocalBlobStore(tmp_path).get_object("missing.png")
