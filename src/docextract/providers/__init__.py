"""Collaborator interfaces and their concrete adapters."""

from .base import (
    Attachment,
    BlobStore,
    JobTracker,
    LlmProvider,
    OcrProvider,
    OcrResult,
    ResultStore,
)
from .local_blob import LocalBlobStore
from .openai_llm import OpenAICompatibleLlm
from .tesseract import TesseractOcr

__all__ = [
    # Interfaces
    "Attachment",
    "BlobStore",
    "JobTracker",
    "LlmProvider",
    "OcrProvider",
    "OcrResult",
    "ResultStore",
    # Adapters
    "LocalBlobStore",
    "OpenAICompatibleLlm",
    "TesseractOcr",
]
