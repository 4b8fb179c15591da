"""Exception taxonomy for the extraction pipeline.

Pre-flight errors (``SchemaError``, ``PlanningError``) surface to the caller
before any provider call is made. Provider errors are contained per batch by
the runner. ``MergeError`` rejects a merge request without touching results.
"""

from enum import Enum
from typing import Optional


class ExtractionError(Exception):
    """Base class for all pipeline errors."""


class SchemaErrorCode(str, Enum):
    """Reasons a property list or schema is rejected."""

    INVALID_PROPERTY_TYPE = "invalid_property_type"
    INVALID_PROPERTY = "invalid_property"
    DUPLICATE_PROPERTY = "duplicate_property"
    INVALID_EXAMPLE = "invalid_example"
    SCHEMA_PUBLISHED = "schema_published"


class SchemaError(ExtractionError):
    """Invalid property definition or schema."""

    def __init__(self, code: SchemaErrorCode, message: str):
        super().__init__(f"{code.value}: {message}")
        self.code = code
        self.message = message


class PlanningError(ExtractionError):
    """Invalid batch planning input."""


class ProviderError(ExtractionError):
    """Base class for LLM/OCR provider failures."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTransientError(ProviderError):
    """Timeout, rate limit, 5xx/overload. Retried with backoff."""


class ResponseParseError(ProviderTransientError):
    """Provider output could not be parsed, even after repair."""


class ProviderFatalError(ProviderError):
    """Non-retryable provider failure. Terminal for the batch."""


class MergeError(ExtractionError):
    """Invalid merge request."""


class IngestError(ExtractionError):
    """Source file cannot be turned into pages."""
