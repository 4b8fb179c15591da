"""IR models for the document extraction pipeline.

This module defines the Pydantic models that flow through the pipeline:
schemas in, pages and batches through the runner, raw items out of the
provider, and clean results with separated evidence into storage.

Model Hierarchy:
- ExtractionSchema → Property list → CompiledSchema (ObjectNode tree)
- Document → Pages → Tables
- ExtractionJob → Batches → RawItems → ExtractionResults + Evidence
"""

from .base import (
    BaseIRModel,
    BatchState,
    ConfidenceLevel,
    ExtractionMode,
    JobStatus,
    ResultStatus,
    confidence_to_level,
)
from .document import (
    Document,
    Page,
    Table,
)
from .job import (
    Batch,
    BatchFailure,
    BatchResult,
    ExtractionJob,
    JobLogEntry,
    ProgressEvent,
    RunnerEvent,
    TerminalFailure,
)
from .result import (
    CleanResult,
    Evidence,
    ExtractionResult,
    JobSummary,
    MergeRequest,
    RawItem,
)
from .schema import (
    ArrayNode,
    CompiledSchema,
    ExtractionSchema,
    FieldExample,
    Importance,
    ItemType,
    ObjectNode,
    Property,
    PropertyType,
    ScalarNode,
    SchemaNode,
)

__all__ = [
    # Base types
    "BaseIRModel",
    "BatchState",
    "ConfidenceLevel",
    "ExtractionMode",
    "JobStatus",
    "ResultStatus",
    "confidence_to_level",
    # Schema
    "ArrayNode",
    "CompiledSchema",
    "ExtractionSchema",
    "FieldExample",
    "Importance",
    "ItemType",
    "ObjectNode",
    "Property",
    "PropertyType",
    "ScalarNode",
    "SchemaNode",
    # Document
    "Document",
    "Page",
    "Table",
    # Job
    "Batch",
    "BatchFailure",
    "BatchResult",
    "ExtractionJob",
    "JobLogEntry",
    "ProgressEvent",
    "RunnerEvent",
    "TerminalFailure",
    # Results
    "CleanResult",
    "Evidence",
    "ExtractionResult",
    "JobSummary",
    "MergeRequest",
    "RawItem",
]
