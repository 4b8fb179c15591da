"""Extraction pipeline.

Core stages, leaves first:
1. schema_compiler - property lists to compiled schema trees and back
2. prompt_builder - system/user prompts for OCR-text, vision and PDF modes
3. batch_planner - contiguous page batches
4. runner - bounded-concurrency provider calls with repair and retry
5. evidence - clean data / evidence partition
6. aggregator - confidence, consolidation, merge and summary

Supporting modules: json_repair and parsing (provider output), ingest
(documents from PDF/image/CSV) and service (end-to-end job orchestration).
"""

from .aggregator import ResultAggregator
from .batch_planner import plan_batches, plan_document
from .evidence import EVIDENCE_FIELDS, separate_evidence, to_extraction_result
from .ingest import DocumentLoader
from .json_repair import RepairResult, parse_json_response
from .parsing import ParsedResponse, parse_items
from .prompt_builder import Prompt, PromptContent, build_prompt
from .runner import ExtractionRunner, run_extraction
from .schema_compiler import (
    build_schema,
    clean_schema,
    compile_schema,
    decompile_schema,
    from_json_schema,
    new_version,
    output_schema,
    publish_schema,
    to_json_schema,
    update_draft,
    validate_record,
)
from .service import ExtractionService, JobOutcome

__all__ = [
    # Schema
    "build_schema",
    "clean_schema",
    "compile_schema",
    "decompile_schema",
    "from_json_schema",
    "new_version",
    "output_schema",
    "publish_schema",
    "to_json_schema",
    "update_draft",
    "validate_record",
    # Prompts
    "Prompt",
    "PromptContent",
    "build_prompt",
    # Batching
    "plan_batches",
    "plan_document",
    # Provider output
    "RepairResult",
    "parse_json_response",
    "ParsedResponse",
    "parse_items",
    # Runner
    "ExtractionRunner",
    "run_extraction",
    # Evidence
    "EVIDENCE_FIELDS",
    "separate_evidence",
    "to_extraction_result",
    # Aggregation
    "ResultAggregator",
    # Ingestion and orchestration
    "DocumentLoader",
    "ExtractionService",
    "JobOutcome",
]
