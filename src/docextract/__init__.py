"""Schema-driven document extraction pipeline.

Produced interface:
- compile_schema(property_list) -> CompiledSchema
- plan_batches(page_count, max_pages_per_batch) -> list[Batch]
- build_prompt(mode, schema, content) -> Prompt
- run_extraction(job, batches, schema, llm, documents) -> async stream of events
- separate_evidence(raw_item) -> (CleanResult, Evidence)
- ResultAggregator.merge / ExtractionService.merge_results
"""

from .pipeline import (
    ExtractionService,
    ResultAggregator,
    build_prompt,
    compile_schema,
    plan_batches,
    run_extraction,
    separate_evidence,
)

__version__ = "0.1.0"

__all__ = [
    "ExtractionService",
    "ResultAggregator",
    "build_prompt",
    "compile_schema",
    "plan_batches",
    "run_extraction",
    "separate_evidence",
]
