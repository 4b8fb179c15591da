"""Prompt Builder - render system/user prompt pairs for a batch.

Three modes share one contract:

- OCR_TEXT: page text and tables are embedded in the user prompt.
- VISION_PAGE: one rendered page image is attached to the call.
- PDF_BATCH: every page image of the batch is attached to one call.

The output schema block is always rendered from the compiled schema's
structure-only view, never from the property list. Every prompt carries the
missing-data and evidence rules plus the ``pages X-Y of N`` position line.
Multi-page prompts add the cross-page reconciliation rules and the JSON
closing rules.

Construction is pure string building: no I/O, same input gives the same
prompt.
"""

import json
from collections.abc import Sequence
from typing import Any, Optional, Union

from pydantic import BaseModel, Field

from docextract.config import settings
from docextract.models import (
    ArrayNode,
    Batch,
    CompiledSchema,
    Document,
    ExtractionMode,
    ExtractionSchema,
    ObjectNode,
    Page,
    ScalarNode,
)
from docextract.models.schema import SchemaNode, sort_by_order
from docextract.pipeline.schema_compiler import (
    MAX_INSTRUCTION_CHARS,
    cap_text,
    output_schema,
)

MAX_GENERAL_PROMPT_CHARS = 3000

_BASE_SYSTEM_PROMPTS = {
    ExtractionMode.OCR_TEXT: (
        "You are an expert data extraction specialist. You will receive "
        "OCR-extracted text and must extract structured data from it."
    ),
    ExtractionMode.VISION_PAGE: "You are an expert document extraction system.",
    ExtractionMode.PDF_BATCH: (
        "You are an expert document extraction system specialized in processing PDF documents."
    ),
}

_JSON_ONLY_RULES = [
    "CRITICAL REQUIREMENTS:",
    "- Return ONLY valid JSON",
    "- No comments, no markdown formatting, no explanations",
    "- The response must be valid JSON that can be parsed directly",
]

_MISSING_DATA_RULES = [
    "CRITICAL RULES FOR MISSING DATA:",
    '- If you cannot find a value for a field, use null or empty string ("")',
    "- NEVER use field descriptions, instructions, or placeholder text as values",
    "- NEVER make up data or use example text",
    "- Only extract actual data you can see in the document",
]

_MULTI_PAGE_RULES = [
    "CRITICAL INSTRUCTIONS FOR MULTI-PAGE ITEMS:",
    "- Items may span across multiple pages within this batch",
    "- When you find partial information about an item, check ALL pages of the batch before finalizing it",
    "- If an item spans pages within this batch, combine the information into ONE complete item",
    "- Include all page numbers where the item appears in the location field (e.g. 'Pages 5-7')",
]

_JSON_CLOSING_RULES = [
    "ABSOLUTE JSON FORMATTING REQUIREMENTS (CRITICAL):",
    "- EVERY string field MUST have properly closed quotes",
    "- NEVER cut off in the middle of a word or escape sequence",
    '- If a value is too long, shorten it with an ellipsis BEFORE the closing quote: "Long text here ..."',
    "- ALWAYS close every object with } and the JSON array with ]",
    "- If the response is getting long, extract fewer details per item to keep the JSON valid",
]


class PromptContent(BaseModel):
    """Pages of one batch and their position in the document."""

    pages: list[Page] = Field(default_factory=list)
    start_page: int = Field(..., ge=1)
    end_page: int = Field(..., ge=1)
    total_pages: int = Field(..., ge=1)

    @classmethod
    def from_batch(cls, batch: Batch, document: Document) -> "PromptContent":
        return cls(
            pages=document.page_range(batch.start_page, batch.end_page),
            start_page=batch.start_page,
            end_page=batch.end_page,
            total_pages=batch.total_pages,
        )

    @property
    def position(self) -> str:
        return f"pages {self.start_page}-{self.end_page} of {self.total_pages}"

    @property
    def is_multi_page(self) -> bool:
        return self.end_page > self.start_page


class Prompt(BaseModel):
    """Rendered prompt pair plus the schema hint passed to the provider."""

    system_prompt: str
    user_prompt: str
    schema_hint: Optional[dict[str, Any]] = None


def _dump(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def _node_type_label(node: SchemaNode) -> str:
    if isinstance(node, ScalarNode):
        return "date" if node.format == "date" else node.type
    if isinstance(node, ArrayNode):
        return f"list of {_node_type_label(node.items)}"
    return "object"


def _field_guidance(compiled: CompiledSchema) -> list[str]:
    """Per-field guidance for fields that carry instructions or examples."""
    lines: list[str] = []
    for name, node in compiled.ordered_fields():
        if not (node.extraction_instructions or node.examples):
            continue

        children: Optional[ObjectNode] = None
        if isinstance(node, ArrayNode) and isinstance(node.items, ObjectNode):
            children = node.items
            lines.append(f"## {node.title or name} (List of Objects)")
        elif isinstance(node, ObjectNode):
            children = node
            lines.append(f"## {node.title or name} (Object)")
        else:
            lines.append(f"## {node.title or name}")

        if node.importance:
            lines.append(f"**Importance:** {node.importance.value.upper()}")

        if node.extraction_instructions:
            lines.append("")
            lines.append("**Extraction Instructions:**")
            lines.append(
                cap_text(
                    node.extraction_instructions,
                    MAX_INSTRUCTION_CHARS,
                    f"extractionInstructions for field {name!r} in prompt",
                )
            )

        if children is not None and children.properties:
            lines.append("")
            lines.append("**Object Structure:**")
            for child_name, child in sort_by_order(children.properties):
                description = child.description or ""
                lines.append(f"- {child_name} ({_node_type_label(child)}): {description}".rstrip())

        if node.examples:
            lines.append("")
            lines.append("**Examples:**")
            for number, example in enumerate(node.examples, start=1):
                lines.append(f'{number}. Input: "{example.input}"')
                if isinstance(example.output, (dict, list)):
                    lines.append(f"Output: {_dump(example.output)}")
                else:
                    lines.append(f'Output: "{example.output}"')
        lines.append("")
    return lines


def _evidence_rules(content: PromptContent) -> list[str]:
    location_hint = (
        f"'Page {content.start_page}, Table 1, Row 2' or 'Pages {content.start_page}-{content.end_page}'"
        if content.is_multi_page
        else f"'Page {content.start_page}, Table 1, Row 3'"
    )
    return [
        "EVIDENCE REQUIREMENTS:",
        "For EACH extracted item, you MUST also include:",
        "- sourceText: A text snippet containing ALL the values you extracted for the item",
        "  * If you extracted Quantity='50', ItemCode='ABC' and Specs='Grade A', sourceText MUST contain '50', 'ABC' AND 'Grade A'",
        "  * If values come from different places, concatenate the snippets with '...' as separator",
        "  * Example: 'Item: ABC123 ... Quantity: 50 units ... Specs: Grade A steel'",
        f"- location: Where you found the information, including the page number (e.g. {location_hint})",
        "- confidence (optional): Your confidence in the item between 0 and 1",
    ]


def _page_content(content: PromptContent) -> list[str]:
    lines = [
        "DOCUMENT CONTENT TO EXTRACT FROM:",
        f"Processing {len(content.pages)} page(s) ({content.position}):",
        "",
    ]
    for page in content.pages:
        lines.append(f"--- PAGE {page.page_number} ---")
        lines.append(page.text)
        if page.has_tables:
            lines.append("")
            lines.append(f"TABLES ON PAGE {page.page_number}:")
            lines.append(
                "\n\n".join(
                    f"Table {index}:\n{table.to_text()}"
                    for index, table in enumerate(page.tables, start=1)
                )
            )
        lines.append("")
    return lines


def build_prompt(
    mode: ExtractionMode,
    schema: Optional[Union[ExtractionSchema, CompiledSchema]],
    content: PromptContent,
    examples: Optional[Sequence[dict[str, Any]]] = None,
    max_examples: Optional[int] = None,
) -> Prompt:
    """Render the prompt pair for one batch.

    Args:
        mode: How page content reaches the provider.
        schema: Versioned schema or bare compiled schema. ``None`` (or an
            empty schema) extracts freeform materials/items.
        content: Batch pages and position metadata.
        examples: Example records; defaults to the schema's own examples.
        max_examples: Cap on rendered examples (default from settings).

    Returns:
        Prompt with system prompt, user prompt and output schema hint.
    """
    if max_examples is None:
        max_examples = settings.max_prompt_examples

    compiled: Optional[CompiledSchema] = None
    general_prompt: Optional[str] = None
    if isinstance(schema, ExtractionSchema):
        compiled = schema.compiled
        general_prompt = schema.prompt
        if examples is None:
            examples = schema.examples
    elif isinstance(schema, CompiledSchema):
        compiled = schema
    if compiled is not None and compiled.is_empty:
        compiled = None

    # System prompt
    system = [_BASE_SYSTEM_PROMPTS[mode]]
    if compiled is None:
        system[0] += " Extract all materials and items from the document."
    if general_prompt and general_prompt.strip():
        system += [
            "",
            "# General Instructions",
            cap_text(general_prompt.strip(), MAX_GENERAL_PROMPT_CHARS, "schema-level prompt"),
        ]
    if compiled is not None:
        guidance = _field_guidance(compiled)
        if guidance:
            system += ["", "# Field-Specific Extraction Guidance", ""] + guidance
    system += [""] + _JSON_ONLY_RULES

    # User prompt
    multi_page = mode == ExtractionMode.PDF_BATCH or content.is_multi_page
    schema_hint = output_schema(compiled) if compiled is not None else None
    user: list[str] = []

    if mode == ExtractionMode.OCR_TEXT:
        user.append(
            f"DOCUMENT CONTEXT: You are reading the OCR text of {content.position} "
            f"(a {content.total_pages}-page document)."
        )
    else:
        noun = "PDF pages" if mode == ExtractionMode.PDF_BATCH else "page image(s)"
        user.append(
            f"DOCUMENT CONTEXT: You are viewing the attached {noun} for {content.position} "
            f"(a {content.total_pages}-page document). "
            "Extract all items from the provided pages."
        )
    user.append("")

    if schema_hint is not None:
        user += ["REQUIRED OUTPUT SCHEMA (one object per item):", "```json", _dump(schema_hint), "```", ""]

    limited_examples = list(examples or [])[: max(max_examples, 0)]
    if limited_examples:
        user += ["EXAMPLE OUTPUT FORMAT:", "```json", _dump(limited_examples), "```", ""]

    if multi_page:
        user += _MULTI_PAGE_RULES + [""]
    user += _MISSING_DATA_RULES + [""]
    user += _evidence_rules(content) + [""]
    if multi_page:
        user += _JSON_CLOSING_RULES + [""]

    if mode == ExtractionMode.OCR_TEXT:
        user += _page_content(content)

    if schema_hint is not None:
        user.append(
            "Return the extracted data as a JSON array of objects matching the REQUIRED OUTPUT SCHEMA, "
            "with sourceText and location fields added to each object."
        )
    else:
        user.append("Return a JSON array of all items found, each with sourceText and location fields.")

    return Prompt(
        system_prompt="\n".join(system),
        user_prompt="\n".join(user),
        schema_hint=schema_hint,
    )
