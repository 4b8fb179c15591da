"""Response parsing: provider text to raw item dictionaries.

Accepts a JSON array of items, an ``{"items": [...]}`` or
``{"materials": [...]}`` wrapper, or a single item object. A lone object only
counts as an item when it carries a schema field (or, without a schema, any
non-evidence field other than an error message); ``{}`` and
``{"error": ...}`` mean nothing was found. Items that lack a required
top-level field are dropped (and logged). Each surviving item is
annotated with ``pageNumber``, ``extractionMethod`` and, when some field
values cannot be found in its ``sourceText``, the ``sourceTextIncomplete``
and ``missingFieldsInSourceText`` flags. The last item of a reply that was
cut inside it is marked ``truncated``.
"""

import logging
import re
from typing import Any, Optional

from pydantic import BaseModel, Field

from docextract.errors import ResponseParseError
from docextract.models import CompiledSchema
from docextract.models.result import (
    EXTRACTION_METHOD_KEY,
    MISSING_FIELDS_KEY,
    PAGE_NUMBER_KEY,
    SOURCE_TEXT_INCOMPLETE_KEY,
    TRUNCATED_KEY,
)
from docextract.pipeline.evidence import EVIDENCE_FIELDS
from docextract.pipeline.json_repair import parse_json_response
from docextract.pipeline.schema_compiler import missing_required_fields

logger = logging.getLogger(__name__)

WRAPPER_KEYS = ("items", "materials")
# Keys a model uses to say it found nothing
REPLY_ONLY_KEYS = frozenset(("error", "errors", "message"))
_NUMERIC_NOISE = re.compile(r"[,.\s]")


class ParsedResponse(BaseModel):
    """Items parsed from one provider reply."""

    items: list[dict[str, Any]] = Field(default_factory=list)
    repaired: bool = False
    discarded_chars: int = 0
    dropped_items: int = 0


def _has_item_fields(value: dict[str, Any], compiled: Optional[CompiledSchema]) -> bool:
    if compiled is not None and not compiled.is_empty:
        return any(name in compiled.root.properties for name in value)
    return any(name not in EVIDENCE_FIELDS and name not in REPLY_ONLY_KEYS for name in value)


def _unwrap(value: Any, compiled: Optional[CompiledSchema] = None) -> list[Any]:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        for key in WRAPPER_KEYS:
            if isinstance(value.get(key), list):
                return value[key]
        if _has_item_fields(value, compiled):
            return [value]
        logger.warning("Object reply has no item fields, treating as empty: %r", str(value)[:100])
        return []
    raise ResponseParseError(f"Expected a JSON array or object, got {type(value).__name__}")


def check_source_text(item: dict[str, Any]) -> list[str]:
    """Fields whose values do not appear in the item's ``sourceText``.

    Matching is case-insensitive; numbers also match with separators
    (``,`` ``.`` and whitespace) removed. Values shorter than two characters
    and non-scalar values are not checked.
    """
    source = item.get("sourceText")
    if not isinstance(source, str) or not source.strip():
        return []

    source_text = source.strip().lower()
    if len(source_text) < 3:
        return ["sourceText too short"]
    numeric_source = _NUMERIC_NOISE.sub("", source_text)

    missing = []
    for name, value in item.items():
        if name in EVIDENCE_FIELDS or value is None or isinstance(value, (bool, dict, list)):
            continue
        value_text = str(value).strip().lower()
        if len(value_text) < 2 or value_text in source_text:
            continue
        if _NUMERIC_NOISE.sub("", value_text) not in numeric_source:
            missing.append(name)
    return missing


def parse_items(
    raw_text: str,
    compiled: Optional[CompiledSchema] = None,
    page_number: Optional[int] = None,
    extraction_method: str = "dynamic-schema",
) -> ParsedResponse:
    """Parse and annotate the items in a provider reply.

    Args:
        raw_text: Provider output, possibly fenced or truncated.
        compiled: Schema whose top-level ``required`` fields are enforced.
        page_number: Default ``pageNumber`` for items that do not carry one.
        extraction_method: Value recorded as ``extractionMethod``.

    Returns:
        ParsedResponse. A blank reply yields zero items.

    Raises:
        ResponseParseError: If the reply is not JSON even after repair.
    """
    if not raw_text or not raw_text.strip():
        logger.warning("Empty provider response for page %s", page_number)
        return ParsedResponse()

    repair = parse_json_response(raw_text)
    candidates = _unwrap(repair.value, compiled)

    items: list[dict[str, Any]] = []
    dropped = 0
    for index, candidate in enumerate(candidates):
        if not isinstance(candidate, dict):
            dropped += 1
            logger.warning("Dropping non-object item %r", candidate)
            continue
        if not any(name not in EVIDENCE_FIELDS for name in candidate):
            dropped += 1
            logger.warning("Dropping item without data fields %r", candidate)
            continue

        if compiled is not None:
            missing = missing_required_fields(compiled, candidate)
            if missing:
                dropped += 1
                logger.warning("Dropping item missing required fields %s", missing)
                continue

        item = dict(candidate)
        missing_in_source = check_source_text(item)
        if missing_in_source:
            logger.warning(
                "Incomplete sourceText: fields %s not found in %r",
                missing_in_source,
                str(item.get("sourceText"))[:100],
            )
            item[SOURCE_TEXT_INCOMPLETE_KEY] = True
            item[MISSING_FIELDS_KEY] = missing_in_source
        if repair.truncated and index == len(candidates) - 1:
            logger.warning("Item %r was cut off mid-record", str(item)[:100])
            item[TRUNCATED_KEY] = True
        if page_number is not None:
            item.setdefault(PAGE_NUMBER_KEY, page_number)
        item[EXTRACTION_METHOD_KEY] = extraction_method
        items.append(item)

    logger.debug("Parsed %d item(s), dropped %d", len(items), dropped)
    return ParsedResponse(
        items=items,
        repaired=repair.repaired,
        discarded_chars=repair.discarded_chars,
        dropped_items=dropped,
    )
