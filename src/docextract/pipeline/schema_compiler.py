"""Schema Compiler - property lists to canonical schema trees and back.

Mapping rules:
- string/number/boolean → scalar of the same type
- date → ``{"type": "string", "format": "date"}``
- list<primitive> → ``{"type": "array", "items": {"type": primitive}}``
- list<object> / object → nested object with ordered ``properties`` and
  ``required``

Every compiled node records its sibling position in ``order`` so consumers
can re-sort after a trip through storage. ``decompile`` is the exact
inverse for valid property lists.
"""

import logging
import re
from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Optional, Union

from pydantic import ValidationError

from docextract.errors import SchemaError, SchemaErrorCode
from docextract.models import (
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
)
from docextract.models.schema import NodeMeta, SchemaNode, sort_by_order

logger = logging.getLogger(__name__)

JSON_SCHEMA_DIALECT = "https://json-schema.org/draft/2020-12/schema"
MAX_INSTRUCTION_CHARS = 500
DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")

_SCALAR_TYPES = {
    PropertyType.STRING: "string",
    PropertyType.NUMBER: "number",
    PropertyType.BOOLEAN: "boolean",
}

PropertyInput = Union[Property, Mapping[str, Any]]


# --------------------------------------------------------------------------
# compile / decompile
# --------------------------------------------------------------------------


def coerce_properties(property_list: Sequence[PropertyInput]) -> list[Property]:
    """Validate raw property dictionaries into ``Property`` models.

    Raises:
        SchemaError: ``INVALID_PROPERTY_TYPE`` for an unknown ``type`` or
            ``itemType``, ``INVALID_PROPERTY`` for any other defect.
    """
    properties = []
    for index, raw in enumerate(property_list):
        if isinstance(raw, Property):
            properties.append(raw)
            continue
        try:
            properties.append(Property.model_validate(raw))
        except ValidationError as exc:
            raise _schema_error_from_validation(index, exc) from exc
    return properties


def _schema_error_from_validation(index: int, exc: ValidationError) -> SchemaError:
    for error in exc.errors():
        loc = error.get("loc", ())
        if loc and loc[-1] in ("type", "itemType", "item_type") and error.get("type") == "enum":
            path = ".".join(str(part) for part in loc)
            return SchemaError(
                SchemaErrorCode.INVALID_PROPERTY_TYPE,
                f"property {index}: unsupported type at {path}: {error.get('input')!r}",
            )
    return SchemaError(
        SchemaErrorCode.INVALID_PROPERTY,
        f"property {index}: {exc.errors()[0].get('msg', 'invalid property')}",
    )


def compile_schema(property_list: Sequence[PropertyInput]) -> CompiledSchema:
    """Compile a property list into a canonical schema tree.

    An empty list compiles to an empty object schema.
    """
    properties = coerce_properties(property_list)
    properties_map, required = _compile_siblings(properties, scope="root")
    return CompiledSchema(root=ObjectNode(properties=properties_map, required=required))


def _compile_siblings(
    properties: Sequence[Property], scope: str
) -> tuple[dict[str, SchemaNode], list[str]]:
    compiled: dict[str, SchemaNode] = {}
    required: list[str] = []
    for order, prop in enumerate(properties):
        if prop.name in compiled:
            raise SchemaError(
                SchemaErrorCode.DUPLICATE_PROPERTY,
                f"duplicate property name {prop.name!r} in {scope}",
            )
        compiled[prop.name] = _compile_property(prop, order, scope)
        if prop.required:
            required.append(prop.name)
    return compiled, required


def _meta(prop: Property, order: int) -> dict[str, Any]:
    return {
        "title": prop.title,
        "description": prop.description,
        "importance": prop.importance,
        "extraction_instructions": prop.extraction_instructions,
        "examples": list(prop.examples),
        "order": order,
    }


def _scalar_for_item(item_type: ItemType) -> ScalarNode:
    if item_type == ItemType.DATE:
        return ScalarNode(type="string", format="date")
    return ScalarNode(type=item_type.value)


def _compile_property(prop: Property, order: int, scope: str) -> SchemaNode:
    meta = _meta(prop, order)
    child_scope = f"{scope}.{prop.name}"

    if prop.type in _SCALAR_TYPES:
        return ScalarNode(type=_SCALAR_TYPES[prop.type], **meta)

    if prop.type == PropertyType.DATE:
        return ScalarNode(type="string", format="date", **meta)

    if prop.type == PropertyType.LIST:
        if prop.item_type == ItemType.OBJECT:
            children, required = _compile_siblings(prop.fields, child_scope)
            items: SchemaNode = ObjectNode(properties=children, required=required)
        else:
            items = _scalar_for_item(prop.item_type or ItemType.STRING)
        return ArrayNode(items=items, **meta)

    if prop.type == PropertyType.OBJECT:
        children, required = _compile_siblings(prop.fields, child_scope)
        return ObjectNode(properties=children, required=required, **meta)

    raise SchemaError(
        SchemaErrorCode.INVALID_PROPERTY_TYPE,
        f"unsupported type {prop.type!r} for {child_scope}",
    )


def decompile_schema(compiled: CompiledSchema) -> list[Property]:
    """Rebuild the property list from a compiled schema.

    Siblings are sorted by ``order``; nodes without one sort to the end in
    their input order.
    """
    return _decompile_siblings(compiled.root, scope="root")


def _decompile_siblings(node: ObjectNode, scope: str) -> list[Property]:
    required = set(node.required)
    return [
        _decompile_node(name, child, name in required, f"{scope}.{name}")
        for name, child in sort_by_order(node.properties)
    ]


def _decompile_node(name: str, node: SchemaNode, required: bool, scope: str) -> Property:
    base = {
        "name": name,
        "title": node.title or name,
        "required": required,
        "importance": node.importance or Importance.MEDIUM,
        "description": node.description,
        "extraction_instructions": node.extraction_instructions,
        "examples": list(node.examples),
    }

    if isinstance(node, ScalarNode):
        prop_type = PropertyType.DATE if node.format == "date" else PropertyType(node.type)
        return Property(type=prop_type, **base)

    if isinstance(node, ArrayNode):
        items = node.items
        if isinstance(items, ObjectNode):
            return Property(
                type=PropertyType.LIST,
                item_type=ItemType.OBJECT,
                fields=_decompile_siblings(items, scope),
                **base,
            )
        if isinstance(items, ScalarNode):
            item_type = ItemType.DATE if items.format == "date" else ItemType(items.type)
            return Property(type=PropertyType.LIST, item_type=item_type, **base)
        raise SchemaError(
            SchemaErrorCode.INVALID_PROPERTY_TYPE,
            f"nested arrays are not representable as properties ({scope})",
        )

    return Property(
        type=PropertyType.OBJECT, fields=_decompile_siblings(node, scope), **base
    )


# --------------------------------------------------------------------------
# JSON rendering
# --------------------------------------------------------------------------


def cap_text(text: str, limit: int, label: str) -> str:
    """Cut ``text`` to ``limit`` chars (plus an ellipsis), logging the truncation."""
    if len(text) <= limit:
        return text
    logger.warning(
        "Truncated %s from %d to %d chars",
        label,
        len(text),
        limit,
    )
    return text[:limit] + "..."


def _render(node: SchemaNode, mode: str, name: str = "") -> dict[str, Any]:
    """Render a node as JSON Schema.

    ``mode`` is ``"full"`` (all metadata), ``"clean"`` (structure plus
    capped extraction instructions) or ``"output"`` (structure only).
    """
    out: dict[str, Any] = {}

    if isinstance(node, ScalarNode):
        out["type"] = node.type
        if node.format:
            out["format"] = node.format
    elif isinstance(node, ArrayNode):
        out["type"] = "array"
    else:
        out["type"] = "object"

    if node.title:
        out["title"] = node.title

    if mode == "full":
        if node.description:
            out["description"] = node.description
        if node.importance:
            out["importance"] = node.importance.value
        if node.extraction_instructions:
            out["extractionInstructions"] = node.extraction_instructions
        if node.examples:
            out["examples"] = [example.model_dump() for example in node.examples]
        if node.order is not None:
            out["order"] = node.order
    elif mode == "clean" and node.extraction_instructions:
        out["extractionInstructions"] = cap_text(
            node.extraction_instructions,
            MAX_INSTRUCTION_CHARS,
            f"extractionInstructions for field {name!r}",
        )

    if isinstance(node, ArrayNode):
        out["items"] = _render(node.items, mode, name)
    elif isinstance(node, ObjectNode):
        out["properties"] = {
            child_name: _render(child, mode, child_name)
            for child_name, child in sort_by_order(node.properties)
        }
        if node.required:
            out["required"] = list(node.required)

    return out


def to_json_schema(compiled: CompiledSchema) -> dict[str, Any]:
    """Full JSON Schema with every authoring field, suitable for storage."""
    rendered = _render(compiled.root, "full")
    rendered.pop("title", None)
    return {"$schema": JSON_SCHEMA_DIALECT, "title": compiled.title, **rendered}


def output_schema(compiled: CompiledSchema) -> dict[str, Any]:
    """Structure-only schema: what the provider's JSON must look like."""
    return _render(compiled.root, "output")


def clean_schema(compiled: CompiledSchema) -> dict[str, Any]:
    """Structure plus capped per-field extraction instructions."""
    return _render(compiled.root, "clean")


def from_json_schema(definition: Mapping[str, Any]) -> CompiledSchema:
    """Parse a stored JSON Schema (as produced by ``to_json_schema``).

    Raises:
        SchemaError: On types outside the supported subset.
    """
    root = _parse(definition, "root")
    if not isinstance(root, ObjectNode):
        raise SchemaError(
            SchemaErrorCode.INVALID_PROPERTY_TYPE, "root schema must be an object"
        )
    return CompiledSchema(
        root=root.model_copy(update={"title": None}),
        title=definition.get("title") or CompiledSchema().title,
    )


def _parse(definition: Mapping[str, Any], scope: str) -> SchemaNode:
    try:
        meta = NodeMeta(
            title=definition.get("title"),
            description=definition.get("description"),
            importance=definition.get("importance"),
            extraction_instructions=definition.get("extractionInstructions"),
            examples=[FieldExample.model_validate(ex) for ex in definition.get("examples") or []],
            order=definition.get("order"),
        ).model_dump()
    except ValidationError as exc:
        raise SchemaError(
            SchemaErrorCode.INVALID_PROPERTY, f"invalid metadata at {scope}: {exc.errors()[0]['msg']}"
        ) from exc

    schema_type = definition.get("type")
    if schema_type in ("string", "number", "integer", "boolean"):
        return ScalarNode(
            type="number" if schema_type == "integer" else schema_type,
            format="date" if definition.get("format") == "date" else None,
            **meta,
        )
    if schema_type == "array":
        items = definition.get("items") or {"type": "string"}
        return ArrayNode(items=_parse(items, f"{scope}[]"), **meta)
    if schema_type == "object":
        properties = {
            name: _parse(child, f"{scope}.{name}")
            for name, child in (definition.get("properties") or {}).items()
        }
        return ObjectNode(
            properties=properties, required=list(definition.get("required") or []), **meta
        )

    raise SchemaError(
        SchemaErrorCode.INVALID_PROPERTY_TYPE, f"unsupported type {schema_type!r} at {scope}"
    )


# --------------------------------------------------------------------------
# Record validation
# --------------------------------------------------------------------------


def validate_record(compiled: CompiledSchema, record: Any) -> list[str]:
    """Check a record against the compiled shape.

    ``null`` is accepted anywhere (missing values are extracted as null).
    Unknown keys are ignored.

    Returns:
        Human-readable error strings; empty when the record conforms.
    """
    errors: list[str] = []
    _validate(compiled.root, record, "$", errors)
    return errors


def _validate(node: SchemaNode, value: Any, path: str, errors: list[str]) -> None:
    if value is None:
        return

    if isinstance(node, ScalarNode):
        if node.type == "string":
            if not isinstance(value, str):
                errors.append(f"{path}: expected string")
            elif node.format == "date" and value and not DATE_PATTERN.match(value):
                errors.append(f"{path}: date must be in YYYY-MM-DD format")
        elif node.type == "number":
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                errors.append(f"{path}: expected number")
        elif not isinstance(value, bool):
            errors.append(f"{path}: expected boolean")
        return

    if isinstance(node, ArrayNode):
        if not isinstance(value, list):
            errors.append(f"{path}: expected array")
            return
        for index, item in enumerate(value):
            _validate(node.items, item, f"{path}[{index}]", errors)
        return

    if not isinstance(value, dict):
        errors.append(f"{path}: expected object")
        return
    for name in node.required:
        if name not in value:
            errors.append(f"{path}.{name}: required field missing")
    for name, child in node.properties.items():
        if name in value:
            _validate(child, value[name], f"{path}.{name}", errors)


def missing_required_fields(compiled: CompiledSchema, record: Mapping[str, Any]) -> list[str]:
    """Top-level required fields absent from ``record``."""
    return [name for name in compiled.root.required if name not in record]


# --------------------------------------------------------------------------
# Versioned schemas
# --------------------------------------------------------------------------


def build_schema(
    name: str,
    property_list: Sequence[PropertyInput],
    examples: Optional[Sequence[Mapping[str, Any]]] = None,
    prompt: Optional[str] = None,
    version: int = 1,
) -> ExtractionSchema:
    """Create a draft ``ExtractionSchema``.

    Raises:
        SchemaError: If a property is invalid or an example record does not
            match the compiled shape.
    """
    properties = coerce_properties(property_list)
    compiled = compile_schema(properties)
    example_records = [dict(example) for example in examples or []]
    for index, example in enumerate(example_records):
        problems = validate_record(compiled, example)
        if problems:
            raise SchemaError(
                SchemaErrorCode.INVALID_EXAMPLE,
                f"example {index} does not match schema: {'; '.join(problems)}",
            )
    return ExtractionSchema(
        name=name,
        version=version,
        property_list=properties,
        compiled=compiled,
        examples=example_records,
        prompt=prompt,
    )


def update_draft(
    schema: ExtractionSchema,
    property_list: Optional[Sequence[PropertyInput]] = None,
    examples: Optional[Sequence[Mapping[str, Any]]] = None,
    prompt: Optional[str] = None,
) -> ExtractionSchema:
    """Apply changes to an unpublished schema, keeping its id and version."""
    if schema.published:
        raise SchemaError(
            SchemaErrorCode.SCHEMA_PUBLISHED,
            f"schema {schema.name!r} v{schema.version} is published; create a new version",
        )
    rebuilt = build_schema(
        schema.name,
        property_list if property_list is not None else schema.property_list,
        examples if examples is not None else schema.examples,
        prompt if prompt is not None else schema.prompt,
        version=schema.version,
    )
    return rebuilt.model_copy(
        update={"id": schema.id, "created_at": schema.created_at, "updated_at": datetime.utcnow()}
    )


def publish_schema(schema: ExtractionSchema) -> ExtractionSchema:
    """Freeze a draft. Publishing twice is a no-op."""
    if schema.published:
        return schema
    now = datetime.utcnow()
    return schema.model_copy(update={"published": True, "published_at": now, "updated_at": now})


def new_version(
    schema: ExtractionSchema,
    property_list: Optional[Sequence[PropertyInput]] = None,
    examples: Optional[Sequence[Mapping[str, Any]]] = None,
    prompt: Optional[str] = None,
) -> ExtractionSchema:
    """Start the next draft version of a schema."""
    return build_schema(
        schema.name,
        property_list if property_list is not None else schema.property_list,
        examples if examples is not None else schema.examples,
        prompt if prompt is not None else schema.prompt,
        version=schema.version + 1,
    )
