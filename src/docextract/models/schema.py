"""Schema models: author-facing property lists and compiled schema trees.

A property list is what a user edits. The compiled schema is the canonical
JSON-Schema-shaped tree derived from it, represented as a tagged variant
(``ScalarNode | ArrayNode | ObjectNode``) so every consumer matches on
``kind`` instead of poking at untyped dictionaries.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, model_validator

from .base import BaseIRModel


class PropertyType(str, Enum):
    """Types a user can assign to a property."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    LIST = "list"
    OBJECT = "object"


class ItemType(str, Enum):
    """Element types of a list property."""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"


class Importance(str, Enum):
    """How much a field matters to the schema author."""

    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class FieldExample(BaseModel):
    """Input snippet and the value that should be extracted from it."""

    input: str
    output: Any = None


class Property(BaseModel):
    """A single user-authored property.

    ``list`` properties carry an ``item_type``; ``list<object>`` and
    ``object`` properties carry a child property list in ``fields``.
    """

    name: str = Field(..., min_length=1)
    title: Optional[str] = None
    type: PropertyType
    required: bool = False
    importance: Importance = Importance.MEDIUM
    description: Optional[str] = None
    extraction_instructions: Optional[str] = Field(None, alias="extractionInstructions")
    examples: list[FieldExample] = Field(default_factory=list)
    item_type: Optional[ItemType] = Field(None, alias="itemType")
    fields: list["Property"] = Field(default_factory=list)

    class Config:
        populate_by_name = True

    @model_validator(mode="after")
    def _normalize(self) -> "Property":
        if self.title is None:
            self.title = self.name

        if self.type == PropertyType.LIST:
            if self.item_type is None:
                self.item_type = ItemType.STRING
        elif self.item_type is not None:
            raise ValueError(f"itemType is only valid on list properties ({self.name})")

        has_children = self.type == PropertyType.OBJECT or (
            self.type == PropertyType.LIST and self.item_type == ItemType.OBJECT
        )
        if self.fields and not has_children:
            raise ValueError(f"fields are only valid on object properties ({self.name})")
        return self

    @property
    def has_children(self) -> bool:
        return self.type == PropertyType.OBJECT or self.item_type == ItemType.OBJECT


class NodeMeta(BaseModel):
    """Metadata shared by every compiled node."""

    title: Optional[str] = None
    description: Optional[str] = None
    importance: Optional[Importance] = None
    extraction_instructions: Optional[str] = None
    examples: list[FieldExample] = Field(default_factory=list)
    order: Optional[int] = None


class ScalarNode(NodeMeta):
    """Primitive value. Dates are strings with ``format="date"``."""

    kind: Literal["scalar"] = "scalar"
    type: Literal["string", "number", "boolean"]
    format: Optional[Literal["date"]] = None


class ArrayNode(NodeMeta):
    """Homogeneous list."""

    kind: Literal["array"] = "array"
    items: "SchemaNode"


class ObjectNode(NodeMeta):
    """Object with ordered named children."""

    kind: Literal["object"] = "object"
    properties: dict[str, "SchemaNode"] = Field(default_factory=dict)
    required: list[str] = Field(default_factory=list)


SchemaNode = Annotated[
    Union[ScalarNode, ArrayNode, ObjectNode], Field(discriminator="kind")
]

ArrayNode.model_rebuild()
ObjectNode.model_rebuild()
Property.model_rebuild()


class CompiledSchema(BaseModel):
    """Canonical tree compiled from a property list."""

    root: ObjectNode = Field(default_factory=ObjectNode)
    title: str = "Extraction Schema"

    @property
    def is_empty(self) -> bool:
        return not self.root.properties

    def ordered_fields(self) -> list[tuple[str, "SchemaNode"]]:
        """Top-level fields sorted by ``order`` (missing order last, stable)."""
        return sort_by_order(self.root.properties)


def sort_by_order(properties: dict[str, Any]) -> list[tuple[str, Any]]:
    """Sort named nodes by their ``order``; nodes without one keep input order at the end."""
    indexed = list(enumerate(properties.items()))
    indexed.sort(
        key=lambda entry: (
            entry[1][1].order is None,
            entry[1][1].order if entry[1][1].order is not None else 0,
            entry[0],
        )
    )
    return [item for _, item in indexed]


class ExtractionSchema(BaseIRModel):
    """Versioned extraction schema.

    Drafts may be edited; once ``published`` a schema is immutable and
    changes go into a new version.
    """

    name: str
    version: int = Field(default=1, ge=1)
    property_list: list[Property] = Field(default_factory=list)
    compiled: CompiledSchema = Field(default_factory=CompiledSchema)
    examples: list[dict[str, Any]] = Field(default_factory=list)
    prompt: Optional[str] = None
    published: bool = False
    published_at: Optional[datetime] = None
