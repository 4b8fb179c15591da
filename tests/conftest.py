"""Pytest configuration and fixtures."""

import asyncio
import json
import re
from typing import Optional, Union

import pytest

from docextract.models import Document, Page, Table
from docextract.pipeline.schema_compiler import build_schema, compile_schema

POSITION = re.compile(r"pages (\d+)-(\d+) of (\d+)")


class FakeLlmProvider:
    """Scripted LlmProvider keyed by batch start page.

    ``script`` maps a start page to the replies for successive attempts. A
    reply is a string, or an exception instance to raise. Pages without a
    script get one item per page in the batch.
    """

    def __init__(
        self,
        script: Optional[dict[int, list[Union[str, Exception]]]] = None,
        delay: float = 0.0,
    ):
        self.script = {page: list(replies) for page, replies in (script or {}).items()}
        self.delay = delay
        self.calls: list[dict] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def invoke(self, system_prompt, user_prompt, schema_hint=None, attachments=None):
        start, end, total = (int(group) for group in POSITION.search(user_prompt).groups())
        self.calls.append(
            {
                "start": start,
                "end": end,
                "total": total,
                "system_prompt": system_prompt,
                "user_prompt": user_prompt,
                "schema_hint": schema_hint,
                "attachments": attachments,
            }
        )
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            replies = self.script.get(start)
            reply = replies.pop(0) if replies else default_reply(start, end)
            if isinstance(reply, Exception):
                raise reply
            return reply
        finally:
            self.in_flight -= 1

    def calls_for(self, start: int) -> list[dict]:
        return [call for call in self.calls if call["start"] == start]


def default_reply(start: int, end: int) -> str:
    items = [
        {
            "itemCode": f"P{page}",
            "itemName": f"Item on page {page}",
            "quantity": page,
            "sourceText": f"P{page} Item on page {page} qty {page}",
            "location": f"Page {page}",
            "confidence": 0.9,
        }
        for page in range(start, end + 1)
    ]
    return json.dumps(items)


async def no_sleep(_delay: float) -> None:
    return None


def make_document(page_count: int, filename: str = "sample.pdf", with_images: bool = False) -> Document:
    return Document(
        source_filename=filename,
        pages=[
            Page(
                page_number=number,
                text=f"Page {number} text: P{number} Item on page {number} qty {number}",
                tables=[Table(headers=["Code", "Qty"], rows=[[f"P{number}", str(number)]])],
                image_ref=f"renders/test/page_{number:04d}.png" if with_images else None,
            )
            for number in range(1, page_count + 1)
        ],
    )


@pytest.fixture
def property_list():
    """Property list covering every property type."""
    return [
        {
            "name": "itemCode",
            "title": "Item Code",
            "type": "string",
            "required": True,
            "importance": "high",
            "extractionInstructions": "Use the code from the first column.",
            "examples": [{"input": "Pos. 01.002 Steel beam", "output": "01.002"}],
        },
        {"name": "itemName", "type": "string", "required": True},
        {"name": "quantity", "type": "number"},
        {"name": "delivered", "type": "boolean", "importance": "low"},
        {"name": "deliveryDate", "type": "date", "description": "Planned delivery"},
        {"name": "tags", "type": "list", "itemType": "string"},
        {
            "name": "prices",
            "type": "list",
            "itemType": "object",
            "extractionInstructions": "One entry per price tier.",
            "fields": [
                {"name": "amount", "type": "number", "required": True, "description": "Net price"},
                {"name": "currency", "type": "string"},
                {"name": "validFrom", "type": "date"},
            ],
        },
        {
            "name": "supplier",
            "type": "object",
            "fields": [
                {"name": "name", "type": "string", "required": True},
                {"name": "country", "type": "string"},
            ],
        },
    ]


@pytest.fixture
def compiled_schema(property_list):
    return compile_schema(property_list)


@pytest.fixture
def simple_schema():
    """Schema matching the default fake provider reply."""
    return build_schema(
        "Materials",
        [
            {"name": "itemCode", "type": "string", "required": True},
            {"name": "itemName", "type": "string"},
            {"name": "quantity", "type": "number"},
        ],
        examples=[{"itemCode": "A1", "itemName": "Bolt", "quantity": 4}],
        prompt="Extract every material position.",
    )


@pytest.fixture
def fake_llm():
    return FakeLlmProvider


@pytest.fixture
def documents():
    return make_document


@pytest.fixture
def sleep():
    return no_sleep
