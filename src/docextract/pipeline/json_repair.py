"""Bounded repair of malformed or truncated JSON from an LLM.

Repair runs before any retry:

1. Strip markdown fences and ``<think>`` blocks, then parse.
2. Parse the first JSON value in the text, ignoring trailing chatter.
3. Close in place: terminate an open string, drop an incomplete trailing
   literal or number along with its dangling key, then append the missing
   ``]``/``}`` closers.
4. Trim back to the last complete member and close from there.

Steps 3 and 4 may discard text. The number of discarded characters is
reported on the result and logged. ``truncated`` is set when the last item
was left open by the cut, so a record missing its tail is never passed off
as complete.
"""

import json
import logging
import re
from typing import Any, Optional

from pydantic import BaseModel

from docextract.errors import ResponseParseError

logger = logging.getLogger(__name__)

_CLOSERS = {"{": "}", "[": "]"}
_THINK_BLOCK = re.compile(r"<think>[\s\S]*?</think>")
_FENCE = re.compile(r"```(?:json)?")
_TRAILING_TOKEN = re.compile(r"[-+.0-9A-Za-z]+$")
_TRAILING_KEY = re.compile(r'"(?:[^"\\]|\\.)*"\s*:$')


class RepairResult(BaseModel):
    """Parsed JSON value and how it was obtained."""

    value: Any = None
    repaired: bool = False
    discarded_chars: int = 0
    truncated: bool = False


def strip_fences_and_think(raw: str) -> str:
    """Remove reasoning blocks and markdown code fences."""
    text = _THINK_BLOCK.sub("", raw or "")
    # An unterminated <think> swallows the rest of the reply
    if "<think>" in text:
        text = text.split("<think>", 1)[0]
    return _FENCE.sub("", text).strip()


class _ScanState(BaseModel):
    stack: list[str] = []
    in_string: bool = False
    escaped: bool = False
    # (cut index, open containers at that index)
    safe_points: list[tuple[int, str]] = []


def _scan(text: str) -> _ScanState:
    """Walk ``text`` tracking open containers and complete-member boundaries."""
    stack: list[str] = []
    safe_points: list[tuple[int, str]] = []
    in_string = False
    escaped = False

    for index, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue

        if char == '"':
            in_string = True
        elif char in _CLOSERS:
            stack.append(char)
            # Cutting after a nested opener would invent an empty member
            if len(stack) == 1:
                safe_points.append((index + 1, "".join(stack)))
        elif char in "}]":
            if stack and _CLOSERS[stack[-1]] == char:
                stack.pop()
            safe_points.append((index + 1, "".join(stack)))
        elif char == ",":
            # Everything before the comma is a complete member
            safe_points.append((index, "".join(stack)))

    return _ScanState(
        stack=stack, in_string=in_string, escaped=escaped, safe_points=safe_points
    )


def _closing_for(stack: str) -> str:
    return "".join(_CLOSERS[opener] for opener in reversed(stack))


def _item_left_open(stack: str) -> bool:
    """Whether a cut with ``stack`` still open falls inside an item.

    Items are the members of the outermost array, or the root object when
    the reply has no array.
    """
    if "[" not in stack:
        return bool(stack)
    return len(stack) > stack.index("[") + 1


def _is_complete_scalar(token: str) -> bool:
    try:
        json.loads(token)
    except json.JSONDecodeError:
        return False
    return True


def _close(text: str) -> tuple[str, int, str]:
    """Close ``text`` in place.

    Returns:
        The closed text, the number of characters discarded and the
        containers that were open at the cut.
    """
    state = _scan(text)
    stack = list(state.stack)
    body = text[:-1] if state.escaped else text

    if state.in_string:
        closed = body + '"'
    else:
        body = body.rstrip()
        token = _TRAILING_TOKEN.search(body)
        if token and not _is_complete_scalar(token.group()):
            body = body[: token.start()].rstrip()
        if body.endswith(":"):
            # A key whose value was cut off goes with it
            body = _TRAILING_KEY.sub("", body).rstrip()
        if body.endswith(","):
            body = body[:-1].rstrip()
        if body.endswith("{") and len(stack) > 1 and stack[-1] == "{":
            # Object emptied by the cut
            body = body[:-1].rstrip()
            stack.pop()
            if body.endswith(","):
                body = body[:-1].rstrip()
        closed = body

    discarded = max(len(text.rstrip()) - len(body), 0)
    open_stack = "".join(stack)
    return closed + _closing_for(open_stack), discarded, open_stack


def close_in_place(text: str) -> str:
    """Close an unterminated string and any open containers."""
    return _close(text)[0]


def trim_to_last_member(text: str) -> Optional[tuple[str, int, bool]]:
    """Cut ``text`` after its last complete member and close the remainder.

    Returns:
        The repaired text, the number of characters discarded and whether
        the last item was cut open, or None when no usable boundary exists.
    """
    state = _scan(text)
    for cut, stack in reversed(state.safe_points):
        candidate = text[:cut].rstrip()
        if candidate.endswith(","):
            candidate = candidate[:-1]
        candidate += _closing_for(stack)
        try:
            json.loads(candidate)
        except json.JSONDecodeError:
            continue
        return candidate, len(text) - cut, _item_left_open(stack)
    return None


def _first_json_start(text: str) -> int:
    positions = [pos for pos in (text.find("["), text.find("{")) if pos != -1]
    return min(positions) if positions else -1


def parse_json_response(raw: str) -> RepairResult:
    """Parse provider output, repairing truncation when needed.

    Raises:
        ResponseParseError: If the text is empty or cannot be repaired.
    """
    text = strip_fences_and_think(raw)
    if not text:
        raise ResponseParseError("Empty response")

    try:
        return RepairResult(value=json.loads(text))
    except json.JSONDecodeError:
        pass

    start = _first_json_start(text)
    if start == -1:
        raise ResponseParseError("No JSON array or object found in response")
    candidate = text[start:]

    try:
        value, _ = json.JSONDecoder().raw_decode(candidate)
        return RepairResult(value=value)
    except json.JSONDecodeError:
        pass

    closed, discarded, open_stack = _close(candidate)
    try:
        value = json.loads(closed)
    except json.JSONDecodeError:
        pass
    else:
        if discarded:
            logger.warning(
                "Repaired truncated JSON by closing open structures, discarding %d incomplete char(s)",
                discarded,
            )
        else:
            logger.info("Repaired truncated JSON by closing open structures")
        return RepairResult(
            value=value,
            repaired=True,
            discarded_chars=discarded,
            truncated=_item_left_open(open_stack),
        )

    trimmed = trim_to_last_member(candidate)
    if trimmed is None:
        raise ResponseParseError(
            f"Unrepairable JSON response ({len(candidate)} chars starting {candidate[:40]!r})"
        )
    repaired_text, discarded, truncated = trimmed
    logger.warning(
        "Repaired truncated JSON by discarding %d trailing char(s) of %d", discarded, len(candidate)
    )
    return RepairResult(
        value=json.loads(repaired_text),
        repaired=True,
        discarded_chars=discarded,
        truncated=truncated,
    )
