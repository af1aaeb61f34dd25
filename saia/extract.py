"""Pull structured JSON out of free-form model output.

Precedence for every extractor: fenced ```json blocks, then the whole body,
then a balanced-brace scan over the text. Each stage only yields objects that
satisfy the caller's predicate, so a later stage never overrides a match from
an earlier one.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from typing import Any

import orjson
from pydantic import BaseModel, Field

_FENCE = re.compile(r"```json\s*([\s\S]*?)```", re.IGNORECASE)

Predicate = Callable[[dict[str, Any]], bool]


def _loads(text: str) -> Any:
    try:
        return orjson.loads(text)
    except orjson.JSONDecodeError:
        return None


def fenced_objects(text: str) -> Iterator[tuple[str, Any]]:
    """Yield (raw_match, parsed) for each ```json fenced block."""
    for m in _FENCE.finditer(text):
        yield m.group(0), _loads(m.group(1))


def whole_body_object(text: str) -> Any:
    return _loads(text.strip())


def brace_scan_objects(text: str) -> Iterator[tuple[str, Any]]:
    """Yield (raw_substring, parsed) for each top-level {...} span.

    Tracks string literals and escapes so braces inside strings do not
    affect nesting depth.
    """
    start = -1
    depth = 0
    in_str = False
    escaped = False
    for i, ch in enumerate(text):
        if in_str:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_str = False
            continue
        if ch == '"':
            in_str = True
        elif ch == "{":
            if depth == 0:
                start = i
            depth += 1
        elif ch == "}" and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                raw = text[start:i + 1]
                yield raw, _loads(raw)
                start = -1


def extract_object(text: str, predicate: Predicate) -> tuple[dict[str, Any], str] | None:
    """Return (object, raw_source) for the first object matching ``predicate``."""
    if not text or not isinstance(text, str):
        return None

    for raw, obj in fenced_objects(text):
        if isinstance(obj, dict) and predicate(obj):
            return obj, raw

    whole = whole_body_object(text)
    if isinstance(whole, dict) and predicate(whole):
        return whole, text

    for raw, obj in brace_scan_objects(text):
        if isinstance(obj, dict) and predicate(obj):
            return obj, raw
    return None


# ── Tool steps ───────────────────────────────────────────────────────────────


class ToolStep(BaseModel):
    """A single tool invocation requested by a cell: {"tool": {"id", "input"}}."""

    tool_id: str
    input: dict[str, Any] = Field(default_factory=dict)


def _is_tool_step(obj: dict[str, Any]) -> bool:
    tool = obj.get("tool")
    return isinstance(tool, dict) and isinstance(tool.get("id"), str)


def extract_tool_step(text: str) -> ToolStep | None:
    found = extract_object(text, _is_tool_step)
    if found is None:
        return None
    tool = found[0]["tool"]
    raw_input = tool.get("input")
    return ToolStep(tool_id=tool["id"], input=raw_input if isinstance(raw_input, dict) else {})


# ── Domain suggestions ───────────────────────────────────────────────────────


class DomainSuggestion(BaseModel):
    domain: str | None = None
    tags: list[str] = Field(default_factory=list)


def _is_domain_suggestion(obj: dict[str, Any]) -> bool:
    return isinstance(obj.get("domain"), str) or isinstance(obj.get("tags"), list)


def extract_domain_suggestion(text: str) -> tuple[DomainSuggestion | None, str]:
    """Find a {"domain", "tags"} object and strip it from the text.

    Returns (suggestion or None, remaining_text).
    """
    found = extract_object(text, _is_domain_suggestion)
    if found is None:
        return None, text
    obj, raw = found
    domain = obj.get("domain")
    tags = obj.get("tags") if isinstance(obj.get("tags"), list) else []
    suggestion = DomainSuggestion(
        domain=str(domain).lower() if isinstance(domain, str) else None,
        tags=[str(t).lower() for t in tags][:8],
    )
    return suggestion, text.replace(raw, "", 1).strip()
