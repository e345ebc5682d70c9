"""Extract a tool call from free-form model output."""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from pydantic import TypeAdapter, ValidationError

from .tool_defs import TOOL_KINDS, InvalidToolCall, ToolInvocation

logger = logging.getLogger("codewright.agent.parser")

_INVOCATION_ADAPTER: TypeAdapter = TypeAdapter(ToolInvocation)
_TOOL_START_RE = re.compile(r'\{\s*"tool"\s*:\s*"[^"]+"')


def parse_tool_call(text: str | None) -> ToolInvocation | InvalidToolCall | None:
    """Return the invocation carried by ``text``, an InvalidToolCall, or None.

    Never raises.
    """
    raw = extract_tool_object(text)
    if raw is None:
        return None
    return validate_invocation(raw)


def extract_tool_object(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    trimmed = text.strip()

    first = trimmed.find("{")
    last = trimmed.rfind("}")
    if first == -1 or last <= first:
        return None

    try:
        parsed = json.loads(trimmed[first:last + 1])
    except json.JSONDecodeError:
        return _scan_for_tool_object(trimmed)
    if isinstance(parsed, dict) and "tool" in parsed:
        return parsed
    return None


def _scan_for_tool_object(text: str) -> dict[str, Any] | None:
    """Longest ``{"tool": ...}`` substring that parses as JSON."""
    best: dict[str, Any] | None = None
    best_len = -1
    closers = [i for i, ch in enumerate(text) if ch == "}"]
    for match in _TOOL_START_RE.finditer(text):
        start = match.start()
        for end in closers:
            if end < match.end():
                continue
            candidate = text[start:end + 1]
            if len(candidate) <= best_len:
                continue
            try:
                parsed = json.loads(candidate)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict) and "tool" in parsed:
                best, best_len = parsed, len(candidate)
    return best


def validate_invocation(raw: dict[str, Any]) -> ToolInvocation | InvalidToolCall:
    tool = str(raw.get("tool", ""))
    if tool not in TOOL_KINDS:
        return InvalidToolCall(
            tool=tool,
            error=f'Unknown tool "{tool}". Available tools: {", ".join(TOOL_KINDS)}',
            raw=raw,
        )
    try:
        return _INVOCATION_ADAPTER.validate_python(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'tool'}: {err['msg']}"
            for err in e.errors()
        )
        logger.debug(f"Invalid parameters for {tool}: {problems}")
        return InvalidToolCall(tool=tool, error=f"Invalid parameters for {tool}: {problems}", raw=raw)
