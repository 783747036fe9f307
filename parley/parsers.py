"""Best-effort recovery of tool calls that a model echoed as plain text.

Some providers answer a tool-enabled request with the tool call written out as
JSON in the message content instead of a structured ``tool_calls`` entry.
These helpers turn such echoes back into :class:`~parley.llm.ToolCall` objects
and strip echoed JSON from the start of streamed answers. They are a fallback
only; structured tool calls always win.
"""

import json
import re
from typing import Any, Iterable

from parley.llm import ToolCall

_TOOL_JSON_HINT = re.compile(r'"(query|name)"\s*:')
_JSON_IN_FENCE = re.compile(r"\{[\s\S]*\}")


def _balanced_object_end(source: str, start: int) -> int:
    """Return the index just past the ``}`` closing the object at ``start``, or -1."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(source)):
        ch = source[index]
        if escaped:
            escaped = False
            continue
        if ch == "\\":
            escaped = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return -1


def parse_json_after(source: str, offset: int = 0) -> dict[str, Any] | None:
    """Parse the first balanced JSON object starting at or after ``offset``."""
    start = source.find("{", max(0, offset))
    if start < 0:
        return None
    end = _balanced_object_end(source, start)
    if end < 0:
        return None
    try:
        parsed = json.loads(source[start:end])
    except json.JSONDecodeError:
        return None
    return parsed if isinstance(parsed, dict) else None


def iter_json_objects(source: str) -> Iterable[dict[str, Any]]:
    """Yield every top-level JSON object embedded in ``source``."""
    cursor = 0
    while True:
        start = source.find("{", cursor)
        if start < 0:
            return
        end = _balanced_object_end(source, start)
        if end < 0:
            return
        try:
            parsed = json.loads(source[start:end])
        except json.JSONDecodeError:
            cursor = start + 1
            continue
        if isinstance(parsed, dict):
            yield parsed
        cursor = end


def _coerce_arguments(raw: Any) -> dict[str, Any] | None:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
    return None


def _search_arguments(payload: dict[str, Any]) -> dict[str, Any] | None:
    query = payload.get("query")
    if not isinstance(query, str) or not query.strip():
        return None
    args: dict[str, Any] = {"query": query.strip()}
    count = payload.get("count")
    if isinstance(count, (int, float)) and not isinstance(count, bool):
        args["count"] = max(1, min(10, int(count)))
    return args


def extract_echoed_tool_calls(
    text: str,
    tool_names: Iterable[str],
    search_tool: str = "web_search",
) -> list[ToolCall]:
    """Recover tool calls a model wrote into its text output.

    Recognized shapes, in order:

    - ``{"name": "<tool>", "arguments": {...} | "<json>"}``
    - a bare ``{"query": "...", "count": n}`` object (treated as a search call)
    - ``<tool>: {...}`` / ``<tool>({...})`` for any offered tool

    Returns an empty list when nothing parses; the caller then keeps ``text``
    as ordinary final content.
    """
    if not isinstance(text, str) or not text.strip():
        return []
    names = [name for name in tool_names if name]
    if not names:
        return []
    known = set(names)

    calls: list[ToolCall] = []
    for payload in iter_json_objects(text):
        name = payload.get("name")
        if isinstance(name, str) and name in known:
            args = _coerce_arguments(payload.get("arguments", payload.get("parameters", {})))
            if args is not None:
                if name == search_tool:
                    args = _search_arguments(args) or args
                calls.append(ToolCall(id=f"inline_{name}_{len(calls)}", name=name, arguments=args))
                continue
        if search_tool in known:
            search_args = _search_arguments(payload)
            if search_args:
                calls.append(ToolCall(id=f"inline_{search_tool}_{len(calls)}", name=search_tool, arguments=search_args))
    if calls:
        return calls

    for name in names:
        index = text.find(name)
        if index < 0:
            continue
        markers = [pos for pos in (text.find(":", index), text.find("(", index)) if pos >= 0]
        args = parse_json_after(text, min(markers) if markers else index)
        if args is not None:
            calls.append(ToolCall(id=f"inline_{name}_{len(calls)}", name=name, arguments=args))
    return calls


def strip_leading_tool_json(text: str) -> str:
    """Remove tool-call JSON (bare or fenced) from the start of ``text``.

    Only objects that look like tool-call payloads (a ``"query"`` or ``"name"``
    key) are stripped; any other leading JSON is left alone.
    """
    remaining = text or ""
    while True:
        trimmed = remaining.lstrip()
        if trimmed.startswith("```"):
            fence_end = trimmed.find("```", 3)
            if fence_end > 0:
                fenced = trimmed[3:fence_end].strip()
                if _JSON_IN_FENCE.search(fenced) and _TOOL_JSON_HINT.search(fenced):
                    remaining = trimmed[fence_end + 3:]
                    continue
            break
        if trimmed.startswith("{"):
            if not _TOOL_JSON_HINT.search(trimmed[:200]):
                break
            end = _balanced_object_end(trimmed, 0)
            if end < 0:
                break
            remaining = trimmed[end:]
            continue
        break
    return remaining.lstrip()


def looks_like_tool_json(text: str) -> bool:
    """True when ``text`` starts like a JSON object or a code fence."""
    trimmed = (text or "").lstrip()
    return trimmed.startswith("{") or trimmed.startswith("```")
