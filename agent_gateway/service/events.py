"""Typed view of the agent runtime's event stream.

The runtime emits loosely structured dicts. ``parse_event`` turns each one into
a closed set of variants so the aggregator can handle every kind explicitly:

- ``ContentFragment``: text produced by the assistant
- ``ToolStart``: a tool invocation began
- ``ToolEnd``: a tool invocation finished with an output or an error
- ``UnknownEvent``: anything else; logged and ignored downstream
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union


@dataclass(frozen=True)
class ContentFragment:
    text: str


@dataclass(frozen=True)
class ToolStart:
    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    call_id: Optional[str] = None


@dataclass(frozen=True)
class ToolEnd:
    name: str
    output: Any = None
    error: Optional[str] = None
    call_id: Optional[str] = None


@dataclass(frozen=True)
class UnknownEvent:
    kind: str
    payload: Any = None


RuntimeEvent = Union[ContentFragment, ToolStart, ToolEnd, UnknownEvent]


def _call_id(raw: Dict[str, Any]) -> Optional[str]:
    value = raw.get("toolUseId") or raw.get("tool_use_id")
    return str(value) if value else None


def _tool_name(raw: Dict[str, Any]) -> Optional[str]:
    name = raw.get("toolName") or raw.get("tool_name") or raw.get("name")
    return name if isinstance(name, str) and name else None


def _assistant_fragments(raw: Dict[str, Any]) -> List[RuntimeEvent]:
    message = raw.get("message")
    content = message.get("content") if isinstance(message, dict) else None
    if not isinstance(content, list):
        return [UnknownEvent(kind="assistant", payload=raw)]
    fragments: List[RuntimeEvent] = []
    for block in content:
        if isinstance(block, dict) and isinstance(block.get("text"), str):
            fragments.append(ContentFragment(text=block["text"]))
    return fragments


def parse_event(raw: Any) -> List[RuntimeEvent]:
    """Classify one raw runtime record.

    A single ``assistant`` record may carry several text blocks, so the result
    is a list (possibly empty when the record has no text, e.g. tool-use-only
    assistant turns).
    """
    if isinstance(raw, (ContentFragment, ToolStart, ToolEnd, UnknownEvent)):
        return [raw]
    if not isinstance(raw, dict):
        return [UnknownEvent(kind=type(raw).__name__, payload=raw)]

    kind = raw.get("type")
    if kind == "assistant":
        return _assistant_fragments(raw)
    if kind == "text":
        text = raw.get("text")
        if isinstance(text, str):
            return [ContentFragment(text=text)]
        return [UnknownEvent(kind="text", payload=raw)]
    if kind == "tool_start":
        name = _tool_name(raw)
        if name is None:
            return [UnknownEvent(kind="tool_start", payload=raw)]
        tool_input = raw.get("input")
        return [
            ToolStart(
                name=name,
                input=tool_input if isinstance(tool_input, dict) else {},
                call_id=_call_id(raw),
            )
        ]
    if kind == "tool_end":
        name = _tool_name(raw)
        if name is None:
            return [UnknownEvent(kind="tool_end", payload=raw)]
        error = raw.get("error")
        return [
            ToolEnd(
                name=name,
                output=raw.get("output"),
                error=str(error) if error else None,
                call_id=_call_id(raw),
            )
        ]
    return [UnknownEvent(kind=str(kind) if kind is not None else "untyped", payload=raw)]
