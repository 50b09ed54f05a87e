"""Consolidates the runtime's event stream into one chat result.

Events are applied strictly in emission order. Text fragments are appended
to a single buffer; tool invocations become ``ToolCallRecord`` entries in
start order. A tool-end resolves the oldest still-open record with the same
name, so two concurrent calls of one tool are paired with their ends in the
order they started. When the runtime tags both events with a per-call id,
the id is used instead of the name.
"""

from __future__ import annotations

from collections import defaultdict, deque
from contextlib import aclosing
from typing import Any, AsyncIterator, Deque, Dict, List

from agent_gateway.logging import get_logger
from agent_gateway.service.errors import ServiceError, UpstreamError
from agent_gateway.service.events import (
    ContentFragment,
    RuntimeEvent,
    ToolEnd,
    ToolStart,
    UnknownEvent,
    parse_event,
)
from agent_gateway.service.models import ChatResult, ToolCallRecord, Usage
from agent_gateway.service.prompt_utils import estimate_tokens

logger = get_logger(__name__)


class MessageAggregator:
    """Per-request aggregation state; never shared between requests."""

    def __init__(self) -> None:
        self._chunks: List[str] = []
        self.tool_calls: List[ToolCallRecord] = []
        self._open_by_name: Dict[str, Deque[ToolCallRecord]] = defaultdict(deque)
        self._open_by_id: Dict[str, ToolCallRecord] = {}
        self.dropped_events = 0
        self.ignored_events = 0

    @property
    def text(self) -> str:
        return "".join(self._chunks)

    def apply(self, event: RuntimeEvent) -> None:
        if isinstance(event, ContentFragment):
            self._chunks.append(event.text)
        elif isinstance(event, ToolStart):
            self._start_tool(event)
        elif isinstance(event, ToolEnd):
            self._end_tool(event)
        elif isinstance(event, UnknownEvent):
            self.ignored_events += 1
            logger.debug("runtime_event_ignored", kind=event.kind)
        else:
            self.ignored_events += 1
            logger.warning("runtime_event_unrecognized", event_type=type(event).__name__)

    def apply_raw(self, raw: Any) -> None:
        for event in parse_event(raw):
            self.apply(event)

    def _start_tool(self, event: ToolStart) -> None:
        record = ToolCallRecord(name=event.name, input=dict(event.input), call_id=event.call_id)
        self.tool_calls.append(record)
        self._open_by_name[event.name].append(record)
        if event.call_id:
            self._open_by_id[event.call_id] = record

    def _end_tool(self, event: ToolEnd) -> None:
        record = self._pop_open(event)
        if record is None:
            self.dropped_events += 1
            logger.warning(
                "tool_end_without_start",
                tool_name=event.name,
                call_id=event.call_id,
                dropped_events=self.dropped_events,
            )
            return
        record.resolve(output=event.output, error=event.error)

    def _pop_open(self, event: ToolEnd) -> ToolCallRecord | None:
        if event.call_id and event.call_id in self._open_by_id:
            record = self._open_by_id.pop(event.call_id)
            self._open_by_name[record.name].remove(record)
            return record
        pending = self._open_by_name.get(event.name)
        if not pending:
            return None
        record = pending.popleft()
        if record.call_id:
            self._open_by_id.pop(record.call_id, None)
        return record

    def finalize(self, prompt: str, session_id: str) -> ChatResult:
        text = self.text
        unresolved = sum(len(pending) for pending in self._open_by_name.values())
        if unresolved:
            logger.info("tool_calls_unresolved_at_end", count=unresolved)
        return ChatResult(
            content=text,
            tool_calls=tuple(record.to_dict() for record in self.tool_calls),
            usage=Usage(
                input_tokens=estimate_tokens(prompt),
                output_tokens=estimate_tokens(text),
            ),
            session_id=session_id,
        )


async def aggregate(
    stream: AsyncIterator[Any],
    prompt: str,
    session_id: str,
) -> ChatResult:
    """Drain ``stream`` in order and build the final result at end of stream.

    The iterator is always closed, so cancelling the caller also tears down
    the runtime call behind it. Any failure while iterating discards the
    partial output and surfaces as ``UpstreamError``.
    """
    aggregator = MessageAggregator()
    try:
        if hasattr(stream, "aclose"):
            async with aclosing(stream) as events:
                async for raw in events:
                    aggregator.apply_raw(raw)
        else:
            async for raw in stream:
                aggregator.apply_raw(raw)
    except ServiceError:
        raise
    except Exception as exc:
        raise UpstreamError(str(exc) or type(exc).__name__) from exc
    return aggregator.finalize(prompt, session_id)
