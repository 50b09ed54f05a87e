from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agent_gateway.service.models import ChatResult

# Bound on a single request; prompts beyond this are rejected before dispatch
MAX_MESSAGES = 1000
MAX_CONTENT_LENGTH = 1_000_000


def utc_timestamp() -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
    )


class ChatMessage(_WireModel):
    # Emptiness and role membership are checked by the request validator so
    # they surface as "Bad Request" rather than schema errors.
    role: str = ""
    content: str = Field("", max_length=MAX_CONTENT_LENGTH)


class ChatRequest(_WireModel):
    messages: List[ChatMessage] = Field(default_factory=list, max_length=MAX_MESSAGES)
    session_id: Optional[str] = Field(None, max_length=256)
    stream: bool = False
    enable_tools: bool = True
    skill_id: Optional[str] = Field(None, max_length=256)


class ToolCall(_WireModel):
    model_config = ConfigDict(frozen=True)

    name: str
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Any] = None
    error: Optional[str] = None


class UsageEstimate(_WireModel):
    model_config = ConfigDict(frozen=True)

    input_tokens: int
    output_tokens: int


class ChatResponse(_WireModel):
    model_config = ConfigDict(frozen=True)

    content: str
    tool_calls: Optional[List[ToolCall]] = None
    usage: UsageEstimate
    session_id: str

    @classmethod
    def from_result(cls, result: ChatResult) -> "ChatResponse":
        return cls(
            content=result.content,
            tool_calls=[ToolCall(**call) for call in result.tool_calls] or None,
            usage=UsageEstimate(
                input_tokens=result.usage.input_tokens,
                output_tokens=result.usage.output_tokens,
            ),
            session_id=result.session_id,
        )

    def to_wire(self) -> Dict[str, Any]:
        """Serialize, leaving out ``toolCalls`` when there were none.

        Tool-call entries keep ``output`` only once resolved and ``error`` only
        when set, so an explicit ``null`` output from a tool survives.
        """
        data: Dict[str, Any] = {
            "content": self.content,
            "usage": self.usage.model_dump(by_alias=True),
            "sessionId": self.session_id,
        }
        if self.tool_calls:
            data["toolCalls"] = [
                call.model_dump(by_alias=True, exclude_unset=True) for call in self.tool_calls
            ]
        return data


class ErrorResponse(_WireModel):
    """Shared envelope for every error the gateway returns."""

    error: str
    message: str
    status_code: int
    timestamp: str = Field(default_factory=utc_timestamp)
    retry_after: Optional[int] = None
    details: Optional[Any] = None

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class HealthResponse(_WireModel):
    status: str = "ok"
    version: str
    uptime: int
    timestamp: str = Field(default_factory=utc_timestamp)


class SystemInfo(_WireModel):
    python_version: str
    platform: str
    arch: str
    uptime: float


class MemoryInfo(_WireModel):
    max_rss: float


class RuntimeInfo(_WireModel):
    healthy: bool
    runtime: str


class DetailedHealthResponse(HealthResponse):
    system: SystemInfo
    memory: MemoryInfo
    env: str
    runtime: RuntimeInfo


class StatusResponse(_WireModel):
    status: str
