from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(eq=False)
class ToolCallRecord:
    """One tool invocation within a turn.

    Opened by a tool-start event and resolved at most once by a matching
    tool-end; ``output`` and ``error`` are never both set.
    """

    name: str
    input: Dict[str, Any] = field(default_factory=dict)
    output: Any = None
    error: Optional[str] = None
    call_id: Optional[str] = None
    resolved: bool = False

    def resolve(self, *, output: Any = None, error: Optional[str] = None) -> None:
        if self.resolved:
            raise RuntimeError(f"tool call '{self.name}' already resolved")
        if error:
            self.error = error
        else:
            self.output = output
        self.resolved = True

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"name": self.name, "input": self.input}
        if self.error is not None:
            data["error"] = self.error
        elif self.resolved:
            data["output"] = self.output
        return data


@dataclass(frozen=True)
class Usage:
    input_tokens: int
    output_tokens: int


@dataclass(frozen=True)
class ChatResult:
    """Consolidated outcome of one chat turn."""

    content: str
    tool_calls: Tuple[Dict[str, Any], ...]
    usage: Usage
    session_id: str


@dataclass(frozen=True)
class RuntimeOptions:
    """Configuration value handed to the agent runtime with each prompt."""

    api_key: str
    model: str
    workspace_path: str
    session_id: str
    enable_tools: bool = True
    base_url: Optional[str] = None
    system_prompt: Optional[str] = None
    skill_id: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "apiKey": self.api_key,
            "model": self.model,
            "workspacePath": self.workspace_path,
            "sessionId": self.session_id,
            "enableTools": self.enable_tools,
        }
        if self.base_url:
            payload["baseUrl"] = self.base_url
        if self.system_prompt:
            payload["systemPrompt"] = self.system_prompt
        if self.skill_id:
            payload["skillId"] = self.skill_id
        return payload
