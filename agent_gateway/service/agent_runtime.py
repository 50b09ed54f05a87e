from __future__ import annotations

import json
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Protocol

import claude_agent_sdk
import httpx
from claude_agent_sdk import (
    AssistantMessage,
    ClaudeAgentOptions,
    ClaudeSDKError,
    ResultMessage,
    TextBlock,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from agent_gateway.logging import get_logger
from agent_gateway.service.errors import UpstreamError
from agent_gateway.service.events import ContentFragment, ToolEnd, ToolStart, UnknownEvent
from agent_gateway.service.models import RuntimeOptions

logger = get_logger(__name__)


class AgentRuntime(Protocol):
    """Executes one agent turn and yields its events in emission order.

    Events are raw dicts or already typed ``events`` variants; both are
    accepted by ``parse_event``.
    """

    def query(self, prompt: str, options: RuntimeOptions) -> AsyncIterator[Any]: ...

    async def health_check(self) -> bool: ...

    async def close(self) -> None: ...


class HttpAgentRuntime:
    """Client for an agent runtime exposed over HTTP.

    ``POST /v1/query`` returns newline-delimited JSON, one event per line. The
    request is opened inside the generator, so closing the generator (or
    cancelling the task iterating it) aborts the upstream request as well.
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout_seconds: float = 300.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        headers = {"Accept": "application/x-ndjson"}
        if api_key:
            headers["X-Api-Key"] = api_key
        self._client = client or httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(timeout_seconds, connect=10.0),
        )

    async def query(self, prompt: str, options: RuntimeOptions) -> AsyncIterator[Dict[str, Any]]:
        body = {"prompt": prompt, "options": options.to_payload()}
        try:
            async with self._client.stream("POST", "/v1/query", json=body) as response:
                if response.status_code >= 400:
                    detail = (await response.aread()).decode("utf-8", errors="replace")
                    logger.error(
                        "agent_runtime_http_error",
                        status_code=response.status_code,
                        body=detail[:500],
                    )
                    raise UpstreamError(
                        f"Agent runtime returned HTTP {response.status_code}",
                        detail={"status_code": response.status_code},
                    )
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        event = json.loads(line)
                    except json.JSONDecodeError as exc:
                        raise UpstreamError(f"Malformed runtime event: {exc.msg}") from exc
                    if isinstance(event, dict) and event.get("type") == "error":
                        raise UpstreamError(str(event.get("error") or "Agent runtime error"))
                    yield event
        except httpx.HTTPError as exc:
            logger.error("agent_runtime_request_failed", error=str(exc), url=self.base_url)
            raise UpstreamError(f"Agent runtime request failed: {exc}") from exc

    async def health_check(self) -> bool:
        try:
            response = await self._client.get("/health", timeout=3.0)
        except httpx.HTTPError as exc:
            logger.warning("agent_runtime_health_failed", error=str(exc))
            return False
        return response.status_code < 400

    async def close(self) -> None:
        await self._client.aclose()


# Built-in tools of the agent CLI; all of them are withheld when a request
# disables tools.
BUILTIN_TOOLS = (
    "Bash",
    "Edit",
    "Glob",
    "Grep",
    "NotebookEdit",
    "Read",
    "Task",
    "TodoWrite",
    "WebFetch",
    "WebSearch",
    "Write",
)


def _result_text(content: Any) -> Optional[str]:
    if content is None or isinstance(content, str):
        return content
    parts = [
        block.get("text", "")
        for block in content
        if isinstance(block, dict) and block.get("type") == "text"
    ]
    return "".join(parts) if parts else str(content)


class ClaudeAgentRuntime:
    """In-process runtime driving the Claude Agent SDK's ``query()``.

    SDK messages are mapped onto the gateway's event types: assistant text
    blocks become ``ContentFragment``, tool-use blocks ``ToolStart`` and the
    matching tool-result blocks ``ToolEnd``. A result message flagged as an
    error fails the turn.
    """

    def __init__(self, *, query_fn: Callable[..., AsyncIterator[Any]] = claude_agent_sdk.query) -> None:
        self._query = query_fn

    def sdk_options(self, options: RuntimeOptions) -> ClaudeAgentOptions:
        env = {"ANTHROPIC_API_KEY": options.api_key}
        if options.base_url:
            env["ANTHROPIC_BASE_URL"] = options.base_url
        return ClaudeAgentOptions(
            model=options.model,
            cwd=options.workspace_path,
            system_prompt=options.system_prompt,
            env=env,
            disallowed_tools=[] if options.enable_tools else list(BUILTIN_TOOLS),
        )

    async def query(self, prompt: str, options: RuntimeOptions) -> AsyncIterator[Any]:
        tool_names: Dict[str, str] = {}
        stream = self._query(prompt=prompt, options=self.sdk_options(options))
        try:
            async for message in stream:
                for event in self._translate(message, tool_names):
                    yield event
        except ClaudeSDKError as exc:
            logger.error("agent_sdk_query_failed", error=str(exc), session_id=options.session_id)
            raise UpstreamError(f"Agent runtime request failed: {exc}") from exc
        finally:
            # Closing the SDK stream stops the agent subprocess
            await stream.aclose()

    def _translate(self, message: Any, tool_names: Dict[str, str]) -> List[Any]:
        if isinstance(message, AssistantMessage):
            events: List[Any] = []
            for block in message.content:
                if isinstance(block, TextBlock):
                    events.append(ContentFragment(text=block.text))
                elif isinstance(block, ToolUseBlock):
                    tool_names[block.id] = block.name
                    events.append(ToolStart(name=block.name, input=dict(block.input), call_id=block.id))
            return events
        if isinstance(message, UserMessage):
            if isinstance(message.content, str):
                return []
            events = []
            for block in message.content:
                if not isinstance(block, ToolResultBlock):
                    continue
                name = tool_names.get(block.tool_use_id, "unknown")
                if block.is_error:
                    events.append(
                        ToolEnd(
                            name=name,
                            error=_result_text(block.content) or "Tool failed",
                            call_id=block.tool_use_id,
                        )
                    )
                else:
                    events.append(ToolEnd(name=name, output=block.content, call_id=block.tool_use_id))
            return events
        if isinstance(message, ResultMessage):
            if message.is_error:
                raise UpstreamError(message.result or f"Agent run failed: {message.subtype}")
            return [UnknownEvent(kind="result", payload=message.subtype)]
        return [UnknownEvent(kind=type(message).__name__, payload=message)]

    async def health_check(self) -> bool:
        # Nothing to reach: the SDK starts the agent per query
        return True

    async def close(self) -> None:
        return None
