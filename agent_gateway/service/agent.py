from __future__ import annotations

import time
from typing import Optional, Sequence

from agent_gateway.config import Settings
from agent_gateway.logging import get_logger
from agent_gateway.service.agent_runtime import AgentRuntime
from agent_gateway.service.aggregator import aggregate
from agent_gateway.service.errors import UpstreamError
from agent_gateway.service.models import ChatResult, RuntimeOptions
from agent_gateway.service.prompt_utils import build_prompt
from agent_gateway.service.sessions import resolve_session_id
from agent_gateway.service.validation import validate_messages

logger = get_logger(__name__)


class AgentService:
    """Runs one chat turn against the agent runtime."""

    def __init__(self, settings: Settings, runtime: AgentRuntime) -> None:
        self.settings = settings
        self.runtime = runtime

    def runtime_options(
        self,
        session_id: str,
        *,
        enable_tools: bool = True,
        skill_id: Optional[str] = None,
    ) -> RuntimeOptions:
        return RuntimeOptions(
            api_key=self.settings.anthropic_api_key,
            model=self.settings.model,
            workspace_path=self.settings.workspace_path,
            session_id=session_id,
            enable_tools=enable_tools,
            base_url=self.settings.anthropic_base_url,
            system_prompt=self.settings.system_prompt,
            skill_id=skill_id,
        )

    async def chat(
        self,
        messages: Sequence,
        *,
        session_id: Optional[str] = None,
        enable_tools: bool = True,
        skill_id: Optional[str] = None,
    ) -> ChatResult:
        """Flatten the history, drive the runtime and consolidate its events.

        Raises:
            BadRequestError: history fails structural checks (runtime untouched)
            UpstreamError: runtime failed; no partial result is returned
        """
        validate_messages(messages)
        resolved_session = resolve_session_id(session_id)
        prompt = build_prompt(messages)
        options = self.runtime_options(
            resolved_session, enable_tools=enable_tools, skill_id=skill_id
        )
        started = time.monotonic()
        try:
            result = await aggregate(
                self.runtime.query(prompt, options), prompt, resolved_session
            )
        except UpstreamError as exc:
            logger.error(
                "agent_chat_failed",
                session_id=resolved_session,
                error=exc.message,
                cause=repr(exc.__cause__) if exc.__cause__ else None,
                duration_ms=int((time.monotonic() - started) * 1000),
                exc_info=exc,
            )
            raise
        logger.info(
            "agent_chat_completed",
            session_id=resolved_session,
            message_count=len(messages),
            tool_calls=len(result.tool_calls),
            input_tokens=result.usage.input_tokens,
            output_tokens=result.usage.output_tokens,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return result

    async def health_check(self) -> bool:
        try:
            return await self.runtime.health_check()
        except Exception as exc:
            logger.warning("agent_health_check_failed", error=str(exc))
            return False
