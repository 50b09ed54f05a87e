from __future__ import annotations

import time
from typing import Optional

from agent_gateway.config import Settings
from agent_gateway.logging import get_logger
from agent_gateway.service.agent import AgentService
from agent_gateway.service.agent_runtime import (
    AgentRuntime,
    ClaudeAgentRuntime,
    HttpAgentRuntime,
)
from agent_gateway.service.auth import TokenVerifier
from agent_gateway.service.rate_limit import (
    RateLimiter,
    RateLimitRule,
    RedisRateLimiter,
    SlidingWindowRateLimiter,
)

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    if not url or "@" not in url or "://" not in url:
        return url
    scheme, rest = url.split("://", 1)
    creds, host = rest.rsplit("@", 1)
    user = creds.split(":", 1)[0]
    return f"{scheme}://{user}:***@{host}"


def _default_runtime(settings: Settings) -> AgentRuntime:
    if settings.agent_runtime_url:
        return HttpAgentRuntime(
            settings.agent_runtime_url,
            api_key=settings.anthropic_api_key,
            timeout_seconds=settings.agent_runtime_timeout_seconds,
        )
    return ClaudeAgentRuntime()


class ServiceContainer:
    """Services shared by all handlers, built once per application.

    Stored on ``app.state`` and handed to handlers through a dependency, so
    tests can build a container with substitute collaborators.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        runtime: Optional[AgentRuntime] = None,
        rate_limiter: Optional[RateLimiter] = None,
    ) -> None:
        self.settings = settings
        self.started_at = time.time()
        self.verifier = TokenVerifier(settings.jwt_secret)
        self.runtime = runtime or _default_runtime(settings)
        self.agent = AgentService(settings, self.runtime)
        if rate_limiter is not None:
            self.rate_limiter = rate_limiter
        elif settings.redis_url:
            self.rate_limiter = RedisRateLimiter(
                settings.redis_url, allow_list=settings.rate_limit_allow_list
            )
        else:
            self.rate_limiter = SlidingWindowRateLimiter(
                allow_list=settings.rate_limit_allow_list,
                max_keys=settings.rate_limit_cache_size,
            )
        self.rules = {
            "default": RateLimitRule(
                settings.rate_limit_max_requests, settings.rate_limit_window_ms
            ),
            "chat": RateLimitRule(
                settings.chat_rate_limit_max_requests, settings.chat_rate_limit_window_ms
            ),
            "health": RateLimitRule(
                settings.health_rate_limit_max_requests, settings.health_rate_limit_window_ms
            ),
        }
        logger.info(
            "service_container_initialized",
            environment=settings.environment,
            model=settings.model,
            runtime=type(self.runtime).__name__,
            rate_limiter=type(self.rate_limiter).__name__,
            redis_url=_mask_url_password(settings.redis_url),
        )

    def rule(self, name: str) -> RateLimitRule:
        return self.rules.get(name, self.rules["default"])

    async def close(self) -> None:
        try:
            await self.runtime.close()
        finally:
            await self.rate_limiter.close()
        logger.info("service_container_closed")
