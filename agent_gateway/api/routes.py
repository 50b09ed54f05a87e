from __future__ import annotations

import platform
import resource
import sys
import time
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request, Response

from agent_gateway.api.schemas import (
    ChatRequest,
    ChatResponse,
    DetailedHealthResponse,
    HealthResponse,
    MemoryInfo,
    RuntimeInfo,
    StatusResponse,
    SystemInfo,
)
from agent_gateway.logging import get_logger
from agent_gateway.service.auth import AuthIdentity
from agent_gateway.service.container import ServiceContainer
from agent_gateway.service.errors import AuthenticationError, NotImplementedFeatureError
from agent_gateway.service.rate_limit import RateLimitDecision, enforce_rate_limit

logger = get_logger(__name__)

__version__ = "0.1.0"

router = APIRouter(prefix="/api/v1")

_PROCESS_STARTED = time.time()


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def _client_host(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_rate_limit_headers(response: Response, decision: RateLimitDecision) -> None:
    if decision.bypassed:
        return
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(max(0, decision.remaining))
    response.headers["X-RateLimit-Reset"] = str(decision.reset_seconds)


def rate_limited(route: str, rule_name: str, *, authenticated: bool):
    """Build a dependency that identifies the caller and spends one request of ``rule_name``'s budget.

    Identified callers are keyed by subject, everyone else by address. A
    caller that fails required authentication is still counted (by address)
    before the auth error is raised, so bad credentials cannot be retried
    without limit.
    """

    async def _dependency(
        request: Request,
        response: Response,
        authorization: Optional[str] = Header(None),
        container: ServiceContainer = Depends(get_container),
    ) -> Optional[AuthIdentity]:
        identity: Optional[AuthIdentity] = None
        auth_error: Optional[AuthenticationError] = None
        if authenticated:
            try:
                identity = container.verifier.authenticate(authorization)
            except AuthenticationError as exc:
                logger.info("auth_failed", reason=exc.message, path=request.url.path)
                auth_error = exc
        else:
            identity = container.verifier.authenticate_optional(authorization)
        decision = await enforce_rate_limit(
            container.rate_limiter,
            route,
            container.rule(rule_name),
            subject=identity.subject if identity else None,
            client_host=_client_host(request),
        )
        _apply_rate_limit_headers(response, decision)
        if auth_error is not None:
            raise auth_error
        return identity

    _dependency.rate_rule = rule_name
    return _dependency


def rate_limited_paths(routes) -> frozenset[str]:
    """Paths whose handlers spend a route-specific budget instead of the default one."""
    paths = set()
    for route in routes:
        dependant = getattr(route, "dependant", None)
        if dependant is None:
            continue
        if any(getattr(dep.call, "rate_rule", None) for dep in dependant.dependencies):
            paths.add(route.path)
    return frozenset(paths)


@router.get("/health", response_model=HealthResponse, tags=["health"])
async def health(
    _identity: Optional[AuthIdentity] = Depends(rate_limited("health", "health", authenticated=False)),
    container: ServiceContainer = Depends(get_container),
):
    return HealthResponse(
        version=__version__,
        uptime=int((time.time() - container.started_at) * 1000),
    )


@router.get("/health/detailed", response_model=DetailedHealthResponse, tags=["health"])
async def health_detailed(
    _identity: Optional[AuthIdentity] = Depends(rate_limited("health", "health", authenticated=False)),
    container: ServiceContainer = Depends(get_container),
):
    """Liveness summary plus interpreter, memory and runtime diagnostics."""
    usage = resource.getrusage(resource.RUSAGE_SELF)
    # ru_maxrss is KiB on Linux, bytes on macOS
    max_rss_bytes = usage.ru_maxrss if sys.platform == "darwin" else usage.ru_maxrss * 1024
    runtime_healthy = await container.agent.health_check()
    return DetailedHealthResponse(
        version=__version__,
        uptime=int((time.time() - container.started_at) * 1000),
        system=SystemInfo(
            python_version=platform.python_version(),
            platform=sys.platform,
            arch=platform.machine(),
            uptime=round(time.time() - _PROCESS_STARTED, 3),
        ),
        memory=MemoryInfo(max_rss=round(max_rss_bytes / 1024 / 1024, 1)),
        env=container.settings.environment,
        runtime=RuntimeInfo(healthy=runtime_healthy, runtime=type(container.runtime).__name__),
    )


@router.get("/ready", response_model=StatusResponse, tags=["health"])
async def ready(
    response: Response,
    _identity: Optional[AuthIdentity] = Depends(rate_limited("health", "health", authenticated=False)),
    container: ServiceContainer = Depends(get_container),
):
    if await container.agent.health_check():
        return StatusResponse(status="ready")
    response.status_code = 503
    return StatusResponse(status="not ready")


@router.get("/live", response_model=StatusResponse, tags=["health"])
async def live(
    _identity: Optional[AuthIdentity] = Depends(rate_limited("health", "health", authenticated=False)),
):
    return StatusResponse(status="alive")


@router.post("/chat", tags=["chat"])
async def chat(
    body: ChatRequest,
    identity: AuthIdentity = Depends(rate_limited("chat", "chat", authenticated=True)),
    container: ServiceContainer = Depends(get_container),
):
    """Run one chat turn and return the consolidated response.

    Raises:
        400: malformed body or message list
        401: missing, malformed or expired bearer token
        429: chat budget exhausted for this caller
        500: agent runtime failed mid-turn
    """
    logger.info(
        "chat_request",
        subject=identity.subject,
        message_count=len(body.messages),
        session_id=body.session_id,
        enable_tools=body.enable_tools,
        skill_id=body.skill_id,
    )
    result = await container.agent.chat(
        body.messages,
        session_id=body.session_id,
        enable_tools=body.enable_tools,
        skill_id=body.skill_id,
    )
    return ChatResponse.from_result(result).to_wire()


@router.post("/chat/stream", tags=["chat"])
async def chat_stream(
    _identity: AuthIdentity = Depends(rate_limited("chat", "chat", authenticated=True)),
):
    raise NotImplementedFeatureError("Streaming chat is not yet implemented")
