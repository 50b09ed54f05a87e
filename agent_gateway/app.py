from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agent_gateway.api.error_handling import register_exception_handlers
from agent_gateway.api.middleware import (
    CorrelationIdMiddleware,
    DefaultRateLimitMiddleware,
    RequestTimeoutMiddleware,
)
from agent_gateway.api.routes import __version__, rate_limited_paths, router
from agent_gateway.config import Settings, load_settings
from agent_gateway.logging import get_logger
from agent_gateway.service.agent_runtime import AgentRuntime
from agent_gateway.service.container import ServiceContainer
from agent_gateway.service.rate_limit import RateLimiter

logger = get_logger(__name__)


def _allowed_origins(settings: Settings) -> list[str]:
    if settings.is_production:
        return settings.cors_origins
    return settings.cors_origins or ["*"]


def create_app(
    settings: Optional[Settings] = None,
    *,
    runtime: Optional[AgentRuntime] = None,
    rate_limiter: Optional[RateLimiter] = None,
) -> FastAPI:
    """Build the gateway application.

    Settings are read from the environment when not supplied; a missing
    ``ANTHROPIC_API_KEY`` or ``JWT_SECRET`` fails here, before any request
    is served.
    """
    settings = settings or load_settings()
    container = ServiceContainer(settings, runtime=runtime, rate_limiter=rate_limiter)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            "gateway_started",
            version=__version__,
            host=settings.host,
            port=settings.port,
            environment=settings.environment,
        )
        yield
        try:
            await container.close()
        except Exception as exc:
            logger.error("shutdown_failed", error=str(exc))

    app = FastAPI(title="Agent Gateway", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    app.state.container = container

    register_exception_handlers(app)
    app.include_router(router)

    # Added innermost first; CorrelationIdMiddleware ends up outermost
    app.add_middleware(
        RequestTimeoutMiddleware, timeout_seconds=settings.request_timeout_seconds
    )
    app.add_middleware(
        DefaultRateLimitMiddleware,
        container=container,
        exempt_paths=rate_limited_paths(app.routes),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_allowed_origins(settings),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
        max_age=3600,
    )
    app.add_middleware(CorrelationIdMiddleware)
    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
