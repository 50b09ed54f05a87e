from __future__ import annotations

import asyncio
import contextlib

from typing import Iterable

from starlette.datastructures import Headers
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from agent_gateway.api.error_handling import error_response, rate_limited_response
from agent_gateway.logging import get_logger, set_correlation_id
from agent_gateway.service.container import ServiceContainer
from agent_gateway.service.errors import RateLimitedError
from agent_gateway.service.rate_limit import enforce_rate_limit

logger = get_logger(__name__)


class CorrelationIdMiddleware:
    """Bind ``X-Request-ID`` (client supplied or generated) to logs and echo it back."""

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return
        client_request_id = None
        for name, value in scope.get("headers", []):
            if name == b"x-request-id":
                client_request_id = value.decode("latin-1")
                break
        correlation_id = set_correlation_id(client_request_id)

        async def send_with_id(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.append((b"x-request-id", correlation_id.encode("latin-1")))
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_id)


class DefaultRateLimitMiddleware:
    """Spend the default budget on every request whose route has no budget of its own.

    Unmatched paths are counted too, so scanning for routes is throttled
    like any other traffic. Callers with a valid bearer token are keyed by
    subject, the rest by address.
    """

    def __init__(
        self,
        app: ASGIApp,
        *,
        container: ServiceContainer,
        exempt_paths: Iterable[str] = (),
    ) -> None:
        self.app = app
        self.container = container
        self.exempt_paths = frozenset(exempt_paths)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] in self.exempt_paths:
            await self.app(scope, receive, send)
            return

        identity = self.container.verifier.authenticate_optional(
            Headers(scope=scope).get("authorization")
        )
        client = scope.get("client")
        try:
            decision = await enforce_rate_limit(
                self.container.rate_limiter,
                "default",
                self.container.rule("default"),
                subject=identity.subject if identity else None,
                client_host=client[0] if client else None,
            )
        except RateLimitedError as exc:
            response = rate_limited_response(exc)
            await response(scope, receive, send)
            return
        if decision.bypassed:
            await self.app(scope, receive, send)
            return

        rate_headers = [
            (b"x-ratelimit-limit", str(decision.limit).encode("latin-1")),
            (b"x-ratelimit-remaining", str(max(0, decision.remaining)).encode("latin-1")),
            (b"x-ratelimit-reset", str(decision.reset_seconds).encode("latin-1")),
        ]

        async def send_with_limits(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.extend(rate_headers)
                message = {**message, "headers": headers}
            await send(message)

        await self.app(scope, receive, send_with_limits)


class RequestTimeoutMiddleware:
    """Hard wall-clock budget per request.

    The downstream app runs in its own task. If it has not started a response
    when the budget elapses, a 408 envelope is sent, every later write from
    the app is dropped and the task is cancelled (which closes the runtime
    stream it may be draining). A client disconnect cancels both the pending
    timeout and the task.

    Raw ASGI rather than ``BaseHTTPMiddleware`` so the app task can be
    cancelled directly.
    """

    def __init__(self, app: ASGIApp, timeout_seconds: float = 30.0) -> None:
        self.app = app
        self.timeout_seconds = timeout_seconds

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or self.timeout_seconds <= 0:
            await self.app(scope, receive, send)
            return

        response_started = False
        response_complete = False
        timed_out = False
        body_consumed = asyncio.Event()

        async def tracking_receive() -> Message:
            message = await receive()
            if message["type"] == "http.disconnect" or not message.get("more_body", False):
                body_consumed.set()
            return message

        async def guarded_send(message: Message) -> None:
            nonlocal response_started, response_complete
            if timed_out:
                logger.debug("late_write_suppressed", message_type=message["type"])
                return
            if message["type"] == "http.response.start":
                response_started = True
            elif message["type"] == "http.response.body" and not message.get("more_body", False):
                response_complete = True
            await send(message)

        handler = asyncio.create_task(self.app(scope, tracking_receive, guarded_send))
        watcher = asyncio.create_task(self._watch_disconnect(receive, body_consumed))
        try:
            done, _ = await asyncio.wait(
                {handler, watcher},
                timeout=self.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if handler in done:
                handler.result()
                return
            if watcher in done and response_complete:
                # Servers report a disconnect once the response is fully written
                await handler
                return
            if watcher in done:
                logger.info(
                    "client_disconnected",
                    path=scope.get("path"),
                    method=scope.get("method"),
                )
                await self._cancel(handler)
                return
            if response_started:
                # Already answering; let the write finish rather than truncate it
                await handler
                return
            timed_out = True
            logger.warning(
                "request_timeout",
                path=scope.get("path"),
                method=scope.get("method"),
                timeout_seconds=self.timeout_seconds,
            )
            await self._cancel(handler)
            response = error_response(408, "Request processing timed out")
            await response(scope, receive, send)
        finally:
            await self._cancel(watcher)

    @staticmethod
    async def _watch_disconnect(receive: Receive, body_consumed: asyncio.Event) -> None:
        # Only read after the app has drained the body, so no request bytes are stolen
        await body_consumed.wait()
        while True:
            message = await receive()
            if message["type"] == "http.disconnect":
                return

    @staticmethod
    async def _cancel(task: asyncio.Task) -> None:
        if task.done():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
