"""Tests for the HTTP agent runtime client against a mocked transport."""

import json

import httpx
import pytest

from agent_gateway.service.agent_runtime import HttpAgentRuntime
from agent_gateway.service.errors import UpstreamError
from agent_gateway.service.models import RuntimeOptions

OPTIONS = RuntimeOptions(
    api_key="sk-ant-test",
    model="claude-sonnet-4-5-20250929",
    workspace_path="/app/workspace",
    session_id="sess_1_abcdefghi",
)


def _runtime(handler) -> HttpAgentRuntime:
    client = httpx.AsyncClient(base_url="http://runtime", transport=httpx.MockTransport(handler))
    return HttpAgentRuntime("http://runtime", client=client)


async def _collect(runtime, prompt="<user>hi</user>"):
    return [event async for event in runtime.query(prompt, OPTIONS)]


async def test_streams_ndjson_events():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        lines = [
            json.dumps({"type": "text", "text": "Hel"}),
            "",
            json.dumps({"type": "text", "text": "lo"}),
        ]
        return httpx.Response(200, content="\n".join(lines) + "\n")

    runtime = _runtime(handler)
    events = await _collect(runtime)
    await runtime.close()

    assert events == [{"type": "text", "text": "Hel"}, {"type": "text", "text": "lo"}]
    assert seen["path"] == "/v1/query"
    assert seen["body"]["prompt"] == "<user>hi</user>"
    assert seen["body"]["options"]["sessionId"] == "sess_1_abcdefghi"
    assert seen["body"]["options"]["enableTools"] is True
    assert "baseUrl" not in seen["body"]["options"]


async def test_http_error_status_raises():
    runtime = _runtime(lambda request: httpx.Response(502, text="bad gateway"))
    with pytest.raises(UpstreamError) as exc_info:
        await _collect(runtime)
    assert "HTTP 502" in exc_info.value.message


async def test_malformed_line_raises():
    runtime = _runtime(lambda request: httpx.Response(200, content=b'{"type": "text"\n'))
    with pytest.raises(UpstreamError) as exc_info:
        await _collect(runtime)
    assert "Malformed runtime event" in exc_info.value.message


async def test_error_event_raises():
    body = json.dumps({"type": "text", "text": "a"}) + "\n" + json.dumps({"type": "error", "error": "quota"}) + "\n"
    runtime = _runtime(lambda request: httpx.Response(200, content=body))
    with pytest.raises(UpstreamError) as exc_info:
        await _collect(runtime)
    assert exc_info.value.message == "quota"


async def test_transport_failure_raises():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    runtime = _runtime(handler)
    with pytest.raises(UpstreamError) as exc_info:
        await _collect(runtime)
    assert isinstance(exc_info.value.__cause__, httpx.ConnectError)


async def test_health_check():
    healthy = _runtime(lambda request: httpx.Response(200, json={"status": "ok"}))
    unhealthy = _runtime(lambda request: httpx.Response(503))

    def refuse(request):
        raise httpx.ConnectError("down", request=request)

    unreachable = _runtime(refuse)
    assert await healthy.health_check() is True
    assert await unhealthy.health_check() is False
    assert await unreachable.health_check() is False


def test_options_payload_includes_optional_fields():
    options = RuntimeOptions(
        api_key="k",
        model="m",
        workspace_path="/w",
        session_id="s",
        enable_tools=False,
        base_url="https://proxy.example",
        system_prompt="Be brief",
        skill_id="refactor",
    )
    assert options.to_payload() == {
        "apiKey": "k",
        "model": "m",
        "workspacePath": "/w",
        "sessionId": "s",
        "enableTools": False,
        "baseUrl": "https://proxy.example",
        "systemPrompt": "Be brief",
        "skillId": "refactor",
    }
