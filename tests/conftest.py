import asyncio
import inspect
import os
import sys
from pathlib import Path

os.environ.setdefault("ANTHROPIC_API_KEY", "sk-ant-test-key")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from agent_gateway.app import create_app  # noqa: E402
from agent_gateway.config import Settings  # noqa: E402
from agent_gateway.service.auth import TokenVerifier  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"


class ScriptedRuntime:
    """Agent runtime double that replays a fixed list of raw events.

    ``fail_after`` raises once that many events have been yielded;
    ``delay`` sleeps before each event so timeouts can be exercised.
    """

    def __init__(self, events=None, *, fail_after=None, delay=0.0, healthy=True):
        self.events = list(events or [])
        self.fail_after = fail_after
        self.delay = delay
        self.healthy = healthy
        self.calls = []
        self.cancelled = False
        self.closed = False

    async def query(self, prompt, options):
        self.calls.append((prompt, options))
        try:
            for index, event in enumerate(self.events):
                if self.fail_after is not None and index >= self.fail_after:
                    raise RuntimeError("runtime crashed")
                if self.delay:
                    await asyncio.sleep(self.delay)
                yield event
            if self.fail_after is not None and self.fail_after >= len(self.events):
                raise RuntimeError("runtime crashed")
        except asyncio.CancelledError:
            self.cancelled = True
            raise

    async def health_check(self):
        return self.healthy

    async def close(self):
        self.closed = True


def make_settings(**overrides) -> Settings:
    values = {
        "anthropic_api_key": "sk-ant-test-key",
        "jwt_secret": TEST_SECRET,
        "environment": "development",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def verifier():
    return TokenVerifier(TEST_SECRET)


@pytest.fixture
def token(verifier):
    return verifier.issue("user-123")


@pytest.fixture
def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def runtime():
    return ScriptedRuntime(
        [
            {"type": "assistant", "message": {"content": [{"type": "text", "text": "Hello"}]}},
            {"type": "text", "text": " world"},
        ]
    )


@pytest.fixture
def client(settings, runtime):
    app = create_app(settings, runtime=runtime)
    with TestClient(app) as test_client:
        yield test_client


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
