"""Integration tests for the executor service REST API.

Uses httpx AsyncClient with ASGITransport for async HTTP testing.
The turn runner is real; the CLI is replaced by FakeExecutor and the
session store runs on a throwaway SQLite file.
"""

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from parley.api.rest import check_bearer, create_app
from parley.api.runner import TurnRunner
from parley.context.orchestrator import ContextOrchestrator
from parley.context.schemas import ExecutionOutcome
from parley.events import SESSION_RESET, EventBus
from parley.handlers.telemetry import TelemetryRecorder
from parley.queue import RequestQueue
from tests.conftest import FakeExecutor, FixedSummarizer, make_turns

AUTH = {"Authorization": "Bearer sekrit"}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def app(store, settings, executor, bus):
    settings = settings.model_copy(update={"auth_token": "sekrit"})
    orchestrator = ContextOrchestrator(settings, executor, FixedSummarizer(), bus=bus)
    runner = TurnRunner(orchestrator, store)
    telemetry = TelemetryRecorder(bus)
    return create_app(runner, store, RequestQueue(2), settings, bus=bus, telemetry=telemetry)


@pytest_asyncio.fixture
async def client(app):
    """Async HTTP client using httpx ASGITransport."""
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
        yield c


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class TestCheckBearer:
    def test_no_expected_token_disables_auth(self):
        assert check_bearer(None, "")
        assert check_bearer("Bearer anything", None)

    def test_matching_token(self):
        assert check_bearer("Bearer abc", "abc")

    def test_rejects_wrong_or_malformed(self):
        assert not check_bearer("Bearer abd", "abc")
        assert not check_bearer("abc", "abc")
        assert not check_bearer(None, "abc")
        assert not check_bearer("Basic abc", "abc")


class TestAuth:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "method,path",
        [("POST", "/execute"), ("POST", "/reset"), ("GET", "/session/x"), ("POST", "/cleanup")],
    )
    async def test_requires_token(self, client, method, path):
        r = await client.request(method, path, json={})
        assert r.status_code == 401
        assert r.json() == {"error": "Unauthorized"}

    @pytest.mark.asyncio
    async def test_wrong_token(self, client):
        r = await client.post(
            "/execute",
            json={"session_id": "s", "prompt": "p"},
            headers={"Authorization": "Bearer nope"},
        )
        assert r.status_code == 401

    @pytest.mark.asyncio
    async def test_health_is_open(self, client):
        r = await client.get("/health")
        assert r.status_code == 200


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


class TestHealth:
    @pytest.mark.asyncio
    async def test_health_shape(self, client, store):
        await store.create("s1")
        data = (await client.get("/health")).json()
        assert data["status"] == "ok"
        assert data["queue"] == {"active": 0, "pending": 0}
        assert data["sessions"] == 1
        assert data["uptime"] >= 0
        assert "events" in data["telemetry"]


class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_success(self, client, executor):
        r = await client.post(
            "/execute",
            json={"session_id": "chan_ann", "prompt": "hello", "user_name": "ann"},
            headers=AUTH,
        )
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is True
        assert data["session_id"] == "chan_ann"
        assert data["claude_session_id"] == "h-1"
        assert data["result"] == "out-1"
        assert data["error"] is None
        assert data["context"]["estimated_tokens"] == 4
        assert data["context"]["needs_compaction"] is False
        assert executor.calls[0][2] == {"user_name": "ann"}

    @pytest.mark.asyncio
    async def test_execute_passes_client_handle(self, client, executor):
        await client.post(
            "/execute",
            json={"session_id": "s1", "prompt": "hi", "claude_session_id": "cli-123"},
            headers=AUTH,
        )
        assert executor.calls[0][1] == "cli-123"

    @pytest.mark.asyncio
    async def test_missing_fields(self, client):
        r = await client.post("/execute", json={"session_id": "s1"}, headers=AUTH)
        assert r.status_code == 400
        assert "prompt" in r.json()["error"]

    @pytest.mark.asyncio
    async def test_invalid_json(self, client):
        r = await client.post(
            "/execute",
            content=b"{not json",
            headers={**AUTH, "Content-Type": "application/json"},
        )
        assert r.status_code == 400
        assert r.json() == {"error": "Invalid JSON body"}

    @pytest.mark.asyncio
    async def test_non_object_body(self, client):
        r = await client.post("/execute", json=["a", "b"], headers=AUTH)
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_failed_turn_reported(self, client, executor):
        executor._script.append(
            ExecutionOutcome(succeeded=False, output="partial", failure="Claude exited with code 1")
        )
        r = await client.post(
            "/execute", json={"session_id": "s1", "prompt": "hi"}, headers=AUTH
        )
        assert r.status_code == 200
        data = r.json()
        assert data["success"] is False
        assert data["result"] == "partial"
        assert data["error"] == "Claude exited with code 1"
        assert data["claude_session_id"] is None

    @pytest.mark.asyncio
    async def test_runner_crash_is_500(self, client, store, monkeypatch):
        async def broken(*args, **kwargs):
            raise RuntimeError("store offline")

        monkeypatch.setattr(store, "get_or_create", broken)
        r = await client.post(
            "/execute", json={"session_id": "s1", "prompt": "hi"}, headers=AUTH
        )
        assert r.status_code == 500
        assert r.json() == {"success": False, "session_id": "s1", "error": "store offline"}


class TestSessionEndpoints:
    @pytest.mark.asyncio
    async def test_get_session(self, client, store):
        await client.post("/execute", json={"session_id": "s1", "prompt": "hello"}, headers=AUTH)
        r = await client.get("/session/s1", headers=AUTH)
        assert r.status_code == 200
        data = r.json()
        assert data["id"] == "s1"
        assert data["message_count"] == 1
        assert data["continuation_handle"] == "h-1"
        assert data["context_state"]["estimated_tokens"] == 4

    @pytest.mark.asyncio
    async def test_get_missing_session(self, client):
        r = await client.get("/session/nobody", headers=AUTH)
        assert r.status_code == 404

    @pytest.mark.asyncio
    async def test_reset(self, client, store, bus):
        seen = []

        async def on_reset(event):
            seen.append(event.session_id)

        bus.on(SESSION_RESET, on_reset)
        await store.create("s1")
        await store.append_turns("s1", make_turns(2))

        r = await client.post("/reset", json={"session_id": "s1"}, headers=AUTH)
        await bus.drain()

        assert r.json() == {"success": True, "message": "Session reset"}
        assert await store.get("s1") is None
        assert await store.load_transcript("s1") == []
        assert seen == ["s1"]

    @pytest.mark.asyncio
    async def test_reset_missing_id(self, client):
        r = await client.post("/reset", json={}, headers=AUTH)
        assert r.status_code == 400

    @pytest.mark.asyncio
    async def test_cleanup(self, client):
        r = await client.post("/cleanup", headers=AUTH)
        assert r.json() == {"success": True, "cleaned": 0}


class TestNoAuthConfigured:
    @pytest.mark.asyncio
    async def test_open_when_token_empty(self, store, settings):
        runner = TurnRunner(ContextOrchestrator(settings, FakeExecutor(), FixedSummarizer()), store)
        app = create_app(runner, store, RequestQueue(1), settings)
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as c:
            r = await c.post("/execute", json={"session_id": "s1", "prompt": "hi"})
        assert r.status_code == 200
        assert r.json()["success"] is True
