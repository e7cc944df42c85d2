"""Tests for the session host HTTP client."""

import json

import httpx
import pytest

from wave_orchestrator.integrations.session_host import (
    SessionHostClient,
    SessionHostError,
    SessionHostUnavailable,
    SessionInfo,
    read_token,
)

AGENTS = {
    "data": [
        {"id": "t-1", "name": "bd-1", "sessionName": "ctt-worker-1-ab", "workingDir": "/w/bd-1", "state": "running"},
        {"id": "t-2", "name": "chk-bd-1-visual-qa"},
    ]
}


def _client(handler, **kwargs):
    kwargs.setdefault("retry_delays", ())
    return SessionHostClient(base_url="http://host", transport=httpx.MockTransport(handler), **kwargs)


class TestSessionHostClient:
    @pytest.mark.asyncio
    async def test_list_and_find(self):
        def handler(request):
            assert request.url.path == "/api/agents"
            return httpx.Response(200, json=AGENTS)

        async with _client(handler) as client:
            sessions = await client.list_sessions()
            assert [s.name for s in sessions] == ["bd-1", "chk-bd-1-visual-qa"]
            found = await client.find_session("bd-1")
            assert found.session_name == "ctt-worker-1-ab"
            assert found.working_dir == "/w/bd-1"
            assert await client.find_session("ghost") is None

    @pytest.mark.asyncio
    async def test_token_header(self):
        seen = {}

        def handler(request):
            seen["token"] = request.headers.get("X-Auth-Token")
            return httpx.Response(200, json={"status": "ok"})

        async with _client(handler, token="s3cret") as client:
            assert await client.health()
        assert seen["token"] == "s3cret"

    @pytest.mark.asyncio
    async def test_create_session_waits_for_listing(self):
        requests = []

        def handler(request):
            requests.append((request.method, request.url.path))
            if request.url.path == "/api/spawn":
                body = json.loads(request.content)
                assert body == {"name": "bd-1", "workingDir": "/w/bd-1", "command": "claude"}
                return httpx.Response(200, json={"success": True, "terminal": {"id": "t-1", "name": "bd-1"}})
            return httpx.Response(200, json=AGENTS)

        async with _client(handler) as client:
            session = await client.create_session("bd-1", "/w/bd-1", "claude", boot_time=0)
        assert session.id == "t-1"
        assert session.session_name == "ctt-worker-1-ab"
        assert requests == [("POST", "/api/spawn"), ("GET", "/api/agents")]

    @pytest.mark.asyncio
    async def test_create_session_never_listed(self):
        def handler(request):
            if request.url.path == "/api/spawn":
                return httpx.Response(200, json={"success": True})
            return httpx.Response(200, json={"data": []})

        async with _client(handler) as client:
            with pytest.raises(SessionHostError, match="did not appear"):
                await client.create_session("bd-9", "/w", "claude", boot_time=0)

    @pytest.mark.asyncio
    async def test_send_keys_payload(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return httpx.Response(200, json={"success": True})

        session = SessionInfo(id="t-1", name="bd-1", session_name="ctt-worker-1-ab")
        async with _client(handler) as client:
            await client.send_keys(session, "do the thing")
        assert bodies[0]["terminalId"] == "t-1"
        assert bodies[0]["sessionName"] == "ctt-worker-1-ab"
        assert bodies[0]["text"] == "do the thing"
        assert bodies[0]["execute"] is True

    @pytest.mark.asyncio
    async def test_delete_missing_is_ok(self):
        def handler(request):
            assert request.method == "DELETE"
            return httpx.Response(404, json={"error": "not found"})

        async with _client(handler) as client:
            assert await client.delete_session("t-404")

    @pytest.mark.asyncio
    async def test_http_error(self):
        def handler(request):
            return httpx.Response(500, text="boom")

        async with _client(handler) as client:
            with pytest.raises(SessionHostError) as exc:
                await client.list_sessions()
        assert exc.value.status_code == 500
        assert not isinstance(exc.value, SessionHostUnavailable)

    @pytest.mark.asyncio
    async def test_connect_retries_then_unavailable(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            raise httpx.ConnectError("refused", request=request)

        async with _client(handler, retry_delays=(0.001, 0.001)) as client:
            with pytest.raises(SessionHostUnavailable):
                await client.list_sessions()
            assert not await client.health()
        assert len(attempts) == 6

    @pytest.mark.asyncio
    async def test_connect_recovers(self):
        attempts = []

        def handler(request):
            attempts.append(1)
            if len(attempts) == 1:
                raise httpx.ConnectError("refused", request=request)
            return httpx.Response(200, json={"data": []})

        async with _client(handler, retry_delays=(0.001,)) as client:
            assert await client.list_sessions() == []
        assert len(attempts) == 2


class TestReadToken:
    def test_reads_file(self, tmp_path):
        path = tmp_path / "token"
        path.write_text("abc\n")
        assert read_token(path) == "abc"

    def test_missing(self, tmp_path):
        assert read_token(tmp_path / "nope") is None
        assert read_token(None) is None
