"""Async HTTP client for the terminal session host that runs agent sessions."""

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:8129"
API_CONNECT_RETRY_DELAYS_S = (0.1, 0.3, 0.6)
REQUEST_TIMEOUT_S = 10.0


class SessionHostError(Exception):
    """A session host request failed."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SessionHostUnavailable(SessionHostError):
    """The session host could not be reached."""


@dataclass
class SessionInfo:
    id: str
    name: str
    session_name: str | None = None
    working_dir: str | None = None
    state: str | None = None

    @classmethod
    def from_json(cls, data: dict) -> "SessionInfo":
        return cls(
            id=str(data.get("id", "")),
            name=data.get("name") or "",
            session_name=data.get("sessionName"),
            working_dir=data.get("workingDir"),
            state=data.get("state"),
        )

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "session_name": self.session_name,
            "working_dir": self.working_dir,
            "state": self.state,
        }


def read_token(token_file: str | Path | None) -> str | None:
    if not token_file:
        return None
    try:
        return Path(token_file).read_text().strip() or None
    except OSError:
        return None


class SessionHostClient:
    """Create, list, drive and delete agent sessions on the session host.

    Connection failures are retried with short delays and then raised as
    SessionHostUnavailable; HTTP error responses raise SessionHostError.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: str | None = None,
        token_file: str | Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        retry_delays: tuple[float, ...] = API_CONNECT_RETRY_DELAYS_S,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token if token is not None else read_token(token_file)
        self.retry_delays = retry_delays
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(cls, config, **kwargs) -> "SessionHostClient":
        return cls(base_url=config.session_api_url, token_file=config.token_file, **kwargs)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            headers = {"X-Auth-Token": self.token} if self.token else {}
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers=headers,
                timeout=REQUEST_TIMEOUT_S,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "SessionHostClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    async def _request(
        self,
        method: str,
        url: str,
        *,
        json_body: dict | None = None,
        allow_404: bool = False,
    ) -> httpx.Response:
        client = self._get_client()
        for attempt, delay in enumerate((0.0, *self.retry_delays), start=1):
            if delay:
                await asyncio.sleep(delay)
            try:
                resp = await client.request(method, url, json=json_body)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                if attempt > len(self.retry_delays):
                    raise SessionHostUnavailable(f"Session host unreachable at {self.base_url}: {e}") from e
                logger.debug("Session host connect failed (attempt %d), retrying", attempt)
                continue
            except httpx.HTTPError as e:
                raise SessionHostError(f"{method} {url} failed: {e}") from e

            if allow_404 and resp.status_code == 404:
                return resp
            if resp.status_code >= 400:
                raise SessionHostError(
                    f"{method} {url} returned {resp.status_code}: {resp.text[:200]}",
                    status_code=resp.status_code,
                )
            return resp
        raise SessionHostUnavailable(f"Session host unreachable at {self.base_url}")

    async def health(self) -> bool:
        """True when the host answers its health endpoint."""
        try:
            await self._request("GET", "/api/health")
            return True
        except SessionHostError as e:
            logger.warning("Session host health check failed: %s", e)
            return False

    async def list_sessions(self) -> list[SessionInfo]:
        resp = await self._request("GET", "/api/agents")
        return [SessionInfo.from_json(d) for d in resp.json().get("data", [])]

    async def find_session(self, name: str) -> SessionInfo | None:
        for session in await self.list_sessions():
            if session.name == name:
                return session
        return None

    async def create_session(
        self,
        name: str,
        working_dir: str | Path,
        command: str,
        boot_time: float = 4.0,
    ) -> SessionInfo:
        """Spawn a session and wait until the host lists it."""
        resp = await self._request(
            "POST",
            "/api/spawn",
            json_body={"name": name, "workingDir": str(working_dir), "command": command},
        )
        spawned = (resp.json() or {}).get("terminal") or {}
        if boot_time:
            await asyncio.sleep(boot_time)

        session = await self.find_session(name)
        if session is None:
            if spawned.get("id"):
                return SessionInfo.from_json(spawned)
            raise SessionHostError(f"Session {name} did not appear after spawn")
        return session

    async def send_keys(self, session: SessionInfo, text: str, execute: bool = True, delay: int = 600) -> None:
        await self._request(
            "POST",
            "/api/terminals/send-keys",
            json_body={
                "terminalId": session.id,
                "sessionName": session.session_name or session.name,
                "text": text,
                "execute": execute,
                "delay": delay,
            },
        )

    async def delete_session(self, session_id: str) -> bool:
        """Delete a session. A session that is already gone counts as deleted."""
        resp = await self._request("DELETE", f"/api/agents/{session_id}", allow_404=True)
        if resp.status_code == 404:
            logger.debug("Session %s already gone", session_id)
        return True
