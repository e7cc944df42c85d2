"""Backlog client over the beads (`bd`) issue tracker CLI."""

import json
import logging
import subprocess
import time
from pathlib import Path

from wave_orchestrator.core.backlog import BacklogClient, BacklogError
from wave_orchestrator.db.models import ItemStatus, WorkItem

logger = logging.getLogger(__name__)

RETRY_DELAYS_S = (0.2, 0.5, 1.0)

# bd calls its ready state "open"
_STATUS_FROM_BD = {
    "open": ItemStatus.READY,
    "ready": ItemStatus.READY,
    "in_progress": ItemStatus.IN_PROGRESS,
    "blocked": ItemStatus.BLOCKED,
    "closed": ItemStatus.CLOSED,
}
_STATUS_TO_BD = {ItemStatus.READY: "open"}


class BeadsError(BacklogError):
    """Raised when a bd command fails after retries."""


def run_bd(
    args: list[str],
    cwd: str | Path | None = None,
    retry_delays: tuple[float, ...] = RETRY_DELAYS_S,
    binary: str = "bd",
) -> str:
    """Run a bd command and return stdout, retrying transient failures."""
    cmd = [binary] + args
    attempts = len(retry_delays) + 1
    last_error = ""
    for attempt in range(attempts):
        try:
            result = subprocess.run(cmd, cwd=cwd, capture_output=True, text=True, check=True)
            return result.stdout.strip()
        except FileNotFoundError as e:
            raise BeadsError(f"{binary} not found on PATH") from e
        except subprocess.CalledProcessError as e:
            last_error = (e.stderr or e.stdout or "").strip()
            if "not found" in last_error.lower():
                break
            if attempt < attempts - 1:
                logger.warning(
                    "bd %s failed (attempt %d/%d): %s", " ".join(args), attempt + 1, attempts, last_error
                )
                time.sleep(retry_delays[attempt])
    raise BeadsError(f"bd {' '.join(args)} failed: {last_error}")


def _parse_json(output: str, args: list[str]):
    if not output:
        return []
    try:
        return json.loads(output)
    except json.JSONDecodeError as e:
        raise BeadsError(f"bd {' '.join(args)} returned invalid JSON") from e


def _dependency_ids(raw) -> list[str]:
    ids = []
    for dep in raw or []:
        if isinstance(dep, str):
            ids.append(dep)
        elif isinstance(dep, dict):
            dep_id = dep.get("depends_on_id") or dep.get("id")
            if dep_id:
                ids.append(dep_id)
    return ids


def item_from_json(data: dict) -> WorkItem:
    """Build a WorkItem from one bd JSON issue object."""
    return WorkItem(
        id=data["id"],
        title=data.get("title") or "",
        description=data.get("description") or "",
        labels=set(data.get("labels") or []),
        status=_STATUS_FROM_BD.get(data.get("status", "open"), ItemStatus.READY),
        notes=data.get("notes") or "",
        depends_on=_dependency_ids(data.get("dependencies")),
    )


class BeadsBacklog(BacklogClient):
    def __init__(
        self,
        cwd: str | Path | None = None,
        binary: str = "bd",
        retry_delays: tuple[float, ...] = RETRY_DELAYS_S,
    ):
        self.cwd = cwd
        self.binary = binary
        self.retry_delays = retry_delays

    def _json(self, args: list[str]):
        output = run_bd(args + ["--json"], cwd=self.cwd, retry_delays=self.retry_delays, binary=self.binary)
        return _parse_json(output, args)

    def list_items(self, status: ItemStatus | str) -> list[WorkItem]:
        status = ItemStatus(status)
        bd_status = _STATUS_TO_BD.get(status, status.value)
        return [item_from_json(d) for d in self._json(["list", "--status", bd_status])]

    def get_item(self, item_id: str) -> WorkItem | None:
        try:
            data = self._json(["show", item_id])
        except BeadsError as e:
            if "not found" in str(e).lower():
                return None
            raise
        if isinstance(data, list):
            data = data[0] if data else None
        return item_from_json(data) if data else None

    def ready_items(self) -> list[WorkItem]:
        return [item_from_json(d) for d in self._json(["ready"])]

    def blocked_items(self) -> list[WorkItem]:
        return [item_from_json(d) for d in self._json(["blocked"])]

    def update_notes(self, item_id: str, notes: str) -> None:
        run_bd(["update", item_id, "--notes", notes], cwd=self.cwd, retry_delays=self.retry_delays, binary=self.binary)
