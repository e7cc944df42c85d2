"""Plan a wave from the backlog and start one worker per batch head."""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path

from wave_orchestrator.config import Config
from wave_orchestrator.core.backlog import BacklogClient, BacklogError
from wave_orchestrator.core.overlap import plan_batches
from wave_orchestrator.core.skills import Resolution, prepare_prompt, resolve_item
from wave_orchestrator.core.worktrees import ProvisionError, provision
from wave_orchestrator.db.models import Batch, Overlap
from wave_orchestrator.integrations.session_host import SessionHostClient, SessionHostError

logger = logging.getLogger(__name__)


@dataclass
class WavePlan:
    batches: list[Batch] = field(default_factory=list)
    overlaps: list[Overlap] = field(default_factory=list)
    resolutions: dict[str, Resolution] = field(default_factory=dict)

    @property
    def heads(self) -> list[str]:
        """Items that can run now: the first of each batch."""
        return [b.head for b in self.batches if b.item_ids]

    @property
    def later(self) -> list[str]:
        return [i for b in self.batches for i in b.item_ids[1:]]

    def as_dict(self) -> dict:
        return {
            "batches": [{"id": b.id, "items": b.item_ids} for b in self.batches],
            "overlaps": [{"first": o.first, "second": o.second, "reason": o.reason} for o in self.overlaps],
            "heads": self.heads,
            "later": self.later,
            "resolutions": {k: r.as_dict() for k, r in self.resolutions.items()},
        }


@dataclass
class DispatchReport:
    spawned: dict[str, str] = field(default_factory=dict)
    skipped: dict[str, str] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failures

    def as_dict(self) -> dict:
        return {"spawned": self.spawned, "skipped": self.skipped, "failures": self.failures}


def plan_wave(backlog: BacklogClient, ids: list[str] | None = None) -> WavePlan:
    """Resolve and batch `ids`, or every ready item when none are given."""
    if ids is None:
        ids = [i.id for i in backlog.ready_items()]
    plan = WavePlan()
    if not ids:
        logger.info("No items to plan")
        return plan
    for item_id in ids:
        plan.resolutions[item_id] = resolve_item(backlog, item_id)
    plan.batches, plan.overlaps = plan_batches(backlog, ids)
    return plan


def _prepare(backlog: BacklogClient, repo: Path, item_id: str, config: Config, install: bool) -> tuple[str, str]:
    result = provision(repo, item_id, config, install=install)
    prompt = prepare_prompt(
        backlog,
        item_id,
        worktree=result.worktree.path,
        branch=result.worktree.branch,
        checkpoint_dir=config.checkpoint_dir,
    )
    return result.worktree.path, prompt


async def _spawn(
    session_host: SessionHostClient, repo: Path, item_id: str, worktree: str, prompt: str, config: Config
) -> str:
    session = await session_host.create_session(
        name=item_id,
        working_dir=worktree,
        command=f"BEADS_WORKING_DIR={repo} {config.agent_command}",
        boot_time=config.agent_boot_time,
    )
    try:
        await session_host.send_keys(session, prompt)
    except SessionHostError:
        try:
            await session_host.delete_session(session.id)
        except SessionHostError as e:
            logger.warning("Could not remove worker session %s: %s", session.name, e)
        raise
    return session.session_name or session.name


async def dispatch_wave(
    plan: WavePlan,
    backlog: BacklogClient,
    session_host: SessionHostClient,
    config: Config | None = None,
    repo_path: str | Path | None = None,
    install: bool = True,
) -> DispatchReport:
    """Provision, prompt and spawn a worker for every head in `plan`.

    A failure for one item is recorded in the report and the others continue.
    Items that already have a worker session are skipped.
    """
    config = config or Config()
    repo = Path(repo_path or config.repo_path)
    report = DispatchReport()

    try:
        running = {s.name for s in await session_host.list_sessions()}
    except SessionHostError as e:
        for item_id in plan.heads:
            report.failures[item_id] = f"session host unavailable: {e}"
        return report

    prepared = {}
    for item_id in plan.heads:
        if item_id in running:
            report.skipped[item_id] = "worker session already running"
            continue
        try:
            prepared[item_id] = await asyncio.to_thread(_prepare, backlog, repo, item_id, config, install)
        except (ProvisionError, BacklogError, ValueError) as e:
            logger.warning("Could not prepare %s: %s", item_id, e)
            report.failures[item_id] = str(e)

    results = await asyncio.gather(
        *(_spawn(session_host, repo, i, wt, prompt, config) for i, (wt, prompt) in prepared.items()),
        return_exceptions=True,
    )
    for item_id, result in zip(prepared, results):
        if isinstance(result, SessionHostError):
            logger.warning("Could not spawn worker for %s: %s", item_id, result)
            report.failures[item_id] = str(result)
        elif isinstance(result, BaseException):
            raise result
        else:
            logger.info("Spawned worker %s for %s", result, item_id)
            report.spawned[item_id] = result
    return report
