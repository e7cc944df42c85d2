"""MCP server exposing the wave orchestrator tools."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

from mcp.server.fastmcp import Context, FastMCP

from wave_orchestrator.config import Config, get_config
from wave_orchestrator.core import overlap as overlap_mod
from wave_orchestrator.core import skills as skills_mod
from wave_orchestrator.core import waves as waves_mod
from wave_orchestrator.core import worktrees as worktrees_mod
from wave_orchestrator.core.backlog import BacklogClient, BacklogError, make_backlog, validate_item_id
from wave_orchestrator.core.gates import GateRunner
from wave_orchestrator.core.monitor import WorkerMonitor
from wave_orchestrator.core.pipeline import STAGES, CompletionPipeline
from wave_orchestrator.integrations.session_host import SessionHostClient


@dataclass
class AppContext:
    config: Config
    backlog: BacklogClient
    session_host: SessionHostClient
    monitor: WorkerMonitor | None = None


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Open the backlog and start the worker monitor on startup; stop both on shutdown."""
    config = get_config()
    backlog = make_backlog(config)
    session_host = SessionHostClient.from_config(config)

    monitor = WorkerMonitor(backlog, session_host, config)
    monitor.start(spawn_dashboard=False)

    try:
        yield AppContext(config=config, backlog=backlog, session_host=session_host, monitor=monitor)
    finally:
        await monitor.stop()
        await session_host.close()
        close = getattr(backlog, "close", None)
        if close:
            close()


mcp = FastMCP("wave-orchestrator", lifespan=app_lifespan)


def _ctx(ctx: Context) -> AppContext:
    """Extract AppContext from MCP Context."""
    return ctx.request_context.lifespan_context


def _error(e: Exception) -> dict:
    return {"error": str(e)}


# ── Planning Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def resolve_item(ctx: Context, item_id: str, force: bool = False) -> dict:
    """Resolve the skills and required quality gates for a backlog item.

    Gate labels (gate:<type>) on the item take precedence over inference.
    """
    try:
        validate_item_id(item_id)
        return skills_mod.resolve_item(_ctx(ctx).backlog, item_id, force=force).as_dict()
    except (BacklogError, ValueError) as e:
        return _error(e)


@mcp.tool()
def detect_overlap(ctx: Context, item_ids: list[str]) -> dict:
    """Find pairs of items likely to touch the same files and group them into batches."""
    app = _ctx(ctx)
    try:
        items = [app.backlog.require_item(validate_item_id(i)) for i in dict.fromkeys(item_ids)]
    except (BacklogError, ValueError) as e:
        return _error(e)
    overlaps = overlap_mod.detect_overlap(items)
    batches = overlap_mod.group([i.id for i in items], overlaps)
    return {
        "overlaps": [{"first": o.first, "second": o.second, "reason": o.reason} for o in overlaps],
        "batches": [{"id": b.id, "items": b.item_ids} for b in batches],
    }


@mcp.tool()
def plan_wave(ctx: Context, item_ids: list[str] | None = None) -> dict:
    """Plan the next wave. Uses all ready items when none are given.

    Returns the batches, the heads to run now and the items that must wait.
    """
    try:
        return waves_mod.plan_wave(_ctx(ctx).backlog, item_ids or None).as_dict()
    except (BacklogError, ValueError) as e:
        return _error(e)


@mcp.tool()
async def dispatch_wave(ctx: Context, item_ids: list[str] | None = None, install: bool = True) -> dict:
    """Plan a wave and spawn one worker session per batch head."""
    app = _ctx(ctx)
    try:
        plan = waves_mod.plan_wave(app.backlog, item_ids or None)
    except (BacklogError, ValueError) as e:
        return _error(e)
    report = await waves_mod.dispatch_wave(plan, app.backlog, app.session_host, app.config, install=install)
    return {"plan": plan.as_dict(), **report.as_dict()}


# ── Worktree Tools ────────────────────────────────────────────────────────────


@mcp.tool()
def provision_worktree(ctx: Context, item_id: str, install: bool = True) -> dict:
    """Create (or reuse) the isolated worktree for an item and install its dependencies."""
    config = _ctx(ctx).config
    try:
        return worktrees_mod.provision(config.repo_path, item_id, config, install=install).as_dict()
    except (worktrees_mod.ProvisionError, ValueError) as e:
        return _error(e)


@mcp.tool()
def list_worktrees(ctx: Context) -> list[dict]:
    """List git worktrees and the items they belong to."""
    config = _ctx(ctx).config
    return worktrees_mod.list_item_worktrees(config.repo_path, config)


# ── Gate Tools ────────────────────────────────────────────────────────────────


@mcp.tool()
async def run_gates(
    ctx: Context,
    item_id: str,
    gates: list[str] | None = None,
    timeout: float | None = None,
) -> dict:
    """Run an item's quality gates in its worktree and report whether it may merge."""
    app = _ctx(ctx)
    try:
        validate_item_id(item_id)
        gates = gates or skills_mod.resolve_item(app.backlog, item_id).gates
    except (BacklogError, ValueError) as e:
        return _error(e)
    worktree = app.config.worktree_for(app.config.repo_path, item_id)
    if not worktree.is_dir():
        return {"error": f"Worktree not found: {worktree}"}
    runner = GateRunner(app.config, session_host=app.session_host)
    try:
        report = await runner.run_gates(item_id, gates, worktree, app.config.repo_path, timeout, app.backlog)
    except ValueError as e:
        return _error(e)
    return report.as_dict()


# ── Monitor Tools ─────────────────────────────────────────────────────────────


@mcp.tool()
async def poll_workers(ctx: Context, refresh: bool = False) -> dict:
    """Current worker status, in-progress and closed items and alerts."""
    monitor = _ctx(ctx).monitor
    if refresh or monitor.latest is None:
        return (await monitor.poll()).as_dict()
    return monitor.latest.as_dict()


# ── Completion Tools ──────────────────────────────────────────────────────────


@mcp.tool()
async def complete_wave(
    ctx: Context,
    item_ids: list[str],
    skip: list[str] | None = None,
    notify_channel: str | None = None,
) -> dict:
    """Capture transcripts, stop workers, merge gated branches, clean up and summarize.

    Stages that can be skipped: capture, terminate, merge, cleanup, summary.
    """
    app = _ctx(ctx)
    unknown = set(skip or ()) - set(STAGES)
    if unknown:
        return {"error": f"Unknown stage(s): {', '.join(sorted(unknown))}"}
    pipeline = CompletionPipeline(app.config.repo_path, app.backlog, app.session_host, app.config)
    try:
        report = await pipeline.run(item_ids, skip=set(skip or ()), notify_channel=notify_channel)
    except (BacklogError, ValueError) as e:
        return _error(e)
    return report.as_dict()
