"""CLI entry point for the wave orchestrator."""

import asyncio
import json
import logging
import sqlite3
import sys
from contextlib import contextmanager
from pathlib import Path

import click

from wave_orchestrator.config import get_config
from wave_orchestrator.core import backlog as backlog_mod
from wave_orchestrator.core import overlap as overlap_mod
from wave_orchestrator.core import skills as skills_mod
from wave_orchestrator.core import waves as waves_mod
from wave_orchestrator.core import worktrees as worktrees_mod
from wave_orchestrator.core.backlog import BacklogError
from wave_orchestrator.db.engine import get_db
from wave_orchestrator.db.models import ItemStatus
from wave_orchestrator.integrations.session_host import SessionHostClient


def _get_db():
    config = get_config()
    return get_db(config.db_path)


@contextmanager
def _backlog(config):
    backlog = backlog_mod.make_backlog(config)
    try:
        yield backlog
    finally:
        close = getattr(backlog, "close", None)
        if close:
            close()


def _validate_ids(ctx, param, value):
    ids = [value] if isinstance(value, str) else list(value or ())
    for item_id in ids:
        try:
            backlog_mod.validate_item_id(item_id)
        except ValueError as e:
            raise click.BadParameter(str(e), ctx=ctx, param=param)
    return value


def _fail(message: str, code: int = 1):
    click.echo(f"Error: {message}", err=True)
    sys.exit(code)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose):
    """wave - Wave Orchestrator CLI"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


# ── Planning Commands ─────────────────────────────────────────────────────────


@main.command("resolve")
@click.argument("item_id", callback=_validate_ids)
@click.option("--force", is_flag=True, help="Re-resolve even if the item is unchanged")
@click.option("--prompt", "show_prompt", is_flag=True, help="Also build and store the worker prompt")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def resolve_cmd(item_id, force, show_prompt, json_output):
    """Resolve skills and required quality gates for an item."""
    config = get_config()
    with _backlog(config) as backlog:
        try:
            resolution = skills_mod.resolve_item(backlog, item_id, force=force)
            prompt = None
            if show_prompt:
                prompt = skills_mod.prepare_prompt(
                    backlog,
                    item_id,
                    worktree=config.worktree_for(config.repo_path, item_id),
                    branch=config.branch_for(item_id),
                    checkpoint_dir=config.checkpoint_dir,
                )
        except BacklogError as e:
            _fail(str(e))

    if json_output:
        data = resolution.as_dict()
        if prompt is not None:
            data["prompt"] = prompt
        click.echo(json.dumps(data, indent=2))
        return

    source = "labels" if resolution.gates_from_labels else "inferred"
    click.echo(f"Item: {item_id}{' (cached)' if resolution.reused else ''}")
    click.echo(f"  Skills: {', '.join(resolution.skills) or '(none)'}")
    click.echo(f"  Gates ({source}): {', '.join(resolution.gates) or '(none)'}")
    if prompt is not None:
        click.echo("")
        click.echo(prompt)


@main.command("overlap")
@click.argument("item_ids", nargs=-1, required=True, callback=_validate_ids)
def overlap_cmd(item_ids):
    """Report pairwise overlaps and the resulting batches."""
    config = get_config()
    with _backlog(config) as backlog:
        try:
            items = [backlog.require_item(i) for i in dict.fromkeys(item_ids)]
        except BacklogError as e:
            _fail(str(e))
    overlaps = overlap_mod.detect_overlap(items)
    if not overlaps:
        click.echo("No overlaps found.")
    for o in overlaps:
        click.echo(f"  {o.first} <-> {o.second}: {o.reason}")
    for batch in overlap_mod.group([i.id for i in items], overlaps):
        click.echo(f"  {batch.id}: {', '.join(batch.item_ids)}")


@main.command("plan")
@click.argument("item_ids", nargs=-1, callback=_validate_ids)
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def plan_cmd(item_ids, json_output):
    """Plan a wave from the given items (default: all ready items)."""
    config = get_config()
    with _backlog(config) as backlog:
        try:
            plan = waves_mod.plan_wave(backlog, list(item_ids) or None)
        except BacklogError as e:
            _fail(str(e))

    if json_output:
        click.echo(json.dumps(plan.as_dict(), indent=2))
        return
    if not plan.batches:
        click.echo("Nothing to plan.")
        return
    for batch in plan.batches:
        click.echo(f"  {batch.id}: {' -> '.join(batch.item_ids)}")
    for o in plan.overlaps:
        click.echo(f"    {o.first} <-> {o.second}: {o.reason}")
    click.echo(f"Run now: {', '.join(plan.heads)}")
    if plan.later:
        click.echo(f"Later:   {', '.join(plan.later)}")


@main.command("dispatch")
@click.argument("item_ids", nargs=-1, callback=_validate_ids)
@click.option("--no-install", is_flag=True, help="Skip dependency installation")
def dispatch_cmd(item_ids, no_install):
    """Plan a wave and spawn one worker per batch head."""
    config = get_config()

    async def _run(backlog):
        plan = await asyncio.to_thread(waves_mod.plan_wave, backlog, list(item_ids) or None)
        async with SessionHostClient.from_config(config) as host:
            return await waves_mod.dispatch_wave(
                plan, backlog, host, config, repo_path=config.repo_path, install=not no_install
            )

    with _backlog(config) as backlog:
        try:
            report = asyncio.run(_run(backlog))
        except BacklogError as e:
            _fail(str(e))

    for item_id, session in report.spawned.items():
        click.echo(f"  Spawned: {item_id} ({session})")
    for item_id, reason in report.skipped.items():
        click.echo(f"  Skipped {item_id}: {reason}")
    for item_id, reason in report.failures.items():
        click.echo(f"  Failed {item_id}: {reason}", err=True)
    if not report.ok:
        sys.exit(1)


# ── Worktree Commands ────────────────────────────────────────────────────────


@main.command("provision")
@click.argument("item_id", callback=_validate_ids)
@click.option("--repo", "repo_path", default=None, help="Path to the git repository")
@click.option("--no-install", is_flag=True, help="Skip dependency installation")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def provision_cmd(item_id, repo_path, no_install, json_output):
    """Create an item's worktree and install its dependencies."""
    config = get_config()
    repo = Path(repo_path).resolve() if repo_path else config.repo_path
    try:
        result = worktrees_mod.provision(repo, item_id, config, install=not no_install)
    except worktrees_mod.ProvisionError as e:
        _fail(str(e))

    if json_output:
        click.echo(json.dumps(result.as_dict(), indent=2))
        return
    state = "exists" if result.already_existed else "created"
    click.echo(f"Worktree {state}: {result.worktree.path}")
    click.echo(f"  Branch: {result.worktree.branch}")
    for outcome in result.installs:
        mark = "ok" if outcome.ok else "FAILED"
        click.echo(f"  {outcome.ecosystem} ({outcome.directory}): {mark} {outcome.detail}")
    if result.hook_installed:
        click.echo("  Pre-commit hook installed")


@main.command("worktrees")
def worktrees_cmd():
    """List worktrees and the items they belong to."""
    config = get_config()
    wts = worktrees_mod.list_item_worktrees(config.repo_path, config)
    if not wts:
        click.echo("No worktrees found.")
        return
    for wt in wts:
        item = f" -> {wt['item_id']}" if "item_id" in wt else ""
        click.echo(f"  {wt['branch']} at {wt['path']}{item}")


# ── Gate Commands ────────────────────────────────────────────────────────────


@main.command("gate")
@click.argument("item_id", callback=_validate_ids)
@click.option("--worktree", default=None, help="Worktree to verify (default: the item's worktree)")
@click.option("--gate", "gate_types", multiple=True, help="Run only these gate types")
@click.option("--timeout", type=float, default=None, help="Seconds to wait for each gate")
@click.option("--notify", default=None, help="Slack channel to post the results to")
def gate_cmd(item_id, worktree, gate_types, timeout, notify):
    """Run the item's required quality gates."""
    from wave_orchestrator.core.gates import GateRunner
    from wave_orchestrator.integrations import slack as slack_mod

    config = get_config()
    wt = Path(worktree).resolve() if worktree else config.worktree_for(config.repo_path, item_id)
    if not wt.is_dir():
        _fail(f"Worktree not found: {wt}")

    async def _run(backlog, gates):
        async with SessionHostClient.from_config(config) as host:
            runner = GateRunner(config, session_host=host)
            return await runner.run_gates(item_id, gates, wt, config.repo_path, timeout, backlog=backlog)

    with _backlog(config) as backlog:
        try:
            gates = list(gate_types) or skills_mod.resolve_item(backlog, item_id).gates
            if not gates:
                click.echo(f"No gates required for {item_id}.")
                return
            report = asyncio.run(_run(backlog, gates))
        except BacklogError as e:
            _fail(str(e))
        except ValueError as e:
            raise click.BadParameter(str(e), param_hint="--gate")

    for gate_type, result in report.results.items():
        click.echo(f"  {gate_type}: {result.state.value} - {result.summary}")
    click.echo("Mergeable" if report.mergeable else f"Blocked: {'; '.join(report.reasons())}")

    if notify:
        try:
            blocks = slack_mod.format_gate_report(item_id, [r.as_dict() for r in report.results.values()])
            slack_mod.send_message(config.slack_bot_token, notify, f"Gates for {item_id}", blocks)
        except slack_mod.SlackError as e:
            click.echo(f"  Slack notification failed: {e}", err=True)

    if not report.mergeable:
        sys.exit(1)


# ── Monitor Command ──────────────────────────────────────────────────────────


@main.command("monitor")
@click.option("--once", is_flag=True, help="Poll once and exit")
@click.option("--interval", type=float, default=None, help="Seconds between polls")
@click.option("--output", default=None, help="Write each snapshot as JSON to this file")
@click.option("--events", "events_file", default=None, help="Append closed-item events to this JSONL file")
@click.option("--no-dashboard", is_flag=True, help="Do not start the tmux dashboard window")
@click.option("--notify", default=None, help="Slack channel to post new alerts to")
def monitor_cmd(once, interval, output, events_file, no_dashboard, notify):
    """Watch worker sessions and report status and alerts."""
    from wave_orchestrator.core.monitor import WorkerMonitor

    config = get_config()

    async def _run(backlog):
        async with SessionHostClient.from_config(config) as host:
            monitor = WorkerMonitor(backlog, host, config)
            return await monitor.run(
                interval=interval,
                output=output,
                events_file=events_file,
                once=once,
                spawn_dashboard=not no_dashboard,
                notify_channel=notify,
            )

    with _backlog(config) as backlog:
        try:
            snapshot = asyncio.run(_run(backlog))
        except KeyboardInterrupt:
            return

    if snapshot is not None and not output:
        click.echo(json.dumps(snapshot.as_dict(), indent=2, ensure_ascii=False))


# ── Completion Command ───────────────────────────────────────────────────────


@main.command("complete")
@click.argument("item_ids", nargs=-1, required=True, callback=_validate_ids)
@click.option("--skip-capture", is_flag=True, help="Do not capture worker transcripts")
@click.option("--skip-terminate", is_flag=True, help="Leave worker sessions running")
@click.option("--skip-merge", is_flag=True, help="Do not merge branches")
@click.option("--skip-cleanup", is_flag=True, help="Keep worktrees and branches")
@click.option("--skip-summary", is_flag=True, help="Do not print a wave summary")
@click.option("--notify", default=None, help="Slack channel to post the summary to")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def complete_cmd(
    item_ids, skip_capture, skip_terminate, skip_merge, skip_cleanup, skip_summary, notify, json_output
):
    """Capture, terminate, merge and clean up a finished wave."""
    from wave_orchestrator.core.pipeline import CompletionPipeline

    config = get_config()
    skip = {
        stage
        for stage, flag in (
            ("capture", skip_capture),
            ("terminate", skip_terminate),
            ("merge", skip_merge),
            ("cleanup", skip_cleanup),
            ("summary", skip_summary),
        )
        if flag
    }

    async def _run(backlog):
        async with SessionHostClient.from_config(config) as host:
            pipeline = CompletionPipeline(config.repo_path, backlog, host, config)
            return await pipeline.run(list(item_ids), skip=skip, notify_channel=notify)

    with _backlog(config) as backlog:
        try:
            report = asyncio.run(_run(backlog))
        except BacklogError as e:
            _fail(str(e))

    if json_output:
        click.echo(json.dumps(report.as_dict(), indent=2))
    else:
        for m in report.merges:
            click.echo(f"  {m.item_id}: {m.status}{f' ({m.detail})' if m.detail else ''}")
        for err in report.errors:
            click.echo(f"  {err}", err=True)
        if report.summary:
            click.echo("")
            click.echo(report.summary.render())
    sys.exit(report.exit_code)


# ── Hook Commands ────────────────────────────────────────────────────────────


@main.group("hook")
def hook_group():
    """Git hook entry points."""
    pass


@hook_group.command("pre-commit")
@click.option("--worktree", default=".", help="Checkout being committed")
def hook_precommit(worktree):
    """Review staged changes before a worker's commit."""
    from wave_orchestrator.core.hook import run_precommit_hook

    config = get_config()

    async def _run():
        async with SessionHostClient.from_config(config, retry_delays=()) as host:
            return await run_precommit_hook(Path(worktree).resolve(), host, config)

    decision = asyncio.run(_run())
    if decision.allowed:
        click.echo(f"Review: {decision.reason}")
        return
    click.echo("")
    click.echo("========================================")
    click.echo(f"Review found issues for {decision.item_id}")
    click.echo("========================================")
    click.echo(decision.output)
    click.echo("")
    click.echo("Fix the issues and try committing again.")
    sys.exit(decision.exit_code)


# ── Item Commands ────────────────────────────────────────────────────────────


@main.group("item")
def item_group():
    """Manage items in the local SQLite backlog."""
    pass


@item_group.command("add")
@click.argument("title")
@click.option("--id", "item_id", default=None, callback=_validate_ids, help="Explicit item ID")
@click.option("--description", "-d", default="", help="Item description")
@click.option("--label", "-l", "labels", multiple=True, help="Label (repeatable)")
@click.option("--depends-on", default=None, help="Comma-separated item IDs this depends on")
def item_add(title, item_id, description, labels, depends_on):
    """Create a new work item."""
    deps = [d.strip() for d in depends_on.split(",")] if depends_on else None
    with _get_db() as db:
        try:
            item = backlog_mod.create_item(db, title, description, list(labels), deps, item_id=item_id)
        except sqlite3.IntegrityError as e:
            _fail(f"Could not create item: {e}")
        click.echo(f"Created item: {item.id}")
        click.echo(f"  Title: {item.title}")
        click.echo(f"  Status: {item.status.value}")
        if item.labels:
            click.echo(f"  Labels: {', '.join(sorted(item.labels))}")
        if item.depends_on:
            click.echo(f"  Depends on: {', '.join(item.depends_on)}")


@item_group.command("list")
@click.option("--status", default=None, type=click.Choice([s.value for s in ItemStatus]), help="Filter by status")
@click.option("--ready", is_flag=True, help="Only items whose dependencies are closed")
@click.option("--json-output", "--json", is_flag=True, help="Output as JSON")
def item_list(status, ready, json_output):
    """List work items."""
    with _get_db() as db:
        items = backlog_mod.get_ready_items(db) if ready else backlog_mod.list_items(db, status)

    if json_output:
        click.echo(json.dumps([_item_dict(i) for i in items], indent=2))
        return
    if not items:
        click.echo("No items found.")
        return

    status_icons = {"ready": "○", "in_progress": "●", "closed": "✓", "blocked": "✗"}
    for item in items:
        icon = status_icons.get(item.status.value, "?")
        deps = f" [depends: {', '.join(item.depends_on)}]" if item.depends_on else ""
        labels = f" [{', '.join(sorted(item.labels))}]" if item.labels else ""
        click.echo(f"  {icon} {item.id}: {item.title} ({item.status.value}){labels}{deps}")


@item_group.command("show")
@click.argument("item_id")
def item_show(item_id):
    """Show item details."""
    from wave_orchestrator.core.metadata import parse_metadata

    with _get_db() as db:
        item = backlog_mod.get_item(db, item_id)
        if not item:
            _fail(f"Item not found: {item_id}")

        click.echo(f"Item: {item.id}")
        click.echo(f"  Title: {item.title}")
        click.echo(f"  Status: {item.status.value}")
        if item.description:
            click.echo(f"  Description: {item.description}")
        if item.labels:
            click.echo(f"  Labels: {', '.join(sorted(item.labels))}")
        if item.depends_on:
            click.echo(f"  Depends on: {', '.join(item.depends_on)}")
        meta = parse_metadata(item.notes)
        for key, value in meta.as_dict().items():
            if value and key != "prompt":
                click.echo(f"  {key}: {value}")
        if item.created_at:
            click.echo(f"  Created: {item.created_at}")

        events = backlog_mod.get_item_events(db, item_id)
        if events:
            click.echo("  History:")
            for e in events:
                click.echo(f"    [{e.created_at}] {e.event_type}: {e.old_value} -> {e.new_value}")


@item_group.command("label")
@click.argument("item_id")
@click.argument("label")
@click.option("--remove", is_flag=True, help="Remove the label instead")
def item_label(item_id, label, remove):
    """Add (or remove) a label, e.g. gate:test-runner."""
    with _get_db() as db:
        fn = backlog_mod.remove_label if remove else backlog_mod.add_label
        item = fn(db, item_id, label)
        if not item:
            _fail(f"Item not found: {item_id}")
        click.echo(f"Labels for {item_id}: {', '.join(sorted(item.labels)) or '(none)'}")


@item_group.command("status")
@click.argument("item_id")
@click.argument("status", type=click.Choice([s.value for s in ItemStatus]))
def item_status(item_id, status):
    """Set an item's status."""
    with _get_db() as db:
        item = backlog_mod.update_item_status(db, item_id, status)
        if not item:
            _fail(f"Item not found: {item_id}")
        click.echo(f"Updated {item_id} to {item.status.value}")


@item_group.command("add-dep")
@click.argument("item_id")
@click.argument("depends_on_id")
def item_add_dep(item_id, depends_on_id):
    """Make an item depend on another."""
    with _get_db() as db:
        try:
            item = backlog_mod.add_dependency(db, item_id, depends_on_id)
        except ValueError as e:
            _fail(str(e))
        if not item:
            _fail(f"Item not found: {item_id}")
        click.echo(f"Added dependency: {item_id} now depends on {depends_on_id}")


# ── Dashboard Command ────────────────────────────────────────────────────────


@main.command("ui")
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8787, type=int, help="Port to listen on")
@click.option("--open/--no-open", default=True, help="Open browser automatically")
def ui_command(host, port, open):
    """Launch the web dashboard."""
    import webbrowser

    from wave_orchestrator.web.app import run_server

    url = f"http://{host}:{port}"
    click.echo(f"Starting dashboard at {url}")
    if open:
        webbrowser.open(url)
    run_server(host=host, port=port)


# ── MCP Server Command ───────────────────────────────────────────────────────


@main.group("mcp")
def mcp_group():
    """MCP server commands."""
    pass


@mcp_group.command("serve")
def mcp_serve():
    """Start the MCP server (stdio transport)."""
    from wave_orchestrator.mcp.server import mcp
    from wave_orchestrator.mcp import prompts  # noqa: F401 - registers prompts

    mcp.run(transport="stdio")


# ── Helpers ───────────────────────────────────────────────────────────────────


def _item_dict(item) -> dict:
    return {
        "id": item.id,
        "title": item.title,
        "status": item.status.value,
        "description": item.description,
        "labels": sorted(item.labels),
        "depends_on": item.depends_on,
    }


if __name__ == "__main__":
    main()
