"""Web dashboard API for the wave orchestrator."""

import uvicorn
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse
from starlette.routing import Route

from wave_orchestrator.config import Config, get_config
from wave_orchestrator.core.backlog import BacklogClient, BacklogError, make_backlog
from wave_orchestrator.core.gates import evaluate_gates
from wave_orchestrator.core.metadata import parse_metadata
from wave_orchestrator.core.monitor import WorkerMonitor
from wave_orchestrator.db.models import ItemStatus
from wave_orchestrator.integrations.session_host import SessionHostClient
from wave_orchestrator.web.dashboard import get_dashboard_html


def _state(request: Request):
    return request.app.state


# ── Handlers ──────────────────────────────────────────────────────────────────


async def index(request: Request):
    return HTMLResponse(get_dashboard_html())


async def api_list_items(request: Request):
    backlog: BacklogClient = _state(request).backlog
    status_filter = request.query_params.get("status")
    statuses = [status_filter] if status_filter else [s.value for s in ItemStatus]
    try:
        ItemStatus(statuses[0])
    except ValueError:
        return JSONResponse({"error": f"Unknown status: {status_filter}"}, status_code=400)
    try:
        items = [i for s in statuses for i in backlog.list_items(s)]
    except BacklogError as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    return JSONResponse([_item_dict(i) for i in items])


async def api_get_item(request: Request):
    item_id = request.path_params["item_id"]
    state = _state(request)
    try:
        item = state.backlog.get_item(item_id)
    except BacklogError as e:
        return JSONResponse({"error": str(e)}, status_code=503)
    if not item:
        return JSONResponse({"error": "Item not found"}, status_code=404)

    config: Config = state.config
    meta = parse_metadata(item.notes)
    worktree = config.worktree_for(config.repo_path, item.id)
    gates = evaluate_gates(worktree, meta.gates, config.checkpoint_dir, item_id=item.id)

    data = _item_dict(item)
    data["metadata"] = meta.as_dict()
    data["worktree"] = str(worktree) if worktree.exists() else None
    data["gates"] = gates.as_dict()
    return JSONResponse(data)


async def api_batches(request: Request):
    backlog: BacklogClient = _state(request).backlog
    try:
        items = [i for s in (ItemStatus.READY, ItemStatus.IN_PROGRESS) for i in backlog.list_items(s)]
    except BacklogError as e:
        return JSONResponse({"error": str(e)}, status_code=503)

    batches: dict[str, list[tuple[int, str]]] = {}
    for item in items:
        meta = parse_metadata(item.notes)
        if meta.batch_id:
            batches.setdefault(meta.batch_id, []).append((meta.batch_position or 0, item.id))
    return JSONResponse(
        [{"id": bid, "items": [i for _, i in sorted(members)]} for bid, members in sorted(batches.items())]
    )


async def api_workers(request: Request):
    monitor: WorkerMonitor = _state(request).monitor
    snapshot = monitor.latest if monitor.latest is not None else await monitor.poll()
    return JSONResponse(snapshot.as_dict())


# ── Serialization ─────────────────────────────────────────────────────────────


def _item_dict(item) -> dict:
    return {
        "id": item.id,
        "title": item.title,
        "status": item.status.value,
        "description": item.description,
        "labels": sorted(item.labels),
        "depends_on": item.depends_on,
        "created_at": item.created_at.isoformat() if item.created_at else None,
        "updated_at": item.updated_at.isoformat() if item.updated_at else None,
    }


# ── App ───────────────────────────────────────────────────────────────────────


def create_app(
    config: Config | None = None,
    backlog: BacklogClient | None = None,
    monitor: WorkerMonitor | None = None,
) -> Starlette:
    config = config or get_config()
    backlog = backlog or make_backlog(config)
    if monitor is None:
        monitor = WorkerMonitor(backlog, SessionHostClient.from_config(config), config)

    routes = [
        Route("/", index),
        Route("/api/items", api_list_items),
        Route("/api/items/{item_id}", api_get_item),
        Route("/api/batches", api_batches),
        Route("/api/workers", api_workers),
    ]
    app = Starlette(routes=routes)
    app.state.config = config
    app.state.backlog = backlog
    app.state.monitor = monitor
    return app


def run_server(host: str = "127.0.0.1", port: int = 8787):
    app = create_app()
    uvicorn.run(app, host=host, port=port)
