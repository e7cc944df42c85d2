"""Backlog client contract and the local SQLite-backed backlog store."""

import re
import sqlite3
from datetime import datetime
from pathlib import Path

from wave_orchestrator.core.metadata import ItemMetadata, merge_metadata, parse_metadata
from wave_orchestrator.db.engine import init_db
from wave_orchestrator.db.models import ItemEvent, ItemStatus, WorkItem

ITEM_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")


class BacklogError(Exception):
    """Raised when the backlog store cannot be read or written."""


def validate_item_id(item_id: str) -> str:
    """Reject identifiers that are unsafe in branch names, paths and session names."""
    if not item_id or not ITEM_ID_RE.match(item_id):
        raise ValueError(f"Invalid item id: {item_id!r} (allowed: letters, digits, '_' and '-')")
    return item_id


class BacklogClient:
    """Read/write contract to the issue tracker that owns work items."""

    def list_items(self, status: ItemStatus | str) -> list[WorkItem]:
        raise NotImplementedError

    def get_item(self, item_id: str) -> WorkItem | None:
        raise NotImplementedError

    def ready_items(self) -> list[WorkItem]:
        raise NotImplementedError

    def blocked_items(self) -> list[WorkItem]:
        raise NotImplementedError

    def update_notes(self, item_id: str, notes: str) -> None:
        raise NotImplementedError

    def require_item(self, item_id: str) -> WorkItem:
        item = self.get_item(item_id)
        if item is None:
            raise BacklogError(f"Item not found: {item_id}")
        return item

    def read_metadata(self, item_id: str) -> ItemMetadata:
        return parse_metadata(self.require_item(item_id).notes)

    def write_metadata(self, item_id: str, **fields) -> ItemMetadata:
        """Merge `fields` into the item's notes blob and return the result."""
        item = self.require_item(item_id)
        notes = merge_metadata(item.notes, **fields)
        if notes != item.notes:
            self.update_notes(item_id, notes)
        return parse_metadata(notes)


# --- SQLite store -----------------------------------------------------------


def slugify(title: str) -> str:
    """Convert a title to an identifier-safe slug."""
    slug = title.lower().strip()
    slug = re.sub(r"[^a-z0-9\s_-]", "", slug)
    slug = re.sub(r"[\s_]+", "-", slug)
    slug = re.sub(r"-+", "-", slug)
    return slug.strip("-")[:60] or "item"


def _unique_id(db: sqlite3.Connection, base: str) -> str:
    candidate, i = base, 2
    while db.execute("SELECT 1 FROM work_items WHERE id = ?", (candidate,)).fetchone():
        candidate = f"{base}-{i}"
        i += 1
    return candidate


def create_item(
    db: sqlite3.Connection,
    title: str,
    description: str = "",
    labels: list[str] | None = None,
    depends_on: list[str] | None = None,
    item_id: str | None = None,
    notes: str = "",
) -> WorkItem:
    """Create a new work item in the ready state."""
    if item_id is None:
        item_id = _unique_id(db, slugify(title))
    validate_item_id(item_id)

    db.execute(
        "INSERT INTO work_items (id, title, description, notes) VALUES (?, ?, ?, ?)",
        (item_id, title, description, notes),
    )
    for label in labels or []:
        db.execute("INSERT OR IGNORE INTO item_labels (item_id, label) VALUES (?, ?)", (item_id, label))
    for dep_id in depends_on or []:
        db.execute(
            "INSERT INTO item_dependencies (item_id, depends_on_id) VALUES (?, ?)",
            (item_id, dep_id),
        )
    _log_event(db, item_id, "created", None, ItemStatus.READY.value)
    db.commit()
    return get_item(db, item_id)


def get_item(db: sqlite3.Connection, item_id: str) -> WorkItem | None:
    row = db.execute("SELECT * FROM work_items WHERE id = ?", (item_id,)).fetchone()
    if not row:
        return None
    return _hydrate(db, row)


def list_items(db: sqlite3.Connection, status: ItemStatus | str | None = None) -> list[WorkItem]:
    """List items in creation order, optionally filtered by status."""
    query = "SELECT * FROM work_items"
    params: list = []
    if status:
        query += " WHERE status = ?"
        params.append(ItemStatus(status).value)
    query += " ORDER BY created_at ASC, rowid ASC"
    return [_hydrate(db, row) for row in db.execute(query, params).fetchall()]


def update_item_status(db: sqlite3.Connection, item_id: str, status: ItemStatus | str) -> WorkItem | None:
    item = get_item(db, item_id)
    if not item:
        return None
    status = ItemStatus(status)
    closed_at = datetime.now().isoformat() if status == ItemStatus.CLOSED else None
    db.execute(
        "UPDATE work_items SET status = ?, closed_at = ?, updated_at = datetime('now') WHERE id = ?",
        (status.value, closed_at, item_id),
    )
    _log_event(db, item_id, "status_changed", item.status.value, status.value)
    db.commit()
    return get_item(db, item_id)


def update_notes(db: sqlite3.Connection, item_id: str, notes: str) -> WorkItem | None:
    item = get_item(db, item_id)
    if not item:
        return None
    db.execute(
        "UPDATE work_items SET notes = ?, updated_at = datetime('now') WHERE id = ?",
        (notes, item_id),
    )
    _log_event(db, item_id, "notes_updated", None, None)
    db.commit()
    return get_item(db, item_id)


def add_label(db: sqlite3.Connection, item_id: str, label: str) -> WorkItem | None:
    item = get_item(db, item_id)
    if not item:
        return None
    if label not in item.labels:
        db.execute("INSERT INTO item_labels (item_id, label) VALUES (?, ?)", (item_id, label))
        _log_event(db, item_id, "label_added", None, label)
        db.commit()
    return get_item(db, item_id)


def remove_label(db: sqlite3.Connection, item_id: str, label: str) -> WorkItem | None:
    item = get_item(db, item_id)
    if not item:
        return None
    db.execute("DELETE FROM item_labels WHERE item_id = ? AND label = ?", (item_id, label))
    _log_event(db, item_id, "label_removed", label, None)
    db.commit()
    return get_item(db, item_id)


def add_dependency(db: sqlite3.Connection, item_id: str, depends_on_id: str) -> WorkItem | None:
    """Make `item_id` wait for `depends_on_id` to close."""
    item = get_item(db, item_id)
    if not item:
        return None
    if not get_item(db, depends_on_id):
        raise ValueError(f"Dependency item not found: {depends_on_id}")
    if depends_on_id in item.depends_on:
        return item
    db.execute(
        "INSERT INTO item_dependencies (item_id, depends_on_id) VALUES (?, ?)",
        (item_id, depends_on_id),
    )
    _log_event(db, item_id, "dependency_added", None, depends_on_id)
    db.commit()
    return get_item(db, item_id)


def _open_dependencies(db: sqlite3.Connection, item: WorkItem) -> list[str]:
    open_deps = []
    for dep_id in item.depends_on:
        dep = get_item(db, dep_id)
        if dep and dep.status != ItemStatus.CLOSED:
            open_deps.append(dep_id)
    return open_deps


def get_ready_items(db: sqlite3.Connection) -> list[WorkItem]:
    """Items in the ready state whose dependencies are all closed."""
    return [i for i in list_items(db, ItemStatus.READY) if not _open_dependencies(db, i)]


def get_blocked_items(db: sqlite3.Connection) -> list[WorkItem]:
    """Items explicitly blocked, or ready but waiting on an open dependency."""
    blocked = list_items(db, ItemStatus.BLOCKED)
    blocked += [i for i in list_items(db, ItemStatus.READY) if _open_dependencies(db, i)]
    return blocked


def get_item_events(db: sqlite3.Connection, item_id: str) -> list[ItemEvent]:
    rows = db.execute(
        "SELECT * FROM item_events WHERE item_id = ? ORDER BY id",
        (item_id,),
    ).fetchall()
    return [
        ItemEvent(
            id=r["id"],
            item_id=r["item_id"],
            event_type=r["event_type"],
            old_value=r["old_value"],
            new_value=r["new_value"],
            created_at=_parse_dt(r["created_at"]),
        )
        for r in rows
    ]


def _log_event(
    db: sqlite3.Connection,
    item_id: str,
    event_type: str,
    old_value: str | None,
    new_value: str | None,
):
    db.execute(
        "INSERT INTO item_events (item_id, event_type, old_value, new_value) VALUES (?, ?, ?, ?)",
        (item_id, event_type, old_value, new_value),
    )


def _hydrate(db: sqlite3.Connection, row: sqlite3.Row) -> WorkItem:
    labels = db.execute("SELECT label FROM item_labels WHERE item_id = ?", (row["id"],)).fetchall()
    deps = db.execute(
        "SELECT depends_on_id FROM item_dependencies WHERE item_id = ?", (row["id"],)
    ).fetchall()
    return WorkItem(
        id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        labels={r["label"] for r in labels},
        status=ItemStatus(row["status"]),
        notes=row["notes"] or "",
        depends_on=[d["depends_on_id"] for d in deps],
        created_at=_parse_dt(row["created_at"]),
        updated_at=_parse_dt(row["updated_at"]),
    )


def _parse_dt(val: str | None) -> datetime | None:
    if val is None:
        return None
    return datetime.fromisoformat(val)


class SqliteBacklog(BacklogClient):
    """BacklogClient over the local SQLite store."""

    def __init__(self, db: sqlite3.Connection):
        self.db = db

    @classmethod
    def open(cls, db_path: str | Path) -> "SqliteBacklog":
        return cls(init_db(Path(db_path), check_same_thread=False))

    def close(self):
        self.db.close()

    def list_items(self, status: ItemStatus | str) -> list[WorkItem]:
        return list_items(self.db, status)

    def get_item(self, item_id: str) -> WorkItem | None:
        return get_item(self.db, item_id)

    def ready_items(self) -> list[WorkItem]:
        return get_ready_items(self.db)

    def blocked_items(self) -> list[WorkItem]:
        return get_blocked_items(self.db)

    def update_notes(self, item_id: str, notes: str) -> None:
        if update_notes(self.db, item_id, notes) is None:
            raise BacklogError(f"Item not found: {item_id}")


def make_backlog(config) -> BacklogClient:
    """Build the backlog client selected by `config.backlog_backend`."""
    if config.backlog_backend == "sqlite":
        return SqliteBacklog.open(config.db_path)
    if config.backlog_backend == "beads":
        from wave_orchestrator.integrations.beads import BeadsBacklog

        return BeadsBacklog(cwd=config.repo_path)
    raise ValueError(f"Unknown backlog backend: {config.backlog_backend}")
