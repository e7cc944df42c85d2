"""Data models for the wave orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class ItemStatus(str, Enum):
    READY = "ready"
    IN_PROGRESS = "in_progress"
    BLOCKED = "blocked"
    CLOSED = "closed"


class GateState(str, Enum):
    PENDING = "pending"
    SPAWNED = "spawned"
    AWAITING_RESULT = "awaiting_result"
    PASSED = "passed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        return self in (GateState.PASSED, GateState.FAILED, GateState.TIMED_OUT)


class WorkerStatus(str, Enum):
    IDLE = "idle"
    PROCESSING = "processing"
    TOOL_USE = "tool_use"
    AWAITING_INPUT = "awaiting_input"
    ASKING_USER = "asking_user"
    STALE = "stale"


class AlertType(str, Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    STALE = "stale"
    ATTENTION = "attention"


@dataclass
class WorkItem:
    id: str
    title: str
    description: str = ""
    labels: set[str] = field(default_factory=set)
    status: ItemStatus = ItemStatus.READY
    notes: str = ""
    depends_on: list[str] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def text(self) -> str:
        """Title, description and labels as one searchable string."""
        return " ".join([self.title, self.description, " ".join(sorted(self.labels))])


@dataclass
class ItemEvent:
    id: int | None = None
    item_id: str = ""
    event_type: str = ""
    old_value: str | None = None
    new_value: str | None = None
    created_at: datetime | None = None


@dataclass
class InstallOutcome:
    ecosystem: str
    directory: str
    ok: bool
    detail: str = ""


@dataclass
class Worktree:
    path: str
    branch: str
    item_id: str
    installs: list[InstallOutcome] = field(default_factory=list)

    @property
    def install_ok(self) -> bool:
        return all(i.ok for i in self.installs)


@dataclass
class GateResult:
    gate_type: str
    state: GateState
    passed: bool = False
    summary: str = ""
    timestamp: str | None = None
    timeout_occurred: bool = False
    session_id: str | None = None

    def as_dict(self) -> dict:
        return {
            "type": self.gate_type,
            "state": self.state.value,
            "passed": self.passed,
            "summary": self.summary,
            "timestamp": self.timestamp,
            "timeout_occurred": self.timeout_occurred,
        }


@dataclass
class Batch:
    id: str
    item_ids: list[str] = field(default_factory=list)

    @property
    def head(self) -> str:
        return self.item_ids[0]


@dataclass(frozen=True)
class Overlap:
    first: str
    second: str
    reason: str


@dataclass
class WorkerSession:
    session: str
    status: WorkerStatus = WorkerStatus.IDLE
    item_id: str | None = None
    context_pct: int | None = None
    subagents: int | None = None
    tool: str | None = None

    def as_dict(self) -> dict:
        return {
            "session": self.session,
            "item_id": self.item_id,
            "status": self.status.value,
            "context": self.context_pct,
            "subagents": self.subagents,
            "tool": self.tool,
        }


@dataclass(frozen=True)
class Alert:
    type: AlertType
    session: str
    message: str

    def as_dict(self) -> dict:
        return {"type": self.type.value, "session": self.session, "message": self.message}
