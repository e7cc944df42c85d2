"""Derive capability hints and required quality gates from a work item's text."""

import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from wave_orchestrator.core.backlog import BacklogClient
from wave_orchestrator.core.metadata import parse_metadata
from wave_orchestrator.db.models import WorkItem

logger = logging.getLogger(__name__)

# (pattern, hint). Every matching rule contributes a hint.
SKILL_RULES: list[tuple[str, str]] = [
    (r"\b(terminal|xterm|pty|resize|buffer|fitaddon)", "/tabz-guide"),
    (r"\b(ui|component|modal|dashboard|styling|tailwind|shadcn|form|button)\b", "/ui-styling:ui-styling"),
    (r"\b(react|next|vue|svelte|frontend)\b", "/frontend-development:frontend-development"),
    (r"\b(backend|api|server|endpoint|express)\b", "/backend-development:backend-development"),
    (r"\b(browser|screenshot|mcp|automation)\b", "/conductor:tabz-mcp"),
    (r"\b(auth|login|oauth|session|token|jwt)\b", "/better-auth:better-auth"),
    (r"\b(plugin|skill|agent|hook|frontmatter)\b", "/plugin-dev:plugin-dev"),
    (r"\b(prompt|worker|swarm|conductor|orchestrat)", "/conductor:orchestration"),
    (r"\b(audio|tts|speech|sound|voice)\b", "/ai-multimodal:ai-multimodal"),
    (r"\b(image|video|media|ffmpeg|imagemagick)\b", "/media-processing:media-processing"),
    (r"\b(chrome|extension|manifest|sidepanel)\b", "/tabz-guide"),
    (r"\b(postgres|mongodb|redis|sql|database|query)\b", "/databases:databases"),
    (r"\b(docs|documentation|readme)\b", "/docs-seeker:docs-seeker"),
    (r"\b(review|pr|pull request|lint)\b", "/conductor:code-review"),
    (r"\b(nextjs|fastapi|django|nest)\b", "/web-frameworks:web-frameworks"),
]

KNOWN_GATES = ("codex-review", "test-runner", "visual-qa", "docs-check")

# (pattern, gate type). First match per gate type; the result is the union.
GATE_RULES: list[tuple[str, str]] = [
    (r"\b(tests?|testing|jest|vitest|pytest|coverage|regression)\b", "test-runner"),
    (r"\b(bug|fix|crash|broken)\b", "test-runner"),
    (r"\b(ui|component|modal|layout|styling|css|tailwind|visual|screenshot|page)\b", "visual-qa"),
    (r"\b(docs?|documentation|readme|changelog|guide)\b", "docs-check"),
    (r"\b(api|backend|server|endpoint|security|auth|refactor|database|migration)\b", "codex-review"),
]

# Agent skill each hosted gate asks its checker session to run.
GATE_SKILLS = {
    "codex-review": "conductor:reviewing-code",
    "test-runner": "conductor:running-tests",
    "visual-qa": "conductor:visual-qa",
    "docs-check": "conductor:docs-check",
}

GATE_LABEL_PREFIX = "gate:"

_SKILL_PATTERNS = [(re.compile(p), hint) for p, hint in SKILL_RULES]
_GATE_PATTERNS = [(re.compile(p), gate) for p, gate in GATE_RULES]


@dataclass
class Resolution:
    item_id: str
    skills: list[str] = field(default_factory=list)
    gates: list[str] = field(default_factory=list)
    gates_from_labels: bool = False
    digest: str = ""
    reused: bool = False

    def as_dict(self) -> dict:
        return {
            "item_id": self.item_id,
            "skills": self.skills,
            "gates": self.gates,
            "gates_from_labels": self.gates_from_labels,
            "digest": self.digest,
            "reused": self.reused,
        }


def checkpoint_file(gate: str) -> str:
    return f"{gate}.json"


def content_digest(item: WorkItem) -> str:
    """Fingerprint of the text resolution depends on."""
    h = hashlib.sha256()
    for part in (item.title, item.description, "\n".join(sorted(item.labels))):
        h.update(part.encode())
        h.update(b"\0")
    return h.hexdigest()[:16]


def match_skills(text: str) -> list[str]:
    text = text.lower()
    hints: list[str] = []
    for pattern, hint in _SKILL_PATTERNS:
        if hint not in hints and pattern.search(text):
            hints.append(hint)
    return hints


def infer_gates(text: str) -> list[str]:
    text = text.lower()
    gates: list[str] = []
    for pattern, gate in _GATE_PATTERNS:
        if gate not in gates and pattern.search(text):
            gates.append(gate)
    return gates


def gates_from_labels(labels) -> list[str]:
    """Gate types named by labels, `gate:<type>` or the legacy bare `<type>`."""
    gates: list[str] = []
    for label in sorted(labels):
        name = label[len(GATE_LABEL_PREFIX):] if label.startswith(GATE_LABEL_PREFIX) else label
        if name in KNOWN_GATES:
            if name not in gates:
                gates.append(name)
        elif label.startswith(GATE_LABEL_PREFIX):
            logger.warning("Ignoring unknown gate label %r", label)
    return gates


def resolve(item: WorkItem) -> Resolution:
    """Resolve skills and required gates from the item's content alone."""
    skills = match_skills(item.text)
    label_gates = gates_from_labels(item.labels)
    gates = label_gates if label_gates else infer_gates(item.text)
    return Resolution(
        item_id=item.id,
        skills=skills,
        gates=gates,
        gates_from_labels=bool(label_gates),
        digest=content_digest(item),
    )


def resolve_item(backlog: BacklogClient, item_id: str, force: bool = False) -> Resolution:
    """Resolve an item, reusing persisted hints until its content changes.

    Raises BacklogError when the item cannot be read.
    """
    item = backlog.require_item(item_id)
    meta = parse_metadata(item.notes)
    digest = content_digest(item)
    label_gates = gates_from_labels(item.labels)

    if not force and meta.digest == digest:
        return Resolution(
            item_id=item_id,
            skills=meta.skills,
            gates=label_gates or meta.gates,
            gates_from_labels=bool(label_gates),
            digest=digest,
            reused=True,
        )

    resolution = resolve(item)
    backlog.write_metadata(item_id, skills=resolution.skills, gates=resolution.gates, digest=resolution.digest)
    logger.info("Resolved %s: skills=%s gates=%s", item_id, resolution.skills, resolution.gates)
    return resolution


def build_worker_prompt(
    item: WorkItem,
    resolution: Resolution,
    worktree: str | Path | None = None,
    branch: str | None = None,
    files: list[str] | None = None,
    checkpoint_dir: str = ".checkpoints",
) -> str:
    """Instruction text handed to the worker session for one item."""
    lines = [f"## Task: {item.id} - {item.title}", "", "## Context"]
    lines.append(item.description.strip() or "(no description)")

    lines += ["", "## Skills"]
    if resolution.skills:
        lines += [f"- {s}" for s in resolution.skills]
    else:
        lines.append("- No specific skills matched (general development)")

    lines += ["", "## Key Files"]
    if files:
        lines += [f"- {f}" for f in files]
    else:
        lines.append("Explore based on the description.")

    if worktree or branch:
        lines += ["", "## Workspace"]
        if worktree:
            lines.append(f"Work only inside `{worktree}`.")
        if branch:
            lines.append(f"Commit to branch `{branch}`; do not merge it yourself.")

    lines += ["", "## Quality Gates"]
    if resolution.gates:
        lines.append("Before this work is merged these checks must pass:")
        lines += [f"- {g} (result in {checkpoint_dir}/{checkpoint_file(g)})" for g in resolution.gates]
    else:
        lines.append("No quality gates are required.")

    lines += [
        "",
        "## When Done",
        "Commit your changes with a message that references the task id, then stop.",
        "The orchestrator runs the quality gates and merges the branch.",
    ]
    return "\n".join(lines)


def prepare_prompt(
    backlog: BacklogClient,
    item_id: str,
    worktree: str | Path | None = None,
    branch: str | None = None,
    checkpoint_dir: str = ".checkpoints",
) -> str:
    """Resolve an item, build its worker prompt and store it in the item's metadata."""
    resolution = resolve_item(backlog, item_id)
    item = backlog.require_item(item_id)
    meta = parse_metadata(item.notes)
    prompt = build_worker_prompt(
        item, resolution, worktree=worktree, branch=branch, files=meta.files, checkpoint_dir=checkpoint_dir
    )
    backlog.write_metadata(item_id, prompt=prompt)
    return prompt
