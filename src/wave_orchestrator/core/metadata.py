"""Typed view over the namespaced key-value notes blob stored on a work item.

The blob is plain text, one field per line::

    conductor.skills: /backend-development:backend-development, databases
    conductor.files: src/api/users.py
    conductor.prompt: |
      Fix the users endpoint.

      Run the tests before committing.

Lines that are not known ``conductor.*`` fields are never interpreted and are
written back verbatim, so other tools can keep their own notes in the same
blob. A bare ``skills:`` line from older tooling is honoured when no
namespaced skills field exists.
"""

import logging
import re
from dataclasses import dataclass, field, fields

logger = logging.getLogger(__name__)

NAMESPACE = "conductor"

LIST_FIELDS = ("skills", "files", "gates")
MAP_FIELDS = ("gate_results", "usage")
INT_FIELDS = ("batch_position",)
TEXT_FIELDS = ("prompt", "batch_id", "digest", "transcript")

_FIELD_RE = re.compile(r"^([a-z][a-z0-9_-]*)\.([a-z][a-z0-9_]*):(?: (.*))?$")
_LEGACY_SKILLS_RE = re.compile(r"^skills:\s*(.*)$")
_BLOCK_INDENT = "  "


@dataclass
class ItemMetadata:
    skills: list[str] = field(default_factory=list)
    files: list[str] = field(default_factory=list)
    gates: list[str] = field(default_factory=list)
    prompt: str | None = None
    batch_id: str | None = None
    batch_position: int | None = None
    gate_results: dict[str, str] = field(default_factory=dict)
    digest: str | None = None
    transcript: str | None = None
    usage: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict:
        return {f.name: getattr(self, f.name) for f in fields(self)}


KNOWN_FIELDS = tuple(f.name for f in fields(ItemMetadata))


@dataclass
class _Segment:
    """One known field (name set) or one verbatim line (name None)."""

    name: str | None
    lines: list[str]
    value: str = ""


def _block_end(lines: list[str], start: int) -> int:
    """Index one past the last line of an indented block starting at `start`."""
    end = start
    i = start
    while i < len(lines):
        if lines[i].startswith(_BLOCK_INDENT):
            i += 1
            end = i
        elif lines[i].strip() == "":
            i += 1
        else:
            break
    return end


def _split(notes: str) -> list[_Segment]:
    lines = (notes or "").splitlines()
    segments: list[_Segment] = []
    i = 0
    while i < len(lines):
        line = lines[i]
        m = _FIELD_RE.match(line)
        if not m or m.group(1) != NAMESPACE or m.group(2) not in KNOWN_FIELDS:
            segments.append(_Segment(None, [line]))
            i += 1
            continue

        value = (m.group(3) or "").strip()
        if value == "|":
            end = _block_end(lines, i + 1)
            body = [ln[len(_BLOCK_INDENT):] if ln.startswith(_BLOCK_INDENT) else "" for ln in lines[i + 1:end]]
            segments.append(_Segment(m.group(2), lines[i:end], "\n".join(body)))
            i = end
        else:
            segments.append(_Segment(m.group(2), [line], value))
            i += 1
    return segments


def _split_list(value: str) -> list[str]:
    seen: list[str] = []
    for part in value.split(","):
        part = part.strip()
        if part and part not in seen:
            seen.append(part)
    return seen


def _split_map(value: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for part in _split_list(value):
        key, sep, val = part.partition("=")
        if sep and key.strip():
            result[key.strip()] = val.strip()
    return result


def parse_metadata(notes: str | None) -> ItemMetadata:
    """Parse a notes blob into ItemMetadata, ignoring anything it does not know."""
    meta = ItemMetadata()
    saw_skills = False
    legacy_skills: list[str] = []

    for seg in _split(notes or ""):
        if seg.name is None:
            m = _LEGACY_SKILLS_RE.match(seg.lines[0])
            if m:
                legacy_skills = _split_list(m.group(1))
            continue

        if seg.name in LIST_FIELDS:
            setattr(meta, seg.name, _split_list(seg.value))
            saw_skills = saw_skills or seg.name == "skills"
        elif seg.name in MAP_FIELDS:
            setattr(meta, seg.name, _split_map(seg.value))
        elif seg.name in INT_FIELDS:
            try:
                setattr(meta, seg.name, int(seg.value))
            except ValueError:
                logger.warning("Ignoring malformed %s.%s: %r", NAMESPACE, seg.name, seg.value)
        else:
            setattr(meta, seg.name, seg.value or None)

    if not saw_skills and legacy_skills:
        meta.skills = legacy_skills
    return meta


def _format_value(name: str, value) -> str:
    if name in LIST_FIELDS:
        return ", ".join(value)
    if name in MAP_FIELDS:
        return ", ".join(f"{k}={v}" for k, v in value.items())
    return str(value)


def _is_empty(value) -> bool:
    return value is None or value == "" or value == [] or value == {}


def format_field(name: str, value) -> list[str]:
    """Render one field as blob lines; multi-line text uses the block form."""
    text = _format_value(name, value)
    key = f"{NAMESPACE}.{name}:"
    if "\n" in text:
        body = [f"{_BLOCK_INDENT}{ln}" if ln else "" for ln in text.split("\n")]
        return [f"{key} |"] + body
    return [f"{key} {text}"]


def merge_metadata(notes: str | None, **updates) -> str:
    """Write `updates` into the blob, leaving every other line untouched.

    Fields already present are rewritten in place, new fields are appended and
    a field set to None (or an empty collection) is removed.
    """
    unknown = set(updates) - set(KNOWN_FIELDS)
    if unknown:
        raise ValueError(f"Unknown metadata field(s): {', '.join(sorted(unknown))}")

    out: list[str] = []
    written: set[str] = set()
    for seg in _split(notes or ""):
        if seg.name is None or seg.name not in updates:
            out.extend(seg.lines)
            continue
        if seg.name in written:
            continue
        written.add(seg.name)
        value = updates[seg.name]
        if not _is_empty(value):
            out.extend(format_field(seg.name, value))

    for name in KNOWN_FIELDS:
        if name in updates and name not in written and not _is_empty(updates[name]):
            out.extend(format_field(name, updates[name]))

    return "\n".join(out)


def serialize_metadata(meta: ItemMetadata, notes: str | None = None) -> str:
    """Render a whole ItemMetadata, preserving unrelated lines from `notes`."""
    return merge_metadata(notes, **meta.as_dict())
