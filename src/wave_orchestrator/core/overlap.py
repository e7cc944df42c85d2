"""Detect probable conflicts between work items and group them into batches.

Two items overlap when they are likely to touch the same files or the same
capability area. Overlapping items are unioned into one batch and run one
after another; batches run concurrently. This is a heuristic: it prefers
serializing too much over missing a conflict, and it still misses conflicts
it has no textual evidence for.
"""

import logging
import re

from wave_orchestrator.core.backlog import BacklogClient
from wave_orchestrator.core.metadata import ItemMetadata, parse_metadata
from wave_orchestrator.core.skills import match_skills
from wave_orchestrator.db.models import Batch, Overlap, WorkItem

logger = logging.getLogger(__name__)

SOURCE_EXTENSIONS = (".tsx", ".ts", ".py")

_PATH_RE = re.compile(
    r"(?<![\w/.-])((?:[\w.-]+/)+[\w.-]*\w|[\w-]+\.(?:py|pyi|ts|tsx|js|jsx|mjs|css|scss|html|md|json|"
    r"ya?ml|toml|sh|go|rs|rb|ex|exs|sql|vue|svelte))(?![\w/])"
)
_CAMEL_RE = re.compile(r"\b[A-Z][a-z0-9]+(?:[A-Z][a-z0-9]*)+\b")
_TITLE_WORDS_RE = re.compile(r"\b[A-Z][a-z0-9]+(?:\s+[A-Z][a-z0-9]+)+\b")
_PHRASE_RE = re.compile(r"\b([A-Za-z][\w-]*)\s+(component|file|page|module|view|screen)\b", re.IGNORECASE)

# Leading words that make a title-cased phrase a sentence, not a name.
_STOPWORDS = {
    "a", "an", "the", "this", "that", "new", "each", "every", "fix", "add", "update", "remove",
    "implement", "refactor", "create", "make", "use", "support", "improve", "move", "rename",
    "when", "with", "for", "and", "or", "in", "on", "of", "to",
}


def _plausible_files(name: str) -> set[str]:
    snake = re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()
    return {f"{name}{ext}".lower() if ext != ".py" else f"{snake}{ext}" for ext in SOURCE_EXTENSIONS}


def _camel(words: list[str]) -> str:
    return "".join(w[:1].upper() + w[1:] for w in words)


def extract_files(text: str) -> set[str]:
    """Heuristic file footprint of free text."""
    found: set[str] = set()

    for m in _PATH_RE.finditer(text):
        path = m.group(1).removeprefix("./")
        if path:
            found.add(path.lower())

    for m in _CAMEL_RE.finditer(text):
        found |= _plausible_files(m.group(0))

    for m in _TITLE_WORDS_RE.finditer(text):
        words = m.group(0).split()
        while words and words[0].lower() in _STOPWORDS:
            words = words[1:]
        if len(words) >= 2:
            found |= _plausible_files(_camel(words))

    for m in _PHRASE_RE.finditer(text):
        name = m.group(1)
        if name.lower() in _STOPWORDS:
            continue
        found |= _plausible_files(_camel([name]))

    return found


def candidate_files(item: WorkItem, metadata: ItemMetadata | None = None) -> set[str]:
    """Files an item is expected to touch; explicit metadata wins over heuristics.

    Paths are lowercased so explicit and extracted names compare equal.
    """
    metadata = metadata if metadata is not None else parse_metadata(item.notes)
    if metadata.files:
        return {f.strip().removeprefix("./").lower() for f in metadata.files if f.strip()}
    return extract_files(f"{item.title}\n{item.description}")


def candidate_skills(item: WorkItem, metadata: ItemMetadata | None = None) -> list[str]:
    metadata = metadata if metadata is not None else parse_metadata(item.notes)
    return metadata.skills or match_skills(item.text)


def detect_overlap(
    items: list[WorkItem],
    metadata: dict[str, ItemMetadata] | None = None,
) -> list[Overlap]:
    """One Overlap per conflicting pair, in input order; file evidence beats skill evidence."""
    metadata = metadata or {}
    footprints = []
    for item in items:
        meta = metadata.get(item.id) or parse_metadata(item.notes)
        footprints.append((item.id, candidate_files(item, meta), candidate_skills(item, meta)))

    overlaps = []
    for i, (first, files_a, skills_a) in enumerate(footprints):
        for second, files_b, skills_b in footprints[i + 1:]:
            shared_files = sorted(files_a & files_b)
            if shared_files:
                overlaps.append(Overlap(first, second, f"file:{shared_files[0]}"))
                continue
            shared_skills = [s for s in skills_a if s in skills_b]
            if shared_skills:
                overlaps.append(Overlap(first, second, f"skill:{shared_skills[0]}"))
    return overlaps


class DisjointSet:
    """Union-find with path compression and union by rank."""

    def __init__(self, elements=()):
        self.parent: dict[str, str] = {}
        self.rank: dict[str, int] = {}
        for e in elements:
            self.add(e)

    def add(self, e: str):
        if e not in self.parent:
            self.parent[e] = e
            self.rank[e] = 0

    def find(self, e: str) -> str:
        self.add(e)
        root = e
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[e] != root:
            self.parent[e], e = root, self.parent[e]
        return root

    def union(self, a: str, b: str) -> str:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return ra
        if self.rank[ra] < self.rank[rb]:
            ra, rb = rb, ra
        self.parent[rb] = ra
        if self.rank[ra] == self.rank[rb]:
            self.rank[ra] += 1
        return ra


def group(item_ids: list[str], overlaps: list[Overlap]) -> list[Batch]:
    """One batch per connected component, ordered by first appearance in `item_ids`."""
    ids = list(dict.fromkeys(item_ids))
    ds = DisjointSet(ids)
    for o in overlaps:
        if o.first in ds.parent and o.second in ds.parent:
            ds.union(o.first, o.second)

    components: dict[str, list[str]] = {}
    for item_id in ids:
        components.setdefault(ds.find(item_id), []).append(item_id)

    return [Batch(id=f"batch-{n}", item_ids=members) for n, members in enumerate(components.values(), 1)]


def plan_batches(backlog: BacklogClient, item_ids: list[str]) -> tuple[list[Batch], list[Overlap]]:
    """Recompute batches for `item_ids` and record each item's batch assignment."""
    items = [backlog.require_item(i) for i in dict.fromkeys(item_ids)]
    overlaps = detect_overlap(items)
    batches = group([i.id for i in items], overlaps)
    for batch in batches:
        for position, item_id in enumerate(batch.item_ids):
            backlog.write_metadata(item_id, batch_id=batch.id, batch_position=position)
    logger.info("Planned %d item(s) into %d batch(es)", len(items), len(batches))
    return batches, overlaps
