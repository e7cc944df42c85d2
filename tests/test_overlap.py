"""Tests for overlap detection and batching."""

import tempfile
from pathlib import Path

import pytest

from wave_orchestrator.core import backlog as backlog_mod
from wave_orchestrator.core.backlog import SqliteBacklog
from wave_orchestrator.core.overlap import (
    DisjointSet,
    candidate_files,
    detect_overlap,
    extract_files,
    group,
    plan_batches,
)
from wave_orchestrator.db.models import Overlap, WorkItem


def _item(item_id, title="", description="", notes=""):
    return WorkItem(id=item_id, title=title, description=description, notes=notes)


class TestExtractFiles:
    def test_paths(self):
        files = extract_files("Update ./src/api/users.py and README.md")
        assert "src/api/users.py" in files
        assert "readme.md" in files

    def test_camel_case_names(self):
        files = extract_files("The SettingsModal flickers")
        assert {"settingsmodal.tsx", "settingsmodal.ts", "settings_modal.py"} <= files

    def test_component_phrase(self):
        assert "sidebar.tsx" in extract_files("Restyle the sidebar component")

    def test_title_words(self):
        assert "profilecard.tsx" in extract_files("Fix Profile Card spacing")

    def test_explicit_files_win(self):
        item = _item("a", "Touch SettingsModal", notes="conductor.files: ./Src/App.tsx")
        assert candidate_files(item) == {"src/app.tsx"}


class TestDetectOverlap:
    def test_no_overlap_gives_singletons(self):
        items = [
            _item("a", "Write release notes", notes="conductor.files: CHANGELOG.md\nconductor.skills: /docs"),
            _item("b", "Tune database", notes="conductor.files: db/pool.py\nconductor.skills: /databases"),
            _item("c", "Speed up CI", notes="conductor.files: .github/ci.yml\nconductor.skills: /ci"),
        ]
        overlaps = detect_overlap(items)
        assert overlaps == []
        batches = group([i.id for i in items], overlaps)
        assert [b.item_ids for b in batches] == [["a"], ["b"], ["c"]]

    def test_shared_explicit_file(self):
        items = [
            _item("a", "One", notes="conductor.files: src/App.tsx\nconductor.skills: /x"),
            _item("b", "Two", notes="conductor.files: src/App.tsx, src/other.ts\nconductor.skills: /y"),
        ]
        overlaps = detect_overlap(items)
        assert overlaps == [Overlap("a", "b", "file:src/app.tsx")]
        assert [b.item_ids for b in group(["a", "b"], overlaps)] == [["a", "b"]]

    def test_skill_overlap(self):
        items = [
            _item("a", "Tweak", notes="conductor.files: a.py\nconductor.skills: /databases:databases"),
            _item("b", "Tweak", notes="conductor.files: b.py\nconductor.skills: /databases:databases"),
        ]
        assert detect_overlap(items) == [Overlap("a", "b", "skill:/databases:databases")]

    def test_file_reason_preferred(self):
        items = [
            _item("a", "x", notes="conductor.files: z.py, m.py\nconductor.skills: /s"),
            _item("b", "y", notes="conductor.files: m.py, z.py\nconductor.skills: /s"),
        ]
        assert detect_overlap(items)[0].reason == "file:m.py"


class TestGrouping:
    def test_transitive(self):
        overlaps = [Overlap("a", "b", "file:x"), Overlap("b", "c", "skill:y")]
        batches = group(["a", "b", "c", "d"], overlaps)
        assert [b.item_ids for b in batches] == [["a", "b", "c"], ["d"]]
        assert [b.id for b in batches] == ["batch-1", "batch-2"]

    def test_order_follows_input(self):
        batches = group(["d", "c", "b", "a"], [Overlap("a", "d", "file:x")])
        assert [b.item_ids for b in batches] == [["d", "a"], ["c"], ["b"]]

    def test_partition(self):
        ids = [f"i{n}" for n in range(10)]
        overlaps = [Overlap("i0", "i5", "r"), Overlap("i5", "i9", "r"), Overlap("i2", "i3", "r")]
        batches = group(ids, overlaps)
        members = [i for b in batches for i in b.item_ids]
        assert sorted(members) == sorted(ids)
        assert len(members) == len(set(members))

    def test_disjoint_set(self):
        ds = DisjointSet(["a", "b", "c"])
        ds.union("a", "b")
        assert ds.find("a") == ds.find("b")
        assert ds.find("c") != ds.find("a")


class TestPlanBatches:
    @pytest.fixture
    def backlog(self):
        with tempfile.TemporaryDirectory() as tmp:
            b = SqliteBacklog.open(Path(tmp) / "b.db")
            yield b
            b.close()

    def test_persists_assignment(self, backlog):
        backlog_mod.create_item(backlog.db, "A", item_id="a", notes="conductor.files: x.py\nconductor.skills: /p")
        backlog_mod.create_item(backlog.db, "B", item_id="b", notes="conductor.files: x.py\nconductor.skills: /q")
        backlog_mod.create_item(backlog.db, "C", item_id="c", notes="conductor.files: y.py\nconductor.skills: /r")

        batches, overlaps = plan_batches(backlog, ["a", "b", "c"])
        assert [b.item_ids for b in batches] == [["a", "b"], ["c"]]
        assert backlog.read_metadata("b").batch_id == "batch-1"
        assert backlog.read_metadata("b").batch_position == 1
        assert backlog.read_metadata("c").batch_id == "batch-2"
        assert backlog.read_metadata("c").batch_position == 0
