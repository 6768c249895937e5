"""Unit tests for state repositories and StatePack helpers."""

import json

import pytest

from turnkernel.service.fs import PathTraversalError
from turnkernel.storage.errors import CorruptStateError
from turnkernel.storage.files import CANON_OPS_FILENAME, JsonFileRepository, write_json_atomic
from turnkernel.storage.memory import MemoryRepository
from turnkernel.storage.models import (
    PROMPT_EVENTS_TAIL,
    PROMPT_QUEUE_TAIL,
    default_state_pack,
    normalize_state_pack,
    prompt_state_pack,
    stamp_updated,
    summarize_state_pack,
)


@pytest.fixture(params=["memory", "files"])
def repository(request, tmp_path):
    if request.param == "memory":
        return MemoryRepository()
    return JsonFileRepository(tmp_path / "state")


class TestRepositoryContract:
    """Both repositories behave the same through the pipeline's interface."""

    def test_missing_pack_is_none(self, repository):
        assert repository.get("nope") is None

    def test_put_then_get_round_trips(self, repository):
        pack = default_state_pack("c1")
        repository.put("c1", pack)
        assert repository.get("c1") == pack

    def test_get_returns_independent_copy(self, repository):
        repository.put("c1", default_state_pack("c1"))
        loaded = repository.get("c1")
        loaded["events"].append("mutated")
        assert repository.get("c1")["events"] == []

    def test_event_log_appends_and_limits(self, repository):
        for i in range(4):
            repository.append("c1", {"i": i})
        assert [e["i"] for e in repository.events("c1")] == [0, 1, 2, 3]
        assert [e["i"] for e in repository.events("c1", limit=2)] == [2, 3]
        assert repository.events("c1", limit=0) == []
        assert repository.events("other") == []

    def test_lock_is_per_conversation(self, repository):
        assert repository.lock("a") is repository.lock("a")
        assert repository.lock("a") is not repository.lock("b")


class TestJsonFileRepository:
    def test_layout_on_disk(self, tmp_path):
        repo = JsonFileRepository(tmp_path)
        repo.put("c1", {"mode": "NORMAL"})
        repo.append("c1", {"stage": "completed"})
        assert json.loads((tmp_path / "packs" / "c1.json").read_text(encoding="utf-8")) == {"mode": "NORMAL"}
        assert (tmp_path / "events" / "c1.jsonl").exists()

    def test_bom_prefixed_pack_is_read(self, tmp_path):
        repo = JsonFileRepository(tmp_path)
        (tmp_path / "packs").mkdir()
        (tmp_path / "packs" / "c1.json").write_text('\ufeff{"mode": "X"}', encoding="utf-8")
        assert repo.get("c1") == {"mode": "X"}

    def test_corrupt_pack_raises(self, tmp_path):
        repo = JsonFileRepository(tmp_path)
        (tmp_path / "packs").mkdir()
        (tmp_path / "packs" / "c1.json").write_text("{broken", encoding="utf-8")
        with pytest.raises(CorruptStateError):
            repo.get("c1")

    def test_non_object_pack_raises(self, tmp_path):
        repo = JsonFileRepository(tmp_path)
        (tmp_path / "packs").mkdir()
        (tmp_path / "packs" / "c1.json").write_text("[1, 2]", encoding="utf-8")
        with pytest.raises(CorruptStateError):
            repo.get("c1")

    def test_conversation_id_cannot_escape_root(self, tmp_path):
        repo = JsonFileRepository(tmp_path / "state")
        with pytest.raises(PathTraversalError):
            repo.put("../../outside", {})

    def test_canon_ops_document(self, tmp_path):
        repo = JsonFileRepository(tmp_path)
        assert repo.load_canon_ops() is None
        (tmp_path / CANON_OPS_FILENAME).write_text(json.dumps({"tombstones": []}), encoding="utf-8")
        assert repo.load_canon_ops() == {"tombstones": []}

    def test_atomic_write_leaves_no_temp_files(self, tmp_path):
        target = tmp_path / "out.json"
        write_json_atomic(target, {"a": 1})
        write_json_atomic(target, {"a": 2})
        assert json.loads(target.read_text(encoding="utf-8")) == {"a": 2}
        assert not list(tmp_path.glob("*.tmp"))


class TestStatePackHelpers:
    def test_default_pack_shape(self):
        pack = default_state_pack("c1")
        assert pack["meta"]["session_id"] == "c1"
        assert pack["queue"] == {"now": [], "next": [], "parked": []}
        assert pack["mode"] == "NORMAL"

    def test_normalize_folds_legacy_queue_keys(self):
        pack = {"queue": {"now": ["a"], "now_add": ["b"], "pending_inputs": ["p"], "now_remove": ["a"]}}
        normalize_state_pack(pack)
        assert pack["queue"] == {"now": ["a", "b"], "parked": ["p"]}

    def test_normalize_leaves_canonical_pack_alone(self):
        pack = default_state_pack("c1")
        before = json.loads(json.dumps(pack))
        assert normalize_state_pack(pack) == before

    def test_stamp_updated(self):
        pack = {"meta": {"updated_at": "old"}, "updated_at": "old"}
        stamp_updated(pack)
        assert pack["updated_at"] != "old"
        assert pack["meta"]["updated_at"] == pack["updated_at"]

    def test_prompt_view_is_bounded(self):
        pack = default_state_pack("c1")
        pack["events"] = list(range(PROMPT_EVENTS_TAIL + 10))
        pack["queue"]["parked"] = list(range(PROMPT_QUEUE_TAIL + 5))
        pack["notes"] = "n" * 5000
        view = prompt_state_pack(pack)
        assert len(view["events"]) == PROMPT_EVENTS_TAIL
        assert view["events"][-1] == PROMPT_EVENTS_TAIL + 9
        assert len(view["queue"]["parked"]) == PROMPT_QUEUE_TAIL
        assert len(view["notes_tail"]) == 2000
        assert "notes" not in view

    def test_summary(self):
        assert summarize_state_pack(None) == {"exists": False}
        pack = default_state_pack("c1")
        pack["queue"]["now"] = ["x"]
        summary = summarize_state_pack(pack)
        assert summary["exists"] is True
        assert summary["queue_counts"] == {"now": 1, "next": 0, "parked": 0}
        assert summary["events_count"] == 0
