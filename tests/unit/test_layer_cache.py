"""
Unit tests for the step layer stores.
"""
import json
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, replace
from datetime import datetime, timedelta, timezone

import pytest

from envprov.REGISTRY.layer_cache import CacheEntry, FileLayerStore, MemoryLayerStore

KEY = "ab" + "0" * 62


@pytest.fixture(params=["memory", "file"])
def any_store(request, tmp_path):
    if request.param == "memory":
        return MemoryLayerStore()
    return FileLayerStore(str(tmp_path / "cache"))


class TestLayerStore:
    """Behaviour shared by every store."""

    def test_miss(self, any_store):
        assert any_store.get(KEY) is None

    def test_put_then_get(self, any_store):
        any_store.put(KEY, "sha256:one", {"layer_id": "sha256:one", "working_dir": "/workspace"})
        entry = any_store.get(KEY)
        assert entry.layer_id == "sha256:one"
        assert entry.state["working_dir"] == "/workspace"

    def test_first_writer_wins(self, any_store):
        first = any_store.put(KEY, "sha256:one", {})
        second = any_store.put(KEY, "sha256:two", {})
        assert second.layer_id == "sha256:one"
        assert second == first
        assert any_store.get(KEY).layer_id == "sha256:one"

    def test_concurrent_writers_agree(self, any_store):
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: any_store.put(KEY, f"sha256:{i}", {}), range(16)))
        winners = {r.layer_id for r in results}
        assert len(winners) == 1
        assert any_store.get(KEY).layer_id in winners

    def test_remove(self, any_store):
        any_store.put(KEY, "sha256:one", {})
        assert any_store.remove(KEY)
        assert not any_store.remove(KEY)
        assert any_store.get(KEY) is None

    def test_entries(self, any_store):
        any_store.put("aa" + "1" * 62, "sha256:one", {})
        any_store.put("bb" + "2" * 62, "sha256:two", {})
        assert sorted(e.layer_id for e in any_store.entries()) == ["sha256:one", "sha256:two"]

    def test_prune_all(self, any_store):
        any_store.put("aa" + "1" * 62, "sha256:one", {})
        any_store.put("bb" + "2" * 62, "sha256:two", {})
        assert any_store.prune() == 2
        assert any_store.entries() == []

    def test_prune_keeps_recent_entries(self, any_store):
        any_store.put(KEY, "sha256:one", {})
        assert any_store.prune(max_age_days=1) == 0
        assert any_store.get(KEY) is not None


class TestCacheEntry:

    def test_age(self):
        created = (datetime.now(timezone.utc) - timedelta(days=3)).isoformat().replace("+00:00", "Z")
        entry = CacheEntry(key=KEY, layer_id="sha256:one", state={}, created_at=created)
        assert timedelta(days=2) < entry.age < timedelta(days=4)

    def test_rejects_malformed_timestamp(self):
        with pytest.raises(ValueError):
            CacheEntry(key=KEY, layer_id="sha256:one", state={}, created_at="yesterday")


class TestFileLayerStore:
    """Tests specific to the on-disk store."""

    def test_layout(self, tmp_path):
        store = FileLayerStore(str(tmp_path))
        store.put(KEY, "sha256:one", {})
        path = tmp_path / "layers" / "ab" / f"{KEY}.json"
        assert json.loads(path.read_text())["layer_id"] == "sha256:one"
        assert not list(path.parent.glob("*.partial"))

    def test_entries_survive_reopen(self, tmp_path):
        FileLayerStore(str(tmp_path)).put(KEY, "sha256:one", {"packages": ["make"]})
        entry = FileLayerStore(str(tmp_path)).get(KEY)
        assert entry.state == {"packages": ["make"]}

    def test_corrupt_entry_is_a_miss(self, tmp_path):
        store = FileLayerStore(str(tmp_path))
        path = tmp_path / "layers" / "ab" / f"{KEY}.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")
        assert store.get(KEY) is None
        assert store.entries() == []

    def test_corrupt_entry_is_replaced(self, tmp_path):
        store = FileLayerStore(str(tmp_path))
        path = tmp_path / "layers" / "ab" / f"{KEY}.json"
        path.parent.mkdir(parents=True)
        path.write_text("")
        entry = store.put(KEY, "sha256:one", {})
        assert entry.layer_id == "sha256:one"
        assert store.get(KEY).layer_id == "sha256:one"

    def test_concurrent_writers_over_corrupt_entry_agree(self, tmp_path):
        store = FileLayerStore(str(tmp_path))
        path = tmp_path / "layers" / "ab" / f"{KEY}.json"
        path.parent.mkdir(parents=True)
        path.write_text("{truncated")
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda i: store.put(KEY, f"sha256:{i}", {}), range(16)))
        assert len({r.layer_id for r in results}) == 1
        assert store.get(KEY).layer_id == results[0].layer_id

    @pytest.mark.parametrize("created_at", ["yesterday", None, 42])
    def test_bad_timestamp_is_a_miss(self, tmp_path, created_at):
        store = FileLayerStore(str(tmp_path))
        path = tmp_path / "layers" / "ab" / f"{KEY}.json"
        path.parent.mkdir(parents=True)
        path.write_text(json.dumps({"key": KEY, "layer_id": "sha256:one", "state": {}, "created_at": created_at}))
        assert store.get(KEY) is None
        assert store.prune(max_age_days=1) == 0

    def test_prune_all_removes_unreadable_entries(self, tmp_path):
        store = FileLayerStore(str(tmp_path))
        store.put(KEY, "sha256:one", {})
        broken = tmp_path / "layers" / "cd" / ("cd" + "0" * 62 + ".json")
        broken.parent.mkdir(parents=True)
        broken.write_text("[]")
        assert store.prune() == 2
        assert not broken.exists()

    def test_prune_old_entries(self, tmp_path):
        store = FileLayerStore(str(tmp_path))
        store.put(KEY, "sha256:old", {})
        path = tmp_path / "layers" / "ab" / f"{KEY}.json"
        data = json.loads(path.read_text())
        old = replace(CacheEntry(**data), created_at="2020-01-01T00:00:00Z")
        path.write_text(json.dumps(asdict(old)))
        store.put("cd" + "0" * 62, "sha256:new", {})

        assert store.prune(max_age_days=30) == 1
        assert [e.layer_id for e in store.entries()] == ["sha256:new"]
