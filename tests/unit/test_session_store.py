"""Unit tests for roster_reconcile.session_store."""

from __future__ import annotations

from pathlib import Path

from roster_reconcile.session_store import InMemoryKeyValueStore, JsonFileKeyValueStore


class TestInMemoryStore:
    def test_get_returns_copy(self):
        store = InMemoryKeyValueStore()
        store.set("k", {"resolutions": {"p": "merge"}})
        got = store.get("k")
        got["resolutions"]["p"] = "keep_a"
        assert store.get("k") == {"resolutions": {"p": "merge"}}

    def test_missing_and_delete(self):
        store = InMemoryKeyValueStore()
        assert store.get("nope") is None
        store.set("k", {})
        store.delete("k")
        store.delete("k")
        assert store.keys() == []


class TestJsonFileStore:
    def test_round_trip_across_instances(self, tmp_path: Path):
        JsonFileKeyValueStore(tmp_path / "sessions").set("import-session:c:h", {"a": 1})
        assert JsonFileKeyValueStore(tmp_path / "sessions").get("import-session:c:h") == {"a": 1}

    def test_one_file_per_key_no_temp_left(self, tmp_path: Path):
        store = JsonFileKeyValueStore(tmp_path)
        store.set("k1", {"v": 1})
        store.set("k1", {"v": 2})
        store.set("k2", {"v": 3})
        files = sorted(p.name for p in tmp_path.iterdir())
        assert len(files) == 2
        assert all(name.endswith(".json") and not name.startswith(".") for name in files)
        assert store.get("k1") == {"v": 2}

    def test_missing_key(self, tmp_path: Path):
        assert JsonFileKeyValueStore(tmp_path / "absent").get("k") is None

    def test_delete(self, tmp_path: Path):
        store = JsonFileKeyValueStore(tmp_path)
        store.set("k", {"v": 1})
        store.delete("k")
        store.delete("k")
        assert store.get("k") is None
