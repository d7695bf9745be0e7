"""Tests for the raw key-value stores."""

import pytest

from crm_cache.core.storage import FileKeyValueStore, MemoryKeyValueStore


def test_memory_store_basic_operations():
    store = MemoryKeyValueStore()
    store.set_item("a", "1")
    store.set_item("b", "2")
    store.remove_item("a")

    assert store.name == "session_storage"
    assert store.get_item("a") is None
    assert store.to_dict() == {"b": "2"}
    assert "b" in store
    assert len(store) == 1


def test_values_must_be_strings():
    with pytest.raises(TypeError):
        MemoryKeyValueStore().set_item("a", {"not": "a string"})


def test_listeners_receive_store_and_key():
    store = MemoryKeyValueStore()
    seen = []
    unsubscribe = store.subscribe(lambda name, key: seen.append((name, key)))

    store.set_item("leads_1", "x")
    store.remove_item("leads_1")
    store.remove_item("never_set")
    unsubscribe()
    store.set_item("leads_2", "y")

    assert seen == [("session_storage", "leads_1"), ("session_storage", "leads_1")]


def test_failing_listener_does_not_break_writes():
    store = MemoryKeyValueStore()

    def explode(name, key):
        raise RuntimeError("listener bug")

    store.subscribe(explode)
    store.set_item("a", "1")
    assert store.get_item("a") == "1"


def test_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "local.json"
    store = FileKeyValueStore(str(path))
    store.set_item("userSettings_theme", "dark")
    store.set_item("leads_1", '{"id": 1}')

    reopened = FileKeyValueStore(str(path))
    assert reopened.name == "local_storage"
    assert reopened.to_dict() == {"userSettings_theme": "dark", "leads_1": '{"id": 1}'}

    reopened.clear()
    assert FileKeyValueStore(str(path)).to_dict() == {}


def test_file_store_tolerates_corrupt_file(tmp_path):
    path = tmp_path / "local.json"
    path.write_text("{not json", encoding="utf-8")

    store = FileKeyValueStore(str(path))
    assert store.to_dict() == {}
    store.set_item("a", "1")
    assert FileKeyValueStore(str(path)).get_item("a") == "1"
