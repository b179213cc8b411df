from pathlib import Path

import pytest

from roadsync.common.errors import ConfigError
from roadsync.store.tree import JsonFileTreeStore, MemoryTreeStore, build_tree_store, join_path, normalize_path


def test_path_helpers():
    assert normalize_path("/UsersData//u1/") == "UsersData/u1"
    assert normalize_path(None) == ""
    assert join_path("UsersData", "", "u1") == "UsersData/u1"


def test_update_merges_without_touching_siblings():
    store = MemoryTreeStore({"a": {"x": 1, "y": 2}})
    store.update("a", {"y": 3, "z": {"k": 1}})
    assert store.get("a") == {"x": 1, "y": 3, "z": {"k": 1}}


def test_get_returns_copies():
    store = MemoryTreeStore({"a": {"x": 1}})
    node = store.get("a")
    node["x"] = 99
    assert store.get("a/x") == 1


def test_subscribe_replays_existing_children_then_reports_changes():
    store = MemoryTreeStore({"root": {"a": {"lat": 1}}})
    seen = []
    sub = store.subscribe("root", seen.append)

    store.set("root/b", {"lat": 2})
    store.update("root/a", {"_migration": {"status": "migrated"}})
    sub.close()
    store.set("root/c", {"lat": 3})

    assert [(e.kind, e.key) for e in seen] == [
        ("child_added", "a"),
        ("child_added", "b"),
        ("child_changed", "a"),
    ]
    assert seen[-1].value["_migration"]["status"] == "migrated"
    assert seen[0].path == "root/a"


def test_writes_replacing_an_ancestor_notify_deeper_subscriptions():
    store = MemoryTreeStore({"root": {"u1": {"r1": {"lat": 1}}}})
    seen = []
    store.subscribe("root/u1", seen.append)
    store.set("root", {"u1": {"r1": {"lat": 1}, "r2": {"lat": 2}}})

    assert ("child_added", "r2") in [(e.kind, e.key) for e in seen]


def test_json_file_store_persists(tmp_path: Path):
    path = tmp_path / "tree.json"
    store = JsonFileTreeStore(path)
    store.set("UsersData/u1/r1", {"lat": 1})

    reopened = JsonFileTreeStore(path)
    assert reopened.get("UsersData/u1/r1") == {"lat": 1}


def test_build_tree_store_by_scheme(tmp_path: Path):
    assert isinstance(build_tree_store("memory://"), MemoryTreeStore)
    assert isinstance(build_tree_store(f"file://{tmp_path / 't.json'}"), JsonFileTreeStore)
    with pytest.raises(ConfigError):
        build_tree_store("ftp://nowhere")
