from __future__ import annotations

import pytest

from aicoder.sandbox_files.tree import ProjectTree


def _tree() -> ProjectTree:
    t = ProjectTree()
    t.set("/src/components/Button.tsx", "b")
    t.set("/src/App.tsx", "a")
    t.set("/index.html", "<html/>")
    t.set("/package.json", "{}")
    return t


def test_snapshot_orders_directories_first_then_by_name() -> None:
    snap = _tree().snapshot()
    assert snap.path == "/"
    assert snap.kind == "directory"
    assert [c.name for c in snap.children] == ["src", "index.html", "package.json"]
    src = snap.find("/src")
    assert [c.name for c in src.children] == ["components", "App.tsx"]


def test_set_creates_parents_and_reports_new_files() -> None:
    t = ProjectTree()
    assert t.set("/a/b/c.txt", "1") is True
    assert t.set("/a/b/c.txt", "2") is False
    assert t.is_dir("/a") and t.is_dir("/a/b")
    assert t.get("/a/b/c.txt") == "2"


def test_one_node_per_path() -> None:
    t = _tree()
    with pytest.raises(IsADirectoryError):
        t.set("/src", "nope")
    with pytest.raises(NotADirectoryError):
        t.set("/index.html/child.txt", "nope")


def test_remove_directory_subtree() -> None:
    t = _tree()
    removed = t.remove("/src")
    assert sorted(removed) == ["/src/App.tsx", "/src/components/Button.tsx"]
    assert "/src" not in t
    assert "/src/components" not in t
    assert t.remove("/missing") == []


def test_snapshot_is_immutable_view() -> None:
    t = _tree()
    snap = t.snapshot()
    t.set("/src/App.tsx", "changed")
    assert snap.find("/src/App.tsx").content == "a"
    assert [f.path for f in snap.iter_files()] == [
        "/src/components/Button.tsx",
        "/src/App.tsx",
        "/index.html",
        "/package.json",
    ]


def test_to_dict_shape() -> None:
    t = ProjectTree()
    t.set("/src/A.tsx", "x")
    assert t.snapshot().to_dict() == {
        "name": "/",
        "path": "/",
        "kind": "directory",
        "children": [
            {
                "name": "src",
                "path": "/src",
                "kind": "directory",
                "children": [
                    {"name": "A.tsx", "path": "/src/A.tsx", "kind": "file", "content": "x"}
                ],
            }
        ],
    }
