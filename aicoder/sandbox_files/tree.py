from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any, Literal

from aicoder.sandbox_files.policy import normalize_public_path, parent_of

NodeKind = Literal["file", "directory"]


@dataclass(frozen=True)
class FileNode:
    """Immutable view of one entry of the project tree."""

    name: str
    path: str
    kind: NodeKind
    content: str | None = None
    children: tuple[FileNode, ...] | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"name": self.name, "path": self.path, "kind": self.kind}
        if self.kind == "file":
            out["content"] = self.content
        else:
            out["children"] = [c.to_dict() for c in self.children or ()]
        return out

    def find(self, path: str) -> FileNode | None:
        target = normalize_public_path(path)
        node: FileNode | None = self
        while node is not None and node.path != target:
            if node.kind != "directory":
                return None
            node = next(
                (
                    c
                    for c in node.children or ()
                    if target == c.path or target.startswith(c.path + "/")
                ),
                None,
            )
        return node

    def iter_files(self) -> Iterator[FileNode]:
        if self.kind == "file":
            yield self
            return
        for child in self.children or ():
            yield from child.iter_files()


def _name_of(path: str) -> str:
    return "/" if path == "/" else path.rsplit("/", 1)[-1]


class ProjectTree:
    """Mutable project tree keyed by normalized path.

    Files and directories live in flat maps; `snapshot()` materializes the
    nested, ordered FileNode view. Exactly one entry exists per path.
    """

    def __init__(self) -> None:
        self._files: dict[str, str] = {}
        self._dirs: set[str] = {"/"}

    def __contains__(self, path: str) -> bool:
        return path in self._files or path in self._dirs

    def is_file(self, path: str) -> bool:
        return path in self._files

    def is_dir(self, path: str) -> bool:
        return path in self._dirs

    def get(self, path: str) -> str | None:
        return self._files.get(path)

    def files(self) -> dict[str, str]:
        return dict(self._files)

    def ensure_dir(self, path: str) -> bool:
        """Create `path` and its ancestors; return True if anything was added."""
        if path in self._files:
            raise NotADirectoryError(path)
        added = False
        cur = path
        while cur not in self._dirs:
            if cur in self._files:
                raise NotADirectoryError(cur)
            self._dirs.add(cur)
            added = True
            cur = parent_of(cur)
        return added

    def set(self, path: str, content: str) -> bool:
        """Insert or update a file; return True if the file is new."""
        if path in self._dirs:
            raise IsADirectoryError(path)
        self.ensure_dir(parent_of(path))
        created = path not in self._files
        self._files[path] = content
        return created

    def remove(self, path: str) -> list[str]:
        """Remove a file or a directory subtree; return removed file paths."""
        if path == "/":
            raise ValueError("refusing to remove root")
        if path in self._files:
            del self._files[path]
            return [path]
        if path not in self._dirs:
            return []
        prefix = path + "/"
        removed = [p for p in self._files if p.startswith(prefix)]
        for p in removed:
            del self._files[p]
        self._dirs = {d for d in self._dirs if d != path and not d.startswith(prefix)}
        return removed

    def snapshot(self) -> FileNode:
        by_parent: dict[str, list[str]] = {}
        for d in self._dirs:
            if d != "/":
                by_parent.setdefault(parent_of(d), []).append(d)
        for f in self._files:
            by_parent.setdefault(parent_of(f), []).append(f)

        def _build(path: str) -> FileNode:
            if path in self._files:
                return FileNode(
                    name=_name_of(path), path=path, kind="file", content=self._files[path]
                )
            kids = sorted(
                by_parent.get(path, ()),
                key=lambda p: (0 if p in self._dirs else 1, _name_of(p)),
            )
            return FileNode(
                name=_name_of(path),
                path=path,
                kind="directory",
                children=tuple(_build(k) for k in kids),
            )

        return _build("/")
