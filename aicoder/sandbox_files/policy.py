from __future__ import annotations

import posixpath
from dataclasses import dataclass

DENY_WRITE_PATHS: set[str] = set()
DENY_WRITE_PREFIXES = ("/node_modules/", "/.git/")


@dataclass(frozen=True)
class Policy:
    deny_write_paths: set[str]
    deny_write_prefixes: tuple[str, ...]


DEFAULT_POLICY = Policy(
    deny_write_paths=set(DENY_WRITE_PATHS),
    deny_write_prefixes=DENY_WRITE_PREFIXES,
)


def normalize_public_path(path: str) -> str:
    """Normalize a public (sandbox-rooted) POSIX path like '/src/App.tsx'.

    Result is absolute, slash-separated, without trailing slash or empty
    segments. Backslashes are treated as separators.
    """
    raw = (path or "").strip().replace("\\", "/")
    if not raw:
        raise ValueError("empty path")
    if "\x00" in raw:
        raise ValueError("invalid path")

    # Allow callers to pass paths like "src/App.tsx".
    if not raw.startswith("/"):
        raw = "/" + raw

    # Reject traversal attempts; normpath would silently collapse them.
    if "/../" in raw or raw.endswith("/..") or raw == "/..":
        raise ValueError("path traversal not allowed")

    norm = posixpath.normpath(raw)
    if norm.startswith("//"):
        norm = "/" + norm.lstrip("/")
    return norm


def is_denied_path(path: str, *, policy: Policy = DEFAULT_POLICY) -> bool:
    if path in policy.deny_write_paths:
        return True
    normalized = path.rstrip("/") + "/" if path != "/" else "/"
    return any(normalized.startswith(p) for p in policy.deny_write_prefixes)


def require_mutation_allowed(path: str, *, policy: Policy = DEFAULT_POLICY) -> str:
    p = normalize_public_path(path)
    if p == "/":
        raise ValueError("refusing to modify root")
    if is_denied_path(p, policy=policy):
        raise PermissionError(f"writes not allowed for '{p}'")
    return p


def parent_of(path: str) -> str:
    return path.rsplit("/", 1)[0] or "/"
