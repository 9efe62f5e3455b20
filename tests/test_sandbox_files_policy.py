from __future__ import annotations

import pytest

from aicoder.sandbox_files.policy import (
    is_denied_path,
    normalize_public_path,
    parent_of,
    require_mutation_allowed,
)


def test_normalize_public_path_accepts_relative() -> None:
    assert normalize_public_path("src/App.tsx") == "/src/App.tsx"


def test_normalize_public_path_collapses_separators() -> None:
    assert normalize_public_path("//src//components/./Button.tsx/") == (
        "/src/components/Button.tsx"
    )
    assert normalize_public_path("src\\components\\Button.tsx") == (
        "/src/components/Button.tsx"
    )


def test_normalize_public_path_rejects_empty() -> None:
    with pytest.raises(ValueError):
        normalize_public_path("")


def test_normalize_public_path_rejects_traversal() -> None:
    with pytest.raises(ValueError):
        normalize_public_path("/src/../secrets.txt")


def test_normalize_public_path_rejects_nul() -> None:
    with pytest.raises(ValueError):
        normalize_public_path("/src/a\x00.tsx")


def test_require_mutation_allows_main_tsx() -> None:
    assert require_mutation_allowed("/src/main.tsx") == "/src/main.tsx"


def test_require_mutation_denies_node_modules() -> None:
    with pytest.raises(PermissionError):
        require_mutation_allowed("/node_modules/x.js")


def test_require_mutation_denies_git_dir() -> None:
    assert is_denied_path("/.git")
    with pytest.raises(PermissionError):
        require_mutation_allowed(".git/config")


def test_require_mutation_refuses_root() -> None:
    with pytest.raises(ValueError):
        require_mutation_allowed("/")


def test_parent_of() -> None:
    assert parent_of("/src/App.tsx") == "/src"
    assert parent_of("/index.html") == "/"
