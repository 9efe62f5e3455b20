from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from .base import SandboxEngine


def get_engine(*, root_dir: str | None = None) -> SandboxEngine:
    from .local_backend import LocalProcessEngine

    return LocalProcessEngine(root_dir=root_dir)
