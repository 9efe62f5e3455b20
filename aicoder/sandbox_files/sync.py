"""File synchronization between the in-memory project tree and the sandbox.

The tree is the single source of truth and is always current. Sandbox writes
are debounced per path and serialized per path: each write takes the path's
lock, re-reads the latest content from the tree and is skipped if a newer
sequence number has already been applied. Writes for different paths run
independently.
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import logging
from collections.abc import AsyncIterator, Coroutine, Mapping
from typing import TYPE_CHECKING, Any

from aicoder.errors import WriteError
from aicoder.events import (
    EventBus,
    FileAdded,
    FileRemoved,
    FileTreeChanged,
    WriteFailed,
)
from aicoder.sandbox_files.policy import (
    is_denied_path,
    normalize_public_path,
    require_mutation_allowed,
)
from aicoder.sandbox_files.tree import FileNode, ProjectTree

if TYPE_CHECKING:
    from aicoder.sandbox.session import SandboxSession

logger = logging.getLogger(__name__)


class _PathLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class FileSync:
    def __init__(self, bus: EventBus, *, debounce_s: float = 0.3) -> None:
        self._bus = bus
        self._debounce_s = max(0.0, float(debounce_s))
        self._tree = ProjectTree()
        self._session: SandboxSession | None = None
        self._live = False

        # Sequence numbers are global so per-path entries can be dropped safely.
        self._counter = itertools.count(1)
        self._seq: dict[str, int] = {}
        self._applied: dict[str, int] = {}
        # Content the sandbox is known to hold (our last write or last observed).
        self._synced: dict[str, str] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._locks: dict[str, _PathLock] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribers: list = []

    @property
    def live(self) -> bool:
        return self._live

    # ── read side ────────────────────────────────────────────────────

    def snapshot(self) -> FileNode:
        return self._tree.snapshot()

    def read(self, path: str) -> str | None:
        return self._tree.get(normalize_public_path(path))

    def files(self) -> dict[str, str]:
        return self._tree.files()

    # ── session wiring ───────────────────────────────────────────────

    def load(self, files: Mapping[str, str]) -> None:
        """Seed the tree (e.g. with the initial template) without writing through."""
        for path, content in files.items():
            self._tree.set(normalize_public_path(path), content)
        self._publish_tree()

    def attach(self, session: SandboxSession) -> None:
        """Follow `session`; go live (full resync + watch) once it is ready."""
        self.detach()
        self._session = session
        self._unsubscribers.append(
            session.on_ready(lambda _url: self._track(self._go_live(session)))
        )

    def detach(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._session = None
        self._live = False
        self._synced.clear()

    async def _go_live(self, session: SandboxSession) -> None:
        if session is not self._session:
            return
        self._live = True
        self._unsubscribers.append(session.watch(self._on_watch_event))
        await self.resync()

    async def resync(self) -> None:
        """Write every file of the tree to the sandbox (at-least-once)."""
        if not self._live:
            return
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        paths = list(self._tree.files())
        logger.info("Resyncing %d files into the sandbox", len(paths))
        self._synced.clear()
        tasks = [self._track(self._write_through(p, self._bump(p))) for p in paths]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # ── mutations ────────────────────────────────────────────────────

    def set_file(self, path: str, content: str) -> str:
        p = require_mutation_allowed(path)
        created = self._tree.set(p, content)
        seq = self._bump(p)
        if created:
            self._bus.publish(FileAdded(path=p, content=content))
        self._publish_tree()
        if self._live:
            self._schedule(p, seq)
        return p

    def remove_file(self, path: str) -> list[str]:
        p = require_mutation_allowed(path)
        removed = self._tree.remove(p)
        for r in removed:
            handle = self._timers.pop(r, None)
            if handle is not None:
                handle.cancel()
            self._bump(r)
        self._bus.publish(FileRemoved(path=p))
        self._publish_tree()
        if self._live:
            self._track(self._remove_through(p, removed))
        else:
            self._forget(removed)
        return removed

    async def on_external_change(self, path: str) -> None:
        """Mirror a sandbox-side change into the tree (ignoring our own echoes)."""
        session = self._session
        if session is None or not self._live:
            return
        p = normalize_public_path(path)
        if p in self._timers:
            # A local edit is pending for this path and will overwrite it.
            return

        try:
            content = await session.read_file(p)
        except FileNotFoundError:
            if self._tree.is_file(p):
                self._tree.remove(p)
                self._forget([p])
                self._bus.publish(FileRemoved(path=p))
                self._publish_tree()
            return
        except IsADirectoryError:
            if self._tree.ensure_dir(p):
                self._publish_tree()
            return

        if self._synced.get(p) == content:
            return
        self._synced[p] = content
        if self._tree.get(p) == content:
            return
        try:
            created = self._tree.set(p, content)
        except OSError as exc:
            logger.warning("Ignoring external change for %s: %s", p, exc)
            return
        logger.debug("External change mirrored for %s", p)
        if created:
            self._bus.publish(FileAdded(path=p, content=content))
        self._publish_tree()

    async def flush(self) -> None:
        """Fire pending debounced writes now and wait for all in-flight work."""
        for p, handle in list(self._timers.items()):
            handle.cancel()
            self._fire(p, self._seq.get(p, 0))
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        await self.flush()
        self.detach()

    # ── internals ────────────────────────────────────────────────────

    def _bump(self, path: str) -> int:
        seq = next(self._counter)
        self._seq[path] = seq
        return seq

    @contextlib.asynccontextmanager
    async def _locked(self, path: str) -> AsyncIterator[None]:
        """Hold the per-path lock; the entry is dropped once nobody uses it."""
        entry = self._locks.get(path)
        if entry is None:
            entry = self._locks[path] = _PathLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0 and self._locks.get(path) is entry:
                del self._locks[path]

    def _forget(self, paths: list[str]) -> None:
        for p in paths:
            if self._tree.get(p) is not None or p in self._timers:
                continue
            self._seq.pop(p, None)
            self._applied.pop(p, None)
            self._synced.pop(p, None)

    def _publish_tree(self) -> None:
        self._bus.publish(FileTreeChanged(snapshot=self._tree.snapshot()))

    def _track(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("File sync task failed", exc_info=exc)

    def _schedule(self, path: str, seq: int) -> None:
        handle = self._timers.pop(path, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._timers[path] = loop.call_later(self._debounce_s, self._fire, path, seq)

    def _fire(self, path: str, seq: int) -> None:
        self._timers.pop(path, None)
        self._track(self._write_through(path, seq))

    async def _write_through(self, path: str, seq: int) -> None:
        session = self._session
        if session is None:
            return
        async with self._locked(path):
            if self._applied.get(path, 0) >= seq:
                return
            content = self._tree.get(path)
            if content is None:
                return
            if self._synced.get(path) == content:
                self._applied[path] = seq
                return
            try:
                await session.write_file(path, content)
            except WriteError as exc:
                logger.warning("%s", exc)
                self._bus.publish(WriteFailed(path=path, error=exc.detail))
                return
            self._synced[path] = content
            self._applied[path] = max(self._applied.get(path, 0), seq)
            logger.debug("Wrote %s (seq=%d)", path, seq)

    async def _remove_through(self, path: str, removed: list[str]) -> None:
        session = self._session
        if session is None:
            return
        async with contextlib.AsyncExitStack() as stack:
            # Children too, so an in-flight write cannot recreate a removed file.
            for p in sorted({path, *removed}):
                await stack.enter_async_context(self._locked(p))
            try:
                await session.remove_file(path)
            except WriteError as exc:
                logger.warning("%s", exc)
                self._bus.publish(WriteFailed(path=path, error=exc.detail))
            self._forget(removed)

    def _on_watch_event(self, _event: str, path: str) -> None:
        try:
            p = normalize_public_path(path)
        except ValueError:
            return
        if is_denied_path(p):
            return
        self._track(self.on_external_change(p))
