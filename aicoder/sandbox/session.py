from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from aicoder.errors import AicoderError, InstallError, SandboxBootError, WriteError
from aicoder.sandbox_files.policy import normalize_public_path, parent_of

if TYPE_CHECKING:
    from aicoder.sandbox_backends.base import SandboxEngine, SandboxProcess
    from aicoder.templates.registry import TemplateSpec

logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    BOOTING = "booting"
    MOUNTED = "mounted"
    INSTALLING = "installing"
    STARTING = "starting"
    READY = "ready"
    ERROR = "error"


_FORWARD = [
    SessionState.BOOTING,
    SessionState.MOUNTED,
    SessionState.INSTALLING,
    SessionState.STARTING,
    SessionState.READY,
]

StateCallback = Callable[[SessionState, "AicoderError | None"], None]
LineCallback = Callable[[str], None]
ReadyCallback = Callable[[str], None]


def _remove_later(items: list, item) -> Callable[[], None]:
    def _unsubscribe() -> None:
        with contextlib.suppress(ValueError):
            items.remove(item)

    return _unsubscribe


class SandboxSession:
    """One running sandbox: boot, mount, install, dev server, readiness.

    States only move forward through booting -> mounted -> installing ->
    starting -> ready. `error` can be entered from any state and is terminal:
    recovery means discarding this session and acquiring a new one.

    `log_lines` is append-only and unbounded; consumers cap what they keep.
    """

    def __init__(
        self,
        engine: SandboxEngine,
        template: TemplateSpec,
        *,
        session_id: str | None = None,
    ) -> None:
        self.session_id = session_id or str(uuid.uuid4())
        self.engine = engine
        self.template = template
        self.state = SessionState.BOOTING
        self.error: AicoderError | None = None
        self.preview_url: str | None = None
        self.log_lines: list[str] = []

        self._state_callbacks: list[StateCallback] = []
        self._output_callbacks: list[LineCallback] = []
        self._ready_callbacks: list[ReadyCallback] = []
        self._tasks: set[asyncio.Task[None]] = set()
        self._unsubscribers: list[Callable[[], None]] = []
        self._dev_process: SandboxProcess | None = None
        self._closed = False

    @property
    def is_ready(self) -> bool:
        return self.state == SessionState.READY

    @property
    def failed(self) -> bool:
        return self.state == SessionState.ERROR

    # ── subscriptions ────────────────────────────────────────────────

    def on_state(self, callback: StateCallback) -> Callable[[], None]:
        self._state_callbacks.append(callback)
        return _remove_later(self._state_callbacks, callback)

    def on_output(self, callback: LineCallback) -> Callable[[], None]:
        self._output_callbacks.append(callback)
        return _remove_later(self._output_callbacks, callback)

    def on_ready(self, callback: ReadyCallback) -> Callable[[], None]:
        """Subscribe to the ready URL; late subscribers get the latched URL."""
        if self.preview_url is not None:
            callback(self.preview_url)
            return lambda: None
        self._ready_callbacks.append(callback)
        return _remove_later(self._ready_callbacks, callback)

    # ── state machine ────────────────────────────────────────────────

    def _notify_state(self) -> None:
        for cb in list(self._state_callbacks):
            try:
                cb(self.state, self.error)
            except Exception:
                logger.exception("session state callback failed")

    def _transition(self, state: SessionState) -> bool:
        if self.state == SessionState.ERROR:
            return False
        if _FORWARD.index(state) <= _FORWARD.index(self.state):
            logger.warning(
                "Ignoring backwards session transition %s -> %s",
                self.state.value,
                state.value,
            )
            return False
        self.state = state
        logger.info("Sandbox session %s: %s", self.session_id, state.value)
        self._notify_state()
        return True

    def _fail(self, error: AicoderError) -> None:
        if self.state == SessionState.ERROR:
            return
        self.error = error
        self.state = SessionState.ERROR
        self._append_line(f"[aicoder] {error}")
        logger.error("Sandbox session %s failed: %s", self.session_id, error)
        self._notify_state()

    def _append_line(self, line: str) -> None:
        self.log_lines.append(line)
        for cb in list(self._output_callbacks):
            try:
                cb(line)
            except Exception:
                logger.exception("session output callback failed")

    def _handle_server_ready(self, port: int, url: str) -> None:
        if self.preview_url is not None or self.state != SessionState.STARTING:
            return
        self.preview_url = url
        self._append_line(f"[aicoder] preview ready on port {port}: {url}")
        self._transition(SessionState.READY)
        callbacks, self._ready_callbacks = self._ready_callbacks, []
        for cb in callbacks:
            try:
                cb(url)
            except Exception:
                logger.exception("session ready callback failed")

    # ── boot sequence ────────────────────────────────────────────────

    async def boot(self) -> None:
        """Run the full boot sequence once. Failures land in `state`/`error`."""
        try:
            await self.engine.boot()
        except Exception as exc:
            self._fail(
                exc
                if isinstance(exc, SandboxBootError)
                else SandboxBootError(f"sandbox engine failed to boot: {exc}")
            )
            return

        try:
            await self.engine.mount(self.template.files)
        except Exception as exc:
            self._fail(SandboxBootError(f"failed to mount initial project: {exc}"))
            return
        self._transition(SessionState.MOUNTED)

        install_cmd, *install_args = self.template.install_cmd
        self._transition(SessionState.INSTALLING)
        try:
            rc = await self.spawn(install_cmd, list(install_args))
        except Exception as exc:
            self._fail(SandboxBootError(f"failed to run {install_cmd}: {exc}"))
            return
        if rc != 0:
            self._fail(InstallError(rc))
            return

        dev_cmd, *dev_args = self.template.dev_cmd
        self._transition(SessionState.STARTING)
        self._unsubscribers.append(self.engine.on_server_ready(self._handle_server_ready))
        try:
            self._dev_process = await self.start_process(dev_cmd, list(dev_args))
        except Exception as exc:
            self._fail(SandboxBootError(f"failed to start dev server: {exc}"))
            return
        self._track(self._watch_dev_server(self._dev_process))

    async def _watch_dev_server(self, proc: SandboxProcess) -> None:
        rc = await proc.wait()
        if self._closed:
            return
        self._append_line(f"[aicoder] dev server exited with code {rc}")
        if self.state != SessionState.READY:
            self._fail(SandboxBootError(f"dev server exited with code {rc} before ready"))

    # ── processes ────────────────────────────────────────────────────

    def _track(self, coro) -> asyncio.Task[None]:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _pump(self, proc: SandboxProcess) -> None:
        pending = ""
        async for chunk in proc.output():
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = pending.split("\n")
            for line in lines:
                self._append_line(line.rstrip("\r"))
        if pending:
            self._append_line(pending.rstrip("\r"))

    async def start_process(self, command: str, args: list[str]) -> SandboxProcess:
        proc = await self.engine.spawn(command, args)
        self._track(self._pump(proc))
        return proc

    async def spawn(self, command: str, args: list[str]) -> int:
        """Run a process to completion; its output goes to `log_lines`."""
        self._append_line(f"$ {' '.join([command, *args])}")
        proc = await self.engine.spawn(command, args)
        pump = self._track(self._pump(proc))
        rc = await proc.wait()
        await pump
        return int(rc)

    # ── filesystem proxy ─────────────────────────────────────────────

    async def write_file(self, path: str, content: str) -> None:
        p = normalize_public_path(path)
        try:
            parent = parent_of(p)
            if parent != "/":
                await self.engine.mkdir(parent, recursive=True)
            await self.engine.write_file(p, content)
        except (OSError, ValueError) as exc:
            raise WriteError(p, str(exc)) from exc

    async def read_file(self, path: str) -> str:
        return await self.engine.read_file(normalize_public_path(path))

    async def remove_file(self, path: str) -> None:
        p = normalize_public_path(path)
        try:
            await self.engine.rm(p, recursive=True)
        except FileNotFoundError:
            logger.debug("remove_file: %s already gone", p)
        except (OSError, ValueError) as exc:
            raise WriteError(p, str(exc)) from exc

    def watch(self, callback: Callable[[str, str], None]) -> Callable[[], None]:
        unsubscribe = self.engine.watch("/", callback)
        self._unsubscribers.append(unsubscribe)
        return unsubscribe

    # ── teardown ─────────────────────────────────────────────────────

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for unsubscribe in self._unsubscribers:
            with contextlib.suppress(Exception):
                unsubscribe()
        self._unsubscribers.clear()
        for task in list(self._tasks):
            task.cancel()
        for task in list(self._tasks):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task
        await self.engine.teardown()
        logger.info("Sandbox session %s closed", self.session_id)
