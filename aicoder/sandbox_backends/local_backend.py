from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import re
import shutil
import signal
import tempfile
from collections.abc import AsyncIterator, Callable, Mapping
from pathlib import Path

from aicoder.errors import SandboxBootError
from aicoder.sandbox_backends.base import (
    ServerReadyCallback,
    Unsubscribe,
    WatchCallback,
)

logger = logging.getLogger(__name__)

# Never mirror these; node_modules alone can hold hundreds of thousands of files.
PRUNE_DIRS = {".git", "node_modules"}

_ANSI_RE = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_LISTEN_URL_RE = re.compile(
    r"(https?://(?:localhost|127\.0\.0\.1|0\.0\.0\.0|\[::1?\]|[A-Za-z0-9.-]+):(\d{2,5})/?\S*)"
)


def _env_float(name: str, default: float) -> float:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _watch_poll_s() -> float:
    return max(0.05, _env_float("SANDBOX_WATCH_POLL_S", 0.5))


def detect_server_url(line: str) -> tuple[int, str] | None:
    """Return (port, url) if a dev-server output line announces an address."""
    clean = _ANSI_RE.sub("", line or "")
    lowered = clean.lower()
    if not any(k in lowered for k in ("local:", "listening", "ready", "running at", "server")):
        return None
    m = _LISTEN_URL_RE.search(clean)
    if not m:
        return None
    url = m.group(1).rstrip(".,;")
    return int(m.group(2)), url


def _safe_path(root: Path, public_path: str) -> Path:
    p = (public_path or "").strip().lstrip("/")
    if not p:
        raise ValueError("empty path")

    full = (root / p).resolve()
    if root not in full.parents and full != root:
        raise ValueError("path escapes sandbox root")
    return full


def _walk_manifest(root: Path, base: Path) -> dict[str, int]:
    out: dict[str, int] = {}
    if not base.exists():
        return out
    if base.is_file():
        with contextlib.suppress(OSError):
            out["/" + str(base.relative_to(root))] = base.stat().st_mtime_ns
        return out

    for dirpath, dirs, files in os.walk(base, followlinks=False):
        dirs[:] = [d for d in dirs if d not in PRUNE_DIRS]
        for fn in files:
            full = Path(dirpath) / fn
            try:
                st = full.stat()
            except OSError:
                continue
            out["/" + full.relative_to(root).as_posix()] = int(st.st_mtime_ns)
    return out


class LocalProcess:
    """A child process of the local engine with a pumped, line-scanned output."""

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        *,
        on_line: Callable[[str], None],
    ) -> None:
        self._proc = proc
        self._on_line = on_line
        self._queue: asyncio.Queue[bytes | None] = asyncio.Queue()
        self._pump = asyncio.create_task(self._pump_output())

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def _pump_output(self) -> None:
        assert self._proc.stdout is not None
        pending = ""
        try:
            while True:
                chunk = await self._proc.stdout.read(8192)
                if not chunk:
                    break
                await self._queue.put(chunk)
                pending += chunk.decode("utf-8", errors="replace")
                *lines, pending = pending.split("\n")
                for line in lines:
                    self._on_line(line)
            if pending:
                self._on_line(pending)
        finally:
            await self._queue.put(None)

    async def output(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self._queue.get()
            if chunk is None:
                return
            yield chunk

    async def wait(self) -> int:
        rc = await self._proc.wait()
        with contextlib.suppress(asyncio.CancelledError):
            await self._pump
        return int(rc)

    async def kill(self) -> None:
        if self._proc.returncode is not None:
            return
        # start_new_session=True makes the pid the process group id.
        try:
            os.killpg(self._proc.pid, signal.SIGTERM)
        except (ProcessLookupError, PermissionError, OSError):
            with contextlib.suppress(ProcessLookupError):
                self._proc.terminate()
        try:
            await asyncio.wait_for(self._proc.wait(), timeout=1.0)
            return
        except TimeoutError:
            pass
        try:
            os.killpg(self._proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError, OSError):
            with contextlib.suppress(ProcessLookupError):
                self._proc.kill()


class LocalProcessEngine:
    """Sandbox engine backed by a local working directory and child processes.

    Paths are public and rooted at "/" (e.g. "/src/App.tsx"); they resolve
    under `root_dir`. Blocking disk I/O runs in worker threads.
    """

    def __init__(self, *, root_dir: str | None = None) -> None:
        self._requested_root = root_dir
        self._owns_root = root_dir is None
        self._root: Path | None = None
        self._processes: list[LocalProcess] = []
        self._watch_tasks: list[asyncio.Task[None]] = []
        self._ready_callbacks: list[ServerReadyCallback] = []
        self._booted = False

    @property
    def root(self) -> Path:
        if self._root is None:
            raise SandboxBootError("engine not booted")
        return self._root

    async def boot(self) -> None:
        if self._booted:
            return

        def _prepare() -> Path:
            if self._requested_root:
                root = Path(self._requested_root).expanduser()
                root.mkdir(parents=True, exist_ok=True)
            else:
                root = Path(tempfile.mkdtemp(prefix="aicoder-sandbox-"))
            if not os.access(root, os.W_OK):
                raise PermissionError(f"sandbox root is not writable: {root}")
            return root.resolve()

        try:
            self._root = await asyncio.to_thread(_prepare)
        except OSError as exc:
            raise SandboxBootError(f"failed to prepare sandbox root: {exc}") from exc
        self._booted = True
        logger.info("Local sandbox engine booted at %s", self._root)

    async def mount(self, tree: Mapping[str, str]) -> None:
        root = self.root
        items = [(_safe_path(root, p), c) for p, c in tree.items()]

        def _mount_sync() -> None:
            for full, content in items:
                full.parent.mkdir(parents=True, exist_ok=True)
                full.write_text(content, encoding="utf-8")

        await asyncio.to_thread(_mount_sync)

    async def write_file(self, path: str, content: str) -> None:
        full = _safe_path(self.root, path)
        payload = (content or "").encode("utf-8")

        def _write_sync() -> None:
            full.parent.mkdir(parents=True, exist_ok=True)
            full.write_bytes(payload)

        await asyncio.to_thread(_write_sync)

    async def read_file(self, path: str) -> str:
        full = _safe_path(self.root, path)
        if not full.exists():
            raise FileNotFoundError(path)
        if full.is_dir():
            raise IsADirectoryError(path)
        data = await asyncio.to_thread(full.read_bytes)
        return data.decode("utf-8", errors="replace")

    async def mkdir(self, path: str, *, recursive: bool = True) -> None:
        full = _safe_path(self.root, path)
        await asyncio.to_thread(full.mkdir, parents=recursive, exist_ok=recursive)

    async def rm(self, path: str, *, recursive: bool = False) -> None:
        full = _safe_path(self.root, path)
        if full == self.root:
            raise ValueError("refusing to delete root")
        if not full.exists():
            raise FileNotFoundError(path)

        def _rm_sync() -> None:
            if full.is_dir():
                if recursive:
                    shutil.rmtree(full)
                else:
                    full.rmdir()
            else:
                full.unlink()

        await asyncio.to_thread(_rm_sync)

    def watch(self, path: str, callback: WatchCallback) -> Unsubscribe:
        root = self.root
        base = root if (path or "/").strip() in ("", "/") else _safe_path(root, path)
        interval = _watch_poll_s()

        async def _poll() -> None:
            previous = await asyncio.to_thread(_walk_manifest, root, base)
            while True:
                await asyncio.sleep(interval)
                current = await asyncio.to_thread(_walk_manifest, root, base)
                for p, mtime in current.items():
                    if previous.get(p) != mtime:
                        callback("change", p)
                for p in previous.keys() - current.keys():
                    callback("rename", p)
                previous = current

        task = asyncio.create_task(_poll())
        self._watch_tasks.append(task)

        def _unsubscribe() -> None:
            task.cancel()
            with contextlib.suppress(ValueError):
                self._watch_tasks.remove(task)

        return _unsubscribe

    def on_server_ready(self, callback: ServerReadyCallback) -> Unsubscribe:
        self._ready_callbacks.append(callback)

        def _unsubscribe() -> None:
            with contextlib.suppress(ValueError):
                self._ready_callbacks.remove(callback)

        return _unsubscribe

    def _emit_server_ready(self, port: int, url: str) -> None:
        for cb in list(self._ready_callbacks):
            try:
                cb(port, url)
            except Exception:
                logger.exception("server-ready callback failed")

    async def spawn(self, command: str, args: list[str]) -> LocalProcess:
        root = self.root
        executable = shutil.which(command) or command
        proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            cwd=str(root),
            env=os.environ.copy(),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
        )
        announced = False

        def _on_line(line: str) -> None:
            nonlocal announced
            if announced:
                return
            found = detect_server_url(line)
            if found is not None:
                announced = True
                self._emit_server_ready(*found)

        wrapped = LocalProcess(proc, on_line=_on_line)
        self._processes.append(wrapped)
        logger.info("Spawned %s %s (pid=%s)", command, " ".join(args), proc.pid)
        return wrapped

    async def teardown(self) -> None:
        for task in list(self._watch_tasks):
            task.cancel()
        self._watch_tasks.clear()
        for proc in list(self._processes):
            await proc.kill()
        self._processes.clear()
        self._ready_callbacks.clear()
        if self._owns_root and self._root is not None:
            await asyncio.to_thread(shutil.rmtree, self._root, True)
        self._booted = False
        self._root = None
