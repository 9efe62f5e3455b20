import asyncio
import sys
from pathlib import Path

import pytest

# Ensure the repo root is on sys.path so tests can import the local `aicoder/` package.
ROOT = str(Path(__file__).resolve().parents[1])
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)


class FakeProcess:
    def __init__(self, lines: list[str], rc: int, *, hold: bool = False) -> None:
        self._lines = list(lines)
        self._rc = rc
        self._exit = asyncio.Event()
        if not hold:
            self._exit.set()
        self.killed = False

    async def output(self):
        for line in self._lines:
            await asyncio.sleep(0)
            yield (line + "\n").encode()

    async def wait(self) -> int:
        await self._exit.wait()
        return self._rc

    async def kill(self) -> None:
        self.killed = True
        self._rc = -9
        self._exit.set()


class FakeEngine:
    """In-memory sandbox engine recording every call."""

    def __init__(
        self,
        *,
        install_rc: int = 0,
        auto_ready: bool = True,
        dev_exit_rc: int | None = None,
        boot_error: Exception | None = None,
        url: str = "http://localhost:5173/",
    ) -> None:
        self.install_rc = install_rc
        self.auto_ready = auto_ready
        self.dev_exit_rc = dev_exit_rc
        self.boot_error = boot_error
        self.url = url

        self.boot_calls = 0
        self.torn_down = False
        self.mounted: dict[str, str] = {}
        self.fs: dict[str, str] = {}
        self.writes: list[tuple[str, str]] = []
        self.removed: list[str] = []
        self.spawned: list[tuple[str, list[str]]] = []
        self.processes: list[FakeProcess] = []
        self.fail_writes: set[str] = set()
        self._watchers: list = []
        self._ready_callbacks: list = []

    async def boot(self) -> None:
        self.boot_calls += 1
        await asyncio.sleep(0)
        if self.boot_error is not None:
            raise self.boot_error

    async def mount(self, tree) -> None:
        self.mounted = dict(tree)
        self.fs.update(tree)

    async def write_file(self, path: str, content: str) -> None:
        await asyncio.sleep(0)
        if path in self.fail_writes:
            raise OSError(f"disk full: {path}")
        self.writes.append((path, content))
        self.fs[path] = content

    async def read_file(self, path: str) -> str:
        if path in self.fs:
            return self.fs[path]
        if any(p.startswith(path.rstrip("/") + "/") for p in self.fs):
            raise IsADirectoryError(path)
        raise FileNotFoundError(path)

    async def mkdir(self, path: str, *, recursive: bool = True) -> None:
        return None

    async def rm(self, path: str, *, recursive: bool = False) -> None:
        gone = [p for p in self.fs if p == path or p.startswith(path + "/")]
        if not gone:
            raise FileNotFoundError(path)
        for p in gone:
            del self.fs[p]
        self.removed.append(path)

    def watch(self, path: str, callback):
        self._watchers.append(callback)
        return lambda: self._watchers.remove(callback) if callback in self._watchers else None

    def emit_change(self, path: str, event: str = "change") -> None:
        for cb in list(self._watchers):
            cb(event, path)

    async def spawn(self, command: str, args: list[str]) -> FakeProcess:
        self.spawned.append((command, list(args)))
        if args[:1] == ["install"]:
            proc = FakeProcess(["added 42 packages"], self.install_rc)
        else:
            hold = self.dev_exit_rc is None
            proc = FakeProcess(
                ["VITE v5.4.8  ready", f"  Local:   {self.url}"],
                self.dev_exit_rc or 0,
                hold=hold,
            )
            if self.auto_ready:
                asyncio.get_running_loop().call_soon(self.emit_ready, 5173, self.url)
        self.processes.append(proc)
        return proc

    def on_server_ready(self, callback):
        self._ready_callbacks.append(callback)
        return lambda: None

    def emit_ready(self, port: int, url: str) -> None:
        for cb in list(self._ready_callbacks):
            cb(port, url)

    async def teardown(self) -> None:
        self.torn_down = True
        for proc in self.processes:
            await proc.kill()


async def wait_until(predicate, timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def make_engine():
    return FakeEngine


@pytest.fixture
def eventually():
    return wait_until


@pytest.fixture(autouse=True)
def _model_api_key(monkeypatch: pytest.MonkeyPatch) -> None:
    # Most unit tests build Settings from env; keep a dummy key unless a test removes it.
    monkeypatch.setenv("XAI_API_KEY", "test-key")
