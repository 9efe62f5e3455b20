from __future__ import annotations

from collections.abc import AsyncIterator, Callable, Mapping
from typing import Protocol

WatchCallback = Callable[[str, str], None]
ServerReadyCallback = Callable[[int, str], None]
Unsubscribe = Callable[[], None]


class SandboxProcess(Protocol):
    """A process spawned inside the sandbox.

    `output` yields raw byte chunks (stdout and stderr interleaved) until the
    process closes its pipes; `wait()` resolves to the exit code.
    """

    def output(self) -> AsyncIterator[bytes]: ...

    async def wait(self) -> int: ...

    async def kill(self) -> None: ...


class SandboxEngine(Protocol):
    """Abstract sandbox engine.

    Engines expose a filesystem rooted at "/" (public, slash-separated paths)
    and a process API. Engines must:
      - raise FileNotFoundError from read_file/rm for missing paths
      - call watch callbacks with (event, public_path), event in
        {"change", "rename"}
      - call server-ready callbacks with (port, url) when a spawned process
        starts listening
    """

    async def boot(self) -> None: ...

    async def mount(self, tree: Mapping[str, str]) -> None: ...

    async def write_file(self, path: str, content: str) -> None: ...

    async def read_file(self, path: str) -> str: ...

    async def mkdir(self, path: str, *, recursive: bool = True) -> None: ...

    async def rm(self, path: str, *, recursive: bool = False) -> None: ...

    def watch(self, path: str, callback: WatchCallback) -> Unsubscribe: ...

    async def spawn(self, command: str, args: list[str]) -> SandboxProcess: ...

    def on_server_ready(self, callback: ServerReadyCallback) -> Unsubscribe: ...

    async def teardown(self) -> None: ...
