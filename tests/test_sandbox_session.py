from __future__ import annotations

import asyncio

import pytest

from aicoder.errors import InstallError, SandboxBootError, WriteError
from aicoder.sandbox.session import SandboxSession, SessionState
from aicoder.templates.registry import template_spec


def _session(engine) -> SandboxSession:
    return SandboxSession(engine, template_spec("vite_react"), session_id="s-1")


def test_boot_walks_states_forward_and_latches_preview(make_engine, eventually) -> None:
    engine = make_engine()
    session = _session(engine)
    states: list[str] = []
    session.on_state(lambda state, _err: states.append(state.value))
    urls: list[str] = []
    session.on_ready(urls.append)

    async def main() -> None:
        await session.boot()
        await eventually(lambda: session.is_ready)
        await session.close()

    asyncio.run(main())

    assert states == ["mounted", "installing", "starting", "ready"]
    assert session.preview_url == "http://localhost:5173/"
    assert urls == ["http://localhost:5173/"]
    assert engine.mounted == template_spec("vite_react").files
    assert engine.spawned == [
        ("npm", ["install"]),
        ("npm", ["run", "dev", "--", "--host"]),
    ]
    assert "$ npm install" in session.log_lines
    assert "added 42 packages" in session.log_lines
    assert engine.torn_down is True


def test_install_failure_enters_error_and_skips_dev_server(make_engine) -> None:
    engine = make_engine(install_rc=1)
    session = _session(engine)

    asyncio.run(session.boot())

    assert session.state == SessionState.ERROR
    assert isinstance(session.error, InstallError)
    assert session.error.exit_code == 1
    assert engine.spawned == [("npm", ["install"])]
    assert session.preview_url is None
    assert any("exited with code 1" in line for line in session.log_lines)


def test_engine_boot_failure_is_a_boot_error(make_engine) -> None:
    engine = make_engine(boot_error=RuntimeError("no runtime"))
    session = _session(engine)

    asyncio.run(session.boot())

    assert session.state == SessionState.ERROR
    assert isinstance(session.error, SandboxBootError)
    assert engine.spawned == []


def test_dev_server_exit_before_ready_fails_session(make_engine, eventually) -> None:
    engine = make_engine(auto_ready=False, dev_exit_rc=2)
    session = _session(engine)

    async def main() -> None:
        await session.boot()
        await eventually(lambda: session.failed)

    asyncio.run(main())

    assert isinstance(session.error, SandboxBootError)
    assert "before ready" in str(session.error)
    assert session.preview_url is None


def test_error_state_is_terminal(make_engine) -> None:
    engine = make_engine(install_rc=1)
    session = _session(engine)

    async def main() -> None:
        await session.boot()
        # A late server-ready report must not revive a failed session.
        engine.emit_ready(5173, "http://localhost:5173/")

    asyncio.run(main())
    assert session.state == SessionState.ERROR
    assert session.preview_url is None


def test_late_ready_subscriber_receives_latched_url(make_engine, eventually) -> None:
    engine = make_engine()
    session = _session(engine)
    late: list[str] = []

    async def main() -> None:
        await session.boot()
        await eventually(lambda: session.is_ready)
        session.on_ready(late.append)
        await session.close()

    asyncio.run(main())
    assert late == ["http://localhost:5173/"]


def test_write_file_wraps_engine_errors(make_engine) -> None:
    engine = make_engine()
    engine.fail_writes.add("/src/Broken.tsx")
    session = _session(engine)

    async def main() -> None:
        await session.write_file("src/Ok.tsx", "ok")
        with pytest.raises(WriteError) as exc_info:
            await session.write_file("/src/Broken.tsx", "nope")
        assert exc_info.value.path == "/src/Broken.tsx"

    asyncio.run(main())
    assert engine.fs["/src/Ok.tsx"] == "ok"


def test_remove_missing_file_is_not_an_error(make_engine) -> None:
    session = _session(make_engine())
    asyncio.run(session.remove_file("/src/Nope.tsx"))
