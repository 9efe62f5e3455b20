from __future__ import annotations

import json
import time

import pytest

pytest.importorskip("dotenv")
pytest.importorskip("fastapi")
httpx = pytest.importorskip("httpx")

from aicoder.ai.pipeline import AIPipeline
from aicoder.config import Settings
from aicoder.events import EventBus
from aicoder.orchestrator import Orchestrator
from aicoder.sandbox.manager import SandboxSessionManager
from aicoder.sandbox_files.sync import FileSync
from aicoder.templates.registry import template_spec

BUTTON = {
    "code": "export default function Button() { return <button />; }",
    "explanation": "ok",
    "filename": "Button.tsx",
}


def _handler(_request: httpx.Request) -> httpx.Response:
    frame = json.dumps({"choices": [{"delta": {"content": json.dumps(BUTTON)}}]})
    return httpx.Response(200, content=f"data: {frame}\n\ndata: [DONE]\n\n".encode())


@pytest.fixture
def orch(monkeypatch, make_engine) -> Orchestrator:
    import aicoder.runtimes.ws_server as ws_server

    settings = Settings(api_key="k", base_url="https://model.test/v1")
    bus = EventBus()
    engine = make_engine()
    o = Orchestrator(
        settings,
        manager=SandboxSessionManager(
            engine_factory=lambda: engine, template=template_spec(None)
        ),
        pipeline=AIPipeline(settings, transport=httpx.MockTransport(_handler)),
        files=FileSync(bus, debounce_s=0.01),
        bus=bus,
    )
    monkeypatch.setattr(ws_server, "_get_orchestrator", lambda: o)
    return o


def _poll(fn, timeout: float = 3.0):
    deadline = time.monotonic() + timeout
    while True:
        out = fn()
        if out or time.monotonic() > deadline:
            return out
        time.sleep(0.02)


def test_healthz_and_readyz(orch) -> None:
    from fastapi.testclient import TestClient

    import aicoder.runtimes.ws_server as ws_server

    with TestClient(ws_server.app) as client:
        assert client.get("/healthz").json() == {"status": "ok"}

        first = client.get("/readyz")
        assert first.status_code == 503
        assert first.json()["status"] == "not_ready"

        ready = _poll(lambda: client.get("/readyz").status_code == 200)
        assert ready
        body = client.get("/readyz").json()
        assert body["state"] == "ready"
        assert body["preview_url"] == "http://localhost:5173/"

        logs = client.get("/api/logs", params={"limit": 5}).json()["lines"]
        assert 0 < len(logs) <= 5
        client.portal.call(orch.close)


def test_file_endpoints(orch) -> None:
    from fastapi.testclient import TestClient

    import aicoder.runtimes.ws_server as ws_server

    with TestClient(ws_server.app) as client:
        tree = client.get("/api/files").json()["tree"]
        assert tree["path"] == "/"
        assert "src" in [c["name"] for c in tree["children"]]

        res = client.put("/api/files", json={"path": "src/Note.tsx", "content": "n"})
        assert res.status_code == 200
        assert res.json() == {"path": "/src/Note.tsx"}

        read = client.get("/api/files/read", params={"path": "/src/Note.tsx"})
        assert read.json() == {"path": "/src/Note.tsx", "content": "n"}

        denied = client.put(
            "/api/files", json={"path": "/node_modules/x.js", "content": "x"}
        )
        assert denied.status_code == 403

        missing = client.get("/api/files/read", params={"path": "/src/Nope.tsx"})
        assert missing.status_code == 404

        bad = client.get("/api/files/read", params={"path": "/src/../x"})
        assert bad.status_code == 400

        assert client.put("/api/files", json={"path": "/src/A.tsx"}).status_code == 422

        gone = client.delete("/api/files", params={"path": "/src/Note.tsx"})
        assert gone.json() == {"removed": ["/src/Note.tsx"]}
        again = client.delete("/api/files", params={"path": "/src/Note.tsx"})
        assert again.status_code == 404


def test_websocket_prompt_round_trip(orch) -> None:
    from fastapi.testclient import TestClient

    import aicoder.runtimes.ws_server as ws_server

    with TestClient(ws_server.app) as client:
        with client.websocket_connect("/ws") as ws:
            init = ws.receive_json()
            assert init["type"] == "init"
            assert init["data"]["template_id"] == "vite_react"
            assert init["data"]["tree"]["path"] == "/"

            ws.send_json({"type": "user", "data": {"text": "create a button"}})
            seen: list[dict] = []
            for _ in range(500):
                msg = ws.receive_json()
                seen.append(msg)
                if msg["type"] == "agent_final" and msg["data"]["role"] == "assistant":
                    break

            final = seen[-1]
            assert final["data"]["content"] == "ok"
            assert final["data"]["path"] == "/src/Button.tsx"
            assert any(m["type"] == "agent_partial" for m in seen)
            added = [m for m in seen if m["type"] == "file_added"]
            assert added and added[-1]["data"]["path"] == "/src/Button.tsx"

        assert orch.read_file("/src/Button.tsx") == BUTTON["code"]
        client.portal.call(orch.close)


def test_startup_fails_without_api_key(monkeypatch) -> None:
    from fastapi.testclient import TestClient

    import aicoder.runtimes.ws_server as ws_server
    from aicoder.errors import ConfigError

    monkeypatch.delenv("XAI_API_KEY", raising=False)
    monkeypatch.setattr(ws_server, "_orchestrator", None)

    with pytest.raises(ConfigError):
        with TestClient(ws_server.app):
            pass


def test_websocket_messages_carry_live_session_id(orch) -> None:
    from fastapi.testclient import TestClient

    import aicoder.runtimes.ws_server as ws_server

    with TestClient(ws_server.app) as client:
        with client.websocket_connect("/ws") as ws:
            first = [ws.receive_json() for _ in range(4)]
            session_id = orch.session.session_id
            assert session_id
            assert first[0]["type"] == "init"
            assert {m["session_id"] for m in first} == {session_id}

            assert client.post("/api/session/reset").status_code == 200
            fresh_id = orch.session.session_id
            assert fresh_id != session_id

            ws.send_json({"type": "ping", "data": {}})
            for _ in range(500):
                msg = ws.receive_json()
                if msg["type"] == "ping":
                    break
            assert msg["type"] == "ping"
            assert msg["session_id"] == fresh_id

        client.portal.call(orch.close)
