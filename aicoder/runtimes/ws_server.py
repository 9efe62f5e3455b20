from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from typing import Any

from dotenv import load_dotenv
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from aicoder.config import Settings, _env_int, _env_str
from aicoder.events import Event, Message, MessageType, to_message
from aicoder.orchestrator import Orchestrator
from aicoder.sandbox.session import SessionState
from aicoder.sandbox_files.policy import normalize_public_path
from aicoder.templates.registry import list_templates

# Load local env after imports to keep linting (E402) happy.
load_dotenv()

app = FastAPI()
_orchestrator: Orchestrator | None = None
logger = logging.getLogger(__name__)


def _get_orchestrator() -> Orchestrator:
    global _orchestrator
    if _orchestrator is None:
        _orchestrator = Orchestrator.from_settings(Settings.from_env())
    return _orchestrator


def _ensure_started(orch: Orchestrator) -> None:
    """Kick off the (memoized) session boot without waiting for it."""
    orch.ensure_started()


def _session_id(orch: Orchestrator) -> str:
    session = orch.session
    return session.session_id if session is not None else ""


def _session_dto(orch: Orchestrator) -> dict[str, Any]:
    session = orch.session
    return {
        "session_id": session.session_id if session is not None else None,
        "state": orch.state.value if orch.state is not None else None,
        "error": str(session.error) if session is not None and session.error else None,
        "preview_url": orch.preview_url,
        "template_id": orch.template.template_id,
    }


@app.on_event("startup")
async def _startup() -> None:
    # Raises ConfigError (aborting startup) when the model API key is missing.
    _get_orchestrator()


@app.get("/")
async def root() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/healthz")
async def healthz() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/readyz")
async def readyz() -> JSONResponse:
    orch = _get_orchestrator()
    _ensure_started(orch)
    dto = _session_dto(orch)
    if orch.state == SessionState.READY:
        return JSONResponse({"status": "ready", **dto}, status_code=200)
    return JSONResponse({"status": "not_ready", **dto}, status_code=503)


@app.get("/api/templates")
async def api_templates() -> JSONResponse:
    return JSONResponse({"templates": list_templates()}, status_code=200)


@app.get("/api/session")
async def api_session() -> JSONResponse:
    orch = _get_orchestrator()
    return JSONResponse(_session_dto(orch), status_code=200)


@app.post("/api/session/reset")
async def api_session_reset() -> JSONResponse:
    orch = _get_orchestrator()
    await orch.reset()
    return JSONResponse(_session_dto(orch), status_code=200)


@app.get("/api/logs")
async def api_logs(limit: int = 200) -> JSONResponse:
    orch = _get_orchestrator()
    n = max(1, min(int(limit or 200), orch.settings.max_log_lines))
    lines = list(orch.log_tail)[-n:]
    return JSONResponse({"lines": lines}, status_code=200)


@app.get("/api/files")
async def api_files() -> JSONResponse:
    orch = _get_orchestrator()
    return JSONResponse({"tree": orch.snapshot().to_dict()}, status_code=200)


@app.get("/api/files/read")
async def api_files_read(path: str) -> JSONResponse:
    orch = _get_orchestrator()
    try:
        p = normalize_public_path(path)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    content = orch.read_file(p)
    if content is None:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse({"path": p, "content": content}, status_code=200)


class WriteFileRequest(BaseModel):
    path: str
    content: str


@app.put("/api/files")
async def api_files_write(req: WriteFileRequest) -> JSONResponse:
    orch = _get_orchestrator()
    try:
        p = orch.edit_file(req.path, req.content)
    except PermissionError:
        return JSONResponse({"error": "permission_denied"}, status_code=403)
    except IsADirectoryError:
        return JSONResponse({"error": "is_a_directory"}, status_code=409)
    except (ValueError, OSError) as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    return JSONResponse({"path": p}, status_code=200)


@app.delete("/api/files")
async def api_files_rm(path: str) -> JSONResponse:
    orch = _get_orchestrator()
    try:
        removed = orch.remove_file(path)
    except PermissionError:
        return JSONResponse({"error": "permission_denied"}, status_code=403)
    except ValueError as e:
        return JSONResponse({"error": str(e)}, status_code=400)
    if not removed:
        return JSONResponse({"error": "not_found"}, status_code=404)
    return JSONResponse({"removed": removed}, status_code=200)


async def _run_prompt(orch: Orchestrator, prompt: str) -> None:
    try:
        await orch.submit_prompt(prompt)
    except Exception:
        logger.exception("prompt handling failed")


async def _handle_ws(ws: WebSocket) -> None:
    await ws.accept()
    orch = _get_orchestrator()
    _ensure_started(orch)

    outbox: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    def _forward(event: Event) -> None:
        outbox.put_nowait(to_message(event, session_id=_session_id(orch)).to_dict())

    async def _sender() -> None:
        while True:
            await ws.send_json(await outbox.get())

    unsubscribe = orch.bus.subscribe_all(_forward)
    sender = asyncio.ensure_future(_sender())
    prompts: set[asyncio.Task[None]] = set()

    await ws.send_json(
        Message.new(
            MessageType.INIT,
            {**_session_dto(orch), "tree": orch.snapshot().to_dict()},
            session_id=_session_id(orch),
        ).to_dict()
    )

    try:
        while True:
            try:
                raw = await ws.receive_text()
            except WebSocketDisconnect:
                return

            msg: dict[str, Any]
            try:
                msg = json.loads(raw)
            except ValueError:
                continue
            if not isinstance(msg, dict):
                continue

            mtype = msg.get("type")
            data = msg.get("data") or {}

            if mtype == MessageType.USER.value:
                text = str(data.get("text") or "").strip()
                if not text:
                    outbox.put_nowait(
                        Message.new(
                            MessageType.ERROR,
                            {"error": "empty_prompt"},
                            session_id=_session_id(orch),
                        ).to_dict()
                    )
                    continue
                task = asyncio.ensure_future(_run_prompt(orch, text))
                prompts.add(task)
                task.add_done_callback(prompts.discard)
                continue

            if mtype == MessageType.CANCEL.value:
                orch.cancel()
                continue

            # Ignore unknowns (frontend can send ping)
            if mtype == MessageType.PING.value:
                outbox.put_nowait(
                    Message.new(
                        MessageType.PING, {}, session_id=_session_id(orch)
                    ).to_dict()
                )
                continue
    finally:
        unsubscribe()
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await sender


@app.websocket("/ws")
async def websocket_ws(ws: WebSocket) -> None:
    await _handle_ws(ws)


def main() -> None:
    import uvicorn

    host = _env_str("AICODER_HOST", "127.0.0.1")
    port = _env_int("AICODER_PORT", 8000)
    uvicorn.run(app, host=host, port=port)
