"""Composition root: pipeline output -> file sync -> sandbox, plus session state.

The Orchestrator owns the event bus. UI collaborators subscribe to typed
events on `orchestrator.bus`; nothing else reaches into the session or the
file tree directly.
"""

from __future__ import annotations

import asyncio
import contextlib
import hashlib
import json
import logging
from collections import deque

from aicoder.ai.parser import GeneratedFile, is_degraded
from aicoder.ai.pipeline import AIPipeline
from aicoder.config import Settings
from aicoder.events import (
    AssistantPartial,
    ChatMessage,
    EventBus,
    PreviewReady,
    SessionStateChanged,
)
from aicoder.sandbox.manager import SandboxSessionManager
from aicoder.sandbox.session import SandboxSession, SessionState
from aicoder.sandbox_backends.factory import get_engine
from aicoder.sandbox_files.policy import normalize_public_path
from aicoder.sandbox_files.sync import FileSync
from aicoder.sandbox_files.tree import FileNode
from aicoder.templates.registry import TemplateSpec, template_spec

logger = logging.getLogger(__name__)


def fallback_filename(code: str, *, source_dir: str = "/src") -> str:
    digest = hashlib.sha256(code.encode("utf-8")).hexdigest()[:8]
    return f"{source_dir.rstrip('/')}/generated-{digest}.tsx"


def resolve_target_path(
    filename: str | None, code: str, *, source_dir: str = "/src"
) -> str:
    """Map a model-provided filename to an absolute project path.

    Missing names get a content-derived fallback. Relative names are rooted
    under `source_dir` unless they already start with it.
    """
    name = (filename or "").strip().replace("\\", "/")
    if not name:
        return fallback_filename(code, source_dir=source_dir)
    src = source_dir.strip("/")
    if name.startswith("/"):
        candidate = name
    elif src and (name == src or name.startswith(src + "/")):
        candidate = "/" + name
    else:
        candidate = f"{source_dir.rstrip('/')}/{name}"
    try:
        return normalize_public_path(candidate)
    except ValueError:
        logger.warning("Model proposed an invalid filename %r; using fallback", filename)
        return fallback_filename(code, source_dir=source_dir)


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        manager: SandboxSessionManager,
        pipeline: AIPipeline,
        files: FileSync,
        bus: EventBus,
    ) -> None:
        self.settings = settings
        self.bus = bus
        self.files = files
        self._manager = manager
        self._pipeline = pipeline
        self._cancel: asyncio.Event | None = None

        self.preview_url: str | None = None
        self.transcript: list[ChatMessage] = []
        self.log_tail: deque[str] = deque(maxlen=max(1, settings.max_log_lines))

        files.load(manager.template.files)
        manager.on_session_created(self._wire_session)

    @classmethod
    def from_settings(cls, settings: Settings) -> Orchestrator:
        bus = EventBus()
        manager = SandboxSessionManager(
            engine_factory=lambda: get_engine(root_dir=settings.sandbox_root_dir),
            template=template_spec(settings.template_id),
        )
        return cls(
            settings,
            manager=manager,
            pipeline=AIPipeline(settings),
            files=FileSync(bus, debounce_s=settings.debounce_ms / 1000.0),
            bus=bus,
        )

    @property
    def template(self) -> TemplateSpec:
        return self._manager.template

    @property
    def session(self) -> SandboxSession | None:
        return self._manager.current

    @property
    def state(self) -> SessionState | None:
        session = self._manager.current
        return session.state if session is not None else None

    # ── session ──────────────────────────────────────────────────────

    def _wire_session(self, session: SandboxSession) -> None:
        self.preview_url = None
        self.files.attach(session)

        def _on_output(line: str) -> None:
            self.log_tail.append(line)
            self.bus.publish(
                SessionStateChanged(state=session.state.value, log_line=line)
            )

        def _on_state(state: SessionState, error: Exception | None) -> None:
            self.bus.publish(
                SessionStateChanged(
                    state=state.value, error=str(error) if error is not None else None
                )
            )

        def _on_ready(url: str) -> None:
            self.preview_url = url
            self.bus.publish(PreviewReady(url=url))

        session.on_output(_on_output)
        session.on_state(_on_state)
        session.on_ready(_on_ready)

    async def start(self) -> SandboxSession:
        """Acquire (boot once) the sandbox session."""
        return await self._manager.acquire()

    def ensure_started(self) -> SandboxSession | None:
        """Kick off the (memoized) session boot and return the session at once."""
        self._manager.ensure_started()
        return self._manager.current

    async def reset(self) -> SandboxSession:
        """Discard the current session and boot a fresh one.

        The project tree survives and is resynced once the new session is ready.
        """
        self.files.detach()
        await self._manager.discard()
        self.preview_url = None
        return await self._manager.acquire()

    async def close(self) -> None:
        self.cancel()
        await self.files.close()
        await self._manager.discard()

    # ── prompts ──────────────────────────────────────────────────────

    def _chat(self, message: ChatMessage) -> ChatMessage:
        self.transcript.append(message)
        self.bus.publish(message)
        return message

    def resolve_target_path(self, filename: str | None, code: str) -> str:
        return resolve_target_path(filename, code, source_dir=self.template.source_dir)

    def project_context(self) -> str:
        """Serialize current project files for the model, capped in size."""
        excluded = self.template.context_exclude
        source_prefix = self.template.source_dir.rstrip("/") + "/"
        files = self.files.files()
        # Source files first so they survive the cap.
        ordered = sorted(
            (p for p in files if p not in excluded),
            key=lambda p: (0 if p.startswith(source_prefix) else 1, p),
        )
        budget = int(self.settings.context_max_chars)
        picked: dict[str, str] = {}
        used = 2
        for path in ordered:
            entry = len(json.dumps({path: files[path]}))
            if used + entry > budget:
                continue
            picked[path] = files[path]
            used += entry
        return json.dumps(picked, sort_keys=True) if picked else ""

    def apply_generated(self, item: GeneratedFile) -> ChatMessage:
        """Write a GeneratedFile into the project and report it in the chat."""
        path = self.resolve_target_path(item.filename, item.code)
        if is_degraded(item):
            logger.warning("Model response was not valid JSON; keeping it as %s", path)
        try:
            written = self.files.set_file(path, item.code)
        except (PermissionError, ValueError, OSError) as exc:
            logger.warning("Refused generated file %s: %s", path, exc)
            return self._chat(
                ChatMessage(
                    role="assistant",
                    content=f"Could not write {path}: {exc}",
                    is_error=True,
                    path=path,
                )
            )
        logger.info("Applied generated file %s (%d chars)", written, len(item.code))
        return self._chat(
            ChatMessage(role="assistant", content=item.explanation, path=written)
        )

    async def submit_prompt(
        self, prompt: str, *, include_context: bool = True
    ) -> ChatMessage | None:
        """Run one exchange. Returns the assistant message, or None if cancelled."""
        text = (prompt or "").strip()
        if not text:
            raise ValueError("prompt must not be empty")

        self.cancel()
        cancel = asyncio.Event()
        self._cancel = cancel
        self._chat(ChatMessage(role="user", content=text))
        context = self.project_context() if include_context else None

        final: GeneratedFile | None = None
        try:
            async with contextlib.aclosing(
                self._pipeline.generate_stream(text, context, cancel)
            ) as events:
                async for ev in events:
                    if ev.kind == "partial":
                        self.bus.publish(AssistantPartial(text=ev.text))
                    elif ev.kind == "error":
                        return self._chat(
                            ChatMessage(
                                role="assistant",
                                content=str(ev.error or "model request failed"),
                                is_error=True,
                            )
                        )
                    else:
                        final = ev.file
        finally:
            if self._cancel is cancel:
                self._cancel = None

        if final is None:
            logger.info("Prompt cancelled before a final response")
            return None
        return self.apply_generated(final)

    def cancel(self) -> bool:
        """Signal the in-flight exchange (if any) to stop streaming."""
        cancel = self._cancel
        if cancel is None or cancel.is_set():
            return False
        cancel.set()
        return True

    # ── editor ───────────────────────────────────────────────────────

    def snapshot(self) -> FileNode:
        return self.files.snapshot()

    def read_file(self, path: str) -> str | None:
        return self.files.read(path)

    def edit_file(self, path: str, content: str) -> str:
        return self.files.set_file(path, content)

    def remove_file(self, path: str) -> list[str]:
        return self.files.remove_file(path)
