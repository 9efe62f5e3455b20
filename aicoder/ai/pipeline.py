from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from collections.abc import AsyncIterator, Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Literal

import httpx

from aicoder.ai.parser import GeneratedFile, parse_response
from aicoder.errors import TransportError

if TYPE_CHECKING:
    from aicoder.config import Settings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are an expert React + TypeScript developer working inside a Vite project.\n"
    "Respond with exactly one JSON object and nothing else (no markdown, no prose) with shape:\n"
    '{"code": "<complete file contents>", "explanation": "<one or two sentences>", '
    '"filename": "<path relative to src/, e.g. Button.tsx>"}\n'
    "`code` must be the full, importable contents of a single source file. "
    "Use a default export for components. Escape the code as a JSON string."
)

_DONE = "[DONE]"
_CANCELLED = object()
_EOF = object()

EventKind = Literal["partial", "final", "error"]


@dataclass(frozen=True)
class PipelineEvent:
    kind: EventKind
    file: GeneratedFile | None = None
    error: TransportError | None = None
    text: str = ""


def build_messages(prompt: str, context: str | None = None) -> list[dict[str, str]]:
    user = prompt.strip()
    if context:
        user = f"{user}\n\nCurrent project files (JSON):\n{context}"
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": user},
    ]


def _message_content(payload: Any) -> str:
    if not isinstance(payload, dict):
        raise TransportError("model response is not a JSON object")
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices:
        raise TransportError("model response has no choices")
    first = choices[0] if isinstance(choices[0], dict) else {}
    message = first.get("message") if isinstance(first.get("message"), dict) else {}
    content = message.get("content")
    return content.strip() if isinstance(content, str) else ""


def parse_stream_line(line: str) -> tuple[str, bool]:
    """Decode one `data: ...` frame into (fragment, done)."""
    raw = (line or "").strip()
    if not raw or raw.startswith(":") or not raw.startswith("data:"):
        return "", False
    data = raw[len("data:") :].strip()
    if data == _DONE:
        return "", True
    try:
        frame = json.loads(data)
    except ValueError:
        logger.debug("Skipping undecodable stream frame: %r", data[:200])
        return "", False
    if not isinstance(frame, dict):
        return "", False
    for choice in frame.get("choices") or []:
        if not isinstance(choice, dict):
            continue
        delta = choice.get("delta")
        if isinstance(delta, dict) and isinstance(delta.get("content"), str):
            return delta["content"], False
    return "", False


async def _race(awaitable: Awaitable[Any], cancel: asyncio.Event) -> Any:
    """Await `awaitable` unless `cancel` fires first."""
    if cancel.is_set():
        if asyncio.iscoroutine(awaitable):
            awaitable.close()
        return _CANCELLED
    work = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(cancel.wait())
    try:
        done, _ = await asyncio.wait(
            {work, waiter}, return_when=asyncio.FIRST_COMPLETED
        )
    except BaseException:
        work.cancel()
        waiter.cancel()
        raise
    if work in done:
        waiter.cancel()
        try:
            return work.result()
        except StopAsyncIteration:
            return _EOF
    work.cancel()
    with contextlib.suppress(asyncio.CancelledError, StopAsyncIteration, httpx.HTTPError):
        await work
    return _CANCELLED


class AIPipeline:
    """Prompt -> model endpoint -> GeneratedFile records.

    `generate_stream` yields zero or more partial events followed by exactly
    one terminal event (final or error), unless cancelled, in which case it
    simply stops. `generate` drains it once under a bounded wait.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return f"{self._settings.base_url.rstrip('/')}/chat/completions"

    def build_request_body(
        self, prompt: str, context: str | None = None, *, stream: bool
    ) -> dict[str, Any]:
        return {
            "model": self._settings.model,
            "messages": build_messages(prompt, context),
            "temperature": self._settings.temperature,
            "max_tokens": self._settings.max_tokens,
            "stream": bool(stream),
        }

    def _headers(self, *, stream: bool) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._settings.api_key}",
            "Content-Type": "application/json",
            "Accept": "text/event-stream" if stream else "application/json",
        }

    def _client(self, *, stream: bool) -> httpx.AsyncClient:
        t = float(self._settings.request_timeout_s)
        # Streams only stall out at the transport level; the caller cancels.
        timeout = httpx.Timeout(t, read=None) if stream else httpx.Timeout(t)
        return httpx.AsyncClient(transport=self._transport, timeout=timeout)

    async def generate_stream(
        self,
        prompt: str,
        context: str | None = None,
        cancel: asyncio.Event | None = None,
        *,
        stream: bool | None = None,
    ) -> AsyncIterator[PipelineEvent]:
        use_stream = self._settings.stream if stream is None else bool(stream)
        cancel = cancel or asyncio.Event()
        body = self.build_request_body(prompt, context, stream=use_stream)
        if cancel.is_set():
            return

        async with self._client(stream=use_stream) as client:
            try:
                async with client.stream(
                    "POST",
                    self.endpoint,
                    headers=self._headers(stream=use_stream),
                    json=body,
                ) as res:
                    if res.status_code >= 400:
                        raw = await _race(res.aread(), cancel)
                        if raw is _CANCELLED:
                            return
                        detail = bytes(raw or b"").decode("utf-8", errors="replace")
                        logger.warning(
                            "Model endpoint returned %d: %s",
                            res.status_code,
                            detail[:500],
                        )
                        yield PipelineEvent(
                            kind="error",
                            error=TransportError(
                                f"model request failed ({res.status_code}): "
                                f"{detail[:500] or 'unknown error'}",
                                status_code=res.status_code,
                            ),
                        )
                        return

                    if not use_stream:
                        raw = await _race(res.aread(), cancel)
                        if raw is _CANCELLED:
                            return
                        try:
                            content = _message_content(json.loads(raw))
                        except ValueError as exc:
                            raise TransportError(
                                f"model response is not valid JSON: {exc}"
                            ) from exc
                        yield PipelineEvent(
                            kind="final", file=parse_response(content), text=content
                        )
                        return

                    buffer: list[str] = []
                    lines = res.aiter_lines()
                    while True:
                        line = await _race(lines.__anext__(), cancel)
                        if line is _CANCELLED:
                            return
                        if line is _EOF:
                            break
                        fragment, done = parse_stream_line(line)
                        if done:
                            break
                        if not fragment:
                            continue
                        buffer.append(fragment)
                        text = "".join(buffer)
                        yield PipelineEvent(
                            kind="partial", file=parse_response(text), text=text
                        )
                        if cancel.is_set():
                            return

                    text = "".join(buffer)
                    yield PipelineEvent(kind="final", file=parse_response(text), text=text)
            except TransportError as exc:
                yield PipelineEvent(kind="error", error=exc)
            except httpx.HTTPError as exc:
                logger.warning("Model request failed: %s", exc)
                yield PipelineEvent(
                    kind="error", error=TransportError(f"model request failed: {exc}")
                )

    async def generate(self, prompt: str, context: str | None = None) -> GeneratedFile:
        cancel = asyncio.Event()
        final: GeneratedFile | None = None
        timeout_s = float(self._settings.request_timeout_s)
        try:
            async with asyncio.timeout(timeout_s):
                async with contextlib.aclosing(
                    self.generate_stream(prompt, context, cancel)
                ) as events:
                    async for ev in events:
                        if ev.kind == "error" and ev.error is not None:
                            raise ev.error
                        if ev.kind == "final":
                            final = ev.file
        except TimeoutError as exc:
            cancel.set()
            raise TransportError(
                f"model request timed out after {timeout_s:g}s"
            ) from exc
        if final is None:
            raise TransportError("model returned no response")
        return final
