from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from aicoder.sandbox.session import SandboxSession

if TYPE_CHECKING:
    from aicoder.sandbox_backends.base import SandboxEngine
    from aicoder.templates.registry import TemplateSpec

logger = logging.getLogger(__name__)


class SandboxSessionManager:
    """Owns the single sandbox session of this client process.

    `acquire()` is memoized: the first call creates the session and starts its
    boot, every other call (concurrent or later) awaits the same future. A
    failed session stays cached until `discard()` is called explicitly.

    Usage:
        manager = SandboxSessionManager(engine_factory=get_engine, template=template_spec(None))
        session = await manager.acquire()
        ...
        await manager.discard()   # next acquire() boots a fresh session
    """

    def __init__(
        self,
        *,
        engine_factory: Callable[[], SandboxEngine],
        template: TemplateSpec,
    ) -> None:
        self._engine_factory = engine_factory
        self._template = template
        self._session: SandboxSession | None = None
        self._boot: asyncio.Future[SandboxSession] | None = None
        self._created_hooks: list[Callable[[SandboxSession], None]] = []

    @property
    def current(self) -> SandboxSession | None:
        return self._session

    @property
    def template(self) -> TemplateSpec:
        return self._template

    def on_session_created(self, hook: Callable[[SandboxSession], None]) -> None:
        """Run `hook` on each new session before its boot starts."""
        self._created_hooks.append(hook)

    async def _boot_session(self, session: SandboxSession) -> SandboxSession:
        await session.boot()
        return session

    def _start(self) -> asyncio.Future[SandboxSession]:
        session = SandboxSession(self._engine_factory(), self._template)
        self._session = session
        logger.info("Booting sandbox session %s", session.session_id)
        for hook in list(self._created_hooks):
            try:
                hook(session)
            except Exception:
                logger.exception("session-created hook failed")
        return asyncio.ensure_future(self._boot_session(session))

    def ensure_started(self) -> asyncio.Future[SandboxSession]:
        """Create the session and start its boot if needed, without waiting."""
        if self._boot is None:
            self._boot = self._start()
        return self._boot

    async def acquire(self) -> SandboxSession:
        # Shielded: one cancelled acquirer must not cancel the shared boot.
        return await asyncio.shield(self.ensure_started())

    async def discard(self) -> None:
        """Tear down the current session (waiting out an in-flight boot)."""
        boot, session = self._boot, self._session
        self._boot = None
        self._session = None
        if boot is not None:
            with contextlib.suppress(Exception):
                await boot
        if session is not None:
            await session.close()
            logger.info("Discarded sandbox session %s", session.session_id)
