"""Typed publish/subscribe channel between the core and the UI collaborators.

Producers and consumers are wired through `EventBus.subscribe(EventType, fn)`;
each event class knows its wire type for the WebSocket surface.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, ClassVar, TypeVar, Union

if TYPE_CHECKING:
    from aicoder.sandbox_files.tree import FileNode

logger = logging.getLogger(__name__)


class MessageType(Enum):
    INIT = "init"
    USER = "user"
    CANCEL = "cancel"
    AGENT_PARTIAL = "agent_partial"
    AGENT_FINAL = "agent_final"
    FILE_ADDED = "file_added"
    FILE_REMOVED = "file_removed"
    FILE_TREE_CHANGED = "file_tree_changed"
    SESSION_STATE = "session_state"
    PREVIEW_READY = "preview_ready"
    WRITE_FAILED = "write_failed"
    ERROR = "error"
    PING = "ping"


@dataclass
class Message:
    id: str
    timestamp: int
    type: MessageType
    data: dict
    session_id: str

    @classmethod
    def new(
        cls,
        type: MessageType,
        data: dict,
        id: str | None = None,
        session_id: str | None = None,
    ) -> Message:
        return cls(
            type=type,
            data=data,
            id=id or str(uuid.uuid4()),
            timestamp=time.time_ns() // 1_000_000,
            session_id=session_id if session_id is not None else str(uuid.uuid4()),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type.value,
            "data": self.data,
            "timestamp": self.timestamp,
            "session_id": self.session_id,
        }


@dataclass(frozen=True)
class FileAdded:
    message_type: ClassVar[MessageType] = MessageType.FILE_ADDED
    path: str
    content: str

    def data(self) -> dict[str, Any]:
        return {"path": self.path, "content": self.content}


@dataclass(frozen=True)
class FileRemoved:
    message_type: ClassVar[MessageType] = MessageType.FILE_REMOVED
    path: str

    def data(self) -> dict[str, Any]:
        return {"path": self.path}


@dataclass(frozen=True)
class FileTreeChanged:
    message_type: ClassVar[MessageType] = MessageType.FILE_TREE_CHANGED
    snapshot: FileNode

    def data(self) -> dict[str, Any]:
        return {"snapshot": self.snapshot.to_dict()}


@dataclass(frozen=True)
class SessionStateChanged:
    message_type: ClassVar[MessageType] = MessageType.SESSION_STATE
    state: str
    log_line: str | None = None
    error: str | None = None

    def data(self) -> dict[str, Any]:
        out: dict[str, Any] = {"state": self.state}
        if self.log_line is not None:
            out["log_line"] = self.log_line
        if self.error is not None:
            out["error"] = self.error
        return out


@dataclass(frozen=True)
class PreviewReady:
    message_type: ClassVar[MessageType] = MessageType.PREVIEW_READY
    url: str

    def data(self) -> dict[str, Any]:
        return {"url": self.url}


@dataclass(frozen=True)
class WriteFailed:
    message_type: ClassVar[MessageType] = MessageType.WRITE_FAILED
    path: str
    error: str

    def data(self) -> dict[str, Any]:
        return {"path": self.path, "error": self.error}


@dataclass(frozen=True)
class AssistantPartial:
    message_type: ClassVar[MessageType] = MessageType.AGENT_PARTIAL
    text: str

    def data(self) -> dict[str, Any]:
        return {"text": self.text}


@dataclass(frozen=True)
class ChatMessage:
    message_type: ClassVar[MessageType] = MessageType.AGENT_FINAL
    role: str
    content: str
    is_error: bool = False
    path: str | None = None

    def data(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "content": self.content,
            "is_error": self.is_error,
            "path": self.path,
        }


Event = Union[
    FileAdded,
    FileRemoved,
    FileTreeChanged,
    SessionStateChanged,
    PreviewReady,
    WriteFailed,
    AssistantPartial,
    ChatMessage,
]

E = TypeVar("E")
Unsubscribe = Callable[[], None]


def to_message(event: Event, *, session_id: str | None = None) -> Message:
    return Message.new(event.message_type, event.data(), session_id=session_id)


class EventBus:
    """Synchronous in-process fan-out. Handler failures are logged, not raised."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Callable[[Any], None]]] = {}
        self._any: list[Callable[[Any], None]] = []

    def subscribe(self, event_type: type[E], handler: Callable[[E], None]) -> Unsubscribe:
        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def _unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return _unsubscribe

    def subscribe_all(self, handler: Callable[[Event], None]) -> Unsubscribe:
        self._any.append(handler)

        def _unsubscribe() -> None:
            if handler in self._any:
                self._any.remove(handler)

        return _unsubscribe

    def publish(self, event: Event) -> None:
        for handler in [*self._handlers.get(type(event), ()), *self._any]:
            try:
                handler(event)
            except Exception:
                logger.exception("event handler failed for %s", type(event).__name__)
