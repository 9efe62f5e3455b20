from __future__ import annotations

from aicoder.events import (
    ChatMessage,
    EventBus,
    FileAdded,
    MessageType,
    PreviewReady,
    SessionStateChanged,
    to_message,
)


def test_subscribers_receive_only_their_event_type() -> None:
    bus = EventBus()
    added: list = []
    ready: list = []
    bus.subscribe(FileAdded, added.append)
    bus.subscribe(PreviewReady, ready.append)

    bus.publish(FileAdded(path="/src/A.tsx", content="x"))
    bus.publish(PreviewReady(url="http://localhost:5173/"))

    assert added == [FileAdded(path="/src/A.tsx", content="x")]
    assert ready == [PreviewReady(url="http://localhost:5173/")]


def test_unsubscribe_and_failing_handler() -> None:
    bus = EventBus()
    seen: list = []

    def boom(_event) -> None:
        raise RuntimeError("handler bug")

    bus.subscribe_all(boom)
    unsubscribe = bus.subscribe(FileAdded, seen.append)
    bus.publish(FileAdded(path="/a", content=""))
    unsubscribe()
    bus.publish(FileAdded(path="/b", content=""))

    assert [e.path for e in seen] == ["/a"]


def test_to_message_wire_shape() -> None:
    msg = to_message(
        SessionStateChanged(state="installing", log_line="$ npm install"),
        session_id="s-1",
    )
    out = msg.to_dict()
    assert out["type"] == MessageType.SESSION_STATE.value
    assert out["data"] == {"state": "installing", "log_line": "$ npm install"}
    assert out["session_id"] == "s-1"
    assert isinstance(out["timestamp"], int)

    chat = to_message(ChatMessage(role="assistant", content="ok")).to_dict()
    assert chat["type"] == "agent_final"
    assert chat["data"]["is_error"] is False
