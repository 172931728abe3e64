from __future__ import annotations

import json
from collections import deque

from simple_websocket import ConnectionClosed

from mediavault.api.ws import handle_frame, serve_observer
from mediavault.services.hub import BroadcastHub, Observer


class FakeSocket:
    """Replays a script of client frames; callables run instead of being received."""

    def __init__(self, *script) -> None:
        self.connected = True
        self.script = deque(script)
        self.sent: list[dict] = []
        self.closed_with: tuple | None = None

    def receive(self, timeout=None):
        if not self.script:
            raise ConnectionClosed()
        item = self.script.popleft()
        if callable(item):
            item()
            return None
        return item

    def send(self, data) -> None:
        self.sent.append(json.loads(data))

    def close(self, reason=None, message=None) -> None:
        self.closed_with = (reason, message)


def test_handle_frame_subscriptions():
    observer = Observer()
    reply = json.loads(handle_frame(observer, '{"type": "subscribe", "topic": "job"}'))
    assert reply == {"type": "subscribed", "topic": "job"}
    assert observer.wants("job")
    assert not observer.wants("scrape")

    reply = json.loads(handle_frame(observer, '{"type": "unsubscribe", "topic": "job"}'))
    assert reply == {"type": "unsubscribed", "topic": "job"}
    assert not observer.wants("job")


def test_handle_frame_errors_and_ping():
    observer = Observer()
    assert json.loads(handle_frame(observer, '{"type": "subscribe", "topic": "weather"}'))["type"] == "error"
    assert json.loads(handle_frame(observer, "not json"))["type"] == "error"
    assert json.loads(handle_frame(observer, "[1, 2]"))["type"] == "error"
    assert json.loads(handle_frame(observer, '{"type": "dance"}'))["type"] == "error"
    assert json.loads(handle_frame(observer, '{"type": "ping"}'))["type"] == "pong"
    assert handle_frame(observer, '{"type": "pong"}') is None


def test_serve_observer_forwards_subscribed_events(hub):
    def _publish() -> None:
        hub.publish("scrape", "started", {"url": "https://forum.example/threads/a.1"})
        hub.publish("job", "started", {"job_id": 1})

    socket = FakeSocket(
        '{"type": "subscribe", "topic": "job"}',
        _publish,
        None,
        None,
        None,
        '{"type": "ping"}',
    )

    reason = serve_observer(socket, hub, monotonic=lambda: 0.0)

    assert reason == "client disconnected"
    assert socket.closed_with is None
    assert [frame["type"] for frame in socket.sent] == ["hello", "subscribed", "job:started", "pong"]
    assert socket.sent[0]["payload"]["topics"] == ["activity", "job", "verification", "scrape"]
    assert socket.sent[2]["payload"] == {"job_id": 1}


def test_silent_client_is_dropped_after_pong_timeout():
    hub = BroadcastHub(pong_timeout=0.0, sweep_interval=10.0)
    hub.start()
    try:
        socket = FakeSocket(*([None] * 20))
        reason = serve_observer(socket, hub, monotonic=lambda: 0.0)
    finally:
        hub.stop()
    assert reason == "pong timeout"
    assert socket.closed_with == (1000, "pong timeout")
