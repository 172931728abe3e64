"""Live event socket bridging the broadcast hub to websocket clients."""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Callable, Dict, Protocol

from flask import current_app
from flask_sock import Sock
from simple_websocket import ConnectionClosed

from mediavault.services.hub import TOPICS, BroadcastHub, Observer

LOGGER = logging.getLogger(__name__)

sock = Sock()

RECEIVE_POLL_SECONDS = 0.05
SEND_POLL_SECONDS = 0.2
MAX_BATCH = 64


class SocketLike(Protocol):
    connected: bool

    def receive(self, timeout: float | None = None) -> Any: ...

    def send(self, data: Any) -> None: ...

    def close(self, reason: int | None = None, message: str | None = None) -> None: ...


def _frame(kind: str, **extra: Any) -> str:
    return json.dumps({"type": kind, **extra})


def handle_frame(observer: Observer, raw: Any) -> str | None:
    """Apply one client frame to ``observer``; returns a reply frame if any."""

    observer.touch()
    try:
        frame = json.loads(raw) if isinstance(raw, (str, bytes, bytearray)) else None
    except json.JSONDecodeError:
        return _frame("error", payload={"message": "frames must be JSON objects"})
    if not isinstance(frame, dict):
        return _frame("error", payload={"message": "frames must be JSON objects"})
    kind = frame.get("type")
    topic = frame.get("topic")
    if kind in ("subscribe", "unsubscribe"):
        if topic not in TOPICS:
            return _frame("error", payload={"message": f"unknown topic {topic!r}", "topics": list(TOPICS)})
        if kind == "subscribe":
            observer.subscribe(topic)
        else:
            observer.unsubscribe(topic)
        return _frame(f"{kind}d", topic=topic)
    if kind == "ping":
        return _frame("pong", ts=time.time())
    if kind == "pong":
        return None
    return _frame("error", payload={"message": f"unsupported frame type {kind!r}"})


def serve_observer(
    ws: SocketLike,
    hub: BroadcastHub,
    *,
    ping_interval: float = 30.0,
    monotonic: Callable[[], float] = time.monotonic,
) -> str:
    """Pump hub events to ``ws`` until either side goes away; returns the close reason."""

    observer = hub.register()
    reason = "client disconnected"
    last_ping = monotonic()
    ws.send(_frame("hello", payload={"observer_id": observer.id, "topics": list(TOPICS)}))
    try:
        while True:
            raw = ws.receive(timeout=RECEIVE_POLL_SECONDS)
            if raw is not None:
                reply = handle_frame(observer, raw)
                if reply is not None:
                    ws.send(reply)
            message = observer.get(timeout=SEND_POLL_SECONDS)
            sent = 0
            while message is not None:
                ws.send(json.dumps(message))
                sent += 1
                if sent >= MAX_BATCH:
                    break
                message = observer.get(timeout=0)
            if observer.closed:
                reason = observer.close_reason or "closed by hub"
                break
            now = monotonic()
            if now - last_ping >= ping_interval:
                ws.send(_frame("ping", ts=time.time()))
                last_ping = now
            if observer.expired():
                reason = "pong timeout"
                break
    except ConnectionClosed:
        reason = "client disconnected"
    finally:
        hub.unregister(observer)
    if reason != "client disconnected":
        LOGGER.info("closing observer %s: %s", observer.id, reason)
        try:
            ws.close(reason=1000, message=reason[:120])
        except ConnectionClosed:
            pass
    return reason


@sock.route("/api/v1/ws")
def events(ws):  # type: ignore[no-untyped-def]
    hub: BroadcastHub | None = current_app.config.get("HUB")
    if hub is None:
        ws.close(reason=1011, message="broadcast hub is not initialized")
        return
    settings: Dict[str, Any] = current_app.config.get("WS_SETTINGS") or {}
    serve_observer(ws, hub, ping_interval=float(settings.get("ping_interval", 30.0)))


__all__ = ["events", "handle_frame", "serve_observer", "sock"]
