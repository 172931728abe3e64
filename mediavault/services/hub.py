"""Single-process pub/sub fan-out of progress events to live observers."""

from __future__ import annotations

import logging
import queue
import threading
import time
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, Iterable, Optional

from mediavault.db.store import to_iso, utc_now
from mediavault.metrics import MetricsRegistry

LOGGER = logging.getLogger(__name__)

TOPICS = ("activity", "job", "verification", "scrape")
BACKPRESSURE = "backpressure"


@dataclass(slots=True)
class Event:
    topic: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: str = field(default_factory=lambda: to_iso(utc_now()) or "")

    def to_message(self) -> Dict[str, Any]:
        return {"type": self.type, "topic": self.topic, "payload": self.payload, "ts": self.ts}


class Observer:
    """One live session: a bounded outbound queue plus a liveness deadline.

    Only the hub thread offers messages; only the session's own thread takes
    them. When the queue is full the oldest message is dropped and the next
    read yields a ``backpressure`` marker carrying the drop count.
    """

    def __init__(
        self,
        *,
        observer_id: str | None = None,
        queue_depth: int = 256,
        max_overflows: int = 3,
        pong_timeout: float = 60.0,
        topics: Iterable[str] | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.id = observer_id or uuid.uuid4().hex
        self.queue_depth = max(1, int(queue_depth))
        self.max_overflows = max(0, int(max_overflows))
        self.pong_timeout = float(pong_timeout)
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: Deque[Dict[str, Any]] = deque()
        self._topics: set[str] | None = set(topics) if topics else None
        self._dropped = 0
        self._overflows = 0
        self._deadline = clock() + self.pong_timeout
        self.closed = False
        self.close_reason: str | None = None

    def wants(self, topic: str) -> bool:
        with self._cond:
            return self._topics is None or topic in self._topics

    def subscribe(self, topic: str) -> None:
        with self._cond:
            if self._topics is None:
                self._topics = set()
            self._topics.add(topic)

    def unsubscribe(self, topic: str) -> None:
        with self._cond:
            if self._topics is None:
                self._topics = set(TOPICS)
            self._topics.discard(topic)

    def offer(self, message: Dict[str, Any]) -> bool:
        """Queue ``message``; ``False`` means the observer overflowed too often."""

        with self._cond:
            if self.closed:
                return False
            if len(self._queue) >= self.queue_depth:
                self._queue.popleft()
                self._dropped += 1
                self._overflows += 1
                if self._overflows > self.max_overflows:
                    return False
            self._queue.append(message)
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> Optional[Dict[str, Any]]:
        """Next outbound message, or ``None`` on timeout or once closed."""

        with self._cond:
            if not self._queue and not self._dropped and not self.closed:
                self._cond.wait(timeout)
            if self._dropped:
                dropped, self._dropped = self._dropped, 0
                return {
                    "type": BACKPRESSURE,
                    "topic": None,
                    "payload": {"dropped": dropped},
                    "ts": to_iso(utc_now()),
                }
            if self._queue:
                message = self._queue.popleft()
                if not self._queue:
                    self._overflows = 0
                return message
            return None

    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def touch(self) -> None:
        with self._cond:
            self._deadline = self._clock() + self.pong_timeout

    def expired(self) -> bool:
        with self._cond:
            return self._clock() > self._deadline

    def close(self, reason: str = "closed") -> None:
        with self._cond:
            if self.closed:
                return
            self.closed = True
            self.close_reason = reason
            self._queue.clear()
            self._cond.notify_all()


_STOP = object()


class BroadcastHub:
    """Fan out events to observers from one registry-owning thread.

    External code talks to the hub only through its command queue:
    :meth:`register`, :meth:`unregister` and :meth:`publish` enqueue
    commands and return immediately.
    """

    def __init__(
        self,
        *,
        queue_depth: int = 256,
        max_overflows: int = 3,
        pong_timeout: float = 60.0,
        sweep_interval: float = 1.0,
        metrics: MetricsRegistry | None = None,
    ) -> None:
        self.queue_depth = queue_depth
        self.max_overflows = max_overflows
        self.pong_timeout = pong_timeout
        self.sweep_interval = sweep_interval
        self.metrics = metrics
        self._commands: "queue.Queue[Any]" = queue.Queue()
        self._thread: threading.Thread | None = None
        self._observer_count = 0
        self._published = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="broadcast-hub", daemon=True)
        self._thread.start()
        LOGGER.info("broadcast hub started")

    def stop(self, timeout: float = 5.0) -> None:
        thread = self._thread
        if not thread:
            return
        self._commands.put(_STOP)
        thread.join(timeout=timeout)
        self._thread = None
        LOGGER.info("broadcast hub stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------
    def register(self, topics: Iterable[str] | None = None) -> Observer:
        observer = Observer(
            queue_depth=self.queue_depth,
            max_overflows=self.max_overflows,
            pong_timeout=self.pong_timeout,
            topics=topics,
        )
        self._commands.put(("register", observer))
        return observer

    def unregister(self, observer: Observer) -> None:
        self._commands.put(("unregister", observer))

    def publish(self, topic: str, name: str, payload: Dict[str, Any] | None = None) -> None:
        if topic not in TOPICS:
            raise ValueError(f"unknown topic '{topic}'")
        self._commands.put(("publish", Event(topic=topic, type=f"{topic}:{name}", payload=payload or {})))

    def stats(self) -> Dict[str, int]:
        return {
            "observers": self._observer_count,
            "published": self._published,
            "queued_commands": self._commands.qsize(),
        }

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------
    def _run(self) -> None:
        observers: Dict[str, Observer] = {}
        next_sweep = time.monotonic() + self.sweep_interval
        while True:
            timeout = max(0.0, next_sweep - time.monotonic())
            try:
                command = self._commands.get(timeout=timeout)
            except queue.Empty:
                command = None

            if command is _STOP:
                for observer in observers.values():
                    observer.close("hub stopped")
                observers.clear()
                self._observer_count = 0
                return

            if command is not None:
                action, subject = command
                if action == "register":
                    observers[subject.id] = subject
                    LOGGER.debug("observer %s registered", subject.id)
                elif action == "unregister":
                    if observers.pop(subject.id, None) is not None:
                        LOGGER.debug("observer %s unregistered", subject.id)
                    subject.close("unregistered")
                elif action == "publish":
                    self._fan_out(observers, subject)

            if time.monotonic() >= next_sweep:
                for observer_id, observer in list(observers.items()):
                    if observer.closed:
                        observers.pop(observer_id, None)
                    elif observer.expired():
                        LOGGER.info("observer %s missed its pong deadline", observer_id)
                        observer.close("pong timeout")
                        observers.pop(observer_id, None)
                next_sweep = time.monotonic() + self.sweep_interval
            self._observer_count = len(observers)

    def _fan_out(self, observers: Dict[str, Observer], event: Event) -> None:
        self._published += 1
        message = event.to_message()
        for observer_id, observer in list(observers.items()):
            if observer.closed:
                observers.pop(observer_id, None)
                continue
            if not observer.wants(event.topic):
                continue
            depth_before = observer.pending()
            if not observer.offer(message):
                LOGGER.warning("observer %s closed after repeated overflow", observer_id)
                observer.close("overflow")
                observers.pop(observer_id, None)
                if self.metrics:
                    self.metrics.record_dropped_events(depth_before)
            elif depth_before >= observer.queue_depth and self.metrics:
                self.metrics.record_dropped_events()


__all__ = ["BACKPRESSURE", "BroadcastHub", "Event", "Observer", "TOPICS"]
