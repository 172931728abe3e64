from __future__ import annotations

import time

import pytest

from mediavault.services.hub import BACKPRESSURE, BroadcastHub, Observer


def _drain(observer: Observer, count: int, timeout: float = 2.0) -> list[dict]:
    messages = []
    deadline = time.monotonic() + timeout
    while len(messages) < count and time.monotonic() < deadline:
        message = observer.get(timeout=0.1)
        if message is not None:
            messages.append(message)
    return messages


def test_full_queue_drops_oldest_and_reports_backpressure():
    observer = Observer(queue_depth=2, max_overflows=5)
    for index in range(4):
        assert observer.offer({"type": "job:progress", "payload": {"n": index}})

    marker = observer.get(timeout=0)
    assert marker["type"] == BACKPRESSURE
    assert marker["payload"] == {"dropped": 2}
    remaining = [observer.get(timeout=0)["payload"]["n"] for _ in range(2)]
    assert remaining == [2, 3]
    assert observer.get(timeout=0) is None


def test_repeated_overflow_is_refused():
    observer = Observer(queue_depth=1, max_overflows=1)
    assert observer.offer({"n": 1})
    assert observer.offer({"n": 2})
    assert not observer.offer({"n": 3})


def test_liveness_deadline_moves_with_touch():
    now = [100.0]
    observer = Observer(pong_timeout=10.0, clock=lambda: now[0])
    now[0] = 105.0
    observer.touch()
    now[0] = 114.0
    assert not observer.expired()
    now[0] = 116.0
    assert observer.expired()


def test_publish_reaches_subscribed_observers_in_order(hub: BroadcastHub):
    jobs_only = hub.register(topics=["job"])
    everything = hub.register()
    for index in range(3):
        hub.publish("job", "progress", {"n": index})
    hub.publish("scrape", "started", {"url": "https://forum.example/threads/a.1"})

    job_messages = _drain(jobs_only, 3)
    assert [message["payload"]["n"] for message in job_messages] == [0, 1, 2]
    assert all(message["type"] == "job:progress" for message in job_messages)
    assert jobs_only.get(timeout=0.2) is None

    all_messages = _drain(everything, 4)
    assert [message["type"] for message in all_messages] == [
        "job:progress",
        "job:progress",
        "job:progress",
        "scrape:started",
    ]


def test_unknown_topic_is_rejected(hub: BroadcastHub):
    with pytest.raises(ValueError):
        hub.publish("billing", "created", {})


def test_slow_observer_is_closed_after_repeated_overflow():
    hub = BroadcastHub(queue_depth=1, max_overflows=1, sweep_interval=0.05)
    hub.start()
    try:
        slow = hub.register()
        for index in range(5):
            hub.publish("activity", "progress", {"n": index})
        deadline = time.monotonic() + 2.0
        while not slow.closed and time.monotonic() < deadline:
            time.sleep(0.01)
        assert slow.closed
        assert slow.close_reason == "overflow"
    finally:
        hub.stop()


def test_stop_closes_remaining_observers():
    hub = BroadcastHub(sweep_interval=0.05)
    hub.start()
    observer = hub.register()
    hub.publish("job", "started", {})
    assert observer.get(timeout=1.0)["type"] == "job:started"
    hub.stop()
    assert observer.closed
    assert observer.close_reason == "hub stopped"
    assert not hub.running
