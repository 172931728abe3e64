from __future__ import annotations

import threading

import pytest

from mediavault.errors import JobCancelled
from mediavault.services.rate_limit import HostRateLimiter, origin_of


def test_origin_ignores_default_ports_and_case():
    assert origin_of("HTTPS://Gofile.IO:443/d/abc") == "https://gofile.io"
    assert origin_of("http://example.com:8080/x") == "http://example.com:8080"
    assert origin_of("http://example.com:80/") == "http://example.com"


def test_one_fetch_in_flight_and_spacing_between_starts():
    now = [0.0]
    limiter = HostRateLimiter(default_spacing=1.0, monotonic=lambda: now[0])

    assert limiter.try_acquire("https://gofile.io/d/a")
    assert not limiter.try_acquire("https://gofile.io/d/b")
    assert limiter.try_acquire("https://pixeldrain.com/u/a")

    limiter.release("https://gofile.io/d/a")
    assert not limiter.try_acquire("https://gofile.io/d/b")
    assert limiter.ready_in("https://gofile.io/d/b") == pytest.approx(1.0)

    now[0] = 1.0
    assert limiter.try_acquire("https://gofile.io/d/b")


def test_release_cooldown_pushes_the_next_token_out():
    now = [0.0]
    limiter = HostRateLimiter(default_spacing=0.0, monotonic=lambda: now[0])
    assert limiter.try_acquire("https://gofile.io/d/a")
    limiter.release("https://gofile.io/d/a", cooldown=30.0)

    now[0] = 10.0
    assert limiter.ready_in("https://gofile.io/d/a") == pytest.approx(20.0)
    assert not limiter.try_acquire("https://gofile.io/d/a")
    now[0] = 30.0
    assert limiter.try_acquire("https://gofile.io/d/a")


def test_overrides_apply_by_host_or_origin():
    limiter = HostRateLimiter(
        default_spacing=0.5,
        overrides={"gofile.io": 2.0, "https://pixeldrain.com": 3.0},
    )
    assert limiter.spacing_for("https://gofile.io") == 2.0
    assert limiter.spacing_for("https://pixeldrain.com") == 3.0
    assert limiter.spacing_for("https://mega.nz") == 0.5


def test_acquire_gives_up_on_cancel_and_hold_raises():
    limiter = HostRateLimiter(default_spacing=0.0)
    assert limiter.try_acquire("https://gofile.io/d/a")

    cancel = threading.Event()
    cancel.set()
    assert not limiter.acquire("https://gofile.io/d/b", cancel=cancel)
    with pytest.raises(JobCancelled):
        with limiter.hold("https://gofile.io/d/b", cancel=cancel):
            pass


def test_acquire_times_out_while_slot_is_busy():
    limiter = HostRateLimiter(default_spacing=0.0)
    assert limiter.try_acquire("https://gofile.io/d/a")
    assert not limiter.acquire("https://gofile.io/d/b", timeout=0.05)


def test_waiter_proceeds_after_release():
    limiter = HostRateLimiter(default_spacing=0.0)
    assert limiter.try_acquire("https://gofile.io/d/a")
    acquired = []

    def _wait() -> None:
        acquired.append(limiter.acquire("https://gofile.io/d/b", timeout=2.0))

    waiter = threading.Thread(target=_wait)
    waiter.start()
    limiter.release("https://gofile.io/d/a")
    waiter.join(timeout=3.0)
    assert acquired == [True]
