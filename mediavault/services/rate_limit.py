"""Per-origin politeness gate shared by the scraper and the link verifier."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, Mapping
from urllib.parse import urlsplit

from mediavault.errors import JobCancelled

_DEFAULT_PORTS = {"http": 80, "https": 443}


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    scheme = (parts.scheme or "http").lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    if port and port != _DEFAULT_PORTS.get(scheme):
        return f"{scheme}://{host}:{port}"
    return f"{scheme}://{host}"


@dataclass(slots=True)
class _Slot:
    busy: bool = False
    next_allowed: float = 0.0


class HostRateLimiter:
    """Token bucket of capacity one per origin, plus a single in-flight slot.

    A fetch takes the origin's token when it starts; the next token becomes
    available ``spacing`` seconds later. ``release`` may push the next token
    further out when the origin asked us to back off.
    """

    def __init__(
        self,
        *,
        default_spacing: float = 0.5,
        overrides: Mapping[str, float] | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.default_spacing = max(0.0, float(default_spacing))
        self._overrides: Dict[str, float] = {
            origin_of(key) if "://" in key else key.lower(): float(value)
            for key, value in (overrides or {}).items()
        }
        self._monotonic = monotonic
        self._cond = threading.Condition()
        self._slots: Dict[str, _Slot] = {}

    def spacing_for(self, origin: str) -> float:
        host = urlsplit(origin).hostname or origin
        return self._overrides.get(origin, self._overrides.get(host, self.default_spacing))

    def _take_if_ready(self, origin: str, spacing: float | None, now: float) -> bool:
        slot = self._slots.setdefault(origin, _Slot())
        if slot.busy or now < slot.next_allowed:
            return False
        slot.busy = True
        gap = max(self.spacing_for(origin), spacing or 0.0)
        slot.next_allowed = now + gap
        return True

    def try_acquire(self, url: str, *, spacing: float | None = None) -> bool:
        origin = origin_of(url)
        with self._cond:
            return self._take_if_ready(origin, spacing, self._monotonic())

    def acquire(
        self,
        url: str,
        *,
        spacing: float | None = None,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> bool:
        """Wait for the origin's token; ``False`` on cancellation or timeout."""

        origin = origin_of(url)
        deadline = None if timeout is None else self._monotonic() + timeout
        with self._cond:
            while True:
                now = self._monotonic()
                if self._take_if_ready(origin, spacing, now):
                    return True
                if cancel is not None and cancel.is_set():
                    return False
                if deadline is not None and now >= deadline:
                    return False
                slot = self._slots[origin]
                wait_for = 0.25 if slot.busy else max(0.0, slot.next_allowed - now)
                if deadline is not None:
                    wait_for = min(wait_for, max(0.0, deadline - now))
                # short waits keep cancellation responsive
                self._cond.wait(min(wait_for, 0.25) or 0.01)

    def release(self, url: str, *, cooldown: float | None = None) -> None:
        origin = origin_of(url)
        with self._cond:
            slot = self._slots.setdefault(origin, _Slot())
            slot.busy = False
            if cooldown:
                slot.next_allowed = max(slot.next_allowed, self._monotonic() + cooldown)
            self._cond.notify_all()

    def ready_in(self, url: str) -> float:
        origin = origin_of(url)
        with self._cond:
            slot = self._slots.get(origin)
            if slot is None:
                return 0.0
            if slot.busy:
                return max(0.0, slot.next_allowed - self._monotonic(), 0.001)
            return max(0.0, slot.next_allowed - self._monotonic())

    @contextmanager
    def hold(
        self,
        url: str,
        *,
        spacing: float | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[None]:
        if not self.acquire(url, spacing=spacing, cancel=cancel):
            raise JobCancelled(f"cancelled while waiting for {origin_of(url)}")
        try:
            yield
        finally:
            self.release(url)


__all__ = ["HostRateLimiter", "origin_of"]
