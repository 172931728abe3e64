"""In-memory metrics registry exposed via the API."""

from __future__ import annotations

import threading
from collections import Counter as _Tally
from collections import deque
from typing import Deque, Dict


def _percentile(ordered: list[float], fraction: float) -> float:
    """Linear interpolation between the two closest ranks."""

    if len(ordered) == 1:
        return ordered[0]
    position = fraction * (len(ordered) - 1)
    lower = int(position)
    upper = min(lower + 1, len(ordered) - 1)
    return ordered[lower] + (ordered[upper] - ordered[lower]) * (position - lower)


class Histogram:
    """Keeps the most recent ``max_samples`` observations."""

    def __init__(self, max_samples: int = 500) -> None:
        self.samples: Deque[float] = deque(maxlen=max_samples)

    def add(self, value: float) -> None:
        self.samples.append(float(value))

    def percentiles(self) -> Dict[str, float]:
        if not self.samples:
            return {"p50": 0.0, "p95": 0.0}
        ordered = sorted(self.samples)
        return {"p50": _percentile(ordered, 0.5), "p95": _percentile(ordered, 0.95)}


class MetricsRegistry:
    """Thread-safe counters for scraping, verification, jobs and the hub."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counts: _Tally[str] = _Tally()
        self._job_outcomes: Dict[str, _Tally[str]] = {}
        self.probe_latency_ms = Histogram()

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            return {
                "probe_latency_ms": self.probe_latency_ms.percentiles(),
                "links_checked": self._counts["links_checked"],
                "pages_fetched": self._counts["pages_fetched"],
                "fetch_retries": self._counts["fetch_retries"],
                "jobs_succeeded": self._counts["jobs_succeeded"],
                "jobs_failed": self._counts["jobs_failed"],
                "jobs_by_kind": {kind: dict(tally) for kind, tally in self._job_outcomes.items()},
                "events_dropped": self._counts["events_dropped"],
            }

    def record_probe(self, ms: float) -> None:
        with self._lock:
            self.probe_latency_ms.add(ms)
            self._counts["links_checked"] += 1

    def record_page_fetch(self, retries: int = 0) -> None:
        with self._lock:
            self._counts["pages_fetched"] += 1
            self._counts["fetch_retries"] += int(retries)

    def record_job(self, ok: bool, kind: str | None = None) -> None:
        outcome = "succeeded" if ok else "failed"
        with self._lock:
            self._counts[f"jobs_{outcome}"] += 1
            if kind:
                self._job_outcomes.setdefault(kind, _Tally())[outcome] += 1

    def record_dropped_events(self, count: int = 1) -> None:
        with self._lock:
            self._counts["events_dropped"] += int(count)


__all__ = ["Histogram", "MetricsRegistry"]
