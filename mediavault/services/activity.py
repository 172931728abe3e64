"""Uniform progress records for every long-running operation."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Mapping, Optional

from mediavault.db.store import Store, utc_now
from mediavault.services.hub import BroadcastHub

LOGGER = logging.getLogger(__name__)

OUTCOMES = ("completed", "failed")
_REAP_INTERVAL_SECONDS = 3600.0


@dataclass(slots=True)
class _StepState:
    current: int | None = None
    total: int | None = None
    details: Dict[str, Any] | None = None
    last_write: float = float("-inf")
    dirty: bool = False


class ActivityLedger:
    """Open, step, and close activities with write coalescing.

    ``step`` writes through to the store at most once per
    ``step_interval`` seconds per activity; in-between values are kept in
    memory and flushed by the background flusher or by ``close``.
    """

    def __init__(
        self,
        store: Store,
        hub: BroadcastHub | None = None,
        *,
        step_interval: float = 0.5,
        retention_days: int = 30,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.hub = hub
        self.step_interval = step_interval
        self.retention_days = retention_days
        self._clock = clock
        self._monotonic = monotonic
        self._lock = threading.Lock()
        self._steps: Dict[int, _StepState] = {}
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle of the background flusher and reaper
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="activity-ledger", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self.flush()

    def _run(self) -> None:
        next_reap = self._monotonic()
        while not self._stop.wait(self.step_interval):
            try:
                self.flush(only_due=True)
                if self._monotonic() >= next_reap:
                    self.clean_older_than(self.retention_days)
                    next_reap = self._monotonic() + _REAP_INTERVAL_SECONDS
            except Exception:  # noqa: BLE001 - keep the flusher alive
                LOGGER.exception("activity flusher iteration failed")

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def open(
        self,
        task_type: str,
        label: str,
        total: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> int:
        record = self.store.insert_activity(task_type, label, total, details, self._clock())
        activity_id = int(record["id"])
        with self._lock:
            self._steps[activity_id] = _StepState(current=0, total=total)
        self._publish("opened", record)
        return activity_id

    def step(
        self,
        activity_id: int,
        current: int,
        *,
        total: int | None = None,
        details: Mapping[str, Any] | None = None,
    ) -> bool:
        """Record progress; returns ``True`` when the value reached the store."""

        with self._lock:
            state = self._steps.get(activity_id)
        if state is None:
            # only track activities that are still running
            record = self.store.get_activity(activity_id)
            if record is None or record["status"] != "running":
                return False
        with self._lock:
            state = self._steps.setdefault(activity_id, _StepState())
            if current == state.current and total is None and details is None:
                return False
            state.current = int(current)
            if total is not None:
                state.total = int(total)
            if details is not None:
                state.details = dict(details)
            state.dirty = True
            now = self._monotonic()
            if now - state.last_write < self.step_interval:
                return False
            snapshot = self._take(state, now)
        return self._write(activity_id, snapshot)

    def flush(self, activity_id: int | None = None, *, only_due: bool = False) -> None:
        pending: list[tuple[int, tuple[int, int | None, Dict[str, Any] | None]]] = []
        now = self._monotonic()
        with self._lock:
            targets = [activity_id] if activity_id is not None else list(self._steps)
            for key in targets:
                state = self._steps.get(key)
                if state is None or not state.dirty:
                    continue
                if only_due and now - state.last_write < self.step_interval:
                    continue
                pending.append((key, self._take(state, now)))
        for key, snapshot in pending:
            self._write(key, snapshot)

    def close(self, activity_id: int, outcome: str, error: str | None = None) -> bool:
        if outcome not in OUTCOMES:
            raise ValueError(f"unknown outcome '{outcome}'")
        self.flush(activity_id)
        with self._lock:
            self._steps.pop(activity_id, None)
        closed = self.store.finish_activity(
            activity_id, status=outcome, error=error, now=self._clock()
        )
        if not closed:
            LOGGER.debug("activity %s already closed; ignoring %s", activity_id, outcome)
            return False
        self._publish("closed", {"id": activity_id, "status": outcome, "error": error})
        return True

    def pause(self, activity_id: int) -> bool:
        changed = self.store.set_activity_paused(activity_id, True, self._clock())
        if changed:
            self._publish("paused", {"id": activity_id})
        return changed

    def resume(self, activity_id: int) -> bool:
        changed = self.store.set_activity_paused(activity_id, False, self._clock())
        if changed:
            self._publish("resumed", {"id": activity_id})
        return changed

    def is_paused(self, activity_id: int) -> bool:
        record = self.store.get_activity(activity_id)
        return bool(record and record["status"] == "running" and record["is_paused"])

    def wait_while_paused(
        self, activity_id: int, cancel: threading.Event, poll: float = 0.5
    ) -> bool:
        """Block while the activity is paused; ``False`` if cancelled meanwhile."""

        while self.is_paused(activity_id):
            if cancel.wait(poll):
                return False
        return not cancel.is_set()

    def get(self, activity_id: int) -> Optional[Dict[str, Any]]:
        return self.store.get_activity(activity_id)

    def query(
        self,
        *,
        status: str | None = None,
        task_type: str | None = None,
        limit: int = 50,
    ) -> list[Dict[str, Any]]:
        return self.store.query_activities(status=status, task_type=task_type, limit=limit)

    def clean_older_than(self, days: int) -> int:
        cutoff = self._clock() - timedelta(days=max(0, int(days)))
        deleted = self.store.delete_finished_activities(cutoff)
        if deleted:
            LOGGER.info("removed %d finished activities older than %d days", deleted, days)
        return deleted

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @staticmethod
    def _take(state: _StepState, now: float) -> tuple[int, int | None, Dict[str, Any] | None]:
        state.dirty = False
        state.last_write = now
        snapshot = (state.current or 0, state.total, state.details)
        state.details = None
        return snapshot

    def _write(
        self, activity_id: int, snapshot: tuple[int, int | None, Dict[str, Any] | None]
    ) -> bool:
        current, total, details = snapshot
        written = self.store.update_activity_progress(
            activity_id, current=current, total=total, details=details, now=self._clock()
        )
        if not written:
            with self._lock:
                self._steps.pop(activity_id, None)
        else:
            self._publish(
                "progress", {"id": activity_id, "current": current, "total": total}
            )
        return written

    def _publish(self, name: str, payload: Mapping[str, Any]) -> None:
        if self.hub is not None:
            self.hub.publish("activity", name, dict(payload))


__all__ = ["ActivityLedger", "OUTCOMES"]
