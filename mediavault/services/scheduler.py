"""Persistent job scheduler: tick loop, leases, typed workers and retry backoff."""

from __future__ import annotations

import logging
import random
import threading
import time
import traceback
import uuid
from concurrent.futures import Future, wait
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

from apscheduler.triggers.cron import CronTrigger

from mediavault.config import SchedulerConfig
from mediavault.db.store import (
    JOB_KINDS,
    SCHEDULE_KINDS,
    ScheduledJob,
    Store,
    from_iso,
    utc_now,
)
from mediavault.errors import JobCancelled, PermanentError, WorkerError
from mediavault.metrics import MetricsRegistry
from mediavault.services.activity import ActivityLedger
from mediavault.services.hub import BroadcastHub

LOGGER = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
BACKOFF_JITTER = 0.2
TARGET_KINDS = ("thread", "forum", "stale")


class ScheduleError(ValueError):
    """A job definition that cannot be scheduled."""


@dataclass(slots=True)
class JobContext:
    """What a worker receives besides the job row itself."""

    job: ScheduledJob
    execution_id: int
    cancel: threading.Event
    store: Store
    ledger: ActivityLedger | None = None
    hub: BroadcastHub | None = None
    beats: int = 0

    @property
    def cancelled(self) -> bool:
        return self.cancel.is_set()

    def heartbeat(self) -> None:
        """Mark the worker as alive; the lease is only renewed after a beat."""

        self.beats += 1

    def check_cancelled(self) -> None:
        self.heartbeat()
        if self.cancel.is_set():
            raise JobCancelled(f"job {self.job.id} cancelled")


WorkerFn = Callable[[JobContext, ScheduledJob], Optional[Dict[str, Any]]]


@dataclass(slots=True)
class _Run:
    ctx: JobContext
    token: str
    started_at: datetime
    deadline: datetime | None
    renewed_at: datetime
    future: Future = field(default_factory=Future)
    beats_seen: int = 0
    cancel_reason: str | None = None
    cancelled_at: datetime | None = None
    finishing: bool = False
    abandoned: bool = False


def cron_trigger(expression: str) -> CronTrigger:
    try:
        return CronTrigger.from_crontab(str(expression).strip(), timezone=timezone.utc)
    except ValueError as exc:
        raise ScheduleError(f"invalid cron expression {expression!r}: {exc}") from exc


def _interval(config: Mapping[str, Any]) -> timedelta:
    raw = config.get("interval_minutes")
    try:
        minutes = float(raw)
    except (TypeError, ValueError) as exc:
        raise ScheduleError("interval schedules need a numeric interval_minutes") from exc
    if minutes <= 0:
        raise ScheduleError("interval_minutes must be positive")
    return timedelta(minutes=minutes)


def _run_at(config: Mapping[str, Any], now: datetime) -> datetime:
    raw = config.get("run_at")
    if raw in (None, ""):
        return now
    try:
        value = from_iso(str(raw))
    except ValueError as exc:
        raise ScheduleError(f"run_at is not an ISO-8601 timestamp: {raw!r}") from exc
    if value is None:
        raise ScheduleError(f"run_at is not an ISO-8601 timestamp: {raw!r}")
    return value


def validate_schedule(schedule_kind: str, config: Mapping[str, Any] | None) -> Dict[str, Any]:
    """Check ``config`` for ``schedule_kind`` and return a normalized copy."""

    if schedule_kind not in SCHEDULE_KINDS:
        raise ScheduleError(f"schedule_type must be one of {', '.join(SCHEDULE_KINDS)}")
    normalized = dict(config or {})
    if schedule_kind == "interval":
        _interval(normalized)
    elif schedule_kind == "cron":
        if not normalized.get("cron"):
            raise ScheduleError("cron schedules need a cron expression")
        cron_trigger(normalized["cron"])
    else:
        _run_at(normalized, utc_now())
    for key in ("max_retries", "timeout_minutes"):
        if key in normalized and normalized[key] is not None:
            try:
                value = float(normalized[key])
            except (TypeError, ValueError) as exc:
                raise ScheduleError(f"{key} must be a number") from exc
            if value < 0:
                raise ScheduleError(f"{key} must not be negative")
    return normalized


def first_run(schedule_kind: str, config: Mapping[str, Any], now: datetime) -> datetime:
    if schedule_kind == "interval":
        return now + _interval(config)
    if schedule_kind == "cron":
        return cron_trigger(config["cron"]).get_next_fire_time(None, now)
    return _run_at(config, now)


def next_after_success(
    schedule_kind: str, config: Mapping[str, Any], *, started_at: datetime, now: datetime
) -> datetime | None:
    if schedule_kind == "interval":
        return max(now, started_at + _interval(config))
    if schedule_kind == "cron":
        # +1us so a run that started exactly on a fire time is not re-fired
        return cron_trigger(config["cron"]).get_next_fire_time(
            None, started_at + timedelta(microseconds=1)
        )
    return None


class JobScheduler:
    """Claims due jobs from the store and runs at most ``max_concurrent_jobs`` of them at once."""

    def __init__(
        self,
        store: Store,
        registry: Mapping[str, WorkerFn],
        *,
        ledger: ActivityLedger | None = None,
        hub: BroadcastHub | None = None,
        config: SchedulerConfig | None = None,
        metrics: MetricsRegistry | None = None,
        clock: Callable[[], datetime] = utc_now,
        jitter: Callable[[float, float], float] = random.uniform,
    ) -> None:
        self.store = store
        self.registry: Dict[str, WorkerFn] = dict(registry)
        self.ledger = ledger
        self.hub = hub
        self.config = config or SchedulerConfig()
        self.metrics = metrics
        self._clock = clock
        self._jitter = jitter
        self._lock = threading.RLock()
        self._running: Dict[int, _Run] = {}
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="job-scheduler", daemon=True)
        self._thread.start()
        LOGGER.info(
            "scheduler started (tick %.1fs, lease %ds, %d workers)",
            self.config.tick_interval,
            self.config.lease_seconds,
            self.config.max_concurrent_jobs,
        )

    def stop(self, grace: float | None = None) -> None:
        """Stop ticking, cancel running workers and wait up to ``grace`` seconds.

        Workers still running after ``grace`` are abandoned: their execution is
        recorded as failed and the job is rescheduled like any other failure.
        """

        grace = self.config.shutdown_grace_seconds if grace is None else grace
        self._stop.set()
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=max(grace, self.config.tick_interval) + 1.0)
            self._thread = None
        now = self._clock()
        with self._lock:
            runs = list(self._running.values())
        for run in runs:
            self._cancel(run, "scheduler stopping", now)
        if not self.wait_idle(grace):
            with self._lock:
                stuck = list(self._running.values())
            LOGGER.warning("%d job(s) still running after %.1fs grace; abandoning", len(stuck), grace)
            for run in stuck:
                self._abandon(run, self._clock())
        LOGGER.info("scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def wake(self) -> None:
        self._wake.set()

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no job is executing; ``False`` if ``timeout`` elapsed first."""

        with self._lock:
            futures = [run.future for run in self._running.values()]
        if not futures:
            return True
        _, not_done = wait(futures, timeout=timeout)
        return not not_done

    def running_job_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._running)

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.tick()
            except Exception:  # noqa: BLE001 - the tick loop must keep running
                LOGGER.exception("scheduler tick failed")
            self._wake.wait(self.config.tick_interval)
            self._wake.clear()

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    def tick(self) -> List[int]:
        """Renew leases, then claim and dispatch due jobs. Returns claimed ids."""

        now = self._clock()
        self._heartbeat(now)
        with self._lock:
            free = max(0, self.config.max_concurrent_jobs - len(self._running))
        if free == 0:
            return []
        claimed: List[int] = []
        for job in self.store.due_jobs(now, min(self.config.batch_size, free)):
            with self._lock:
                if job.id in self._running:
                    continue
            token = uuid.uuid4().hex
            lease_until = now + timedelta(seconds=self.config.lease_seconds)
            if not self.store.claim_job(job.id, token, now=now, lease_until=lease_until):
                LOGGER.debug("job %s claimed elsewhere; skipping", job.id)
                continue
            if job.claim_token:
                LOGGER.warning("job %s lease expired (token %s); re-claiming", job.id, job.claim_token)
            execution_id = self.store.open_execution(job.id, token, now)
            self._dispatch(job, token, execution_id, now)
            claimed.append(job.id)
        return claimed

    def _dispatch(self, job: ScheduledJob, token: str, execution_id: int, started_at: datetime) -> None:
        ctx = JobContext(
            job=job,
            execution_id=execution_id,
            cancel=threading.Event(),
            store=self.store,
            ledger=self.ledger,
            hub=self.hub,
        )
        timeout_minutes = job.schedule_config.get("timeout_minutes")
        deadline = None
        if timeout_minutes:
            deadline = started_at + timedelta(minutes=float(timeout_minutes))
        run = _Run(ctx=ctx, token=token, started_at=started_at, deadline=deadline, renewed_at=started_at)
        with self._lock:
            self._running[job.id] = run
        # one thread per run: an abandoned worker must not hold a slot
        worker = threading.Thread(target=self._execute, args=(run,), name=f"job-{job.id}", daemon=True)
        worker.start()

    def _heartbeat(self, now: datetime) -> None:
        renew_every = timedelta(seconds=max(1.0, self.config.lease_seconds / 3))
        lease = timedelta(seconds=self.config.lease_seconds)
        grace = timedelta(seconds=self.config.shutdown_grace_seconds)
        with self._lock:
            runs = list(self._running.values())
        for run in runs:
            if run.ctx.cancel.is_set():
                if run.cancelled_at is None:
                    run.cancelled_at = now
                elif now - run.cancelled_at >= grace:
                    self._abandon(run, now)
                continue
            if run.deadline is not None and now >= run.deadline:
                self._cancel(run, "timed out", now)
                continue
            if now - run.renewed_at < renew_every:
                continue
            if run.ctx.beats == run.beats_seen:
                # no sign of life since the last renewal: let the lease run out
                if now >= run.renewed_at + lease:
                    self._cancel(run, "lease expired", now)
                continue
            run.beats_seen = run.ctx.beats
            if self.store.renew_claim(run.ctx.job.id, run.token, now + lease):
                run.renewed_at = now
            else:
                self._cancel(run, "lease lost", now)

    def _cancel(self, run: _Run, reason: str, now: datetime) -> None:
        if run.ctx.cancel.is_set():
            return
        run.cancel_reason = reason
        run.cancelled_at = now
        run.ctx.cancel.set()
        LOGGER.warning(
            "job %s cancelled: %s",
            run.ctx.job.id,
            reason,
            extra={"event": "job.cancelled", "job_id": run.ctx.job.id},
        )

    def _abandon(self, run: _Run, now: datetime) -> None:
        """Give up on a worker that ignored cancellation and free its slot."""

        with self._lock:
            if run.finishing or self._running.get(run.ctx.job.id) is not run:
                return
            self._running.pop(run.ctx.job.id)
            run.abandoned = True
        LOGGER.error(
            "job %s worker did not stop after cancel (%s); abandoning it",
            run.ctx.job.id,
            run.cancel_reason,
            extra={"event": "job.abandoned", "job_id": run.ctx.job.id},
        )
        error = f"cancelled: {run.cancel_reason or 'cancelled'} (worker did not stop in time)"
        duration_ms = (now - run.started_at).total_seconds() * 1000
        try:
            self._complete(run, ok=False, stats={}, error=error, duration_ms=duration_ms)
        finally:
            run.future.set_result(None)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------
    def _execute(self, run: _Run) -> None:
        job = run.ctx.job
        started = time.perf_counter()
        stats: Dict[str, Any] = {}
        error: str | None = None
        ok = False
        LOGGER.info("job %s (%s) started", job.id, job.kind, extra={"event": "job.started", "job_id": job.id})
        self._publish("started", job, {"execution_id": run.ctx.execution_id})
        try:
            worker = self.registry.get(job.kind)
            if worker is None:
                raise PermanentError(f"no worker registered for job kind {job.kind!r}")
            stats = dict(worker(run.ctx, job) or {})
            if run.ctx.cancel.is_set() and run.cancel_reason:
                raise JobCancelled(run.cancel_reason)
            ok = True
        except JobCancelled as exc:
            error = f"cancelled: {run.cancel_reason or exc}"
        except WorkerError as exc:
            kind = "transient" if exc.retryable else "permanent"
            error = f"{kind}: {exc}"
        except Exception:  # noqa: BLE001 - worker crashes become permanent failures
            error = traceback.format_exc()
            LOGGER.exception("job %s (%s) crashed", job.id, job.kind)
        with self._lock:
            if run.abandoned:
                LOGGER.info("abandoned job %s worker returned; result dropped", job.id)
                return
            run.finishing = True
        try:
            self._complete(run, ok=ok, stats=stats, error=error, duration_ms=(time.perf_counter() - started) * 1000)
        finally:
            with self._lock:
                if self._running.get(job.id) is run:
                    self._running.pop(job.id)
            if not run.future.done():
                run.future.set_result(None)

    def _complete(
        self,
        run: _Run,
        *,
        ok: bool,
        stats: Dict[str, Any],
        error: str | None,
        duration_ms: float,
    ) -> None:
        job = run.ctx.job
        now = self._clock()
        self.store.close_execution(
            run.ctx.execution_id,
            status="ok" if ok else "failed",
            finished_at=now,
            duration_ms=int(duration_ms),
            error=error,
            stats=stats,
        )
        current = self.store.get_job(job.id)
        if current is None:
            LOGGER.info("job %s was deleted while running", job.id)
            return
        next_run_at, enabled, failures = self._advance(current, ok=ok, started_at=run.started_at, now=now)
        if not self.store.finish_job(
            job.id,
            run.token,
            ok=ok,
            last_run_at=run.started_at,
            next_run_at=next_run_at,
            enabled=enabled,
            consecutive_failures=failures,
            error=None if ok else (error or "failed")[-4000:],
        ):
            LOGGER.warning("job %s finished after losing its lease; result not applied", job.id)
        if self.metrics:
            self.metrics.record_job(ok, job.kind)
        payload = {
            "execution_id": run.ctx.execution_id,
            "duration_ms": int(duration_ms),
            "next_run_at": next_run_at.isoformat() if next_run_at else None,
            "stats": stats,
        }
        if ok:
            LOGGER.info(
                "job %s (%s) finished in %dms",
                job.id,
                job.kind,
                duration_ms,
                extra={"event": "job.completed", "job_id": job.id},
            )
            self._publish("completed", job, payload)
        else:
            summary = (error or "failed").strip().splitlines()[-1]
            LOGGER.warning(
                "job %s (%s) failed: %s",
                job.id,
                job.kind,
                summary,
                extra={"event": "job.failed", "job_id": job.id},
            )
            self._publish("failed", job, {**payload, "error": error, "consecutive_failures": failures})

    def _advance(
        self, job: ScheduledJob, *, ok: bool, started_at: datetime, now: datetime
    ) -> tuple[datetime | None, bool, int]:
        """Return ``(next_run_at, enabled, consecutive_failures)`` after a run."""

        config = job.schedule_config
        if ok:
            if job.schedule_kind == "once":
                return None, False, 0
            try:
                return next_after_success(job.schedule_kind, config, started_at=started_at, now=now), job.enabled, 0
            except ScheduleError as exc:
                LOGGER.error("job %s has an unusable schedule; disabling (%s)", job.id, exc)
                return None, False, 0

        failures = job.consecutive_failures + 1
        if job.schedule_kind == "once":
            max_retries = int(config.get("max_retries", DEFAULT_MAX_RETRIES) or 0)
            if failures > max_retries:
                LOGGER.info("one-shot job %s gave up after %d failures", job.id, failures)
                return None, False, failures
        return now + self.backoff(failures), job.enabled, failures

    def backoff(self, failures: int) -> timedelta:
        base = self.config.backoff_base_seconds
        delay = min(base * (2 ** max(0, failures - 1)), self.config.backoff_cap_seconds)
        delay *= 1 + self._jitter(-BACKOFF_JITTER, BACKOFF_JITTER)
        return timedelta(seconds=max(1.0, delay))

    # ------------------------------------------------------------------
    # Job management
    # ------------------------------------------------------------------
    def create_job(
        self,
        *,
        kind: str,
        schedule_kind: str,
        schedule_config: Mapping[str, Any] | None = None,
        target_kind: str | None = None,
        target_id: int | None = None,
        enabled: bool = True,
        name: str = "",
    ) -> ScheduledJob:
        self._validate_kind(kind, target_kind)
        config = validate_schedule(schedule_kind, schedule_config)
        job = self.store.create_job(
            kind=kind,
            schedule_kind=schedule_kind,
            schedule_config=config,
            next_run_at=first_run(schedule_kind, config, self._clock()),
            target_kind=target_kind,
            target_id=target_id,
            enabled=enabled,
            name=name or f"{kind} ({schedule_kind})",
        )
        LOGGER.info("created job %s: %s %s next=%s", job.id, kind, schedule_kind, job.next_run_at)
        self.wake()
        return job

    def update_job(self, job_id: int, changes: Mapping[str, Any]) -> ScheduledJob | None:
        current = self.store.get_job(job_id)
        if current is None:
            return None
        updates = {key: value for key, value in changes.items() if value is not None or key == "target_id"}
        kind = updates.get("kind", current.kind)
        target_kind = updates.get("target_kind", current.target_kind)
        self._validate_kind(kind, target_kind)
        schedule_kind = updates.get("schedule_kind", current.schedule_kind)
        if "schedule_kind" in updates or "schedule_config" in updates:
            config = validate_schedule(schedule_kind, updates.get("schedule_config", current.schedule_config))
            updates["schedule_config"] = config
            updates["next_run_at"] = first_run(schedule_kind, config, self._clock())
        job = self.store.update_job(job_id, updates)
        self.wake()
        return job

    def delete_job(self, job_id: int) -> bool:
        with self._lock:
            run = self._running.get(job_id)
        if run is not None:
            run.cancel_reason = "job deleted"
            run.ctx.cancel.set()
        return self.store.delete_job(job_id)

    def toggle_job(self, job_id: int) -> ScheduledJob | None:
        job = self.store.get_job(job_id)
        if job is None:
            return None
        changes: Dict[str, Any] = {"enabled": not job.enabled}
        if not job.enabled and (job.next_run_at is None or job.schedule_kind != "once"):
            changes["next_run_at"] = first_run(job.schedule_kind, job.schedule_config, self._clock())
        updated = self.store.update_job(job_id, changes)
        self.wake()
        return updated

    def run_now(self, job_id: int) -> ScheduledJob | None:
        job = self.store.update_job(job_id, {"next_run_at": self._clock(), "enabled": True})
        self.wake()
        return job

    def enqueue_once(
        self,
        kind: str,
        *,
        target_kind: str,
        target_id: int,
        schedule_config: Mapping[str, Any] | None = None,
        name: str = "",
    ) -> tuple[ScheduledJob, bool]:
        """Queue a one-shot job unless an identical one is already waiting."""

        self._validate_kind(kind, target_kind)
        job, created = self.store.create_job_unless_pending(
            kind=kind,
            target_kind=target_kind,
            target_id=target_id,
            schedule_config=validate_schedule("once", schedule_config),
            next_run_at=self._clock(),
            name=name or f"{kind} {target_kind}:{target_id}",
        )
        self.wake()
        return job, created

    def jobs(self) -> List[ScheduledJob]:
        return self.store.list_jobs()

    def get_job(self, job_id: int) -> ScheduledJob | None:
        return self.store.get_job(job_id)

    def history(self, job_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        return self.store.job_history(job_id, max(1, min(int(limit), 500)))

    def _validate_kind(self, kind: str, target_kind: str | None) -> None:
        if kind not in JOB_KINDS:
            raise ScheduleError(f"job_type must be one of {', '.join(JOB_KINDS)}")
        if target_kind is not None and target_kind not in TARGET_KINDS:
            raise ScheduleError(f"target_type must be one of {', '.join(TARGET_KINDS)}")

    def _publish(self, name: str, job: ScheduledJob, payload: Dict[str, Any]) -> None:
        if self.hub is None:
            return
        self.hub.publish(
            "job",
            name,
            {"job_id": job.id, "job_type": job.kind, "name": job.name, **payload},
        )


__all__ = [
    "JobContext",
    "JobScheduler",
    "ScheduleError",
    "WorkerFn",
    "first_run",
    "next_after_success",
    "validate_schedule",
]
