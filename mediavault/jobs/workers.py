"""Typed workers the scheduler dispatches by job kind."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any, Dict

from mediavault.config import ActivityConfig, VerifierConfig
from mediavault.db.store import ScheduledJob, Store, utc_now
from mediavault.errors import PermanentError
from mediavault.services.activity import ActivityLedger
from mediavault.services.scheduler import JobContext, WorkerFn
from mediavault.services.scraper import ForumScraper
from mediavault.services.verifier import LinkVerifier

LOGGER = logging.getLogger(__name__)

AUDIT_RETENTION_DAYS = 90


def _int_option(job: ScheduledJob, key: str, default: int) -> int:
    raw = job.schedule_config.get(key)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise PermanentError(f"job {job.id}: {key} must be an integer, got {raw!r}") from exc
    if value < 0:
        raise PermanentError(f"job {job.id}: {key} must not be negative")
    return value


class JobWorkers:
    """Binds the long-running services to the scheduler's worker signature."""

    def __init__(
        self,
        store: Store,
        ledger: ActivityLedger,
        scraper: ForumScraper,
        verifier: LinkVerifier,
        *,
        verifier_config: VerifierConfig | None = None,
        activity_config: ActivityConfig | None = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.scraper = scraper
        self.verifier = verifier
        self.verifier_config = verifier_config or VerifierConfig()
        self.activity_config = activity_config or ActivityConfig()

    def registry(self) -> Dict[str, WorkerFn]:
        return {
            "scrape_thread": self.scrape_thread,
            "verify_links": self.verify_links,
            "cleanup_activities": self.cleanup_activities,
            "cleanup_audit": self.cleanup_audit,
        }

    def scrape_thread(self, ctx: JobContext, job: ScheduledJob) -> Dict[str, Any]:
        if job.target_kind == "forum":
            url = job.schedule_config.get("url")
            if not url:
                raise PermanentError(f"job {job.id}: forum scrape without a url")
            result = self.scraper.scrape_forum_category(str(url), cancel=ctx.cancel, heartbeat=ctx.heartbeat)
            return result.to_dict()

        url = job.schedule_config.get("url")
        if job.target_kind == "thread" and job.target_id is not None:
            thread = self.store.get_thread(int(job.target_id))
            if thread is None:
                raise PermanentError(f"thread {job.target_id} no longer exists")
            url = thread["url"]
        if not url:
            raise PermanentError(f"job {job.id}: nothing to scrape")
        return self.scraper.scrape_thread(str(url), cancel=ctx.cancel, heartbeat=ctx.heartbeat).to_dict()

    def verify_links(self, ctx: JobContext, job: ScheduledJob) -> Dict[str, Any]:
        if job.target_kind == "thread" and job.target_id is not None:
            return self.verifier.verify_thread(int(job.target_id), cancel=ctx.cancel, heartbeat=ctx.heartbeat)
        cutoff_days = _int_option(job, "cutoff_days", self.verifier_config.default_ttl_days)
        limit = _int_option(job, "limit", self.verifier_config.batch_size) or self.verifier_config.batch_size
        cutoff = utc_now() - timedelta(days=cutoff_days)
        return self.verifier.verify_stale(cutoff, limit, cancel=ctx.cancel, heartbeat=ctx.heartbeat)

    def cleanup_activities(self, ctx: JobContext, job: ScheduledJob) -> Dict[str, Any]:
        days = _int_option(job, "retention_days", self.activity_config.retention_days)
        activities = self.ledger.clean_older_than(days)
        ctx.check_cancelled()
        executions = self.store.prune_executions(utc_now() - timedelta(days=days))
        LOGGER.info("retention: removed %d activities and %d executions older than %d days", activities, executions, days)
        return {"activities_deleted": activities, "executions_deleted": executions, "retention_days": days}

    def cleanup_audit(self, ctx: JobContext, job: ScheduledJob) -> Dict[str, Any]:
        days = _int_option(job, "retention_days", AUDIT_RETENTION_DAYS)
        deleted = self.store.prune_ai_audit(utc_now() - timedelta(days=days))
        LOGGER.info("retention: removed %d AI audit rows older than %d days", deleted, days)
        return {"audit_deleted": deleted, "retention_days": days}


__all__ = ["AUDIT_RETENTION_DAYS", "JobWorkers"]
