"""Link verification endpoints."""

from __future__ import annotations

from flask import Blueprint, request

from mediavault.api.utils import int_arg, ok, service
from mediavault.db.store import Store
from mediavault.errors import NotFound
from mediavault.services.scheduler import JobScheduler
from mediavault.services.verifier import LinkVerifier

bp = Blueprint("verification_api", __name__, url_prefix="/api/v1/verification")


@bp.post("/threads/<int:thread_id>")
def verify_thread(thread_id: int):
    store: Store = service("STORE")
    if store.get_thread(thread_id) is None:
        raise NotFound(f"thread {thread_id} not found")
    scheduler: JobScheduler = service("SCHEDULER")
    job, created = scheduler.enqueue_once("verify_links", target_kind="thread", target_id=thread_id)
    return ok(
        {"thread_id": thread_id, "job_id": job.id, "queued": created},
        message="Verification queued",
        status=202,
    )


@bp.post("/stale")
def verify_stale():
    verifier: LinkVerifier = service("VERIFIER")
    limit = int_arg("limit", verifier.config.batch_size, maximum=10_000)
    cutoff_days = int_arg("cutoff_days", verifier.config.default_ttl_days, minimum=0)
    scheduler: JobScheduler = service("SCHEDULER")
    job = scheduler.create_job(
        kind="verify_links",
        schedule_kind="once",
        schedule_config={"limit": limit, "cutoff_days": cutoff_days},
        target_kind="stale",
        name=f"verify stale links ({cutoff_days}d, max {limit})",
    )
    return ok(
        {"job_id": job.id, "limit": limit, "cutoff_days": cutoff_days},
        message="Stale verification queued",
        status=202,
    )


@bp.get("/providers")
def provider_health():
    verifier: LinkVerifier = service("VERIFIER")
    provider = (request.args.get("provider") or "").strip() or None
    return ok(verifier.provider_health(provider))


@bp.get("/stats")
def stats():
    verifier: LinkVerifier = service("VERIFIER")
    return ok(verifier.stats())


@bp.get("/threads/<int:thread_id>/stats")
def thread_stats(thread_id: int):
    store: Store = service("STORE")
    if store.get_thread(thread_id) is None:
        raise NotFound(f"thread {thread_id} not found")
    return ok({"thread_id": thread_id, **store.link_stats(thread_id)})


__all__ = ["bp"]
