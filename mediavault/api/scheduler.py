"""Scheduled job management endpoints."""

from __future__ import annotations

from flask import Blueprint

from mediavault.api.schemas import JobCreate, JobUpdate
from mediavault.api.utils import int_arg, ok, parse_body, service
from mediavault.errors import InvalidArgument, NotFound
from mediavault.services.scheduler import JobScheduler, ScheduleError

bp = Blueprint("scheduler_api", __name__, url_prefix="/api/v1/scheduler")


def _scheduler() -> JobScheduler:
    return service("SCHEDULER")


@bp.get("/jobs")
def list_jobs():
    return ok([job.to_dict() for job in _scheduler().jobs()])


@bp.post("/jobs")
def create_job():
    body = parse_body(JobCreate)
    try:
        job = _scheduler().create_job(
            kind=body.job_type,
            schedule_kind=body.schedule_type,
            schedule_config=body.schedule_config.as_dict(),
            target_kind=body.target_type,
            target_id=body.target_id,
            enabled=body.enabled,
            name=body.name,
        )
    except ScheduleError as exc:
        raise InvalidArgument(str(exc)) from exc
    return ok(job.to_dict(), message="Job created", status=201)


@bp.get("/jobs/<int:job_id>")
def get_job(job_id: int):
    job = _scheduler().get_job(job_id)
    if job is None:
        raise NotFound(f"job {job_id} not found")
    return ok(job.to_dict())


@bp.put("/jobs/<int:job_id>")
def update_job(job_id: int):
    body = parse_body(JobUpdate)
    try:
        job = _scheduler().update_job(job_id, body.changes())
    except ScheduleError as exc:
        raise InvalidArgument(str(exc)) from exc
    if job is None:
        raise NotFound(f"job {job_id} not found")
    return ok(job.to_dict(), message="Job updated")


@bp.post("/jobs/<int:job_id>/toggle")
def toggle_job(job_id: int):
    job = _scheduler().toggle_job(job_id)
    if job is None:
        raise NotFound(f"job {job_id} not found")
    return ok(job.to_dict(), message="Job enabled" if job.enabled else "Job disabled")


@bp.post("/jobs/<int:job_id>/run")
def run_job(job_id: int):
    job = _scheduler().run_now(job_id)
    if job is None:
        raise NotFound(f"job {job_id} not found")
    return ok(job.to_dict(), message="Job queued", status=202)


@bp.delete("/jobs/<int:job_id>")
def delete_job(job_id: int):
    if not _scheduler().delete_job(job_id):
        raise NotFound(f"job {job_id} not found")
    return ok(message="Job deleted")


@bp.get("/jobs/<int:job_id>/history")
def job_history(job_id: int):
    scheduler = _scheduler()
    if scheduler.get_job(job_id) is None:
        raise NotFound(f"job {job_id} not found")
    limit = int_arg("limit", 20, maximum=500)
    return ok(scheduler.history(job_id, limit))


__all__ = ["bp"]
