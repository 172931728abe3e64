"""Activity ledger endpoints."""

from __future__ import annotations

from flask import Blueprint, request

from mediavault.api.schemas import CleanBody
from mediavault.api.utils import int_arg, ok, parse_body, service
from mediavault.errors import Conflict, InvalidArgument, NotFound
from mediavault.services.activity import ActivityLedger

bp = Blueprint("activity_api", __name__, url_prefix="/api/v1/activity")

_STATUSES = ("running", "completed", "failed")


def _ledger() -> ActivityLedger:
    return service("LEDGER")


@bp.get("")
def list_activities():
    status = (request.args.get("status") or "").strip() or None
    if status and status not in _STATUSES:
        raise InvalidArgument(f"status must be one of {', '.join(_STATUSES)}")
    task_type = (request.args.get("task_type") or "").strip() or None
    limit = int_arg("limit", 50, maximum=500)
    return ok(_ledger().query(status=status, task_type=task_type, limit=limit))


@bp.get("/<int:activity_id>")
def get_activity(activity_id: int):
    record = _ledger().get(activity_id)
    if record is None:
        raise NotFound(f"activity {activity_id} not found")
    return ok(record)


def _set_paused(activity_id: int, paused: bool):
    ledger = _ledger()
    record = ledger.get(activity_id)
    if record is None:
        raise NotFound(f"activity {activity_id} not found")
    changed = ledger.pause(activity_id) if paused else ledger.resume(activity_id)
    if not changed and record["status"] != "running":
        raise Conflict(f"activity {activity_id} is {record['status']}")
    return ok(ledger.get(activity_id), message="Activity paused" if paused else "Activity resumed")


@bp.post("/<int:activity_id>/pause")
def pause_activity(activity_id: int):
    return _set_paused(activity_id, True)


@bp.post("/<int:activity_id>/resume")
def resume_activity(activity_id: int):
    return _set_paused(activity_id, False)


@bp.post("/clean")
def clean_activities():
    body = parse_body(CleanBody)
    deleted = _ledger().clean_older_than(body.days)
    return ok({"deleted": deleted, "days": body.days}, message="Old activities removed")


__all__ = ["bp"]
