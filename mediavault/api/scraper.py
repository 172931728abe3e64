"""Forum archive endpoints: enqueue scrapes, browse threads, manage the session."""

from __future__ import annotations

import math

from flask import Blueprint, request

from mediavault.api.schemas import SessionBody, UrlBody
from mediavault.api.utils import int_arg, ok, parse_body, service
from mediavault.db.store import THREAD_FILTERS, THREAD_SORTS, Store
from mediavault.errors import InvalidArgument, NotFound
from mediavault.services.forum_parser import clean_thread_url
from mediavault.services.scheduler import JobScheduler
from mediavault.services.scraper import ForumScraper

bp = Blueprint("scraper_api", __name__, url_prefix="/api/v1/scraper")


def _store() -> Store:
    return service("STORE")


def _scheduler() -> JobScheduler:
    return service("SCHEDULER")


def _enqueue_scrape(thread_id: int) -> dict:
    job, created = _scheduler().enqueue_once(
        "scrape_thread", target_kind="thread", target_id=thread_id
    )
    return {"thread_id": thread_id, "job_id": job.id, "queued": created}


@bp.post("/threads")
def add_thread():
    """Register a thread URL and queue a one-shot scrape; repeat calls share the job."""

    body = parse_body(UrlBody)
    thread, _created = _store().ensure_thread(clean_thread_url(body.url))
    payload = _enqueue_scrape(thread["id"])
    payload["url"] = thread["url"]
    return ok(payload, message="Scrape queued", status=202)


@bp.get("/threads")
def list_threads():
    page = int_arg("page", 1)
    limit = int_arg("limit", 20, maximum=200)
    sort = request.args.get("sort") or "date_desc"
    filter_name = request.args.get("filter") or None
    provider = (request.args.get("provider") or "").strip() or None
    if sort not in THREAD_SORTS:
        raise InvalidArgument(f"sort must be one of {', '.join(THREAD_SORTS)}")
    if filter_name and filter_name not in THREAD_FILTERS:
        raise InvalidArgument(f"filter must be one of {', '.join(THREAD_FILTERS)}")
    items, total = _store().list_threads(
        page=page, limit=limit, sort=sort, provider=provider, filter_name=filter_name
    )
    return ok(
        {
            "items": items,
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": math.ceil(total / limit) if total else 0,
            },
        }
    )


@bp.get("/threads/<int:thread_id>")
def get_thread(thread_id: int):
    detail = _store().thread_detail(thread_id)
    if detail is None:
        raise NotFound(f"thread {thread_id} not found")
    return ok(detail)


@bp.post("/threads/<int:thread_id>/rescrape")
def rescrape_thread(thread_id: int):
    if _store().get_thread(thread_id) is None:
        raise NotFound(f"thread {thread_id} not found")
    return ok(_enqueue_scrape(thread_id), message="Rescrape queued", status=202)


@bp.delete("/threads/<int:thread_id>")
def delete_thread(thread_id: int):
    if not _store().delete_thread(thread_id):
        raise NotFound(f"thread {thread_id} not found")
    return ok(message="Thread deleted")


@bp.post("/forums")
def scrape_forum():
    body = parse_body(UrlBody)
    job = _scheduler().create_job(
        kind="scrape_thread",
        schedule_kind="once",
        schedule_config={"url": body.url},
        target_kind="forum",
        name=f"scrape forum {body.url}",
    )
    return ok({"job_id": job.id, "url": body.url}, message="Forum scrape queued", status=202)


@bp.get("/stats")
def stats():
    return ok(_store().scraper_stats())


@bp.get("/session")
def get_session():
    scraper: ForumScraper = service("SCRAPER")
    return ok({"configured": scraper.session_cookie() is not None})


@bp.put("/session")
def set_session():
    body = parse_body(SessionBody)
    scraper: ForumScraper = service("SCRAPER")
    scraper.set_session_cookie(body.cookie)
    return ok({"configured": True}, message="Session cookie stored")


@bp.delete("/session")
def clear_session():
    scraper: ForumScraper = service("SCRAPER")
    scraper.clear_session_cookie()
    return ok({"configured": False}, message="Session cookie cleared")


__all__ = ["bp"]
