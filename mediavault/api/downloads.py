"""Download-manager dispatch and download-status bookkeeping."""

from __future__ import annotations

from flask import Blueprint

from mediavault.api.schemas import DispatchBody, MarkDownloadBody
from mediavault.api.utils import ok, parse_body, service
from mediavault.db.store import Store
from mediavault.errors import Conflict, NotFound, ServiceUnavailable
from mediavault.services.downloads import DownloadDispatcher, DownloadManagerError

bp = Blueprint("downloads_api", __name__, url_prefix="/api/v1/downloads")


def _dispatcher() -> DownloadDispatcher:
    return service("DOWNLOADS")


@bp.get("/status")
def manager_status():
    dispatcher = _dispatcher()
    try:
        version = dispatcher.version()
    except DownloadManagerError as exc:
        return ok({"available": False, "url": dispatcher.base_url, "error": str(exc)})
    return ok({"available": True, "url": dispatcher.base_url, "version": version})


@bp.post("/threads/<int:thread_id>/dispatch")
def dispatch_thread(thread_id: int):
    body = parse_body(DispatchBody)
    try:
        result = _dispatcher().dispatch_thread(thread_id, destination=body.destination)
    except LookupError as exc:
        raise NotFound(str(exc)) from exc
    except DownloadManagerError as exc:
        raise ServiceUnavailable(str(exc)) from exc
    return ok(result, message=f"Dispatched {result['dispatched']} links")


def _require_link(link_id: int) -> None:
    store: Store = service("STORE")
    if store.get_link(link_id) is None:
        raise NotFound(f"link {link_id} not found")


@bp.post("/links/<int:link_id>/mark")
def mark_link(link_id: int):
    body = parse_body(MarkDownloadBody)
    _require_link(link_id)
    if not _dispatcher().mark(link_id, body.status, path=body.path, notes=body.notes):
        raise Conflict(f"link {link_id} cannot move to '{body.status}'; reset it first")
    store: Store = service("STORE")
    return ok(store.get_link(link_id), message=f"Link marked {body.status}")


@bp.post("/links/<int:link_id>/reset")
def reset_link(link_id: int):
    _require_link(link_id)
    _dispatcher().reset(link_id)
    store: Store = service("STORE")
    return ok(store.get_link(link_id), message="Download status reset")


__all__ = ["bp"]
