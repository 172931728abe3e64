"""Ranged video streaming endpoints."""

from __future__ import annotations

from flask import Blueprint, request

from mediavault.api.utils import reject_traversal, service
from mediavault.db.store import Store
from mediavault.errors import InvalidArgument, NotFound
from mediavault.services.streaming import resolve_library_path, stream_file

bp = Blueprint("stream_api", __name__, url_prefix="/api/v1")


@bp.get("/libraries/<int:library_id>/stream")
def stream_from_library(library_id: int):
    relative = request.args.get("path") or ""
    reject_traversal(relative)
    if not relative:
        raise InvalidArgument("Missing path parameter")
    store: Store = service("STORE")
    library = store.get_library(library_id)
    if library is None:
        raise NotFound(f"library {library_id} not found")
    target = resolve_library_path(library["path"], relative)
    return stream_file(target, request.headers.get("Range"))


@bp.get("/videos/<int:video_id>/stream")
def stream_video(video_id: int):
    store: Store = service("STORE")
    video = store.get_video(video_id)
    if video is None:
        raise NotFound(f"video {video_id} not found")
    target = resolve_library_path(video["library_path"], video["file_path"])
    return stream_file(target, request.headers.get("Range"))


__all__ = ["bp"]
