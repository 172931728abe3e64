"""Minimal library and video registration so the streamer has rows to resolve."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from flask import Blueprint

from mediavault.api.schemas import LibraryCreate, VideoCreate
from mediavault.api.utils import ok, parse_body, reject_traversal, service
from mediavault.db.store import Store
from mediavault.errors import Conflict, InvalidArgument, NotFound
from mediavault.services.streaming import resolve_library_path

bp = Blueprint("libraries_api", __name__, url_prefix="/api/v1/libraries")


@bp.get("")
def list_libraries():
    store: Store = service("STORE")
    return ok(store.list_libraries())


@bp.post("")
def create_library():
    body = parse_body(LibraryCreate)
    reject_traversal(body.path)
    root = Path(body.path).expanduser()
    if not root.is_dir():
        raise InvalidArgument(f"library path {body.path} is not a directory")
    store: Store = service("STORE")
    try:
        library = store.create_library(body.name.strip(), str(root.resolve()))
    except sqlite3.IntegrityError as exc:
        raise Conflict(f"a library already uses {root}") from exc
    return ok(library, message="Library created", status=201)


@bp.post("/<int:library_id>/videos")
def add_video(library_id: int):
    body = parse_body(VideoCreate)
    store: Store = service("STORE")
    library = store.get_library(library_id)
    if library is None:
        raise NotFound(f"library {library_id} not found")
    reject_traversal(body.path)
    target = resolve_library_path(library["path"], body.path)
    relative = target.relative_to(Path(library["path"]).resolve()).as_posix()
    video = store.add_video(library_id, relative, (body.title or target.stem).strip())
    return ok(video, message="Video registered", status=201)


__all__ = ["bp"]
