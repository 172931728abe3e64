"""Byte-range file streaming for library videos."""

from __future__ import annotations

import logging
import os
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterator

from flask import Response, request
from werkzeug.wsgi import wrap_file

from mediavault.errors import ForbiddenPath, InvalidArgument, NotFound, RangeNotSatisfiable

LOGGER = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
DEFAULT_CONTENT_TYPE = "video/mp4"
CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".webm": "video/webm",
    ".ogg": "video/ogg",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
    ".mov": "video/quicktime",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
    ".m4v": "video/mp4",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".3gp": "video/3gpp",
    ".ts": "video/mp2t",
    ".m2ts": "video/mp2t",
}


@dataclass(frozen=True, slots=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def content_type_for(path: Path | str) -> str:
    return CONTENT_TYPES.get(Path(path).suffix.lower(), DEFAULT_CONTENT_TYPE)


def resolve_library_path(root: Path | str, relative: str) -> Path:
    """Join ``relative`` onto the library root, refusing anything outside it."""

    if not relative or not relative.strip():
        raise InvalidArgument("Missing path parameter")
    parts = Path(relative.replace("\\", "/")).parts
    if ".." in parts:
        raise ForbiddenPath("Path traversal detected")
    base = Path(root).resolve()
    candidate = Path(relative)
    target = (candidate if candidate.is_absolute() else base / candidate).resolve()
    if not target.is_relative_to(base):
        raise ForbiddenPath("Path traversal detected")
    return target


def check_regular_file(path: Path) -> int:
    """Return the size of ``path`` or raise the matching client error."""

    try:
        info = path.stat()
    except FileNotFoundError as exc:
        raise NotFound("File not found") from exc
    except OSError as exc:
        raise NotFound(f"File not found: {exc.strerror or exc}") from exc
    if stat.S_ISDIR(info.st_mode):
        raise InvalidArgument("Path is a directory")
    if not stat.S_ISREG(info.st_mode):
        raise InvalidArgument("Path is not a regular file")
    return info.st_size


def parse_range(header: str | None, size: int) -> ByteRange | None:
    """Parse a single ``bytes=`` range against a file of ``size`` bytes.

    ``None`` means no range was asked for. Ends past the file are clamped to
    the last byte; a start at or beyond the end of the file is unsatisfiable.
    """

    if header is None or not header.strip():
        return None
    unit, _, ranges = header.strip().partition("=")
    if unit.strip().lower() != "bytes" or not ranges or "," in ranges:
        raise RangeNotSatisfiable("Unsupported range", size=size)
    first, sep, last = ranges.strip().partition("-")
    first, last = first.strip(), last.strip()
    if not sep or (first and not first.isdigit()) or (last and not last.isdigit()):
        raise RangeNotSatisfiable("Malformed range", size=size)
    if not first:
        if not last or int(last) == 0 or size == 0:
            raise RangeNotSatisfiable("Unsatisfiable suffix range", size=size)
        start = max(0, size - int(last))
        return ByteRange(start, size - 1)
    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or start > end:
        raise RangeNotSatisfiable("Range out of bounds", size=size)
    return ByteRange(start, min(end, size - 1))


def _read_range(handle: BinaryIO, byte_range: ByteRange) -> Iterator[bytes]:
    try:
        handle.seek(byte_range.start)
        remaining = byte_range.length
        while remaining > 0:
            chunk = handle.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            yield chunk
    finally:
        handle.close()


def stream_file(path: Path, range_header: str | None = None) -> Response:
    """Build a 200 or 206 response for ``path``; no database handle is held."""

    size = check_regular_file(path)
    byte_range = parse_range(range_header, size)
    content_type = content_type_for(path)
    handle = open(path, "rb")  # closed by the response iterator
    if byte_range is None:
        response = Response(
            wrap_file(request.environ, handle, buffer_size=CHUNK_SIZE),
            status=200,
            mimetype=content_type,
            direct_passthrough=True,
        )
        response.headers["Content-Length"] = str(size)
    else:
        response = Response(
            _read_range(handle, byte_range),
            status=206,
            mimetype=content_type,
            direct_passthrough=True,
        )
        response.headers["Content-Length"] = str(byte_range.length)
        response.headers["Content-Range"] = byte_range.content_range(size)
    response.headers["Accept-Ranges"] = "bytes"
    LOGGER.debug(
        "streaming %s (%s)",
        os.fspath(path),
        byte_range.content_range(size) if byte_range else f"{size} bytes",
    )
    return response


__all__ = [
    "ByteRange",
    "CONTENT_TYPES",
    "content_type_for",
    "check_regular_file",
    "parse_range",
    "resolve_library_path",
    "stream_file",
]
