"""Process-wide logging: stderr, a rotating text log and a rotating JSONL log.

Records may carry ``component``, ``event`` and ``meta`` extras. The ids of
the job, activity, thread or link being worked on can be passed as extras
too and are folded into ``meta`` so both files can be grepped by them.
"""

from __future__ import annotations

import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Any, Optional

from flask import g, has_request_context, request

REQUEST_LOGGER = "mediavault.http"
TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
ROTATE_BACKUPS = 14
MESSAGE_LIMIT = 2000
STACK_LIMIT = 8000
CONTEXT_FIELDS = ("job_id", "activity_id", "thread_id", "link_id")

_configured = False


def _level_for(debug: bool) -> int:
    override = (os.getenv("LOG_LEVEL") or "").strip().upper()
    if override:
        level = logging.getLevelName(override)
        return level if isinstance(level, int) else logging.INFO
    return logging.DEBUG if debug else logging.INFO


def _clip(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return f"{text[:limit]}...[{len(text) - limit} more chars]"


def _event_name(record: logging.LogRecord) -> str:
    event = getattr(record, "event", None)
    if not event:
        meta = getattr(record, "meta", None)
        event = meta.get("event") if isinstance(meta, dict) else None
    return event.strip() if isinstance(event, str) and event.strip() else "log"


def _meta(record: logging.LogRecord) -> Optional[dict[str, Any]]:
    raw = getattr(record, "meta", None)
    merged: dict[str, Any] = dict(raw) if isinstance(raw, dict) else {}
    if raw is not None and not isinstance(raw, dict):
        merged["value"] = repr(raw)
    for name in CONTEXT_FIELDS:
        value = getattr(record, name, None)
        if value is not None:
            merged.setdefault(name, value)
    if not merged:
        return None
    try:
        json.dumps(merged)
    except (TypeError, ValueError):
        return {"repr": repr(merged)}
    return merged


class CorrelationIdFilter(logging.Filter):
    """Stamp ``correlation_id`` on records emitted while serving a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not getattr(record, "correlation_id", None):
            record.correlation_id = None
            if has_request_context():
                record.correlation_id = getattr(g, "request_id", None) or request.headers.get(
                    "X-Correlation-Id"
                )
        return True


class JsonlFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, TIME_FORMAT),
            "level": record.levelname.lower(),
            "logger": record.name,
            "component": getattr(record, "component", None) or "mediavault",
            "correlation_id": getattr(record, "correlation_id", None),
            "event": _event_name(record),
            "message": _clip(record.getMessage(), MESSAGE_LIMIT),
        }
        if record.exc_info:
            payload["stack"] = _clip(self.formatException(record.exc_info), STACK_LIMIT)
        meta = _meta(record)
        if meta:
            payload["meta"] = meta
        return json.dumps(payload, ensure_ascii=False)


class PlainFormatter(logging.Formatter):
    """One line per record: time, level, component, ids, message, meta."""

    def format(self, record: logging.LogRecord) -> str:
        head = [
            self.formatTime(record, TIME_FORMAT),
            f"[{record.levelname}]",
            f"({getattr(record, 'component', None) or record.name})",
        ]
        correlation_id = getattr(record, "correlation_id", None)
        if correlation_id:
            head.append(f"cid={correlation_id}")
        event = _event_name(record)
        if event != "log":
            head.append(f"evt={event}")
        line = f"{' '.join(head)} {_clip(record.getMessage(), MESSAGE_LIMIT)}"
        meta = _meta(record)
        if meta:
            line = f"{line} {json.dumps(meta, ensure_ascii=False)}"
        if record.exc_info:
            line = f"{line}\n{_clip(self.formatException(record.exc_info), STACK_LIMIT)}"
        return line


def _dated_name(default_name: str) -> str:
    # mediavault.log.2024-03-01 -> mediavault-2024-03-01.log
    path = Path(default_name)
    stem, ext, *rest = path.name.split(".")
    if not rest:
        return default_name
    return str(path.with_name(f"{stem}-{rest[-1]}.{ext}"))


def _rotating(path: Path, formatter: logging.Formatter) -> logging.Handler:
    handler = logging.handlers.TimedRotatingFileHandler(
        path, when="midnight", backupCount=ROTATE_BACKUPS, encoding="utf-8"
    )
    handler.suffix = "%Y-%m-%d"
    handler.namer = _dated_name
    handler.setFormatter(formatter)
    return handler


def setup_logging(log_dir: Path | None = None, *, debug: bool = False) -> None:
    """Install the root handlers; later calls in the same process are no-ops."""

    global _configured
    if _configured:
        return

    level = _level_for(debug)
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    handlers[0].setFormatter(PlainFormatter())
    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        handlers.append(_rotating(log_dir / "mediavault.log", PlainFormatter()))
        handlers.append(_rotating(log_dir / "mediavault.jsonl", JsonlFormatter()))
    for handler in handlers:
        handler.setLevel(level)
        handler.addFilter(CorrelationIdFilter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = handlers
    logging.captureWarnings(True)
    # requests/urllib3 log every pooled connection at DEBUG.
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))
    _configured = True


def get_request_logger() -> logging.Logger:
    return logging.getLogger(REQUEST_LOGGER)


__all__ = [
    "CorrelationIdFilter",
    "JsonlFormatter",
    "PlainFormatter",
    "get_request_logger",
    "setup_logging",
]
