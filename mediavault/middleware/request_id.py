"""Request middleware that assigns per-request trace identifiers."""

from __future__ import annotations

import time
import uuid

from flask import g, request

from mediavault.logging_setup import get_request_logger


def before_request() -> None:
    """Attach a request identifier to ``flask.g`` for downstream logging."""

    header_id = request.headers.get("X-Request-Id") or request.headers.get("X-Correlation-Id")
    g.request_id = header_id or uuid.uuid4().hex
    g._request_perf_start = time.perf_counter()


def after_request(response):  # type: ignore[no-untyped-def]
    """Emit a concise summary log and propagate the request header."""

    start_perf: float | None = getattr(g, "_request_perf_start", None)
    duration_ms = int((time.perf_counter() - start_perf) * 1000) if start_perf else -1
    request_id: str | None = getattr(g, "request_id", None)

    get_request_logger().info(
        "HTTP %s %s -> %s (%sms)",
        request.method,
        request.path,
        response.status_code,
        duration_ms,
        extra={
            "correlation_id": request_id,
            "component": "http",
            "meta": {
                "method": request.method,
                "path": request.path,
                "status": response.status_code,
                "duration_ms": duration_ms,
                "remote_addr": request.headers.get("X-Forwarded-For") or request.remote_addr,
            },
        },
    )

    if request_id:
        response.headers.setdefault("X-Request-Id", request_id)
    return response


__all__ = ["before_request", "after_request"]
