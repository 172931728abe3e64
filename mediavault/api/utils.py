"""Shared helpers for API blueprints."""

from __future__ import annotations

from typing import Any, Mapping, TypeVar

from flask import current_app, jsonify, request
from pydantic import BaseModel

from mediavault.errors import ApiError, ForbiddenPath, InvalidArgument, ServiceUnavailable

ModelT = TypeVar("ModelT", bound=BaseModel)

_SERVICE_LABELS = {
    "STORE": "store",
    "HUB": "broadcast hub",
    "LEDGER": "activity ledger",
    "SCRAPER": "scraper",
    "VERIFIER": "link verifier",
    "SCHEDULER": "scheduler",
    "DOWNLOADS": "download dispatcher",
    "SUGGESTER": "AI suggestions",
    "METRICS": "metrics",
}


def ok(data: Any = None, message: str = "OK", status: int = 200):
    body: dict[str, Any] = {"success": True, "message": message}
    if data is not None:
        body["data"] = data
    return jsonify(body), status


def fail(message: str, *, error: str = "internal", status: int = 500, details: Any = None):
    body: dict[str, Any] = {"success": False, "message": message, "error": error}
    if details is not None:
        body["details"] = details
    return jsonify(body), status


def error_response(exc: ApiError):
    return fail(exc.message, error=exc.kind, status=exc.status, details=exc.details)


def service(key: str) -> Any:
    """Return a wired service or raise 503 when it was never initialized."""

    value = current_app.config.get(key)
    if value is None:
        raise ServiceUnavailable(f"{_SERVICE_LABELS.get(key, key.lower())} is not initialized")
    return value


def reject_traversal(*values: str | None) -> None:
    for value in values:
        if value and ".." in value.replace("\\", "/").split("/"):
            raise ForbiddenPath("Path traversal detected")


def json_body() -> Mapping[str, Any]:
    payload = request.get_json(silent=True)
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        raise InvalidArgument("request body must be a JSON object")
    return payload


def parse_body(model: type[ModelT]) -> ModelT:
    """Validate the JSON body; ``ValidationError`` is mapped to 400 by the app."""

    return model.model_validate(dict(json_body()))


def int_arg(name: str, default: int, *, minimum: int = 1, maximum: int | None = None) -> int:
    raw = request.args.get(name)
    if raw in (None, ""):
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise InvalidArgument(f"{name} must be an integer") from exc
    if value < minimum:
        raise InvalidArgument(f"{name} must be at least {minimum}")
    if maximum is not None:
        value = min(value, maximum)
    return value


__all__ = [
    "error_response",
    "fail",
    "int_arg",
    "json_body",
    "ok",
    "parse_body",
    "reject_traversal",
    "service",
]
