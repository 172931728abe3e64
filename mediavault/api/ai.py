"""AI suggestion endpoints backed by a local Ollama server."""

from __future__ import annotations

from flask import Blueprint

from mediavault.api.utils import int_arg, ok, service
from mediavault.db.store import Store
from mediavault.errors import NotFound, ServiceUnavailable
from mediavault.services.ai_suggest import ThreadSuggester
from mediavault.services.llm import LLMClientError

bp = Blueprint("ai_api", __name__, url_prefix="/api/v1/ai")


def _suggester() -> ThreadSuggester:
    return service("SUGGESTER")


def _run(operation, thread_id: int):  # type: ignore[no-untyped-def]
    try:
        return operation(thread_id)
    except LookupError as exc:
        raise NotFound(str(exc)) from exc
    except LLMClientError as exc:
        raise ServiceUnavailable(f"LLM request failed: {exc}") from exc
    except ValueError as exc:
        raise ServiceUnavailable(f"LLM returned an unusable answer: {exc}") from exc


@bp.post("/threads/<int:thread_id>/tags")
def suggest_tags(thread_id: int):
    return ok(_run(_suggester().suggest_tags, thread_id))


@bp.post("/threads/<int:thread_id>/filename")
def suggest_filename(thread_id: int):
    return ok(_run(_suggester().suggest_filename, thread_id))


@bp.get("/audit")
def audit_log():
    store: Store = service("STORE")
    return ok(store.list_ai_audit(int_arg("limit", 50, maximum=500)))


__all__ = ["bp"]
