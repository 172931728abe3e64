"""LLM-backed suggestions for archived threads, with an audit row per call."""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Callable, Dict, List

from mediavault.db.store import Store
from mediavault.services.forum_parser import KNOWN_TAGS
from mediavault.services.llm import LLMClientError, OllamaClient

LOGGER = logging.getLogger(__name__)

MAX_TAGS = 15
MAX_FILENAME_LENGTH = 120
_UNSAFE_FILENAME = re.compile(r'[<>:"/\\|?*\x00-\x1f]+')

TAGS_SYSTEM_PROMPT = (
    "You label archived forum threads. Reply with a JSON object of the form "
    '{"tags": ["tag", ...]} containing at most 15 short, lowercase tags. '
    "Prefer these known tags when they apply: " + ", ".join(KNOWN_TAGS) + "."
)
FILENAME_SYSTEM_PROMPT = (
    "You name media files. Reply with a JSON object of the form "
    '{"filename": "..."} holding a concise, descriptive file name without '
    "extension, using only letters, digits, spaces, dashes and underscores."
)


def sanitize_filename(value: str) -> str:
    cleaned = _UNSAFE_FILENAME.sub(" ", value)
    cleaned = re.sub(r"\s+", " ", cleaned).strip(" .")
    return cleaned[:MAX_FILENAME_LENGTH].rstrip(" .")


def _normalize_tags(raw: Any) -> List[str]:
    if not isinstance(raw, list):
        return []
    seen: Dict[str, str] = {}
    for item in raw:
        if not isinstance(item, str):
            continue
        tag = item.strip()
        if tag and tag.lower() not in seen:
            seen[tag.lower()] = tag
    return list(seen.values())[:MAX_TAGS]


class ThreadSuggester:
    def __init__(self, store: Store, client: OllamaClient) -> None:
        self.store = store
        self.client = client

    def _thread_prompt(self, thread_id: int) -> str:
        detail = self.store.thread_detail(thread_id)
        if detail is None:
            raise LookupError(f"thread {thread_id} not found")
        filenames = [link["filename"] for link in detail.get("links", []) if link.get("filename")][:20]
        first_post = next((post["body"] for post in detail.get("posts", []) if post.get("body")), "")
        return json.dumps(
            {
                "title": detail.get("title"),
                "category": detail.get("forum_category"),
                "existing_tags": detail.get("tags") or [],
                "performers": [item.get("name") for item in detail.get("performers", [])],
                "filenames": filenames,
                "first_post": first_post[:1500],
            },
            ensure_ascii=False,
        )

    def _call(
        self,
        operation: str,
        thread_id: int,
        system: str,
        extract: Callable[[Dict[str, Any]], Any],
    ) -> Any:
        prompt = self._thread_prompt(thread_id)
        started = time.perf_counter()
        response: Dict[str, Any] | None = None
        try:
            response = self.client.chat_json(system, prompt)
            result = extract(response)
        except (LLMClientError, ValueError) as exc:
            self.store.record_ai_audit(
                operation=operation,
                status="failed",
                subject_kind="thread",
                subject_id=thread_id,
                model=self.client.model,
                prompt=prompt,
                response=json.dumps(response) if response is not None else str(exc),
                duration_ms=int((time.perf_counter() - started) * 1000),
            )
            LOGGER.warning("%s for thread %s failed: %s", operation, thread_id, exc)
            raise
        self.store.record_ai_audit(
            operation=operation,
            status="ok",
            subject_kind="thread",
            subject_id=thread_id,
            model=self.client.model,
            prompt=prompt,
            response=json.dumps(response, ensure_ascii=False),
            duration_ms=int((time.perf_counter() - started) * 1000),
        )
        return result

    def suggest_tags(self, thread_id: int) -> Dict[str, Any]:
        def _extract(payload: Dict[str, Any]) -> List[str]:
            tags = _normalize_tags(payload.get("tags"))
            if not tags:
                raise ValueError("model returned no tags")
            return tags

        tags = self._call("suggest_tags", thread_id, TAGS_SYSTEM_PROMPT, _extract)
        return {"thread_id": thread_id, "tags": tags}

    def suggest_filename(self, thread_id: int) -> Dict[str, Any]:
        def _extract(payload: Dict[str, Any]) -> str:
            name = sanitize_filename(str(payload.get("filename") or ""))
            if not name:
                raise ValueError("model returned no usable filename")
            return name

        filename = self._call("suggest_filename", thread_id, FILENAME_SYSTEM_PROMPT, _extract)
        return {"thread_id": thread_id, "filename": filename}


__all__ = ["ThreadSuggester", "sanitize_filename"]
