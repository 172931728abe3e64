"""Ollama chat client used for tag and filename suggestions."""

from __future__ import annotations

import json
import re
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from mediavault.config import LLMConfig
from mediavault.errors import TransientError

_JSON_EXTRACT = re.compile(r"\{.*\}", re.S)
_STRICT_PREFIX = (
    "Return ONLY VALID minified JSON. No commentary, markdown, or explanations. "
    "If you cannot comply respond with {}.\n"
)


class LLMClientError(TransientError):
    """Raised when the Ollama API cannot be reached or returns invalid JSON."""


@dataclass(slots=True)
class ChatResponse:
    content: str
    raw: Dict[str, Any]


class OllamaClient:
    """Lightweight HTTP wrapper around the Ollama REST API."""

    def __init__(self, config: LLMConfig | None = None, *, session: Optional[requests.Session] = None) -> None:
        self.config = config or LLMConfig()
        self.base_url = self.config.base_url.rstrip("/") or "http://127.0.0.1:11434"
        self.model = self.config.model
        self._session = session or requests.Session()

    # ------------------------------------------------------------------
    # Low-level helpers
    def _request(self, method: str, path: str, *, timeout: float) -> requests.Response:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, timeout=timeout)
        except requests.RequestException as exc:
            raise LLMClientError(f"ollama {method} {url} failed: {exc}") from exc
        if response.status_code >= 400:
            raise LLMClientError(f"ollama {method} {url} returned {response.status_code}: {response.text[:200]}")
        return response

    def _chat(self, payload: Dict[str, Any], *, timeout: float) -> ChatResponse:
        url = f"{self.base_url}/api/chat"
        try:
            response = self._session.post(url, json=payload, timeout=timeout)
        except requests.RequestException as exc:
            raise LLMClientError(f"ollama chat request failed: {exc}") from exc
        if response.status_code >= 400:
            raise LLMClientError(f"ollama chat returned {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            raise LLMClientError("ollama chat returned invalid JSON response") from exc
        message = body.get("message") or {}
        content = message.get("content")
        if not isinstance(content, str) or not content:
            raise LLMClientError("ollama chat returned empty message content")
        return ChatResponse(content=content, raw=body)

    # ------------------------------------------------------------------
    # Public API
    def health(self) -> Dict[str, Any]:
        """Return metadata about installed models by querying /api/tags."""

        response = self._request("GET", "/api/tags", timeout=min(self.config.timeout_seconds, 5.0))
        try:
            return response.json()
        except ValueError as exc:
            raise LLMClientError("ollama tags response was not JSON") from exc

    def chat_json(self, system: str, user: str, *, tries: int = 2) -> Dict[str, Any]:
        """Invoke /api/chat asking for a JSON object; retries once with a stricter prompt."""

        remaining = max(1, tries)
        last_error: Exception | None = None
        for attempt in range(1, remaining + 1):
            prompt_system = system.strip() if attempt == 1 else f"{_STRICT_PREFIX}{system.strip()}"
            payload = {
                "model": self.model,
                "stream": False,
                "format": "json",
                "messages": [
                    {"role": "system", "content": prompt_system},
                    {"role": "user", "content": user},
                ],
                "options": {"temperature": 0.0},
            }
            content = self._chat(payload, timeout=self.config.timeout_seconds).content.strip()
            try:
                parsed = json.loads(content)
            except json.JSONDecodeError as exc:
                last_error = exc
                match = _JSON_EXTRACT.search(content)
                if match:
                    try:
                        parsed = json.loads(match.group(0))
                    except json.JSONDecodeError as inner:
                        last_error = inner
                        parsed = None
                else:
                    parsed = None
            if isinstance(parsed, dict):
                return parsed
            if parsed is not None:
                last_error = ValueError("ollama returned JSON that is not an object")
            time.sleep(min(0.2 * attempt, 1.0))
        raise LLMClientError(f"ollama chat_json failed after {remaining} attempt(s): {last_error}")


__all__ = ["ChatResponse", "LLMClientError", "OllamaClient"]
