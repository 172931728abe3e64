"""Shared fixtures: a temp store, a live hub, a fake HTTP session and a test app."""

from __future__ import annotations

import threading
from collections import defaultdict, deque
from pathlib import Path
from types import SimpleNamespace
from typing import Any, Deque, Dict, List, Tuple

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from mediavault import create_app
from mediavault.config import AppConfig
from mediavault.db.pool import ConnectionPool
from mediavault.db.store import Store
from mediavault.services.activity import ActivityLedger
from mediavault.services.hub import BroadcastHub
from mediavault.services.rate_limit import HostRateLimiter


class FakeResponse:
    """Just enough of ``requests.Response`` for the services under test."""

    def __init__(
        self,
        status: int = 200,
        *,
        text: str = "",
        headers: Dict[str, str] | None = None,
        url: str = "",
        history: List[Any] | None = None,
        method: str = "GET",
        json_body: Any = None,
    ) -> None:
        self.status_code = status
        self.text = text
        self.content = text.encode("utf-8")
        self.headers = CaseInsensitiveDict(headers or {})
        self.url = url
        self.history = history or []
        self.request = SimpleNamespace(method=method)
        self.encoding = "utf-8"
        self._json = json_body
        self.closed = False

    def json(self) -> Any:
        if self._json is None:
            raise ValueError("no JSON body")
        return self._json

    def iter_content(self, chunk_size: int = 1):
        for index in range(0, len(self.content), chunk_size):
            yield self.content[index : index + chunk_size]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Scripted stand-in for ``requests.Session``.

    Responses are queued per ``(METHOD, url)``; the last queued response
    repeats once the queue is drained. An ``Exception`` instance in the
    queue is raised instead of returned.
    """

    def __init__(self) -> None:
        self.max_redirects = 30
        self.calls: List[Tuple[str, str, Dict[str, Any]]] = []
        self._routes: Dict[Tuple[str, str], Deque[Any]] = defaultdict(deque)
        self._lock = threading.Lock()

    def add(self, method: str, url: str, *responses: Any, **response_kwargs: Any) -> None:
        queue = self._routes[(method.upper(), url)]
        if response_kwargs:
            responses = (*responses, FakeResponse(url=url, method=method.upper(), **response_kwargs))
        queue.extend(responses)

    def request(self, method: str, url: str, **kwargs: Any) -> Any:
        method = method.upper()
        with self._lock:
            self.calls.append((method, url, kwargs))
            queue = self._routes.get((method, url))
            if not queue:
                raise requests.ConnectionError(f"no fake route for {method} {url}")
            item = queue.popleft() if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url: str, **kwargs: Any) -> Any:
        return self.request("GET", url, **kwargs)

    def head(self, url: str, **kwargs: Any) -> Any:
        return self.request("HEAD", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> Any:
        return self.request("POST", url, **kwargs)

    def urls(self, method: str | None = None) -> List[str]:
        with self._lock:
            return [url for verb, url, _ in self.calls if method is None or verb == method.upper()]


@pytest.fixture()
def fake_http() -> FakeSession:
    return FakeSession()


@pytest.fixture()
def response_factory():
    return FakeResponse


@pytest.fixture()
def pool(tmp_path: Path):
    connection_pool = ConnectionPool(tmp_path / "vault.sqlite3", size=4, timeout=2.0)
    yield connection_pool
    connection_pool.close()


@pytest.fixture()
def store(pool: ConnectionPool) -> Store:
    return Store(pool)


@pytest.fixture()
def hub():
    broadcast = BroadcastHub(queue_depth=32, max_overflows=2, pong_timeout=30.0, sweep_interval=0.05)
    broadcast.start()
    yield broadcast
    broadcast.stop()


@pytest.fixture()
def ledger(store: Store) -> ActivityLedger:
    return ActivityLedger(store, step_interval=0.0)


@pytest.fixture()
def limiter() -> HostRateLimiter:
    return HostRateLimiter(default_spacing=0.0)


@pytest.fixture()
def app_config(tmp_path: Path) -> AppConfig:
    return AppConfig.from_mapping(
        {
            "paths": {
                "store_url": "data/vault.sqlite3",
                "assets_dir": "assets",
                "log_dir": "logs",
            },
            "store": {"pool_size": 4, "pool_timeout_seconds": 2},
            "scheduler": {"tick_interval": 0.05, "lease_seconds": 30},
            "verifier": {"per_host_spacing_ms": 0, "worker_count": 4},
            "scraper": {"per_host_spacing_ms": 0},
            "activity": {"step_interval_ms": 0},
        },
        base_dir=tmp_path,
    )


@pytest.fixture()
def app(app_config: AppConfig):
    flask_app = create_app(app_config, start_background=False)
    flask_app.config["TESTING"] = True
    yield flask_app
    flask_app.extensions["mediavault"].shutdown()


@pytest.fixture()
def client(app):
    return app.test_client()
