"""Flask application factory."""

from __future__ import annotations

import atexit
import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from flask import Flask
from flask_cors import CORS
from pydantic import ValidationError
from werkzeug.exceptions import HTTPException

from mediavault.api import BLUEPRINTS, ws
from mediavault.api.utils import error_response, fail
from mediavault.config import AppConfig, load_config
from mediavault.db.pool import ConnectionPool, PoolTimeout
from mediavault.db.store import Store
from mediavault.errors import ApiError, RangeNotSatisfiable
from mediavault.jobs import JobWorkers
from mediavault.logging_setup import setup_logging
from mediavault.metrics import MetricsRegistry
from mediavault.middleware import request_id as request_id_middleware
from mediavault.services.activity import ActivityLedger
from mediavault.services.ai_suggest import ThreadSuggester
from mediavault.services.downloads import DownloadDispatcher
from mediavault.services.hub import BroadcastHub
from mediavault.services.llm import OllamaClient
from mediavault.services.rate_limit import HostRateLimiter
from mediavault.services.scheduler import JobScheduler
from mediavault.services.scraper import ForumScraper
from mediavault.services.verifier import LinkVerifier

LOGGER = logging.getLogger(__name__)

_HTTP_ERROR_KINDS = {
    400: "invalid_argument",
    403: "forbidden_path",
    404: "not_found",
    405: "invalid_argument",
    409: "conflict",
    413: "invalid_argument",
    415: "invalid_argument",
    416: "range_not_satisfiable",
    503: "service_unavailable",
}


@dataclass(slots=True)
class Runtime:
    """Everything ``create_app`` wires together, kept for orderly shutdown."""

    config: AppConfig
    metrics: MetricsRegistry
    pool: ConnectionPool
    store: Store
    hub: BroadcastHub
    ledger: ActivityLedger
    limiter: HostRateLimiter
    verifier: LinkVerifier
    scraper: ForumScraper
    scheduler: JobScheduler
    downloads: DownloadDispatcher
    suggester: ThreadSuggester | None
    _stopped: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def app_config(self) -> dict[str, Any]:
        return {
            "APP_CONFIG": self.config,
            "METRICS": self.metrics,
            "POOL": self.pool,
            "STORE": self.store,
            "HUB": self.hub,
            "LEDGER": self.ledger,
            "LIMITER": self.limiter,
            "VERIFIER": self.verifier,
            "SCRAPER": self.scraper,
            "SCHEDULER": self.scheduler,
            "DOWNLOADS": self.downloads,
            "SUGGESTER": self.suggester,
            "WS_SETTINGS": {"ping_interval": self.config.hub.ping_interval_seconds},
        }

    def start_background(self) -> None:
        self.ledger.start()
        self.scheduler.start()
        self.verifier.start()

    def shutdown(self) -> None:
        """Stop workers first, then the hub, then the pool. Safe to call twice."""

        with self._lock:
            if self._stopped:
                return
            self._stopped = True
        LOGGER.info("shutting down background services")
        self.scheduler.stop(self.config.scheduler.shutdown_grace_seconds)
        self.verifier.stop()
        self.ledger.stop()
        self.hub.stop()
        self.pool.close()


def build_runtime(config: AppConfig) -> Runtime:
    metrics = MetricsRegistry()
    pool = ConnectionPool(
        config.store_path,
        size=config.store.pool_size,
        timeout=config.store.pool_timeout_seconds,
    )
    store = Store(pool)
    hub = BroadcastHub(
        queue_depth=config.hub.queue_depth,
        max_overflows=config.hub.max_overflows,
        pong_timeout=config.hub.pong_timeout_seconds,
        metrics=metrics,
    )
    hub.start()
    ledger = ActivityLedger(
        store,
        hub,
        step_interval=config.activity.step_interval_ms / 1000.0,
        retention_days=config.activity.retention_days,
    )
    limiter = HostRateLimiter(default_spacing=config.scraper.per_host_spacing_ms / 1000.0)
    verifier = LinkVerifier(store, ledger, limiter, hub, config=config.verifier, metrics=metrics)
    scraper = ForumScraper(store, ledger, limiter, hub, config=config.scraper, metrics=metrics)
    workers = JobWorkers(
        store,
        ledger,
        scraper,
        verifier,
        verifier_config=config.verifier,
        activity_config=config.activity,
    )
    scheduler = JobScheduler(
        store,
        workers.registry(),
        ledger=ledger,
        hub=hub,
        config=config.scheduler,
        metrics=metrics,
    )
    downloads = DownloadDispatcher(store, config=config.downloads)
    suggester = ThreadSuggester(store, OllamaClient(config.llm)) if config.llm.enabled else None
    return Runtime(
        config=config,
        metrics=metrics,
        pool=pool,
        store=store,
        hub=hub,
        ledger=ledger,
        limiter=limiter,
        verifier=verifier,
        scraper=scraper,
        scheduler=scheduler,
        downloads=downloads,
        suggester=suggester,
    )


def _register_error_handlers(app: Flask) -> None:
    @app.errorhandler(ApiError)
    def _api_error(exc: ApiError):
        response, status = error_response(exc)
        if isinstance(exc, RangeNotSatisfiable) and exc.size is not None:
            response.headers["Content-Range"] = f"bytes */{exc.size}"
        return response, status

    @app.errorhandler(ValidationError)
    def _validation_error(exc: ValidationError):
        details = [
            {"loc": ".".join(str(part) for part in error["loc"]), "msg": error["msg"]}
            for error in exc.errors()
        ]
        return fail("Invalid request body", error="invalid_argument", status=400, details=details)

    @app.errorhandler(PoolTimeout)
    def _pool_timeout(exc: PoolTimeout):
        LOGGER.warning("store connection pool exhausted: %s", exc)
        return fail("Store is busy, retry shortly", error="service_unavailable", status=503)

    @app.errorhandler(HTTPException)
    def _http_error(exc: HTTPException):
        status = exc.code or 500
        return fail(
            exc.description or exc.name,
            error=_HTTP_ERROR_KINDS.get(status, "internal"),
            status=status,
        )

    @app.errorhandler(Exception)
    def _unhandled(exc: Exception):
        LOGGER.exception("unhandled error while serving request")
        return fail("Internal server error", error="internal", status=500)


def create_app(config: AppConfig | None = None, *, start_background: bool = True) -> Flask:
    config = config or load_config()
    config.ensure_dirs()
    setup_logging(config.log_dir, debug=config.debug)
    config.log_summary()

    app = Flask(__name__)
    CORS(app, resources={r"/api/*": {"origins": "*"}}, send_wildcard=True)

    app.before_request(request_id_middleware.before_request)
    app.after_request(request_id_middleware.after_request)
    _register_error_handlers(app)

    runtime = build_runtime(config)
    app.config.update(runtime.app_config())
    app.extensions["mediavault"] = runtime

    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)
    ws.sock.init_app(app)

    if start_background:
        runtime.start_background()
    atexit.register(runtime.shutdown)

    LOGGER.info("mediavault ready on %s:%s", config.server.host, config.server.port)
    return app


__all__ = ["Runtime", "build_runtime", "create_app"]
