"""Liveness and metrics endpoints."""

from __future__ import annotations

from flask import Blueprint, Response, current_app
from prometheus_client import CONTENT_TYPE_LATEST, CollectorRegistry, Gauge, generate_latest

from mediavault.api.utils import fail, ok

bp = Blueprint("health_api", __name__)


@bp.get("/health")
def health():
    """Report liveness plus a store ping; 503 when the store is unreachable."""

    pool = current_app.config.get("POOL")
    hub = current_app.config.get("HUB")
    scheduler = current_app.config.get("SCHEDULER")
    if pool is None:
        return fail("store is not initialized", error="service_unavailable", status=503)
    if not pool.ping():
        return fail("store ping failed", error="service_unavailable", status=503)
    return ok(
        {
            "status": "ok",
            "store": {"ok": True, "pool": pool.metrics()},
            "hub": hub.stats() if hub is not None else None,
            "scheduler": {
                "running": scheduler.running,
                "running_jobs": scheduler.running_job_ids(),
            }
            if scheduler is not None
            else None,
        },
        message="healthy",
    )


@bp.get("/api/v1/metrics")
def metrics():
    registry = current_app.config.get("METRICS")
    pool = current_app.config.get("POOL")
    if registry is None:
        return fail("metrics are not initialized", error="service_unavailable", status=503)
    snapshot = registry.snapshot()
    if pool is not None:
        snapshot["pool"] = pool.metrics()
    return ok(snapshot)


def _gauges(registry: CollectorRegistry, prefix: str, values: dict) -> None:
    for key, value in values.items():
        name = f"{prefix}_{key}".replace(".", "_").replace("-", "_")
        if isinstance(value, dict):
            _gauges(registry, name, value)
        elif isinstance(value, (int, float)):
            Gauge(name, name, registry=registry).set(float(value))


@bp.get("/api/v1/metrics/prometheus")
def metrics_prometheus():
    """The same counters in the Prometheus text format, one gauge per number."""

    metrics_registry = current_app.config.get("METRICS")
    pool = current_app.config.get("POOL")
    if metrics_registry is None:
        return fail("metrics are not initialized", error="service_unavailable", status=503)
    registry = CollectorRegistry()
    _gauges(registry, "mediavault", metrics_registry.snapshot())
    if pool is not None:
        _gauges(registry, "mediavault_pool", pool.metrics())
    return Response(generate_latest(registry), mimetype=CONTENT_TYPE_LATEST)


__all__ = ["bp"]
