"""HTTP API blueprints."""

from mediavault.api import (
    activity,
    ai,
    downloads,
    health,
    libraries,
    scheduler,
    scraper,
    stream,
    verification,
    ws,
)

BLUEPRINTS = (
    health.bp,
    scheduler.bp,
    scraper.bp,
    verification.bp,
    activity.bp,
    stream.bp,
    libraries.bp,
    downloads.bp,
    ai.bp,
)

__all__ = ["BLUEPRINTS", "ws"]
