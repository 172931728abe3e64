"""Persistence layer: schema, connection pool and typed store."""

from .pool import ConnectionPool, PoolClosed, PoolTimeout
from .store import Store

__all__ = ["ConnectionPool", "PoolClosed", "PoolTimeout", "Store"]
