"""Database access: connection pool, schema and per-collection queries."""

from membership.db.pool import close_pool, get_pool

__all__ = ["get_pool", "close_pool"]
