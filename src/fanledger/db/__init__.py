"""Ledger store access."""

from fanledger.db.pool import close_pool, create_pool

__all__ = ["close_pool", "create_pool"]
