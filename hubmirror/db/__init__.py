"""
Database module for hubmirror.

Provides:
- SQLite connection pooling
- Versioned schema migrations
"""

from __future__ import annotations

from .migrations import MIGRATIONS, current_version, run_migrations
from .pool import (
    ConnectionPool,
    PoolClosedError,
    PoolConfig,
    PooledConnection,
    close_all_pools,
    close_pool,
    get_pool,
    release_pool,
)

__all__ = [
    "MIGRATIONS",
    "ConnectionPool",
    "PoolClosedError",
    "PoolConfig",
    "PooledConnection",
    "close_all_pools",
    "close_pool",
    "current_version",
    "get_pool",
    "release_pool",
    "run_migrations",
]
