"""
SQLite connection pooling for the metadata store.

One pool per database file. Connections are opened in WAL mode so
queries keep running while a sync writes. Stale connections are
recycled on checkout and return. Writes go through
``transaction()``, which takes the SQLite write lock up front.

Example:
    from hubmirror.db.pool import get_pool

    pool = get_pool("data/registry/models.db")

    with pool.get_connection() as conn:
        rows = conn.execute("SELECT model_id FROM models").fetchall()

    with pool.transaction() as conn:
        conn.execute("DELETE FROM models WHERE model_id = ?", ("x/y",))
"""

from __future__ import annotations

import sqlite3
import threading
import time
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from queue import Empty, Full, Queue
from typing import Any

from hubmirror.logging_config import get_logger

logger = get_logger(__name__)


class PoolClosedError(RuntimeError):
    """Raised when a connection is requested from a closed pool."""


def _unicode_lower(value: Any) -> Any:
    # SQLite's built-in lower() only folds ASCII
    return value.lower() if isinstance(value, str) else value


@dataclass
class PoolConfig:
    """
    Pool sizing, recycling and per-connection PRAGMA settings.

    Durations are in seconds.
    """

    min_size: int = 1
    max_size: int = 8
    acquire_timeout: float = 30.0

    # Idle connections above min_size are closed after this long; any
    # connection is replaced once it reaches max_lifetime.
    max_idle: float = 300.0
    max_lifetime: float = 3600.0

    enable_wal: bool = True
    busy_timeout_ms: int = 5000
    cache_size_kb: int = 2000

    def __post_init__(self):
        if self.min_size < 1:
            raise ValueError("min_size must be >= 1")
        if self.max_size < self.min_size:
            raise ValueError("max_size must be >= min_size")
        if self.acquire_timeout <= 0:
            raise ValueError("acquire_timeout must be > 0")

    @property
    def pragmas(self) -> list[str]:
        statements = [
            f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}",
            # negative cache_size is in KiB
            f"PRAGMA cache_size = -{int(self.cache_size_kb)}",
        ]
        if self.enable_wal:
            statements.insert(0, "PRAGMA journal_mode = WAL")
        return statements


@dataclass
class PooledConnection:
    """A connection plus the bookkeeping the pool needs to recycle it."""

    conn: sqlite3.Connection
    opened: float = field(default_factory=time.monotonic)
    returned: float = field(default_factory=time.monotonic)
    use_count: int = 0
    in_use: bool = False

    def checkout(self):
        self.use_count += 1
        self.in_use = True

    def checkin(self):
        self.returned = time.monotonic()
        self.in_use = False

    def idle_for(self, now: float) -> float:
        return now - self.returned

    def reusable(self, config: PoolConfig) -> bool:
        """Whether the connection can go back into the idle queue."""
        if time.monotonic() - self.opened > config.max_lifetime:
            return False
        if self.conn.in_transaction:
            return False
        try:
            self.conn.execute("SELECT 1")
        except sqlite3.Error:
            return False
        return True

    def close(self):
        try:
            self.conn.close()
        except sqlite3.Error as e:
            logger.error("pool_connection_close_failed", error=str(e))


class ConnectionPool:
    """
    Thread-safe SQLite connection pool.

    Connections run in autocommit mode (``isolation_level=None``); write
    paths open their own transaction through :meth:`transaction`.
    """

    def __init__(
        self,
        db_path: Path | str,
        config: PoolConfig | None = None,
    ):
        self.db_path = Path(db_path)
        self.config = config or PoolConfig()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._idle: Queue[PooledConnection] = Queue(maxsize=self.config.max_size)
        self._open: list[PooledConnection] = []
        self._lock = threading.Lock()
        self._closed = False
        self._counters = dict.fromkeys(
            ("opened", "closed", "acquires", "timeouts", "transactions", "rollbacks"), 0
        )
        self._next_sweep = time.monotonic() + self._sweep_interval

        first = self._open_connection()
        self._require_json(first.conn)
        self._idle.put(first)
        for _ in range(self.config.min_size - 1):
            self._idle.put(self._open_connection())

        logger.info(
            "pool_created",
            db_path=str(self.db_path),
            min_size=self.config.min_size,
            max_size=self.config.max_size,
            wal=self.config.enable_wal,
        )

    @property
    def _sweep_interval(self) -> float:
        return min(self.config.max_idle / 2, 60.0)

    @staticmethod
    def _require_json(conn: sqlite3.Connection):
        # Tag filters and column CHECKs rely on the JSON1 functions.
        try:
            conn.execute("SELECT json_valid('[]')")
        except sqlite3.OperationalError as e:
            raise RuntimeError(
                f"SQLite {sqlite3.sqlite_version} was built without JSON support"
            ) from e

    def _count(self, key: str):
        with self._lock:
            self._counters[key] += 1

    def _open_connection(self) -> PooledConnection:
        conn = sqlite3.connect(
            self.db_path,
            check_same_thread=False,
            timeout=self.config.acquire_timeout,
            isolation_level=None,
        )
        for pragma in self.config.pragmas:
            conn.execute(pragma)
        conn.create_function("unicode_lower", 1, _unicode_lower, deterministic=True)
        conn.row_factory = sqlite3.Row

        pooled = PooledConnection(conn=conn)
        with self._lock:
            self._open.append(pooled)
            self._counters["opened"] += 1
            total = len(self._open)

        logger.debug("pool_connection_opened", db_path=str(self.db_path), total=total)
        return pooled

    def _retire(self, pooled: PooledConnection):
        pooled.close()
        with self._lock:
            if pooled in self._open:
                self._open.remove(pooled)
            self._counters["closed"] += 1

    def _sweep(self):
        """Retire idle connections above min_size and any that are no longer reusable."""
        now = time.monotonic()
        if now < self._next_sweep:
            return
        self._next_sweep = now + self._sweep_interval

        drained: list[PooledConnection] = []
        while True:
            try:
                drained.append(self._idle.get_nowait())
            except Empty:
                break

        for pooled in drained:
            surplus = len(self._open) > self.config.min_size
            if (surplus and pooled.idle_for(now) > self.config.max_idle) or not pooled.reusable(self.config):
                self._retire(pooled)
                continue
            try:
                self._idle.put_nowait(pooled)
            except Full:
                self._retire(pooled)

    def _acquire(self) -> PooledConnection:
        if self._closed:
            raise PoolClosedError(f"Connection pool for {self.db_path} is closed")

        self._sweep()

        try:
            pooled = self._idle.get_nowait()
        except Empty:
            with self._lock:
                can_grow = len(self._open) < self.config.max_size
            if can_grow:
                pooled = self._open_connection()
            else:
                try:
                    pooled = self._idle.get(timeout=self.config.acquire_timeout)
                except Empty as err:
                    self._count("timeouts")
                    logger.warning(
                        "pool_acquire_timeout",
                        db_path=str(self.db_path),
                        timeout=self.config.acquire_timeout,
                    )
                    raise TimeoutError(
                        f"No connection to {self.db_path.name} within "
                        f"{self.config.acquire_timeout}s (max_size={self.config.max_size})"
                    ) from err

        pooled.checkout()
        self._count("acquires")
        return pooled

    def _release(self, pooled: PooledConnection):
        pooled.checkin()
        if self._closed or not pooled.reusable(self.config):
            self._retire(pooled)
            return
        try:
            self._idle.put_nowait(pooled)
        except Full:
            self._retire(pooled)

    @contextmanager
    def get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Borrow a connection for reads or single autocommit statements.

        Raises:
            RuntimeError: If pool is closed
            TimeoutError: If no connection available within timeout
        """
        pooled = self._acquire()
        try:
            yield pooled.conn
        finally:
            self._release(pooled)

    @contextmanager
    def transaction(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Run a write transaction.

        ``BEGIN IMMEDIATE`` takes the write lock up front so a
        read-then-write inside the block cannot be interleaved with another
        writer. Any exception, cancellation included, rolls the whole
        transaction back.
        """
        pooled = self._acquire()
        conn = pooled.conn
        try:
            conn.execute("BEGIN IMMEDIATE")
            self._count("transactions")
            try:
                yield conn
            except BaseException:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                self._count("rollbacks")
                raise
            conn.execute("COMMIT")
        finally:
            self._release(pooled)

    def executescript(self, script: str):
        with self.get_connection() as conn:
            conn.executescript(script)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._open)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                **self._counters,
                "open": len(self._open),
                "idle": self._idle.qsize(),
                "in_use": sum(1 for c in self._open if c.in_use),
                "max_size": self.config.max_size,
                "db_path": str(self.db_path),
            }

    def close(self):
        """Close every connection; later acquires raise RuntimeError."""
        if self._closed:
            return
        self._closed = True

        with self._lock:
            for pooled in self._open:
                pooled.close()
                self._counters["closed"] += 1
            self._open.clear()

        logger.info("pool_closed", db_path=str(self.db_path))

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


_pools: dict[Path, ConnectionPool] = {}
_pool_refs: dict[Path, int] = {}
_pools_lock = threading.Lock()


def get_pool(
    db_path: Path | str,
    config: PoolConfig | None = None,
) -> ConnectionPool:
    """
    Shared pool for a database file, keyed by resolved path.

    Every call takes a reference; owners hand it back with
    :func:`release_pool`. A pool that was closed is replaced by a fresh
    one. ``config`` only applies when a new pool is created.
    """
    key = Path(db_path).resolve()
    with _pools_lock:
        pool = _pools.get(key)
        if pool is None or pool.closed:
            pool = ConnectionPool(key, config)
            _pools[key] = pool
            _pool_refs[key] = 0
        _pool_refs[key] += 1
        return pool


def release_pool(pool: ConnectionPool):
    """Drop one reference to a shared pool; the last one closes it."""
    key = pool.db_path
    with _pools_lock:
        if _pools.get(key) is not pool:
            return
        _pool_refs[key] -= 1
        if _pool_refs[key] > 0:
            return
        del _pools[key]
        del _pool_refs[key]
    pool.close()


def close_pool(db_path: Path | str):
    key = Path(db_path).resolve()
    with _pools_lock:
        pool = _pools.pop(key, None)
        _pool_refs.pop(key, None)
    if pool is not None:
        pool.close()


def close_all_pools():
    with _pools_lock:
        pools = list(_pools.values())
        _pools.clear()
        _pool_refs.clear()
    for pool in pools:
        pool.close()
    logger.info("pools_closed", count=len(pools))
