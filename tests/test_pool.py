"""Tests for the SQLite connection pool."""

from __future__ import annotations

import sqlite3
import threading
import time
from pathlib import Path

import pytest

from hubmirror.db import ConnectionPool, PoolClosedError, PoolConfig, close_pool, get_pool, release_pool


@pytest.fixture
def pool(tmp_path: Path):
    p = ConnectionPool(tmp_path / "pool.db", PoolConfig(min_size=1, max_size=2, acquire_timeout=0.2))
    p.executescript("CREATE TABLE items (id INTEGER PRIMARY KEY, name TEXT NOT NULL);")
    yield p
    p.close()


def test_wal_mode_enabled(pool: ConnectionPool) -> None:
    with pool.get_connection() as conn:
        assert conn.execute("PRAGMA journal_mode").fetchone()[0] == "wal"


def test_transaction_commits(pool: ConnectionPool) -> None:
    with pool.transaction() as conn:
        conn.execute("INSERT INTO items (name) VALUES ('a')")

    with pool.get_connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM items").fetchone()[0] == 1
    assert pool.stats()["transactions"] == 1


def test_transaction_rolls_back_on_error(pool: ConnectionPool) -> None:
    with pytest.raises(RuntimeError):
        with pool.transaction() as conn:
            conn.execute("INSERT INTO items (name) VALUES ('a')")
            raise RuntimeError("boom")

    with pool.get_connection() as conn:
        assert conn.execute("SELECT COUNT(*) FROM items").fetchone()[0] == 0
        assert not conn.in_transaction
    assert pool.stats()["rollbacks"] == 1


def test_connection_reused(pool: ConnectionPool) -> None:
    with pool.get_connection() as first:
        pass
    with pool.get_connection() as second:
        pass
    assert first is second
    assert pool.size == 1


def test_acquire_timeout_when_exhausted(pool: ConnectionPool) -> None:
    held = threading.Event()
    done = threading.Event()

    def hold():
        with pool.get_connection():
            held.set()
            done.wait(timeout=5)

    threads = [threading.Thread(target=hold) for _ in range(2)]
    for t in threads:
        t.start()
    held.wait(timeout=5)
    # wait until both connections are checked out
    for _ in range(100):
        if pool.stats()["in_use"] == 2:
            break
        time.sleep(0.01)

    with pytest.raises(TimeoutError):
        with pool.get_connection():
            pass

    done.set()
    for t in threads:
        t.join(timeout=5)
    assert pool.stats()["timeouts"] == 1


def test_closed_pool_rejects_acquire(pool: ConnectionPool) -> None:
    pool.close()
    with pytest.raises(RuntimeError):
        with pool.get_connection():
            pass


def test_shared_pool_replaced_after_close(tmp_path: Path) -> None:
    db = tmp_path / "shared.db"
    first = get_pool(db)
    assert get_pool(db) is first

    first.close()
    second = get_pool(db)
    assert second is not first

    with second.get_connection() as conn:
        assert isinstance(conn, sqlite3.Connection)
    close_pool(db)


def test_config_validation() -> None:
    with pytest.raises(ValueError):
        PoolConfig(min_size=0)
    with pytest.raises(ValueError):
        PoolConfig(min_size=3, max_size=2)


def test_release_pool_closes_on_last_reference(tmp_path: Path) -> None:
    db = tmp_path / "refs.db"
    first = get_pool(db)
    second = get_pool(db)
    assert first is second

    release_pool(first)
    assert not first.closed
    with second.get_connection() as conn:
        conn.execute("SELECT 1")

    release_pool(second)
    assert first.closed
    assert get_pool(db) is not first
    close_pool(db)


def test_closed_pool_error_type(pool: ConnectionPool) -> None:
    pool.close()
    with pytest.raises(PoolClosedError):
        with pool.get_connection():
            pass


def test_unicode_lower_registered(pool: ConnectionPool) -> None:
    with pool.get_connection() as conn:
        assert conn.execute("SELECT unicode_lower('ÄBC-Ünï')").fetchone()[0] == "äbc-ünï"
        assert conn.execute("SELECT unicode_lower(NULL)").fetchone()[0] is None
