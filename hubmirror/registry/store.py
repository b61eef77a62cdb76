"""
Model metadata store with SQLite backend.

One row per model id in the ``models`` table; JSON fields are stored as
text. Secondary indexes live in the same database, so every upsert or
delete updates row and indexes in one transaction.
"""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from hubmirror.db.migrations import run_migrations
from hubmirror.db.pool import PoolClosedError, PoolConfig, get_pool, release_pool
from hubmirror.logging_config import get_logger
from hubmirror.registry.codec import JSON_FIELDS, decode_field, encode_field, shape_default
from hubmirror.registry.errors import (
    JsonFieldError,
    NotFoundError,
    StoreIoError,
    ValidationError,
)
from hubmirror.registry.query import QueryCriteria, QueryPage, QueryTranslator
from hubmirror.registry.record import ModelRecord, format_timestamp, parse_timestamp

logger = get_logger(__name__)


COLUMNS: tuple[str, ...] = (
    "model_id",
    "private",
    "gated",
    "disabled",
    "pipeline_tag",
    "library_name",
    "model_type",
    "downloads",
    "likes",
    "sha",
    "last_modified",
    "tags",
    "config",
    "card_data",
    "transformers_info",
    "safetensors",
    "widget_data",
    "siblings",
    "spaces",
    "used_storage",
    "created_at",
    "updated_at",
)

# created_at is written once by the INSERT branch and never updated.
_UPSERT_SQL = (
    f"INSERT INTO models ({', '.join(COLUMNS)}) "
    f"VALUES ({', '.join(':' + c for c in COLUMNS)}) "
    "ON CONFLICT(model_id) DO UPDATE SET "
    + ", ".join(f"{c} = excluded.{c}" for c in COLUMNS if c not in ("model_id", "created_at"))
)


class _KeyedLocks:
    """One lock per key, created on demand and dropped when unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, list[Any]] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)


class ModelStore:
    """
    Durable store for mirrored model records.

    The store trusts the records it is given: freshness is decided by the
    merge engine before ``upsert`` is called.
    """

    def __init__(
        self,
        db_path: Path | str,
        pool_config: PoolConfig | None = None,
        max_query_limit: int | None = None,
    ):
        """
        Initialize store.

        Args:
            db_path: Path to SQLite database file
            pool_config: Optional connection pool configuration
            max_query_limit: Upper bound applied to query ``limit``
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._pool = get_pool(self.db_path, pool_config)
        self._translator = (
            QueryTranslator(max_query_limit) if max_query_limit else QueryTranslator()
        )
        self._locks = _KeyedLocks()
        self._closed = False
        with self._backend("init"):
            with self._pool.get_connection() as conn:
                run_migrations(conn)

    @contextmanager
    def _backend(self, operation: str, model_id: str | None = None) -> Iterator[None]:
        try:
            yield
        except (sqlite3.Error, TimeoutError, PoolClosedError) as e:
            logger.error("store_operation_failed", operation=operation, model_id=model_id, error=str(e))
            raise StoreIoError(f"{operation} failed for {model_id or 'store'}: {e}") from e

    @contextmanager
    def locked(self, model_id: str) -> Iterator[None]:
        """
        Serialise read-merge-write cycles for one model id.

        Other ids are not blocked. Never hold this across a network call.
        """
        with self._locks.hold(model_id):
            yield

    # -------------------------------------------------------------------------
    # CRUD Operations
    # -------------------------------------------------------------------------

    def upsert(self, record: ModelRecord) -> ModelRecord:
        """
        Insert or replace the row for ``record.model_id``.

        Returns:
            The stored record as read back inside the same transaction
        """
        row = self._record_to_row(record)
        with self._backend("upsert", record.model_id):
            with self._pool.transaction() as conn:
                conn.execute(_UPSERT_SQL, row)
                stored = conn.execute(
                    "SELECT * FROM models WHERE model_id = ?",
                    (record.model_id,),
                ).fetchone()
        result = self._row_to_record(stored)
        logger.info(
            "model_upserted",
            model_id=record.model_id,
            updated_at=format_timestamp(result.updated_at),
            siblings=len(result.siblings),
        )
        return result

    def find(self, model_id: str) -> ModelRecord | None:
        """Get a model by id, or None when absent."""
        with self._backend("get", model_id):
            with self._pool.get_connection() as conn:
                row = conn.execute(
                    "SELECT * FROM models WHERE model_id = ?",
                    (model_id,),
                ).fetchone()
        return self._row_to_record(row) if row else None

    def get(self, model_id: str) -> ModelRecord:
        """
        Get a model by id.

        Raises:
            NotFoundError: no row for ``model_id``
        """
        record = self.find(model_id)
        if record is None:
            raise NotFoundError(model_id)
        return record

    def exists(self, model_id: str) -> bool:
        with self._backend("exists", model_id):
            with self._pool.get_connection() as conn:
                row = conn.execute(
                    "SELECT 1 FROM models WHERE model_id = ?",
                    (model_id,),
                ).fetchone()
        return row is not None

    def delete(self, model_id: str) -> None:
        """
        Remove a model and its index entries.

        Raises:
            NotFoundError: no row for ``model_id``
        """
        with self._backend("delete", model_id):
            with self._pool.transaction() as conn:
                cursor = conn.execute("DELETE FROM models WHERE model_id = ?", (model_id,))
                deleted = cursor.rowcount
        if deleted == 0:
            raise NotFoundError(model_id)
        logger.info("model_deleted", model_id=model_id)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def query(self, criteria: QueryCriteria | None = None) -> QueryPage:
        """
        Run a registry-style listing query.

        Raises:
            InvalidQueryError: criteria cannot be honoured
        """
        plan = self._translator.translate(criteria or QueryCriteria())
        with self._backend("query"):
            with self._pool.get_connection() as conn:
                rows = conn.execute(plan.sql, plan.params).fetchall()
        items = [self._row_to_record(row) for row in rows[: plan.limit]]
        return QueryPage(
            items=items,
            skip=plan.skip,
            limit=plan.limit,
            has_more=len(rows) > plan.limit,
        )

    def count(self, criteria: QueryCriteria | None = None) -> int:
        """Number of rows matching the filters of ``criteria``."""
        sql, params = self._translator.translate_count(criteria or QueryCriteria())
        with self._backend("count"):
            with self._pool.get_connection() as conn:
                return conn.execute(sql, params).fetchone()[0]

    def iter_ids(self) -> Iterator[str]:
        """All stored model ids in ascending order."""
        with self._backend("iter_ids"):
            with self._pool.get_connection() as conn:
                rows = conn.execute("SELECT model_id FROM models ORDER BY model_id").fetchall()
        for row in rows:
            yield row[0]

    # -------------------------------------------------------------------------
    # Stats
    # -------------------------------------------------------------------------

    def stats(self) -> dict[str, Any]:
        """Get store statistics."""
        with self._backend("stats"):
            with self._pool.get_connection() as conn:
                stats: dict[str, Any] = {}

                stats["total_models"] = conn.execute(
                    "SELECT COUNT(*) FROM models"
                ).fetchone()[0]

                cursor = conn.execute(
                    "SELECT pipeline_tag, COUNT(*) FROM models "
                    "WHERE pipeline_tag IS NOT NULL GROUP BY pipeline_tag"
                )
                stats["by_pipeline_tag"] = {row[0]: row[1] for row in cursor.fetchall()}

                cursor = conn.execute(
                    "SELECT library_name, COUNT(*) FROM models "
                    "WHERE library_name IS NOT NULL GROUP BY library_name"
                )
                stats["by_library"] = {row[0]: row[1] for row in cursor.fetchall()}

                stats["private_models"] = conn.execute(
                    "SELECT COUNT(*) FROM models WHERE private = 1"
                ).fetchone()[0]

                stats["total_used_storage"] = conn.execute(
                    "SELECT SUM(used_storage) FROM models"
                ).fetchone()[0] or 0

                stats["last_updated_at"] = conn.execute(
                    "SELECT MAX(updated_at) FROM models"
                ).fetchone()[0]

                return stats

    def close(self):
        if self._closed:
            return
        self._closed = True
        release_pool(self._pool)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _record_to_row(record: ModelRecord) -> dict[str, Any]:
        row: dict[str, Any] = {
            "model_id": record.model_id,
            "private": int(record.private),
            "gated": int(record.gated),
            "disabled": int(record.disabled),
            "pipeline_tag": record.pipeline_tag,
            "library_name": record.library_name,
            "model_type": record.model_type,
            "downloads": record.downloads,
            "likes": record.likes,
            "sha": record.sha,
            "last_modified": format_timestamp(record.last_modified),
            "used_storage": record.used_storage,
            "created_at": format_timestamp(record.created_at),
            "updated_at": format_timestamp(record.updated_at),
        }
        for name in JSON_FIELDS:
            try:
                row[name] = encode_field(name, getattr(record, name))
            except JsonFieldError as e:
                raise ValidationError(f"{record.model_id}: {e}") from e
        return row

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> ModelRecord:
        """
        Convert database row to ModelRecord.

        An unreadable JSON column is logged and read as its shape default;
        the next merge that touches the field rewrites it.
        """
        values: dict[str, Any] = {}
        for name in JSON_FIELDS:
            try:
                values[name] = decode_field(name, row[name])
            except JsonFieldError as e:
                logger.warning(
                    "store_column_unreadable",
                    model_id=row["model_id"],
                    field=name,
                    error=e.message,
                )
                values[name] = shape_default(name)

        return ModelRecord(
            model_id=row["model_id"],
            private=bool(row["private"]),
            gated=bool(row["gated"]),
            disabled=bool(row["disabled"]),
            pipeline_tag=row["pipeline_tag"],
            library_name=row["library_name"],
            model_type=row["model_type"],
            downloads=row["downloads"],
            likes=row["likes"],
            sha=row["sha"],
            last_modified=parse_timestamp(row["last_modified"]),
            used_storage=row["used_storage"],
            created_at=parse_timestamp(row["created_at"]),
            updated_at=parse_timestamp(row["updated_at"]),
            **values,
        )
