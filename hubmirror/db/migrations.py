"""
Versioned schema migrations for the metadata store.

Each entry in ``MIGRATIONS`` is applied once, in order, and recorded in
``_migration_history``. Re-running is a no-op.
"""

from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

from hubmirror.logging_config import get_logger

logger = get_logger(__name__)


MIGRATIONS: list[tuple[str, str]] = [
    (
        "create_models",
        """
        CREATE TABLE IF NOT EXISTS models (
            model_id TEXT PRIMARY KEY NOT NULL,
            private INTEGER NOT NULL DEFAULT 0,
            gated INTEGER NOT NULL DEFAULT 0,
            disabled INTEGER NOT NULL DEFAULT 0,
            pipeline_tag TEXT,
            library_name TEXT,
            model_type TEXT,
            downloads INTEGER NOT NULL DEFAULT 0 CHECK (downloads >= 0),
            likes INTEGER NOT NULL DEFAULT 0 CHECK (likes >= 0),
            sha TEXT,
            last_modified TEXT,
            tags TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(tags)),
            config TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(config)),
            card_data TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(card_data)),
            transformers_info TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(transformers_info)),
            safetensors TEXT NOT NULL DEFAULT '{}' CHECK (json_valid(safetensors)),
            widget_data TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(widget_data)),
            siblings TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(siblings)),
            spaces TEXT NOT NULL DEFAULT '[]' CHECK (json_valid(spaces)),
            used_storage INTEGER NOT NULL DEFAULT 0 CHECK (used_storage >= 0),
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            CHECK (created_at <= updated_at)
        );
        """,
    ),
    (
        "create_models_indexes",
        """
        CREATE INDEX IF NOT EXISTS idx_models_pipeline_tag ON models(pipeline_tag);
        CREATE INDEX IF NOT EXISTS idx_models_library_name ON models(library_name);
        CREATE INDEX IF NOT EXISTS idx_models_downloads ON models(downloads DESC);
        CREATE INDEX IF NOT EXISTS idx_models_likes ON models(likes DESC);
        CREATE INDEX IF NOT EXISTS idx_models_created_at ON models(created_at);
        CREATE INDEX IF NOT EXISTS idx_models_private ON models(private);
        """,
    ),
]


def _ensure_history(conn: sqlite3.Connection):
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS _migration_history (
            version INTEGER PRIMARY KEY,
            name TEXT NOT NULL,
            applied_at TEXT NOT NULL
        )
        """
    )


def current_version(conn: sqlite3.Connection) -> int:
    """Highest applied migration version, 0 for a fresh database."""
    _ensure_history(conn)
    row = conn.execute("SELECT MAX(version) FROM _migration_history").fetchone()
    return row[0] or 0


def run_migrations(conn: sqlite3.Connection) -> int:
    """
    Apply pending migrations.

    ``conn`` must be in autocommit mode; each migration runs in its own
    transaction together with its history row.

    Returns:
        Number of migrations applied
    """
    start = current_version(conn)
    applied = 0
    for version, (name, script) in enumerate(MIGRATIONS, start=1):
        if version <= start:
            continue
        statements = [s.strip() for s in script.split(";") if s.strip()]
        conn.execute("BEGIN IMMEDIATE")
        try:
            # Another process may have migrated while we waited for the lock.
            if current_version(conn) >= version:
                conn.execute("COMMIT")
                continue
            for statement in statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO _migration_history (version, name, applied_at) VALUES (?, ?, ?)",
                (version, name, datetime.now(UTC).isoformat()),
            )
            conn.execute("COMMIT")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        applied += 1
        logger.info("migration_applied", version=version, name=name)
    return applied
