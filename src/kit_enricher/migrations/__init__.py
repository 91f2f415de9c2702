"""
Database migration utilities for kit-enricher.

Migrations are numbered SQL scripts declared in MIGRATIONS below.
They are applied in order based on their version number.
"""

import logging
import sqlite3
from datetime import UTC, datetime
from pathlib import Path

logger = logging.getLogger(__name__)

INITIAL_SCHEMA = """
-- Flat key/value store: cache entries, quota counters, flags, credential
CREATE TABLE IF NOT EXISTS kv_store (
    key TEXT PRIMARY KEY,
    value_json TEXT NOT NULL,
    updated_ts TEXT NOT NULL
);

-- Catalog snapshot (replaced wholesale on refresh)
CREATE TABLE IF NOT EXISTS catalog_entries (
    catalog_id TEXT PRIMARY KEY,
    name TEXT NOT NULL DEFAULT '',
    year TEXT NOT NULL DEFAULT '',
    image_url TEXT NOT NULL DEFAULT '',
    set_num TEXT NOT NULL DEFAULT '',
    theme_name TEXT NOT NULL DEFAULT ''
);

-- Collection snapshot (replaced wholesale on sync)
CREATE TABLE IF NOT EXISTS collection_items (
    position INTEGER PRIMARY KEY,
    catalog_id TEXT NOT NULL DEFAULT '',
    store_id TEXT NOT NULL DEFAULT '',
    name TEXT NOT NULL DEFAULT '',
    year TEXT NOT NULL DEFAULT '',
    theme_name TEXT NOT NULL DEFAULT '',
    url TEXT NOT NULL DEFAULT ''
);
"""

COLLECTION_INDEXES = """
CREATE INDEX IF NOT EXISTS idx_collection_catalog_id
    ON collection_items(catalog_id);

CREATE INDEX IF NOT EXISTS idx_collection_store_id
    ON collection_items(store_id);
"""

MIGRATIONS: list[tuple[int, str, str]] = [
    (1, "initial_schema", INITIAL_SCHEMA),
    (2, "collection_indexes", COLLECTION_INDEXES),
]


def get_applied_versions(conn: sqlite3.Connection) -> set[int]:
    """Get the set of already-applied migration versions."""
    try:
        cursor = conn.execute("SELECT version FROM schema_migrations")
        return {row[0] for row in cursor.fetchall()}
    except sqlite3.OperationalError:
        # Table doesn't exist yet
        return set()


def apply_migration(conn: sqlite3.Connection, version: int, sql: str) -> None:
    """Apply a single migration script."""
    now = datetime.now(UTC).isoformat()

    conn.executescript(sql)

    # Record that we applied it
    conn.execute(
        "INSERT INTO schema_migrations (version, applied_ts) VALUES (?, ?)",
        (version, now),
    )
    conn.commit()


def run_migrations(db_path: Path, verbose: bool = True) -> list[int]:
    """
    Run all pending migrations on the database.

    Returns list of versions that were applied.
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path)
    applied = []

    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                applied_ts TEXT NOT NULL
            )
        """)
        conn.commit()

        already_applied = get_applied_versions(conn)

        for version, name, sql in MIGRATIONS:
            if version in already_applied:
                if verbose:
                    logger.info(f"Skipping migration {version} (already applied)")
                continue

            if verbose:
                logger.info(f"Applying migration {version}: {name}")

            apply_migration(conn, version, sql)
            applied.append(version)

        if verbose and not applied:
            logger.info("No new migrations to apply.")

    finally:
        conn.close()

    return applied


def get_current_version(db_path: Path) -> int:
    """Get the current schema version."""
    if not Path(db_path).exists():
        return 0

    conn = sqlite3.connect(db_path)
    try:
        applied = get_applied_versions(conn)
        return max(applied) if applied else 0
    finally:
        conn.close()
