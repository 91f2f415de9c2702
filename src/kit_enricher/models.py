"""
Data models and database operations for kit-enricher.
"""

import json
import sqlite3
from collections.abc import Iterable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

# Key space of the flat kv_store table
CACHE_KEY_PREFIX = "CACHE::"
QUOTA_KEY_PREFIX = "QUOTA::"
CATALOG_LAST_UPDATED_KEY = "CATALOG_LAST_UPDATED"
COLLECTION_LAST_SYNC_KEY = "COLLECTION_LAST_SYNC"
INITIAL_SYNC_DONE_KEY = "INITIAL_SYNC_DONE"
API_KEY_KEY = "REBRICKABLE_API_KEY"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


def cache_key(key: str) -> str:
    return f"{CACHE_KEY_PREFIX}{key}"


def quota_key(date_key: str) -> str:
    return f"{QUOTA_KEY_PREFIX}{date_key}"


@dataclass
class CacheEntry:
    """Registry metadata resolved for one store key."""

    key: str
    name: str
    image_url: str = ""
    set_num: str = ""
    catalog_id: str = ""
    year: str = ""
    stored_at: str = field(default_factory=lambda: utc_now().isoformat())

    @property
    def stored_at_dt(self) -> datetime:
        """Parse stored_at."""
        return datetime.fromisoformat(self.stored_at)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CacheEntry":
        """Create from dictionary."""
        return cls(
            key=data.get("key", ""),
            name=data.get("name", ""),
            image_url=data.get("image_url", ""),
            set_num=data.get("set_num", ""),
            catalog_id=data.get("catalog_id", ""),
            year=str(data.get("year") or ""),
            stored_at=data.get("stored_at", ""),
        )


@dataclass
class QuotaCounter:
    """Remote lookups used on one UTC calendar day."""

    date_key: str
    count: int = 0


@dataclass
class RetryState:
    """Failed attempts for a key in the current session."""

    key: str
    attempts: int = 0
    last_attempt_at: datetime | None = None


@dataclass
class CatalogEntry:
    """One set in the catalog snapshot."""

    catalog_id: str
    name: str = ""
    year: str = ""
    image_url: str = ""
    set_num: str = ""
    theme_name: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class CollectionItem:
    """One product in the store collection snapshot."""

    catalog_id: str = ""
    store_id: str = ""
    name: str = ""
    year: str = ""
    theme_name: str = ""
    url: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)


@dataclass
class CollectionSnapshot:
    """Result of a completed collection sync."""

    items: list[CollectionItem] = field(default_factory=list)
    synced_at: str = ""
    pages_fetched: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "synced_at": self.synced_at,
            "pages_fetched": self.pages_fetched,
            "count": len(self.items),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass
class StatusUpdate:
    """Progress notification emitted by long-running commands."""

    text: str
    error: bool = False
    done: bool = False

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {"text": self.text, "error": self.error, "done": self.done}


class EnricherDatabase:
    """Database operations for kit-enricher."""

    def __init__(self, db_path: Path):
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    # -------------------------------------------------------------------------
    # Flat key/value store
    # -------------------------------------------------------------------------

    def get_value(self, key: str, default: Any = None) -> Any:
        """Read one JSON value from the key/value store."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT value_json FROM kv_store WHERE key = ?", (key,)
            ).fetchone()
            return json.loads(row["value_json"]) if row else default
        finally:
            conn.close()

    def set_value(self, key: str, value: Any) -> None:
        """Write one JSON value to the key/value store."""
        now = utc_now().isoformat()
        conn = self._connect()
        try:
            conn.execute(
                """
                INSERT INTO kv_store (key, value_json, updated_ts)
                VALUES (?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_ts = excluded.updated_ts
                """,
                (key, json.dumps(value), now),
            )
            conn.commit()
        finally:
            conn.close()

    def delete_value(self, key: str) -> None:
        """Remove a key from the key/value store."""
        conn = self._connect()
        try:
            conn.execute("DELETE FROM kv_store WHERE key = ?", (key,))
            conn.commit()
        finally:
            conn.close()

    def increment_if_below(self, key: str, limit: int) -> int | None:
        """
        Atomically add one to an integer counter unless it reached limit.

        Returns the new count, or None if the counter was already at limit.
        Runs under BEGIN IMMEDIATE so concurrent writers serialize.
        """
        now = utc_now().isoformat()
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT value_json FROM kv_store WHERE key = ?", (key,)
                ).fetchone()
                used = int(json.loads(row[0])) if row else 0
                if used >= limit:
                    conn.execute("ROLLBACK")
                    return None
                conn.execute(
                    """
                    INSERT INTO kv_store (key, value_json, updated_ts)
                    VALUES (?, ?, ?)
                    ON CONFLICT(key) DO UPDATE SET
                        value_json = excluded.value_json,
                        updated_ts = excluded.updated_ts
                    """,
                    (key, json.dumps(used + 1), now),
                )
                conn.execute("COMMIT")
                return used + 1
            except sqlite3.Error:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Catalog snapshot
    # -------------------------------------------------------------------------

    def replace_catalog(self, entries: Iterable[CatalogEntry], updated_at: str) -> int:
        """Replace the whole catalog snapshot in one transaction."""
        rows = [
            (e.catalog_id, e.name, e.year, e.image_url, e.set_num, e.theme_name)
            for e in entries
        ]
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM catalog_entries")
                conn.executemany(
                    """
                    INSERT INTO catalog_entries
                        (catalog_id, name, year, image_url, set_num, theme_name)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                self._set_in_transaction(conn, CATALOG_LAST_UPDATED_KEY, updated_at)
        finally:
            conn.close()
        return len(rows)

    def load_catalog(self) -> list[CatalogEntry]:
        """Read the whole catalog snapshot."""
        conn = self._connect()
        try:
            cursor = conn.execute("SELECT * FROM catalog_entries")
            return [CatalogEntry(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def get_catalog_entry(self, catalog_id: str) -> CatalogEntry | None:
        """Get a single catalog entry by catalog id."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT * FROM catalog_entries WHERE catalog_id = ?", (catalog_id,)
            ).fetchone()
            return CatalogEntry(**dict(row)) if row else None
        finally:
            conn.close()

    # -------------------------------------------------------------------------
    # Collection snapshot
    # -------------------------------------------------------------------------

    def replace_collection(self, items: Iterable[CollectionItem], synced_at: str) -> int:
        """Replace the whole collection snapshot in one transaction."""
        rows = [
            (pos, i.catalog_id, i.store_id, i.name, i.year, i.theme_name, i.url)
            for pos, i in enumerate(items)
        ]
        conn = self._connect()
        try:
            with conn:
                conn.execute("DELETE FROM collection_items")
                conn.executemany(
                    """
                    INSERT INTO collection_items
                        (position, catalog_id, store_id, name, year, theme_name, url)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    rows,
                )
                self._set_in_transaction(conn, COLLECTION_LAST_SYNC_KEY, synced_at)
        finally:
            conn.close()
        return len(rows)

    def get_collection(self) -> list[CollectionItem]:
        """Read the collection snapshot in listing order."""
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT catalog_id, store_id, name, year, theme_name, url
                FROM collection_items ORDER BY position ASC
                """
            )
            return [CollectionItem(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def search_collection(self, query: str, limit: int = 50) -> list[CollectionItem]:
        """Case-insensitive substring search over the collection snapshot."""
        query = (query or "").strip()
        if not query:
            return []

        escaped = query.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        pattern = f"%{escaped}%"
        conn = self._connect()
        try:
            cursor = conn.execute(
                """
                SELECT catalog_id, store_id, name, year, theme_name, url
                FROM collection_items
                WHERE name LIKE :p ESCAPE '\\'
                   OR theme_name LIKE :p ESCAPE '\\'
                   OR catalog_id LIKE :p ESCAPE '\\'
                   OR store_id LIKE :p ESCAPE '\\'
                ORDER BY position ASC
                LIMIT :limit
                """,
                {"p": pattern, "limit": limit},
            )
            return [CollectionItem(**dict(row)) for row in cursor.fetchall()]
        finally:
            conn.close()

    def _set_in_transaction(self, conn: sqlite3.Connection, key: str, value: Any) -> None:
        conn.execute(
            """
            INSERT INTO kv_store (key, value_json, updated_ts)
            VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value_json = excluded.value_json,
                updated_ts = excluded.updated_ts
            """,
            (key, json.dumps(value), utc_now().isoformat()),
        )
