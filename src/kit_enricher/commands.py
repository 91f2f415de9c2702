"""
Inbound command surface for kit-enricher.

EnricherCommands wires the resolver, catalog and collector together from an
EnricherConfig. Presentation layers (the CLI runner, the Datasette plugin)
call these methods and listen for StatusUpdate notifications; no method lets
an exception escape.
"""

import asyncio
import logging
import sqlite3
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from typing import Any

from .cache import QuotaTracker, TimedCache
from .catalog import CatalogIndex, CatalogRefresher, CatalogRefreshError
from .collector import AnchorPageParser, PageParser, PaginatedCollector, StoreListingClient
from .config import EnricherConfig
from .migrations import run_migrations
from .models import (
    API_KEY_KEY,
    CATALOG_LAST_UPDATED_KEY,
    COLLECTION_LAST_SYNC_KEY,
    INITIAL_SYNC_DONE_KEY,
    CacheEntry,
    CatalogEntry,
    CollectionItem,
    EnricherDatabase,
    StatusUpdate,
    utc_now,
)
from .rebrickable import RebrickableClient
from .resolver import EnrichedProduct, EnrichmentResolver
from .session import CancellationToken, ResolverSession

logger = logging.getLogger(__name__)

StatusListener = Callable[[StatusUpdate], None]


def describe_error(error: BaseException) -> str:
    return str(error) or type(error).__name__


class StatusBroadcaster:
    """Fan-out of status updates to any listening presentation layer."""

    def __init__(self):
        self._listeners: list[StatusListener] = []
        self.last: StatusUpdate | None = None

    def subscribe(self, listener: StatusListener) -> Callable[[], None]:
        """Register a listener; returns a function that unregisters it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def emit(self, update: StatusUpdate) -> None:
        self.last = update
        if update.error:
            logger.error(update.text)
        else:
            logger.info(update.text)

        for listener in list(self._listeners):
            try:
                listener(update)
            except Exception:
                logger.exception("Status listener failed")


class EnricherCommands:
    """All operations a presentation layer can trigger."""

    def __init__(
        self,
        config: EnricherConfig,
        db: EnricherDatabase | None = None,
        rebrickable: RebrickableClient | None = None,
        listing: StoreListingClient | None = None,
        parser: PageParser | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.config = config
        self.db = db or EnricherDatabase(config.db_path)
        self.rebrickable = rebrickable or RebrickableClient(
            api_base=config.rebrickable.api_base,
            timeout_seconds=config.rebrickable.timeout_seconds,
            download_timeout_seconds=config.rebrickable.download_timeout_seconds,
        )
        self.listing = listing or StoreListingClient(
            base_url=config.store.base_url,
            listing_path=config.store.listing_path,
            page_param=config.store.page_param,
            timeout_seconds=config.store.timeout_seconds,
        )
        self.parser = parser or AnchorPageParser(config.store.base_url)
        self.status_events = StatusBroadcaster()

        self.cache = TimedCache(
            self.db, ttl=timedelta(days=config.resolver.cache_ttl_days), clock=clock
        )
        self.quota = QuotaTracker(
            self.db, daily_limit=config.resolver.daily_limit, clock=clock
        )
        self.resolver = EnrichmentResolver(
            cache=self.cache,
            quota=self.quota,
            client=self.rebrickable,
            api_key_provider=self.get_api_key,
            session=ResolverSession(
                max_attempts=config.resolver.max_attempts,
                retry_delays=config.resolver.retry_delays_seconds,
                clock=clock,
            ),
            sleep=sleep,
            excluded_keywords=config.resolver.excluded_keywords,
        )

    def ensure_database(self) -> list[int]:
        """Create or upgrade the database schema."""
        return run_migrations(self.db.db_path, verbose=False)

    # -------------------------------------------------------------------------
    # Credential
    # -------------------------------------------------------------------------

    def get_api_key(self) -> str | None:
        """API key from config/environment, else the stored one."""
        configured = self.config.rebrickable.get_api_key()
        if configured:
            return configured
        stored = self.db.get_value(API_KEY_KEY)
        return stored.strip() if isinstance(stored, str) and stored.strip() else None

    def set_api_key(self, value: str | None) -> bool:
        """Store (or clear, when empty) the API key. Returns True if one is set now."""
        value = (value or "").strip()
        try:
            if value:
                self.db.set_value(API_KEY_KEY, value)
            else:
                self.db.delete_value(API_KEY_KEY)
        except sqlite3.Error:
            logger.exception("Could not store API key")
            return False
        return self.get_api_key() is not None

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    async def refresh_catalog(self) -> StatusUpdate:
        """Rebuild the catalog snapshot from the Rebrickable downloads."""
        refresher = CatalogRefresher(
            client=self.rebrickable,
            db=self.db,
            sets_url=self.config.rebrickable.sets_csv_url,
            themes_url=self.config.rebrickable.themes_csv_url,
            progress=self.status_events.emit,
        )
        try:
            index = await refresher.refresh()
        except CatalogRefreshError as e:
            logger.exception("Catalog refresh failed")
            return self._finish(f"Catalog update failed: {describe_error(e)}", error=True)

        logger.info(f"Catalog holds {len(index)} sets")
        return self._finish("Done. Lego catalog saved.")

    def lookup(self, catalog_id: str | None) -> CatalogEntry | None:
        """Read one entry from the catalog snapshot."""
        catalog_id = (catalog_id or "").strip()
        if not catalog_id:
            return None
        try:
            return self.db.get_catalog_entry(catalog_id)
        except sqlite3.Error:
            logger.exception(f"Catalog lookup failed for {catalog_id}")
            return None

    # -------------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------------

    async def sync_collection(
        self, cancel_token: CancellationToken | None = None
    ) -> StatusUpdate:
        """Walk the store listing and replace the collection snapshot."""
        self.status_events.emit(StatusUpdate("Syncing store listing…"))
        try:
            collector = PaginatedCollector(
                source=self.listing,
                parser=self.parser,
                catalog=CatalogIndex.load(self.db),
                db=self.db,
                max_pages=self.config.store.max_pages,
                progress=self.status_events.emit,
            )
            snapshot = await collector.sync(cancel_token)
        except Exception as e:
            logger.exception("Collection sync failed")
            return self._finish(f"Cache sync failed: {describe_error(e)}", error=True)

        # The collector already announced completion
        return StatusUpdate(f"Synced {len(snapshot.items)} products.", done=True)

    def search_collection(self, query: str, limit: int = 50) -> list[CollectionItem]:
        """Search the collection snapshot by name, theme or id."""
        try:
            return self.db.search_collection(query, limit=limit)
        except sqlite3.Error:
            logger.exception("Collection search failed")
            return []

    # -------------------------------------------------------------------------
    # Resolution
    # -------------------------------------------------------------------------

    async def resolve(
        self, key: str, cancel_token: CancellationToken | None = None
    ) -> CacheEntry | None:
        return await self.resolver.resolve(key, cancel_token)

    async def resolve_many(
        self, keys: Iterable[str], cancel_token: CancellationToken | None = None
    ) -> list[EnrichedProduct]:
        return await self.resolver.resolve_many(keys, cancel_token)

    # -------------------------------------------------------------------------
    # Install-time setup and status
    # -------------------------------------------------------------------------

    async def initialize(self) -> StatusUpdate:
        """
        First-run setup: refresh the catalog, then sync the collection.

        The initial-sync flag is set only when both succeed, so a failed
        first run is retried on the next start.
        """
        try:
            if self.db.get_value(INITIAL_SYNC_DONE_KEY, False):
                logger.info("Initial sync already performed")
                return StatusUpdate("Initial sync already performed.", done=True)
        except sqlite3.Error as e:
            logger.exception("Could not read initial sync flag")
            return self._finish(f"Initial sync failed: {describe_error(e)}", error=True)

        status = await self.refresh_catalog()
        if status.error:
            return status

        status = await self.sync_collection()
        if status.error:
            return status

        try:
            self.db.set_value(INITIAL_SYNC_DONE_KEY, True)
        except sqlite3.Error as e:
            logger.exception("Could not record initial sync")
            return self._finish(f"Initial sync failed: {describe_error(e)}", error=True)
        return status

    def status(self) -> dict[str, Any]:
        """Snapshot timestamps, quota usage and the last status update."""
        last = self.status_events.last
        result: dict[str, Any] = {
            "last_status": last.to_dict() if last else None,
            "quota_exhausted": self.resolver.quota_exhausted,
            "daily_limit": self.quota.daily_limit,
        }
        try:
            result.update(
                {
                    "catalog_last_updated": self.db.get_value(CATALOG_LAST_UPDATED_KEY),
                    "collection_last_sync": self.db.get_value(COLLECTION_LAST_SYNC_KEY),
                    "initial_sync_done": bool(self.db.get_value(INITIAL_SYNC_DONE_KEY, False)),
                    "quota_used_today": self.quota.used_today(),
                    "quota_remaining": self.quota.remaining(),
                    "api_key_configured": self.get_api_key() is not None,
                }
            )
        except sqlite3.Error as e:
            logger.exception("Could not read status from database")
            result["error"] = describe_error(e)
        return result

    def _finish(self, text: str, error: bool = False) -> StatusUpdate:
        update = StatusUpdate(text, error=error, done=True)
        self.status_events.emit(update)
        return update
