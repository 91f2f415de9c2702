"""
Enrichment resolver for kit-enricher.

Turns a store key into registry metadata while protecting the rate-limited
Rebrickable API:

1. Live cache hit wins over every other guard
2. Quota-exhausted flag for the current UTC day and missing API key
   short-circuit
3. Keys that failed max_attempts times are benched for a day at most
4. Concurrent callers for one key share a single in-flight lookup
5. Each new attempt waits out the backoff delay, re-checks the cache and
   takes one unit of the daily quota before calling the API

resolve() never raises; failures become None plus retry bookkeeping.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from .cache import QuotaTracker, TimedCache
from .identifiers import (
    catalog_id_from_set_num,
    format_display_title,
    is_excluded_name,
    normalize_key,
    to_catalog_id,
)
from .models import CacheEntry
from .rebrickable import RebrickableClient
from .session import CancellationToken, ResolverSession

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class EnrichedProduct:
    """A resolved key ready for display."""

    key: str
    entry: CacheEntry
    display_title: str

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "key": self.key,
            "title": self.display_title,
            "entry": self.entry.to_dict(),
        }


class EnrichmentResolver:
    """Resolve store keys to set metadata under cache, quota and retry policy."""

    def __init__(
        self,
        cache: TimedCache,
        quota: QuotaTracker,
        client: RebrickableClient,
        api_key_provider: Callable[[], str | None],
        session: ResolverSession | None = None,
        sleep: Sleep = asyncio.sleep,
        excluded_keywords: list[str] | None = None,
    ):
        """
        Initialize the resolver.

        Args:
            cache: Persisted key -> entry cache
            quota: Persisted daily lookup counter
            client: Rebrickable API client
            api_key_provider: Returns the current API key, or None for cache-only mode
            session: Session state; a fresh one is created if omitted
            sleep: Awaitable used for backoff delays
            excluded_keywords: Names containing these are dropped by resolve_many
        """
        self.cache = cache
        self.quota = quota
        self.client = client
        self.api_key_provider = api_key_provider
        self.session = session or ResolverSession()
        self.sleep = sleep
        self.excluded_keywords = excluded_keywords or []

    @property
    def quota_exhausted(self) -> bool:
        """Whether today's quota ran out during this session."""
        return self.session.is_quota_exhausted(self.quota.today_key())

    async def resolve(
        self,
        key: str,
        cancel_token: CancellationToken | None = None,
    ) -> CacheEntry | None:
        """
        Resolve one store key.

        Args:
            key: Store key, any case/whitespace (e.g. " m12345 ")
            cancel_token: If cancelled, no new lookup is started

        Returns:
            CacheEntry on success, None otherwise
        """
        normalized = normalize_key(key)
        if not normalized:
            return None

        try:
            return await self._resolve(normalized, cancel_token)
        except Exception:
            logger.exception(f"Unexpected error resolving {normalized}")
            return None

    async def _resolve(
        self,
        key: str,
        cancel_token: CancellationToken | None,
    ) -> CacheEntry | None:
        # No awaits between the cache check and registering the in-flight
        # operation, so check-and-insert is atomic on the event loop.
        cached = self.cache.get(key)
        if cached:
            logger.debug(f"Cache hit for {key}")
            return cached

        if self.quota_exhausted:
            return None

        api_key = self.api_key_provider()
        if not api_key:
            logger.debug(f"API key not set; skipping lookup for {key}")
            return None

        if self.session.retries.is_benched(key):
            logger.debug(f"Key {key} reached max attempts this session; skipping")
            return None

        pending = self.session.inflight.get(key)
        if pending is not None:
            logger.debug(f"Joining in-flight lookup for {key}")
            return await asyncio.shield(pending)

        if cancel_token is not None and cancel_token.cancelled:
            return None

        task = self.session.inflight.start(key, self._attempt(key, api_key))
        return await asyncio.shield(task)

    async def _attempt(self, key: str, api_key: str) -> CacheEntry | None:
        """One remote attempt for key, run as the single in-flight operation."""
        delay = self.session.retries.delay_for(key)
        if delay > 0:
            logger.debug(f"Waiting {delay}s before retrying {key}")
            await self.sleep(delay)

            # Another caller may have resolved it meanwhile
            cached = self.cache.get(key)
            if cached:
                return cached

        if not self.quota.try_consume():
            self.session.mark_quota_exhausted(self.quota.today_key())
            logger.warning("Local daily quota exhausted; stopping lookups until the next UTC day")
            return None

        lookup_id = to_catalog_id(key)
        try:
            data = await self.client.get_set(lookup_id, api_key)
        except Exception as e:
            logger.warning(f"Lookup for {key} ({lookup_id}) failed: {e!r}")
            self.session.retries.record_failure(key)
            return None

        name = str((data or {}).get("name") or "").strip()
        if not name:
            logger.debug(f"No usable set data for {key} ({lookup_id})")
            self.session.retries.record_failure(key)
            return None

        entry = self.cache.put(self._build_entry(key, name, data))
        self.session.retries.clear(key)
        logger.debug(f"Resolved {key} -> {entry.set_num} {entry.name}")
        return entry

    def _build_entry(self, key: str, name: str, data: dict[str, Any]) -> CacheEntry:
        set_num = str(data.get("set_num") or "")
        return CacheEntry(
            key=key,
            name=name,
            image_url=str(data.get("set_img_url") or ""),
            set_num=set_num,
            catalog_id=catalog_id_from_set_num(set_num),
            year=str(data.get("year") or ""),
        )

    async def resolve_many(
        self,
        keys: Iterable[str],
        cancel_token: CancellationToken | None = None,
    ) -> list[EnrichedProduct]:
        """
        Resolve a page's worth of keys concurrently.

        Duplicate keys are resolved once. Unresolvable keys and generic parts
        bundles (excluded keywords) are left out; order follows first
        appearance in keys.
        """
        unique = list(dict.fromkeys(k for k in (normalize_key(x) for x in keys) if k))
        entries = await asyncio.gather(*(self.resolve(k, cancel_token) for k in unique))

        products = []
        for key, entry in zip(unique, entries, strict=True):
            if entry is None:
                continue
            if is_excluded_name(entry.name, self.excluded_keywords):
                logger.debug(f"Skipping {key}: '{entry.name}' is a parts bundle")
                continue
            products.append(
                EnrichedProduct(
                    key=key,
                    entry=entry,
                    display_title=format_display_title(
                        entry.catalog_id, entry.name, entry.year, key
                    ),
                )
            )
        return products
