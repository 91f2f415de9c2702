"""
Persisted cache and daily quota for registry lookups.

Both live in the shared kv_store table so they survive restarts; retry and
in-flight bookkeeping are session-scoped and live in session.py instead.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta

from .identifiers import normalize_key
from .models import (
    CacheEntry,
    EnricherDatabase,
    QuotaCounter,
    cache_key,
    quota_key,
    utc_now,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class TimedCache:
    """Key -> CacheEntry store with a fixed time-to-live."""

    def __init__(
        self,
        db: EnricherDatabase,
        ttl: timedelta = timedelta(days=30),
        clock: Clock = utc_now,
    ):
        self.db = db
        self.ttl = ttl
        self.clock = clock

    def get(self, key: str) -> CacheEntry | None:
        """
        Return the live entry for key.

        Entries older than the TTL count as misses. They are left in place
        and overwritten by the next successful resolution.
        """
        normalized = normalize_key(key)
        if not normalized:
            return None

        data = self.db.get_value(cache_key(normalized))
        if not data:
            return None

        entry = CacheEntry.from_dict(data)
        if not entry.stored_at:
            return None
        try:
            age = self.clock() - entry.stored_at_dt
        except (TypeError, ValueError):
            logger.warning(f"Unreadable cache timestamp for {normalized}: {entry.stored_at!r}")
            return None

        if age > self.ttl:
            logger.debug(f"Cache entry for {normalized} expired ({age} old)")
            return None
        return entry

    def put(self, entry: CacheEntry) -> CacheEntry:
        """Store an entry, stamping it with the current time."""
        entry.key = normalize_key(entry.key)
        entry.stored_at = self.clock().isoformat()
        self.db.set_value(cache_key(entry.key), entry.to_dict())
        return entry


class QuotaTracker:
    """Per-UTC-day counter of remote lookups with a fixed cap."""

    def __init__(
        self,
        db: EnricherDatabase,
        daily_limit: int = 900,
        clock: Clock = utc_now,
    ):
        self.db = db
        self.daily_limit = daily_limit
        self.clock = clock

    def today_key(self) -> str:
        """Calendar date string (UTC) of the current day."""
        return self.clock().strftime("%Y-%m-%d")

    def try_consume(self) -> bool:
        """Take one unit of today's quota. False once the cap is reached."""
        count = self.db.increment_if_below(quota_key(self.today_key()), self.daily_limit)
        if count is None:
            logger.info(f"Daily quota of {self.daily_limit} lookups reached")
            return False
        return True

    def counter(self) -> QuotaCounter:
        """Today's counter."""
        date_key = self.today_key()
        return QuotaCounter(
            date_key=date_key,
            count=int(self.db.get_value(quota_key(date_key), 0)),
        )

    def used_today(self) -> int:
        return self.counter().count

    def remaining(self) -> int:
        return max(self.daily_limit - self.used_today(), 0)
