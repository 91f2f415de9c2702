"""
Local LEGO catalog for kit-enricher.

The catalog maps catalog ids ("75192") to set metadata and is built from
Rebrickable's bulk sets.csv.gz and themes.csv.gz downloads. It is the
enrichment source for collection syncs and for direct lookups.
"""

import asyncio
import csv
import io
import logging
from collections.abc import Callable, Iterable

from .identifiers import catalog_id_from_set_num
from .models import CatalogEntry, EnricherDatabase, StatusUpdate, utc_now
from .rebrickable import RebrickableClient

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[StatusUpdate], None]


class CatalogRefreshError(Exception):
    """A catalog refresh was aborted; the previous snapshot is unchanged."""


def parse_csv_rows(csv_text: str) -> list[dict[str, str]]:
    """Parse CSV text with a header row into trimmed row dicts."""
    reader = csv.DictReader(io.StringIO(csv_text))
    rows = []
    for raw in reader:
        row = {
            (name or "").strip(): (value or "").strip()
            for name, value in raw.items()
            if name is not None
        }
        if any(row.values()):
            rows.append(row)
    return rows


def build_theme_map(theme_rows: Iterable[dict[str, str]]) -> dict[str, str]:
    """Theme id -> theme name."""
    return {row.get("id", ""): row.get("name", "") for row in theme_rows}


class CatalogIndex:
    """Catalog id -> CatalogEntry lookup table."""

    def __init__(self, entries: dict[str, CatalogEntry] | None = None):
        self._entries = entries or {}

    @classmethod
    def build(
        cls,
        set_rows: Iterable[dict[str, str]],
        theme_rows: Iterable[dict[str, str]],
    ) -> "CatalogIndex":
        """
        Build the index from Rebrickable sets and themes rows.

        Rows without a usable set number are skipped. When several versions
        of a set share a catalog id ("6000-1", "6000-2"), the last row wins.
        """
        theme_map = build_theme_map(theme_rows)
        entries: dict[str, CatalogEntry] = {}

        for row in set_rows:
            set_num = row.get("set_num", "")
            catalog_id = catalog_id_from_set_num(set_num)
            if not catalog_id:
                continue

            entries[catalog_id] = CatalogEntry(
                catalog_id=catalog_id,
                name=row.get("name", ""),
                year=row.get("year", ""),
                image_url=row.get("img_url") or row.get("set_img_url") or "",
                set_num=set_num,
                theme_name=theme_map.get(row.get("theme_id", ""), ""),
            )

        return cls(entries)

    @classmethod
    def load(cls, db: EnricherDatabase) -> "CatalogIndex":
        """Load the persisted catalog snapshot."""
        return cls({entry.catalog_id: entry for entry in db.load_catalog()})

    def get(self, catalog_id: str | None) -> CatalogEntry | None:
        if not catalog_id:
            return None
        return self._entries.get(catalog_id)

    def entries(self) -> list[CatalogEntry]:
        return list(self._entries.values())

    def __contains__(self, catalog_id: object) -> bool:
        return catalog_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)


class CatalogRefresher:
    """Rebuild the catalog snapshot from Rebrickable bulk downloads."""

    def __init__(
        self,
        client: RebrickableClient,
        db: EnricherDatabase,
        sets_url: str,
        themes_url: str,
        progress: ProgressCallback | None = None,
    ):
        self.client = client
        self.db = db
        self.sets_url = sets_url
        self.themes_url = themes_url
        self.progress = progress or (lambda update: None)

    async def refresh(self) -> CatalogIndex:
        """
        Download, parse and persist a fresh catalog.

        The snapshot is replaced only after both downloads succeed and the
        index is built.

        Raises:
            CatalogRefreshError: on any download, decompress or parse failure
        """
        try:
            self.progress(StatusUpdate("Downloading sets.csv.gz…"))
            sets_text = await self.client.download_csv_text(self.sets_url)

            self.progress(StatusUpdate("Downloading themes.csv.gz…"))
            themes_text = await self.client.download_csv_text(self.themes_url)

            # Parsing and the bulk replace run in a worker thread
            self.progress(StatusUpdate("Parsing CSV…"))
            set_rows, theme_rows = await asyncio.to_thread(
                self._parse, sets_text, themes_text
            )

            self.progress(StatusUpdate("Building catalog…"))
            index, count = await asyncio.to_thread(self._build_and_store, set_rows, theme_rows)
        except CatalogRefreshError:
            raise
        except Exception as e:
            raise CatalogRefreshError(str(e) or type(e).__name__) from e

        logger.info(f"Catalog refreshed with {count} sets")
        return index

    def _parse(
        self, sets_text: str, themes_text: str
    ) -> tuple[list[dict[str, str]], list[dict[str, str]]]:
        return parse_csv_rows(sets_text), parse_csv_rows(themes_text)

    def _build_and_store(
        self, set_rows: list[dict[str, str]], theme_rows: list[dict[str, str]]
    ) -> tuple[CatalogIndex, int]:
        index = CatalogIndex.build(set_rows, theme_rows)
        if not len(index):
            raise CatalogRefreshError("Downloaded catalog contains no sets")

        count = self.db.replace_catalog(index.entries(), utc_now().isoformat())
        return index, count
