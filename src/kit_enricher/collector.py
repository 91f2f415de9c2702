"""
Store listing collector for kit-enricher.

Walks the store's paginated brick-kit listing from page 1 until a page
yields no products, enriches every product from the local catalog and
replaces the persisted collection snapshot in one go.

A non-success page response is read as the end of the listing. Transient
failures therefore truncate a sync silently instead of failing it.
"""

import html
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from urllib.parse import urljoin

import httpx

from .catalog import CatalogIndex
from .identifiers import extract_key_from_href, extract_key_from_text, to_catalog_id
from .models import (
    CollectionItem,
    CollectionSnapshot,
    EnricherDatabase,
    StatusUpdate,
    utc_now,
)
from .session import CancellationToken

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[StatusUpdate], None]

# <a ... href=".../products/...">inner markup</a>
PRODUCT_LINK_PATTERN = re.compile(
    r"""<a\b[^>]*?\bhref=(["'])([^"']*/products/[^"']+)\1[^>]*>(.*?)</a>""",
    re.IGNORECASE | re.DOTALL,
)
TAG_PATTERN = re.compile(r"<[^>]*>")
WHITESPACE_PATTERN = re.compile(r"\s+")


@dataclass
class ScrapedProduct:
    """A product link found on a listing page."""

    store_id: str
    shop_name: str
    url: str


def strip_tags(markup: str) -> str:
    """Readable text of a markup fragment."""
    text = html.unescape(TAG_PATTERN.sub(" ", markup or ""))
    return WHITESPACE_PATTERN.sub(" ", text).strip()


class PageParser(ABC):
    """Extracts candidate products from one raw listing page."""

    @abstractmethod
    def parse(self, raw_page: str) -> list[ScrapedProduct]:
        """Return the products on the page, in page order."""


class AnchorPageParser(PageParser):
    """Find product anchors with regular expressions; no DOM required."""

    def __init__(self, base_url: str):
        self.base_url = base_url.rstrip("/") + "/"

    def parse(self, raw_page: str) -> list[ScrapedProduct]:
        products = []
        for match in PRODUCT_LINK_PATTERN.finditer(raw_page or ""):
            href = html.unescape(match.group(2))
            shop_name = strip_tags(match.group(3))
            # Some slugs drop the key; the card title usually still has it
            store_id = extract_key_from_href(href) or extract_key_from_text(shop_name)
            products.append(
                ScrapedProduct(
                    store_id=store_id or "",
                    shop_name=shop_name,
                    url=urljoin(self.base_url, href),
                )
            )
        return products


class StoreListingClient:
    """Fetches raw listing pages from the store."""

    def __init__(
        self,
        base_url: str,
        listing_path: str = "/collections/brick-kits",
        page_param: str = "page_num",
        timeout_seconds: float = 15.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.listing_path = listing_path
        self.page_param = page_param
        self.timeout = timeout_seconds

    @property
    def listing_url(self) -> str:
        return f"{self.base_url}{self.listing_path}"

    async def fetch_page(self, page: int) -> str | None:
        """
        Fetch one listing page.

        Returns:
            Page markup, or None for any non-success status.
            Transport errors propagate as httpx exceptions.
        """
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            response = await client.get(
                self.listing_url,
                params={self.page_param: page},
                follow_redirects=True,
            )

        if response.status_code != 200:
            logger.info(f"Listing page {page} returned HTTP {response.status_code}")
            return None
        return response.text


class PaginatedCollector:
    """Walk the listing to its end and persist the enriched collection."""

    def __init__(
        self,
        source: StoreListingClient,
        parser: PageParser,
        catalog: CatalogIndex,
        db: EnricherDatabase,
        max_pages: int = 200,
        progress: ProgressCallback | None = None,
    ):
        self.source = source
        self.parser = parser
        self.catalog = catalog
        self.db = db
        self.max_pages = max_pages
        self.progress = progress or (lambda update: None)

    async def sync(self, cancel_token: CancellationToken | None = None) -> CollectionSnapshot:
        """
        Walk pages 1..max_pages and replace the collection snapshot.

        Stops at the first page without products. The snapshot is written
        only after the walk completes; an exception (including cancellation)
        leaves the previous snapshot as it was.
        """
        items: list[CollectionItem] = []
        pages_fetched = 0

        for page in range(1, self.max_pages + 1):
            if cancel_token is not None:
                cancel_token.raise_if_cancelled()

            self.progress(StatusUpdate(f"Syncing page {page}…"))
            raw_page = await self.source.fetch_page(page)
            pages_fetched += 1

            products = self._dedupe(self.parser.parse(raw_page)) if raw_page else []
            if not products:
                logger.info(f"Page {page} has no products; end of listing")
                break

            items.extend(self._enrich(product) for product in products)
            logger.debug(f"Page {page}: {len(products)} products")
        else:
            logger.warning(f"Stopped after {self.max_pages} pages without reaching an empty page")

        synced_at = utc_now().isoformat()
        self.db.replace_collection(items, synced_at)
        logger.info(f"Collection synced: {len(items)} products from {pages_fetched} pages")

        self.progress(StatusUpdate(f"Synced {len(items)} products.", done=True))
        return CollectionSnapshot(items=items, synced_at=synced_at, pages_fetched=pages_fetched)

    def _dedupe(self, products: list[ScrapedProduct]) -> list[ScrapedProduct]:
        """Keep the first product per source link."""
        seen: set[str] = set()
        unique = []
        for product in products:
            if product.url in seen:
                continue
            seen.add(product.url)
            unique.append(product)
        return unique

    def _enrich(self, product: ScrapedProduct) -> CollectionItem:
        catalog_id = to_catalog_id(product.store_id)
        entry = self.catalog.get(catalog_id)

        return CollectionItem(
            catalog_id=catalog_id,
            store_id=product.store_id,
            name=(entry.name if entry and entry.name else product.shop_name),
            year=entry.year if entry else "",
            theme_name=entry.theme_name if entry else "",
            url=product.url,
        )
