"""Tests for the store listing collector."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from kit_enricher.catalog import CatalogIndex
from kit_enricher.collector import (
    AnchorPageParser,
    PageParser,
    PaginatedCollector,
    ScrapedProduct,
    StoreListingClient,
    strip_tags,
)
from kit_enricher.models import COLLECTION_LAST_SYNC_KEY, CatalogEntry, CollectionItem
from kit_enricher.session import CancellationToken, OperationCancelled

LISTING_PAGE = """
<div class="grid">
  <a class="card" href="/products/m29157-star-destroyer">
    <span class="title">Star&nbsp;Destroyer &amp; Friends</span>
  </a>
  <a href='/products/m29157-star-destroyer'><img src="x.jpg"></a>
  <a href="https://marstoy.com/products/n38024-supercar">Supercar</a>
  <a href="/pages/shipping">Shipping</a>
  <a href="/products/12345">Legacy Kit</a>
</div>
"""


class FakeParser(PageParser):
    """Page text is a comma-separated list of store ids."""

    def parse(self, raw_page):
        return [
            ScrapedProduct(store_id=sid, shop_name=f"Shop {sid}", url=f"https://s.test/{sid}")
            for sid in raw_page.split(",")
            if sid
        ]


def make_source(pages):
    """Listing source serving pages[n] for page n; missing pages are empty."""
    source = AsyncMock(spec=StoreListingClient)
    source.fetch_page.side_effect = lambda page: pages.get(page, "")
    return source


def fetched_pages(source):
    return [call.args[0] for call in source.fetch_page.await_args_list]


class TestStripTags:
    def test_strips_and_decodes(self):
        assert strip_tags("<b>Star</b>&nbsp;Wars &amp; more") == "Star Wars & more"

    def test_collapses_whitespace(self):
        assert strip_tags("\n  A \n <i>B</i>  ") == "A B"


class TestAnchorPageParser:
    """Test regex extraction of product anchors."""

    def test_parse(self):
        products = AnchorPageParser("https://marstoy.com").parse(LISTING_PAGE)

        assert [p.store_id for p in products] == ["M29157", "M29157", "N38024", "M12345"]
        assert products[0].shop_name == "Star Destroyer & Friends"
        assert products[0].url == "https://marstoy.com/products/m29157-star-destroyer"
        assert products[2].url == "https://marstoy.com/products/n38024-supercar"
        assert products[3].shop_name == "Legacy Kit"

    def test_key_from_title_when_slug_has_none(self):
        page = '<a href="/products/star-destroyer-kit">Star Destroyer m29157</a>'

        (product,) = AnchorPageParser("https://marstoy.com").parse(page)

        assert product.store_id == "M29157"
        assert product.url == "https://marstoy.com/products/star-destroyer-kit"

    def test_slug_key_wins_over_title(self):
        page = '<a href="/products/n38024-supercar">Supercar M11111</a>'

        (product,) = AnchorPageParser("https://marstoy.com").parse(page)

        assert product.store_id == "N38024"

    def test_empty_page(self):
        assert AnchorPageParser("https://marstoy.com").parse("") == []
        assert AnchorPageParser("https://marstoy.com").parse("<p>No products</p>") == []


class TestStoreListingClient:
    """Test page fetching."""

    def test_listing_url(self):
        client = StoreListingClient("https://marstoy.com/")
        assert client.listing_url == "https://marstoy.com/collections/brick-kits"

    @pytest.mark.asyncio
    async def test_fetch_page(self):
        client = StoreListingClient("https://marstoy.com")
        response = MagicMock(status_code=200, text="<html></html>")

        with patch("httpx.AsyncClient") as MockClient:
            mock_client = AsyncMock()
            mock_client.get.return_value = response
            mock_client.__aenter__.return_value = mock_client
            mock_client.__aexit__.return_value = None
            MockClient.return_value = mock_client

            assert await client.fetch_page(3) == "<html></html>"

        assert mock_client.get.call_args.kwargs["params"] == {"page_num": 3}

    @pytest.mark.asyncio
    async def test_fetch_page_error_status(self):
        client = StoreListingClient("https://marstoy.com")

        with patch("httpx.AsyncClient") as MockClient:
            mock_client = AsyncMock()
            mock_client.get.return_value = MagicMock(status_code=404)
            mock_client.__aenter__.return_value = mock_client
            mock_client.__aexit__.return_value = None
            MockClient.return_value = mock_client

            assert await client.fetch_page(1) is None


class TestPaginatedCollector:
    """Test pagination, enrichment and snapshot replacement."""

    @pytest.fixture
    def catalog(self):
        return CatalogIndex(
            {
                "75192": CatalogEntry(
                    catalog_id="75192",
                    name="Millennium Falcon",
                    year="2017",
                    theme_name="Star Wars",
                )
            }
        )

    def make_collector(self, pages, db, catalog=None, max_pages=200, updates=None):
        source = make_source(pages)
        collector = PaginatedCollector(
            source=source,
            parser=FakeParser(),
            catalog=catalog or CatalogIndex(),
            db=db,
            max_pages=max_pages,
            progress=updates.append if updates is not None else None,
        )
        return collector, source

    async def test_stops_at_first_empty_page(self, db):
        """Page 5 empty: items of pages 1-4, no request for page 6."""
        pages = {1: "M1,M2", 2: "M3", 3: "M4", 4: "M5,M6", 6: "M7"}
        collector, source = self.make_collector(pages, db)

        snapshot = await collector.sync()

        assert [i.store_id for i in snapshot.items] == ["M1", "M2", "M3", "M4", "M5", "M6"]
        assert fetched_pages(source) == [1, 2, 3, 4, 5]
        assert snapshot.pages_fetched == 5

    async def test_error_page_treated_as_empty(self, db):
        collector, source = self.make_collector({1: "M1", 2: None, 3: "M3"}, db)

        snapshot = await collector.sync()

        assert [i.store_id for i in snapshot.items] == ["M1"]
        assert fetched_pages(source) == [1, 2]

    async def test_dedupes_within_page(self, db):
        collector, _ = self.make_collector({1: "M1,M1,M2"}, db)

        snapshot = await collector.sync()

        assert [i.store_id for i in snapshot.items] == ["M1", "M2"]

    async def test_keeps_duplicates_across_pages(self, db):
        collector, _ = self.make_collector({1: "M1", 2: "M1"}, db)

        snapshot = await collector.sync()

        assert [i.store_id for i in snapshot.items] == ["M1", "M1"]

    async def test_enrichment(self, db, catalog):
        collector, _ = self.make_collector({1: "M29157,M99"}, db, catalog=catalog)

        snapshot = await collector.sync()

        falcon, unknown = snapshot.items
        assert falcon == CollectionItem(
            catalog_id="75192",
            store_id="M29157",
            name="Millennium Falcon",
            year="2017",
            theme_name="Star Wars",
            url="https://s.test/M29157",
        )
        assert unknown.catalog_id == "99"
        assert unknown.name == "Shop M99"
        assert unknown.year == ""

    async def test_persists_snapshot(self, db):
        collector, _ = self.make_collector({1: "M1,M2"}, db)

        snapshot = await collector.sync()

        assert [i.store_id for i in db.get_collection()] == ["M1", "M2"]
        assert db.get_value(COLLECTION_LAST_SYNC_KEY) == snapshot.synced_at

    async def test_max_pages(self, db):
        pages = {n: f"M{n}" for n in range(1, 10)}
        collector, source = self.make_collector(pages, db, max_pages=3)

        snapshot = await collector.sync()

        assert fetched_pages(source) == [1, 2, 3]
        assert len(snapshot.items) == 3

    async def test_progress(self, db):
        updates = []
        collector, _ = self.make_collector({1: "M1", 2: "M2"}, db, updates=updates)

        await collector.sync()

        assert [u.text for u in updates] == [
            "Syncing page 1…",
            "Syncing page 2…",
            "Syncing page 3…",
            "Synced 2 products.",
        ]
        assert updates[-1].done is True

    async def test_cancellation_keeps_previous_snapshot(self, db):
        db.replace_collection([CollectionItem(store_id="OLD")], "previous")
        token = CancellationToken()
        collector, source = self.make_collector({1: "M1", 2: "M2", 3: "M3"}, db)

        def fetch(page):
            if page == 2:
                token.cancel()
            return {1: "M1", 2: "M2", 3: "M3"}.get(page, "")

        source.fetch_page.side_effect = fetch

        with pytest.raises(OperationCancelled):
            await collector.sync(token)

        assert fetched_pages(source) == [1, 2]
        assert [i.store_id for i in db.get_collection()] == ["OLD"]
        assert db.get_value(COLLECTION_LAST_SYNC_KEY) == "previous"

    async def test_fetch_error_keeps_previous_snapshot(self, db):
        db.replace_collection([CollectionItem(store_id="OLD")], "previous")
        collector, source = self.make_collector({}, db)
        source.fetch_page.side_effect = OSError("connection reset")

        with pytest.raises(OSError):
            await collector.sync()

        assert [i.store_id for i in db.get_collection()] == ["OLD"]
