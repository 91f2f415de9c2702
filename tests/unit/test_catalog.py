"""Tests for the local catalog index and refresher."""

import threading
from unittest.mock import AsyncMock, patch

import pytest

from kit_enricher.catalog import (
    CatalogIndex,
    CatalogRefresher,
    CatalogRefreshError,
    build_theme_map,
    parse_csv_rows,
)
from kit_enricher.models import CATALOG_LAST_UPDATED_KEY, CatalogEntry
from kit_enricher.rebrickable import RebrickableClient, RebrickableError

SETS_CSV = """set_num,name,year,theme_id,num_parts,img_url
75192-1,Millennium Falcon,2017,171,7541,https://cdn.rebrickable.com/media/sets/75192-1.jpg
10188-1,Death Star,2008,171,3803,https://cdn.rebrickable.com/media/sets/10188-1.jpg
42083-1,Bugatti Chiron,2018,1,3599,
"""

THEMES_CSV = """id,name,parent_id
1,Technic,
171,Ultimate Collector Series,158
"""


class TestParseCsvRows:
    def test_parses_and_trims(self):
        rows = parse_csv_rows("set_num, name \n 75192-1 , Millennium Falcon \n")
        assert rows == [{"set_num": "75192-1", "name": "Millennium Falcon"}]

    def test_skips_blank_rows(self):
        rows = parse_csv_rows("id,name\n1,Technic\n,\n")
        assert rows == [{"id": "1", "name": "Technic"}]

    def test_quoted_commas(self):
        rows = parse_csv_rows('set_num,name\n1-1,"Bricks, Bricks, Bricks"\n')
        assert rows[0]["name"] == "Bricks, Bricks, Bricks"


class TestCatalogIndex:
    """Test building the lookup table."""

    def test_build(self):
        index = CatalogIndex.build(parse_csv_rows(SETS_CSV), parse_csv_rows(THEMES_CSV))

        assert len(index) == 3
        assert "75192" in index
        falcon = index.get("75192")
        assert falcon.name == "Millennium Falcon"
        assert falcon.year == "2017"
        assert falcon.set_num == "75192-1"
        assert falcon.theme_name == "Ultimate Collector Series"
        assert falcon.image_url.endswith("75192-1.jpg")
        assert index.get("42083").theme_name == "Technic"

    def test_skips_rows_without_id(self):
        index = CatalogIndex.build([{"set_num": "", "name": "Nothing"}], [])
        assert len(index) == 0

    def test_last_row_wins(self):
        rows = [
            {"set_num": "6000-1", "name": "First"},
            {"set_num": "6000-2", "name": "Second"},
        ]
        assert CatalogIndex.build(rows, []).get("6000").name == "Second"

    def test_set_img_url_fallback(self):
        rows = [{"set_num": "1-1", "name": "X", "set_img_url": "https://img.test/1.jpg"}]
        assert CatalogIndex.build(rows, []).get("1").image_url == "https://img.test/1.jpg"

    def test_unknown_theme(self):
        rows = [{"set_num": "1-1", "name": "X", "theme_id": "999"}]
        assert CatalogIndex.build(rows, []).get("1").theme_name == ""

    def test_get_missing(self):
        index = CatalogIndex()
        assert index.get("1") is None
        assert index.get(None) is None

    def test_theme_map(self):
        assert build_theme_map(parse_csv_rows(THEMES_CSV)) == {
            "1": "Technic",
            "171": "Ultimate Collector Series",
        }

    def test_load(self, db):
        db.replace_catalog([CatalogEntry(catalog_id="75192", name="Millennium Falcon")], "t")

        index = CatalogIndex.load(db)

        assert index.get("75192").name == "Millennium Falcon"


class TestCatalogRefresher:
    """Test the download/parse/persist cycle."""

    @pytest.fixture
    def client(self):
        mock = AsyncMock(spec=RebrickableClient)
        mock.download_csv_text.side_effect = [SETS_CSV, THEMES_CSV]
        return mock

    @pytest.fixture
    def updates(self):
        return []

    def make_refresher(self, client, db, updates):
        return CatalogRefresher(
            client=client,
            db=db,
            sets_url="https://cdn.test/sets.csv.gz",
            themes_url="https://cdn.test/themes.csv.gz",
            progress=updates.append,
        )

    async def test_refresh(self, client, db, updates):
        index = await self.make_refresher(client, db, updates).refresh()

        assert len(index) == 3
        assert db.get_catalog_entry("10188").name == "Death Star"
        assert db.get_value(CATALOG_LAST_UPDATED_KEY) is not None
        assert [call.args[0] for call in client.download_csv_text.await_args_list] == [
            "https://cdn.test/sets.csv.gz",
            "https://cdn.test/themes.csv.gz",
        ]

    async def test_progress_messages(self, client, db, updates):
        await self.make_refresher(client, db, updates).refresh()

        assert [u.text for u in updates] == [
            "Downloading sets.csv.gz…",
            "Downloading themes.csv.gz…",
            "Parsing CSV…",
            "Building catalog…",
        ]

    async def test_second_download_failure_keeps_previous(self, client, db, updates):
        """Failing themes download leaves the old snapshot untouched."""
        db.replace_catalog([CatalogEntry(catalog_id="1", name="Old")], "previous")
        client.download_csv_text.side_effect = [SETS_CSV, RebrickableError("HTTP 503")]

        with pytest.raises(CatalogRefreshError, match="HTTP 503"):
            await self.make_refresher(client, db, updates).refresh()

        assert [e.catalog_id for e in db.load_catalog()] == ["1"]
        assert db.get_value(CATALOG_LAST_UPDATED_KEY) == "previous"

    async def test_empty_download_rejected(self, client, db, updates):
        db.replace_catalog([CatalogEntry(catalog_id="1", name="Old")], "previous")
        client.download_csv_text.side_effect = ["set_num,name\n", THEMES_CSV]

        with pytest.raises(CatalogRefreshError, match="no sets"):
            await self.make_refresher(client, db, updates).refresh()

        assert db.get_catalog_entry("1") is not None

    async def test_transport_error_wrapped(self, client, db, updates):
        client.download_csv_text.side_effect = OSError("network down")

        with pytest.raises(CatalogRefreshError, match="network down"):
            await self.make_refresher(client, db, updates).refresh()

    async def test_parse_and_store_run_off_event_loop(self, client, db, updates):
        loop_thread = threading.get_ident()
        threads = {}
        real_parse = parse_csv_rows
        real_replace = db.replace_catalog

        def parse(text):
            threads["parse"] = threading.get_ident()
            return real_parse(text)

        def replace(entries, updated_at):
            threads["replace"] = threading.get_ident()
            return real_replace(entries, updated_at)

        with (
            patch("kit_enricher.catalog.parse_csv_rows", side_effect=parse),
            patch.object(db, "replace_catalog", side_effect=replace),
        ):
            index = await self.make_refresher(client, db, updates).refresh()

        assert len(index) == 3
        assert threads["parse"] != loop_thread
        assert threads["replace"] != loop_thread
