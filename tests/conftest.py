"""Shared pytest fixtures for kit-enricher tests."""

from datetime import UTC, datetime

import pytest
from datasette.app import Datasette

from kit_enricher.migrations import run_migrations
from kit_enricher.models import EnricherDatabase


class FakeClock:
    """Settable clock for TTL and quota-day tests."""

    def __init__(self, now: datetime | None = None):
        self.now = now or datetime(2024, 6, 1, 12, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database with full schema via migrations.

    This is the canonical way to get a test database - uses the same
    migration system as production.
    """
    db_file = tmp_path / "test_kit_enricher.db"
    run_migrations(db_file, verbose=False)
    return db_file


@pytest.fixture
def db(db_path):
    return EnricherDatabase(db_path)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def datasette(db_path):
    """Create a Datasette instance with the plugin configured.

    Uses config= (not metadata=) for Datasette v1 compatibility.
    """
    return Datasette(
        [str(db_path)],
        config={
            "permissions": {"kit-enricher-manage": {"id": "admin"}},
            "plugins": {
                "datasette-kit-enricher": {
                    "db_path": str(db_path),
                    "rebrickable": {
                        "api_base": "http://fake-rebrickable/api/v3/lego",
                        "api_key": "test-key",
                        "api_key_env": None,
                    },
                    "store": {"base_url": "http://fake-store"},
                }
            },
        },
    )


@pytest.fixture
def admin_cookies(datasette):
    """Signed actor cookie for an actor granted kit-enricher-manage."""
    return {"ds_actor": datasette.sign({"a": {"id": "admin"}}, "actor")}
