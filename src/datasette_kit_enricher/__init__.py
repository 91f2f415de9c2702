"""Datasette plugin for store listing sync and LEGO set enrichment."""

from datasette_kit_enricher.plugin import (
    register_actions,
    register_routes,
    skip_csrf,
    startup,
)

__all__ = [
    "register_actions",
    "register_routes",
    "skip_csrf",
    "startup",
]
