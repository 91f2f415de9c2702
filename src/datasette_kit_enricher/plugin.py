"""
Datasette plugin exposing kit-enricher commands as JSON routes.

Long-running commands (catalog refresh, store sync, first-run setup) are
started in the background and report through /-/kit-enricher/status.
The persisted tables (catalog_entries, collection_items) can be browsed
with Datasette itself when the database is served.
"""

import asyncio
import logging
from collections.abc import Coroutine
from typing import Any
from weakref import WeakKeyDictionary

from datasette import Response, hookimpl
from datasette.permissions import Action
from datasette.utils.asgi import Request

from kit_enricher.commands import EnricherCommands
from kit_enricher.config import PLUGIN_NAME, EnricherConfig
from kit_enricher.identifiers import format_display_title, normalize_key

logger = logging.getLogger(__name__)

MANAGE_ACTION = "kit-enricher-manage"

# One command surface per Datasette instance
_commands: "WeakKeyDictionary[Any, EnricherCommands]" = WeakKeyDictionary()

# Strong references so background tasks are not garbage collected mid-run
_background_tasks: set[asyncio.Task] = set()


# -----------------------------------------------------------------------------
# Plugin Configuration
# -----------------------------------------------------------------------------


def get_plugin_config(datasette) -> EnricherConfig:
    """Get plugin configuration from datasette.yaml."""
    return EnricherConfig.from_dict(datasette.plugin_config(PLUGIN_NAME) or {})


def get_commands(datasette) -> EnricherCommands:
    """Command surface bound to this Datasette instance."""
    commands = _commands.get(datasette)
    if commands is None:
        commands = EnricherCommands(get_plugin_config(datasette))
        _commands[datasette] = commands
    return commands


def run_in_background(coro: Coroutine[Any, Any, Any], name: str) -> asyncio.Task:
    """Schedule a command without awaiting it."""
    task = asyncio.create_task(coro, name=name)
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)
    return task


def method_not_allowed() -> Response:
    return Response.json({"ok": False, "error": "Method not allowed"}, status=405)


def forbidden() -> Response:
    return Response.json({"ok": False, "error": "Forbidden"}, status=403)


async def can_manage(request: Request, datasette) -> bool:
    """Whether the request actor may run commands or spend API quota."""
    return await datasette.allowed(action=MANAGE_ACTION, actor=request.actor)


# -----------------------------------------------------------------------------
# Routes
# -----------------------------------------------------------------------------


async def refresh_catalog(request: Request, datasette) -> Response:
    """Start a catalog refresh."""
    if not await can_manage(request, datasette):
        return forbidden()

    if request.method != "POST":
        return method_not_allowed()

    run_in_background(get_commands(datasette).refresh_catalog(), "kit-enricher-refresh")
    return Response.json({"ok": True})


async def sync_collection(request: Request, datasette) -> Response:
    """Start a store listing sync."""
    if not await can_manage(request, datasette):
        return forbidden()

    if request.method != "POST":
        return method_not_allowed()

    run_in_background(get_commands(datasette).sync_collection(), "kit-enricher-sync")
    return Response.json({"ok": True})


async def initialize(request: Request, datasette) -> Response:
    """Start first-run setup."""
    if not await can_manage(request, datasette):
        return forbidden()

    if request.method != "POST":
        return method_not_allowed()

    run_in_background(get_commands(datasette).initialize(), "kit-enricher-initialize")
    return Response.json({"ok": True})


async def lookup(request: Request, datasette) -> Response:
    entry = get_commands(datasette).lookup(request.url_vars["catalog_id"])
    return Response.json({"entry": entry.to_dict() if entry else None})


async def resolve(request: Request, datasette) -> Response:
    """Resolve a single store key via cache or API."""
    if not await can_manage(request, datasette):
        return forbidden()

    key = normalize_key(request.url_vars["key"])
    entry = await get_commands(datasette).resolve(key)
    if entry is None:
        return Response.json({"key": key, "entry": None, "title": None})

    return Response.json(
        {
            "key": key,
            "entry": entry.to_dict(),
            "title": format_display_title(entry.catalog_id, entry.name, entry.year, key),
        }
    )


async def search(request: Request, datasette) -> Response:
    query = request.args.get("q", "")
    items = get_commands(datasette).search_collection(query)
    return Response.json({"items": [item.to_dict() for item in items]})


async def status(request: Request, datasette) -> Response:
    return Response.json(get_commands(datasette).status())


async def api_key(request: Request, datasette) -> Response:
    """Store or clear the Rebrickable API key (form field api_key)."""
    if not await can_manage(request, datasette):
        return forbidden()

    if request.method != "POST":
        return method_not_allowed()

    formdata = await request.post_vars()
    configured = get_commands(datasette).set_api_key(formdata.get("api_key", ""))
    return Response.json({"ok": True, "api_key_configured": configured})


# -----------------------------------------------------------------------------
# Datasette Hooks
# -----------------------------------------------------------------------------


@hookimpl
def register_routes():
    """Register plugin routes with Datasette."""
    return [
        (r"^/-/kit-enricher/refresh-catalog$", refresh_catalog),
        (r"^/-/kit-enricher/sync-collection$", sync_collection),
        (r"^/-/kit-enricher/initialize$", initialize),
        (r"^/-/kit-enricher/lookup/(?P<catalog_id>[^/]+)$", lookup),
        (r"^/-/kit-enricher/resolve/(?P<key>[^/]+)$", resolve),
        (r"^/-/kit-enricher/search$", search),
        (r"^/-/kit-enricher/status$", status),
        (r"^/-/kit-enricher/api-key$", api_key),
    ]


@hookimpl
def register_actions(datasette):
    """Commands, API key changes and remote lookups need kit-enricher-manage."""
    return [
        Action(
            name=MANAGE_ACTION,
            description="Run kit-enricher commands and change its settings",
        )
    ]


@hookimpl
def skip_csrf(datasette, scope):
    """Plugin routes are API-style JSON calls, gated by kit-enricher-manage."""
    if scope.get("path", "").startswith("/-/kit-enricher/"):
        return True
    return None


@hookimpl
def startup(datasette):
    """
    Run on Datasette startup.

    Creates or upgrades the database and, when initialize_on_startup is set,
    schedules first-run setup.
    """
    commands = get_commands(datasette)
    commands.ensure_database()

    if commands.config.initialize_on_startup:
        run_in_background(commands.initialize(), "kit-enricher-initialize")
