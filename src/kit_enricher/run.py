"""
CLI runner for kit-enricher.

Usage:
    python -m kit_enricher.run [OPTIONS]

    # First-run setup: catalog download plus store sync
    python -m kit_enricher.run --initialize

    # Resolve store keys against Rebrickable
    python -m kit_enricher.run --resolve M10188 N42083
"""

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from .commands import EnricherCommands
from .config import EnricherConfig
from .migrations import run_migrations
from .models import StatusUpdate

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("kit-enricher")


def print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, ensure_ascii=False))


def exit_code(status: StatusUpdate) -> int:
    return 1 if status.error else 0


async def resolve_keys(commands: EnricherCommands, keys: list[str]) -> int:
    """Resolve keys and print the display-ready results."""
    products = await commands.resolve_many(keys)
    print_json([product.to_dict() for product in products])

    found = {product.key for product in products}
    for key in keys:
        if key.strip().upper() not in found:
            logger.warning(f"No result for {key}")

    if commands.resolver.quota_exhausted:
        logger.warning("Daily lookup limit reached; remaining keys were skipped")
    return 0 if products else 1


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="kit-enricher: store listing sync and LEGO set enrichment",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Create the database and run first-time setup
    python -m kit_enricher.run --init-db --initialize

    # Refresh the local catalog from Rebrickable downloads
    python -m kit_enricher.run --refresh-catalog

    # Re-walk the store listing
    python -m kit_enricher.run --sync

    # Look up a catalog id, search the synced collection
    python -m kit_enricher.run --lookup 10188
    python -m kit_enricher.run --search "death star"

    # Use a specific config file
    python -m kit_enricher.run --config datasette.yaml --status
        """,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=Path("datasette.yaml"),
        help="Path to config file (default: datasette.yaml)",
    )
    parser.add_argument(
        "--db",
        type=Path,
        help="Override database path from config",
    )
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create or upgrade the database schema",
    )
    parser.add_argument(
        "--initialize",
        action="store_true",
        help="First-run setup (catalog refresh, then store sync); no-op once done",
    )
    parser.add_argument(
        "--refresh-catalog",
        action="store_true",
        help="Download and rebuild the local catalog",
    )
    parser.add_argument(
        "--sync",
        action="store_true",
        help="Walk the store listing and replace the collection snapshot",
    )
    parser.add_argument(
        "--lookup",
        metavar="CATALOG_ID",
        help="Print the catalog entry for a catalog id",
    )
    parser.add_argument(
        "--resolve",
        nargs="+",
        metavar="KEY",
        help="Resolve store keys (e.g. M10188) via cache or API",
    )
    parser.add_argument(
        "--search",
        metavar="QUERY",
        help="Search the synced collection",
    )
    parser.add_argument(
        "--set-api-key",
        metavar="VALUE",
        help="Store the Rebrickable API key (empty string clears it)",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print snapshot timestamps and quota usage",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    # Load config
    config = EnricherConfig.from_yaml(args.config)
    if args.db:
        config.db_path = args.db

    logger.info(f"Config loaded from {args.config}")
    logger.info(f"Database: {config.db_path}")

    if args.init_db:
        applied = run_migrations(config.db_path)
        logger.info(f"Database ready ({len(applied)} migration(s) applied)")

    # Check database exists
    if not config.db_path.exists():
        logger.error(f"Database not found: {config.db_path}")
        logger.error("Run with --init-db first to create the database.")
        return 1

    commands = EnricherCommands(config)
    result = 0

    if args.set_api_key is not None:
        configured = commands.set_api_key(args.set_api_key)
        logger.info(f"API key {'stored' if configured else 'cleared'}")

    if args.initialize:
        result |= exit_code(asyncio.run(commands.initialize()))

    if args.refresh_catalog:
        result |= exit_code(asyncio.run(commands.refresh_catalog()))

    if args.sync:
        try:
            result |= exit_code(asyncio.run(commands.sync_collection()))
        except KeyboardInterrupt:
            logger.info("Sync stopped by user; previous collection kept")
            return 1

    if args.lookup:
        entry = commands.lookup(args.lookup)
        if entry is None:
            logger.error(f"Not in catalog: {args.lookup}")
            result = 1
        else:
            print_json(entry.to_dict())

    if args.resolve:
        result |= asyncio.run(resolve_keys(commands, args.resolve))

    if args.search is not None:
        items = commands.search_collection(args.search)
        print_json([item.to_dict() for item in items])

    if args.status:
        print_json(commands.status())

    acted = (
        args.init_db
        or args.initialize
        or args.refresh_catalog
        or args.sync
        or args.lookup
        or args.resolve
        or args.search is not None
        or args.set_api_key is not None
        or args.status
    )
    if not acted:
        # Default: show help
        parser.print_help()

    return result


if __name__ == "__main__":
    sys.exit(main())
