#!/usr/bin/env python3
"""Run a single connector once, outside the API server.

Loads the sources file, runs the connector through the same coordinator the
server uses and prints the item counts. Useful for checking a new source.

Usage:
    # Run one connector
    python run_connector.py rss:hackernews

    # Use another sources file and a tighter deadline
    python run_connector.py reddit:golang --sources ./sources.dev.json --timeout 20

    # Show the configured connector ids
    python run_connector.py --list
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from config import settings
from connectors import build_registry, load_sources
from database import async_session_maker, engine, init_db
from errors import NotFoundError
from services.item_store import ItemStore
from services.run_coordinator import Run, RunCoordinator

logging.basicConfig(level=logging.INFO, format="%(message)s")
logger = logging.getLogger(__name__)


def format_run(run: Run) -> str:
    """One-line summary of a finished run."""
    if run.error:
        return (
            f"{run.connector_id} failed ({run.error_kind}): {run.error} "
            f"after {run.processed_count} new, {run.updated_count} updated"
        )
    return (
        f"Successfully processed {run.processed_count} new items from {run.connector_id} "
        f"({run.updated_count} updated, {run.skipped_count} skipped)"
    )


async def run_connector(
    coordinator: RunCoordinator, connector_id: str, deadline: float | None = None
) -> int:
    """Run one connector and return the process exit code.

    0 on success, 1 when the run failed, 2 when the id is not configured.
    """
    try:
        run = await coordinator.run_one(connector_id, deadline=deadline)
    except NotFoundError as e:
        logger.error(e.message)
        return 2

    print(format_run(run))
    return 1 if run.error else 0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run one connector and print the result")
    parser.add_argument("connector_id", nargs="?", help="Connector id, e.g. rss:hackernews")
    parser.add_argument(
        "--sources", default=settings.sources_file, help="Sources JSON file"
    )
    parser.add_argument(
        "--timeout", type=float, default=None, help="Run deadline in seconds"
    )
    parser.add_argument("--list", action="store_true", help="List connector ids and exit")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    args = parser.parse_args(argv)
    if not args.list and not args.connector_id:
        parser.error("connector_id is required unless --list is given")
    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")
    return args


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    registry = build_registry(load_sources(args.sources))
    if args.list:
        for connector_id in registry.ids():
            print(connector_id)
        return 0

    await init_db()
    try:
        coordinator = RunCoordinator(
            registry, ItemStore(async_session_maker), session_maker=async_session_maker
        )
        return await run_connector(coordinator, args.connector_id, deadline=args.timeout)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
