"""One-shot feed management and sync command-line tool."""

import argparse
import asyncio
import json
import sys

from py_calsync.config import SyncConfig
from py_calsync.errors import AuthError, CalSyncError
from py_calsync.models import Feed, ProviderType


async def _add_feed(args: argparse.Namespace, config: SyncConfig) -> int:
    from py_calsync.store import SQLEventStore

    store = SQLEventStore(config.database_url)
    try:
        feed = await store.save_feed(
            Feed(
                id=args.feed_id,
                provider_type=ProviderType(args.provider),
                url=args.url or "",
                calendar=args.calendar,
            )
        )
    finally:
        await store.close()

    print(f"Feed {feed.id} ({feed.provider_type.value}) saved")
    return 0


async def _sync(args: argparse.Namespace, config: SyncConfig) -> int:
    from py_calsync.service import SyncService
    from py_calsync.store import SQLEventStore

    store = SQLEventStore(config.database_url)
    try:
        result = await SyncService(store, config=config).sync(args.feed_id)
    except AuthError as e:
        print(f"Error: {e} (re-authenticate and try again)", file=sys.stderr)
        return 2
    except CalSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        await store.close()

    print(json.dumps({"incremental": result.incremental, **result.counts()}))
    return 0


async def _list_feeds(args: argparse.Namespace, config: SyncConfig) -> int:
    from py_calsync.store import SQLEventStore

    store = SQLEventStore(config.database_url)
    try:
        feeds = await store.list_feeds()
    finally:
        await store.close()

    for feed in feeds:
        last_sync = feed.last_sync.isoformat() if feed.last_sync else "never"
        print(f"{feed.id}\t{feed.provider_type.value}\t{feed.calendar}\t{last_sync}")
    return 0


def main() -> None:
    """Main entry point for the calendar sync tool."""
    config = SyncConfig()

    parser = argparse.ArgumentParser(
        description="Calendar sync tool",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Register a CalDAV calendar
  py-calsync add-feed work --provider CALDAV --url https://dav.example.com --calendar /calendars/me/work/

  # Register a Graph calendar
  py-calsync add-feed outlook --provider GRAPH --calendar AAMkAGI2...

  # Sync one feed now
  py-calsync sync work
        """,
    )
    parser.add_argument(
        "--database",
        default=config.database_url,
        help=f"SQLAlchemy database URL (default: {config.database_url})",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="enable debug logging (logs provider request/response bodies)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    add_parser = subparsers.add_parser("add-feed", help="register or update a feed")
    add_parser.add_argument("feed_id", help="local feed id")
    add_parser.add_argument(
        "--provider",
        required=True,
        choices=[p.value for p in ProviderType],
        help="provider type",
    )
    add_parser.add_argument("--url", help="CalDAV server base URL")
    add_parser.add_argument(
        "--calendar",
        required=True,
        help="calendar collection path (CalDAV) or calendar id (Graph)",
    )
    add_parser.set_defaults(handler=_add_feed)

    sync_parser = subparsers.add_parser("sync", help="run one sync pass and print the counts")
    sync_parser.add_argument("feed_id", help="feed to synchronize")
    sync_parser.set_defaults(handler=_sync)

    list_parser = subparsers.add_parser("list-feeds", help="list registered feeds")
    list_parser.set_defaults(handler=_list_feeds)

    args = parser.parse_args()
    config.database_url = args.database

    if args.command == "add-feed" and args.provider == ProviderType.CALDAV.value and not args.url:
        parser.error("--url is required for CALDAV feeds")

    from py_calsync.debug import setup_logging, setup_provider_debug_logging

    setup_logging(debug=args.debug)
    if args.debug:
        setup_provider_debug_logging()

    sys.exit(asyncio.run(args.handler(args, config)))


if __name__ == "__main__":
    main()
