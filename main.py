#!/usr/bin/env python3
"""
Feed Notifier Process Bootstrap

Wires the configuration, state store, fetch client, Telegram notifier,
scheduler and janitor together and runs them until SIGINT/SIGTERM.

Modes:
- run: serve until stopped, then drain in-flight fetches and flush state
- init: create an empty state file
- status: print a summary of the state file
"""

import argparse
import asyncio
import signal
import sys
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from config import Config, get_logger
from errors import PersistenceError, StartupError
from fetcher import FeedFetcher
from janitor import Janitor
from models import StateStore, init_database
from notifier import TelegramNotifier
from scheduler import FeedScheduler
from telemetry import init_telemetry, trace_span
from utils import format_duration

# Module-specific logger
logger = get_logger("main")


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Event loops without signal support (Windows) fall back to KeyboardInterrupt
            logger.debug(f"Signal handler for {sig.name} not supported on this platform")


@trace_span("service.run", tracer_name="main")
async def run_service(config: Config, stop_event: Optional[asyncio.Event] = None) -> None:
    """Run the scheduler and janitor until stop_event is set.

    Raises:
        StartupError: If the state file cannot be loaded or the bot token is rejected.
        PersistenceError: If the final state flush fails.
    """
    store = StateStore.open(config.DATABASE_PATH, config)
    notifier = TelegramNotifier(config)
    fetcher = FeedFetcher(config)
    await notifier.initialize()
    await fetcher.initialize()
    try:
        identity = await notifier.get_me()
        logger.info(f"🤖 Running as @{identity.username} ({identity.id})")

        await store.start()
        stop_event = stop_event or asyncio.Event()
        _install_signal_handlers(stop_event)

        scheduler = FeedScheduler(config, store, fetcher, notifier)
        janitor = Janitor(config, store)
        start_time = time.time()
        await asyncio.gather(scheduler.run(stop_event), janitor.run(stop_event))

        await store.stop()
        store.flush()
        logger.info(f"👋 Shut down cleanly after {format_duration(time.time() - start_time)}")
    finally:
        await fetcher.close()
        await notifier.close()


def check_status(config: Config) -> Dict[str, Any]:
    """Collect a status summary of the state file."""
    store = StateStore.open(config.DATABASE_PATH, config)
    now = time.time()
    feeds = sorted(store.list_feeds(), key=lambda feed: feed.next_fetch_at)
    return {
        'timestamp': datetime.now(timezone.utc).isoformat(),
        'database_path': config.DATABASE_PATH,
        'stats': store.stats(),
        'feeds': [
            {
                'url': feed.url,
                'title': feed.title,
                'subscribers': len(feed.subscribers),
                'interval': feed.interval,
                'error_count': feed.error_count,
                'due_in': max(0.0, feed.next_fetch_at - now),
            }
            for feed in feeds
        ],
    }


def print_status(status: Dict[str, Any]) -> None:
    """Print formatted status information."""
    stats = status['stats']
    print(f"\n📊 Feed Notifier Status")
    print(f"⏰ {status['timestamp']}")
    print(f"💾 State file: {status['database_path']}")
    print(f"   📡 Feeds: {stats['feeds']} ({stats['failing_feeds']} failing, {stats['orphaned_feeds']} orphaned)")
    print(f"   💬 Chats: {stats['chats']} ({stats['subscriptions']} subscriptions)")
    print(f"   ⏳ Due now: {stats['due_now']}")
    if status['feeds']:
        print(f"\n📋 Feeds:")
        for feed in status['feeds']:
            errors = f", {feed['error_count']} errors" if feed['error_count'] else ""
            print(
                f"   {feed['title'] or feed['url']}: every {format_duration(feed['interval'])}, "
                f"next in {format_duration(feed['due_in'])}, {feed['subscribers']} subscribers{errors}"
            )


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description='Telegram Feed Notifier')
    parser.add_argument('mode', choices=['run', 'init', 'status'], help='Operation mode')
    parser.add_argument('--database', type=str, help='State file path (overrides DATABASE_PATH)')
    args = parser.parse_args()

    try:
        overrides = {'DATABASE_PATH': args.database} if args.database else {}
        config = Config(**overrides)

        if args.mode == 'init':
            init_database(config.DATABASE_PATH)

        elif args.mode == 'status':
            print_status(check_status(config))

        elif args.mode == 'run':
            init_telemetry("feed-notifier")
            logger.info(f"Configuration: {config.get_config_summary()}")
            asyncio.run(run_service(config))

    except StartupError as e:
        logger.error(f"💥 Cannot start: {e}")
        sys.exit(1)
    except PersistenceError as e:
        logger.error(f"💥 Final state flush failed: {e}")
        sys.exit(1)
    except KeyboardInterrupt:
        logger.info("👋 Feed notifier shutting down")


if __name__ == "__main__":
    main()
