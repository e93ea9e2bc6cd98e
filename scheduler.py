#!/usr/bin/env python3
"""
Adaptive Feed Polling Scheduler

Every tick the scheduler asks the store which feeds are due and starts fetch
tasks for them, never more than FETCH_CONCURRENCY at once and never two for the
same feed. Each task runs one full cycle for its feed:

- conditional GET with the stored validators, under an outer timeout
- parse and fingerprint the entries, diff against what was already seen
- notify every subscriber of each new entry (chats are independent)
- apply the outcome to the store in a single record_fetch operation

Intervals adapt per feed (faster when active, slower when quiet or failing) and
the store is persisted in batches rather than after every feed.
"""

import asyncio
import time
from functools import partial
from typing import Dict, List, Optional, Tuple

from config import Config, get_logger
from errors import FeedParseError, PersistenceError, TransientFetchError
from feed_parser import ParsedEntry, ParsedFeed
from fetcher import FeedFetcher, FetchResult
from models import Feed, FetchRecord, StateStore
from notifier import DeliveryResult, TelegramNotifier, format_entry_message, format_removal_notice
from telemetry import trace_span
from utils import FetchOutcome, entry_fingerprint, format_duration

# Module-specific logger
logger = get_logger("scheduler")


class FeedScheduler:
    """Drives the fetch cycles of every feed in the store."""

    def __init__(
        self,
        config: Config,
        store: StateStore,
        fetcher: FeedFetcher,
        notifier: TelegramNotifier,
        clock=time.time,
    ):
        """Initialize scheduler.

        Args:
            config: Process configuration.
            store: Running state store.
            fetcher: Fetch client (also parses bodies).
            notifier: Delivery collaborator.
            clock: Callable returning the current UNIX time; injectable for tests.
        """
        self.config = config
        self.store = store
        self.fetcher = fetcher
        self.notifier = notifier
        self.clock = clock
        self.in_flight: Dict[str, asyncio.Task] = {}
        self._last_persist = 0.0

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    @trace_span("scheduler.main_loop", tracer_name="scheduler")
    async def run(self, stop_event: asyncio.Event) -> None:
        """Tick until stop_event is set, then let in-flight cycles finish."""
        logger.info(
            f"🚀 Scheduler started (concurrency={self.config.FETCH_CONCURRENCY}, "
            f"intervals {format_duration(self.config.MIN_INTERVAL)}..{format_duration(self.config.MAX_INTERVAL)})"
        )
        while not stop_event.is_set():
            try:
                await self.tick(self.clock())
                await self.persist_if_due(self.clock())
            except Exception as e:
                logger.error(f"💥 Error in scheduler tick: {e}")
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.config.TICK_SECONDS)
            except asyncio.TimeoutError:
                pass

        logger.info("📶 Scheduler stopping, draining in-flight fetches")
        await self.drain()

    async def tick(self, now: float) -> List[str]:
        """Start fetch tasks for due feeds, up to the free concurrency slots.

        Returns:
            The URLs dispatched on this tick.
        """
        capacity = self.config.FETCH_CONCURRENCY - len(self.in_flight)
        if capacity <= 0:
            return []
        due = await self.store.execute('list_due', now=now, limit=capacity, exclude=list(self.in_flight))
        for url in due:
            task = asyncio.create_task(self.poll_feed(url))
            self.in_flight[url] = task
            task.add_done_callback(partial(self._task_done, url))
        if due:
            logger.debug(f"Dispatched {len(due)} fetches ({len(self.in_flight)} in flight)")
        return due

    def _task_done(self, url: str, task: asyncio.Task) -> None:
        self.in_flight.pop(url, None)
        if task.cancelled():
            logger.warning(f"Fetch cycle for {url} was cancelled")
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Unexpected error in fetch cycle for {url}: {error.__class__.__name__} {error}")

    async def drain(self) -> None:
        """Wait for every in-flight fetch cycle to complete."""
        if not self.in_flight:
            return
        logger.info(f"Waiting for {len(self.in_flight)} in-flight fetches")
        await asyncio.gather(*list(self.in_flight.values()), return_exceptions=True)

    async def persist_if_due(self, now: float) -> bool:
        """Persist the store at most once per PERSIST_INTERVAL. Failures are retried next cycle."""
        if now - self._last_persist < self.config.PERSIST_INTERVAL:
            return False
        self._last_persist = now
        try:
            return await self.store.persist()
        except PersistenceError as e:
            logger.error(f"❌ {e}; will retry in {self.config.PERSIST_INTERVAL}s")
            return False

    # ------------------------------------------------------------------
    # One fetch cycle
    # ------------------------------------------------------------------
    async def _fetch_and_parse(self, feed: Feed) -> Tuple[FetchResult, Optional[ParsedFeed]]:
        result = await self.fetcher.fetch(feed.url, etag=feed.etag, last_modified=feed.last_modified)
        if result.not_modified:
            return result, None
        return result, await self.fetcher.parse(result.content)

    @trace_span(
        "scheduler.poll_feed",
        tracer_name="scheduler",
        attr_from_args=lambda self, url: {"feed.url": url},
    )
    async def poll_feed(self, url: str) -> Optional[FetchRecord]:
        """Run one fetch cycle for a feed and apply its outcome to the store."""
        feed = await self.store.execute('get_feed', url=url)
        if feed is None:
            return None

        try:
            result, parsed = await asyncio.wait_for(self._fetch_and_parse(feed), timeout=self.config.FETCH_TIMEOUT)
        except asyncio.TimeoutError:
            return await self._record_error(feed, TransientFetchError("timeout", f"No answer within {self.config.FETCH_TIMEOUT}s"))
        except (TransientFetchError, FeedParseError) as e:
            return await self._record_error(feed, e)
        except Exception as e:
            # Unexpected collaborator failures back off like any other fetch error
            logger.exception(f"Unexpected error fetching {url}: {e.__class__.__name__} {e}")
            return await self._record_error(feed, TransientFetchError("unexpected", f"{e.__class__.__name__}: {e}"))

        if parsed is None:
            logger.debug(f"{url} not modified")
            return await self.store.execute('record_fetch', url=url, now=self.clock(), outcome=FetchOutcome.NO_CHANGE)

        fingerprints = [entry_fingerprint(entry) for entry in parsed.entries]
        new_entries = self._new_entries(feed, parsed.entries, fingerprints)
        if not feed.primed:
            logger.info(f"Seeded {len(set(fingerprints))} fingerprints for {url}")
        elif new_entries:
            await self._announce(url, parsed.title or feed.title, new_entries)

        return await self.store.execute(
            'record_fetch',
            url=url,
            now=self.clock(),
            outcome=FetchOutcome.NEW_ENTRIES if new_entries else FetchOutcome.NO_CHANGE,
            seen_fingerprints=fingerprints,
            title=parsed.title,
            link=parsed.link,
            update_validators=True,
            etag=result.etag,
            last_modified=result.last_modified,
        )

    def _new_entries(self, feed: Feed, entries: List[ParsedEntry], fingerprints: List[str]) -> List[ParsedEntry]:
        """Entries of the body not seen before, oldest first and capped at MAX_ENTRIES_PER_FETCH."""
        if not feed.primed:
            return []
        known = set(feed.fingerprints)
        fresh: List[ParsedEntry] = []
        for entry, fingerprint in zip(entries, fingerprints):
            if fingerprint in known:
                continue
            known.add(fingerprint)
            fresh.append(entry)
        if len(fresh) > self.config.MAX_ENTRIES_PER_FETCH:
            logger.warning(
                f"{feed.url} produced {len(fresh)} new entries, announcing the newest {self.config.MAX_ENTRIES_PER_FETCH}"
            )
            fresh = fresh[:self.config.MAX_ENTRIES_PER_FETCH]
        # Feeds list newest first
        fresh.reverse()
        return fresh

    async def _announce(self, url: str, feed_title: str, entries: List[ParsedEntry]) -> None:
        """Deliver new entries to every current subscriber, chats in parallel."""
        current = await self.store.execute('get_feed', url=url)
        if current is None or not current.subscribers:
            return
        messages = [format_entry_message(feed_title, url, entry) for entry in entries]
        chats = sorted(current.subscribers)
        logger.info(f"📰 {len(entries)} new entries in {url} for {len(chats)} chats")
        results = await asyncio.gather(
            *(self._deliver(chat_id, messages) for chat_id in chats),
            return_exceptions=True,
        )
        for chat_id, result in zip(chats, results):
            if isinstance(result, Exception):
                logger.error(f"Delivery to chat {chat_id} failed unexpectedly: {result}")

    async def _deliver(self, chat_id: int, messages: List[str]) -> DeliveryResult:
        """Send messages to one chat in order, stopping at the first permanent failure."""
        result = DeliveryResult.OK
        for text in messages:
            result = await self.notifier.send(chat_id, text)
            if result.is_permanent:
                await self.store.execute('report_undeliverable', chat_id=chat_id)
                break
        return result

    async def _record_error(self, feed: Feed, error: Exception) -> FetchRecord:
        kind = getattr(error, 'kind', 'parse')
        record = await self.store.execute('record_fetch', url=feed.url, now=self.clock(), outcome=FetchOutcome.ERROR)
        if record.dead:
            logger.warning(
                f"💀 {feed.url} failed {record.feed.error_count} times in a row ({kind}: {error}), "
                f"removing it from {len(record.removed_subscribers)} chats"
            )
            await self._send_removal_notices(record)
        elif record.feed is not None:
            logger.info(
                f"⚠️ Fetching {feed.url} failed ({kind}: {error}), error #{record.feed.error_count}, "
                f"retrying in {format_duration(record.feed.interval)}"
            )
        return record

    async def _send_removal_notices(self, record: FetchRecord) -> None:
        text = format_removal_notice(record.feed.title, record.url, record.feed.error_count)
        results = await asyncio.gather(
            *(self.notifier.send(chat_id, text) for chat_id in record.removed_subscribers),
            return_exceptions=True,
        )
        for chat_id, result in zip(record.removed_subscribers, results):
            if isinstance(result, Exception):
                logger.error(f"Removal notice to chat {chat_id} failed unexpectedly: {result}")
            elif result.is_permanent:
                await self.store.execute('report_undeliverable', chat_id=chat_id)
