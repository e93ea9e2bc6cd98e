import asyncio

import pytest
import pytest_asyncio

from conftest import rss
from errors import TransientFetchError
from fetcher import FetchResult
from models import StateStore
from notifier import DeliveryResult
from scheduler import FeedScheduler
from utils import FetchOutcome

URL = "https://example.com/feed.xml"


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest_asyncio.fixture
async def running_store(store):
    await store.start()
    yield store
    await store.stop()


def _scheduler(config, store, fetcher, notifier, clock=None):
    return FeedScheduler(config, store, fetcher, notifier, clock=clock or Clock())


@pytest.mark.asyncio
async def test_first_fetch_seeds_without_notifying(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    fetcher.queue(URL, rss(("a", "A"), ("b", "B")))

    record = await _scheduler(config, running_store, fetcher, notifier).poll_feed(URL)

    assert notifier.sent == []
    assert record.feed.primed
    assert len(record.feed.fingerprints) == 2
    assert record.feed.title == "Example feed"
    assert record.feed.etag == '"v1"'


@pytest.mark.asyncio
async def test_new_entries_notified_oldest_first_and_interval_shrinks(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    fetcher.queue(URL, rss(("a", "A")), rss(("c", "Third"), ("b", "Second"), ("a", "A")), FetchResult(not_modified=True))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    await scheduler.poll_feed(URL)
    feed = running_store.get_feed(URL)
    feed.interval = 300
    running_store.upsert_feed(feed)
    record = await scheduler.poll_feed(URL)

    assert record.feed.interval == 150
    texts = notifier.sent_to(1)
    assert len(texts) == 2
    assert "Second" in texts[0] and "Third" in texts[1]

    record = await scheduler.poll_feed(URL)
    assert record.feed.interval == 180
    assert len(notifier.sent) == 2


@pytest.mark.asyncio
async def test_conditional_request_uses_stored_validators(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    fetcher.queue(URL, FetchResult(content=rss(("a", "A")), etag='"abc"', last_modified="Mon, 01 Jan 2024 00:00:00 GMT"),
                  FetchResult(not_modified=True))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    await scheduler.poll_feed(URL)
    await scheduler.poll_feed(URL)

    assert fetcher.calls[0] == (URL, None, None)
    assert fetcher.calls[1] == (URL, '"abc"', "Mon, 01 Jan 2024 00:00:00 GMT")


@pytest.mark.asyncio
async def test_unchanged_feed_notifies_nobody(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    fetcher.queue(URL, rss(("a", "A"), ("b", "B")))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    for _ in range(3):
        await scheduler.poll_feed(URL)

    assert notifier.sent == []
    assert running_store.get_feed(URL).error_count == 0


@pytest.mark.asyncio
async def test_two_chats_one_feed_one_fetch_two_sends(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    running_store.subscribe(2, URL, now=0)
    fetcher.queue(URL, rss(("a", "A")), rss(("b", "B"), ("a", "A")))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    assert len(running_store.list_feeds()) == 1
    await scheduler.poll_feed(URL)
    fetcher.calls.clear()
    await scheduler.poll_feed(URL)

    assert len(fetcher.calls) == 1
    assert len(notifier.sent_to(1)) == 1
    assert len(notifier.sent_to(2)) == 1


@pytest.mark.asyncio
async def test_dead_feed_removed_with_single_notice_per_subscriber(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    running_store.subscribe(2, URL, now=0)
    fetcher.queue(URL, TransientFetchError("http", "HTTP 500", status=500))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    for attempt in range(config.ERROR_THRESHOLD):
        record = await scheduler.poll_feed(URL)
        assert not record.dead
        assert record.feed.error_count == attempt + 1

    record = await scheduler.poll_feed(URL)

    assert record.dead
    assert running_store.get_feed(URL) is None
    assert running_store.get_chat(1) is None
    assert running_store.get_chat(2) is None
    assert len(notifier.sent_to(1)) == 1
    assert len(notifier.sent_to(2)) == 1
    assert "unsubscribed" in notifier.sent_to(1)[0]
    assert await scheduler.poll_feed(URL) is None


@pytest.mark.asyncio
async def test_parse_error_counts_as_fetch_error(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    fetcher.queue(URL, b"<html><body>not a feed</body></html>")

    record = await _scheduler(config, running_store, fetcher, notifier).poll_feed(URL)

    assert record.feed.error_count == 1
    assert record.feed.interval == config.MIN_INTERVAL * 2


@pytest.mark.asyncio
async def test_outer_timeout_is_a_fetch_error(config, running_store, notifier):
    class SlowFetcher:
        async def fetch(self, url, etag=None, last_modified=None):
            await asyncio.sleep(10)

    config.FETCH_TIMEOUT = 0.01
    running_store.subscribe(1, URL, now=0)

    record = await _scheduler(config, running_store, SlowFetcher(), notifier).poll_feed(URL)

    assert record.feed.error_count == 1


@pytest.mark.asyncio
async def test_unexpected_fetcher_error_backs_off(config, running_store, notifier):
    class BrokenFetcher:
        def __init__(self):
            self.calls = 0

        async def fetch(self, url, etag=None, last_modified=None):
            self.calls += 1
            raise RuntimeError("collaborator bug")

    running_store.subscribe(1, URL, now=0)
    broken = BrokenFetcher()
    scheduler = _scheduler(config, running_store, broken, notifier, clock=Clock(now=100))

    for second in range(5):
        await scheduler.tick(100 + second)
        await scheduler.drain()

    assert broken.calls == 1
    feed = running_store.get_feed(URL)
    assert feed.error_count == 1
    assert feed.interval == config.MIN_INTERVAL * 2
    assert feed.next_fetch_at == 100 + feed.interval


@pytest.mark.asyncio
async def test_unexpected_errors_still_kill_the_feed(config, running_store, notifier):
    class BrokenFetcher:
        async def fetch(self, url, etag=None, last_modified=None):
            raise RuntimeError("collaborator bug")

    config.ERROR_THRESHOLD = 2
    running_store.subscribe(1, URL, now=0)
    scheduler = _scheduler(config, running_store, BrokenFetcher(), notifier)

    for _ in range(2):
        assert not (await scheduler.poll_feed(URL)).dead
    record = await scheduler.poll_feed(URL)

    assert record.dead
    assert len(notifier.sent_to(1)) == 1


@pytest.mark.asyncio
async def test_feed_without_entries_is_a_quiet_success(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    fetcher.queue(URL, rss())
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    first = await scheduler.poll_feed(URL)
    second = await scheduler.poll_feed(URL)

    assert notifier.sent == []
    assert second.feed.error_count == 0
    assert first.feed.interval == 72
    assert second.feed.interval == 86
    assert second.feed.fingerprints == []


@pytest.mark.asyncio
async def test_persist_failure_is_retried_on_a_later_cycle(config, tmp_path, notifier, fetcher):
    state_dir = tmp_path / "not-yet"
    store = StateStore(str(state_dir / "state.json"), config)
    store.subscribe(1, URL, now=0)
    await store.start()
    scheduler = _scheduler(config, store, fetcher, notifier)
    try:
        assert not await scheduler.persist_if_due(100)
        assert store.dirty

        state_dir.mkdir()
        # Still inside PERSIST_INTERVAL of the failed attempt
        assert not await scheduler.persist_if_due(100 + config.PERSIST_INTERVAL - 1)
        assert await scheduler.persist_if_due(100 + config.PERSIST_INTERVAL)
        assert not store.dirty
    finally:
        await store.stop()
    assert StateStore.open(str(state_dir / "state.json"), config).get_feed(URL) is not None


@pytest.mark.asyncio
async def test_permanent_delivery_failure_reported(config, running_store, fetcher, notifier):
    running_store.subscribe(1, URL, now=0)
    running_store.subscribe(2, URL, now=0)
    notifier.results[2] = DeliveryResult.BLOCKED
    fetcher.queue(URL, rss(("a", "A")), rss(("c", "C"), ("b", "B"), ("a", "A")))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    await scheduler.poll_feed(URL)
    await scheduler.poll_feed(URL)

    assert len(notifier.sent_to(1)) == 2
    # Stops at the first permanent failure
    assert len(notifier.sent_to(2)) == 1
    assert running_store.stats()['pending_undeliverable'] == 1


@pytest.mark.asyncio
async def test_entries_per_fetch_are_capped(config, running_store, fetcher, notifier):
    config.MAX_ENTRIES_PER_FETCH = 3
    running_store.subscribe(1, URL, now=0)
    items = [(f"id{i}", f"Entry {i}") for i in range(10, 0, -1)]
    fetcher.queue(URL, rss(("id0", "Entry 0")), rss(*items, ("id0", "Entry 0")))
    scheduler = _scheduler(config, running_store, fetcher, notifier)

    await scheduler.poll_feed(URL)
    await scheduler.poll_feed(URL)

    texts = notifier.sent_to(1)
    assert len(texts) == 3
    assert "Entry 8" in texts[0] and "Entry 10" in texts[2]


@pytest.mark.asyncio
async def test_tick_respects_concurrency_and_never_refetches_in_flight(config, running_store, notifier):
    config.FETCH_CONCURRENCY = 2
    release = asyncio.Event()
    active = []
    peak = []

    class BlockingFetcher:
        def __init__(self):
            self.calls = []

        async def fetch(self, url, etag=None, last_modified=None):
            self.calls.append(url)
            active.append(url)
            peak.append(len(active))
            await release.wait()
            active.remove(url)
            return FetchResult(not_modified=True)

    for i in range(5):
        running_store.subscribe(1, f"https://example.com/{i}.xml", now=0)
    blocking = BlockingFetcher()
    scheduler = _scheduler(config, running_store, blocking, notifier)

    first = await scheduler.tick(100)
    await asyncio.sleep(0)
    second = await scheduler.tick(100)

    assert len(first) == 2
    assert second == []
    assert len(scheduler.in_flight) == 2

    release.set()
    await scheduler.drain()
    await asyncio.sleep(0)
    assert scheduler.in_flight == {}

    third = await scheduler.tick(100)
    assert len(third) == 2
    assert not set(third) & set(first)
    await scheduler.drain()
    assert max(peak) <= 2
    assert len(blocking.calls) == len(set(blocking.calls))


@pytest.mark.asyncio
async def test_run_drains_and_persists(config, fetcher, notifier):
    store = StateStore.open(config.DATABASE_PATH, config, create=True)
    store.subscribe(1, URL, now=0)
    fetcher.queue(URL, rss(("a", "A")))
    config.TICK_SECONDS = 1
    config.PERSIST_INTERVAL = 1
    await store.start()
    stop_event = asyncio.Event()
    clock = Clock(now=100)
    scheduler = _scheduler(config, store, fetcher, notifier, clock=clock)

    task = asyncio.create_task(scheduler.run(stop_event))
    for _ in range(50):
        await asyncio.sleep(0.01)
        if store.get_feed(URL).primed:
            break
    stop_event.set()
    await task
    await store.stop()
    store.flush()

    loaded = StateStore.open(config.DATABASE_PATH, config)
    feed = loaded.get_feed(URL)
    assert feed.primed
    assert feed.next_fetch_at == 100 + feed.interval
    assert scheduler.in_flight == {}


def test_record_outcome_for_not_modified(store):
    store.subscribe(1, URL, now=0)
    record = store.record_fetch(URL, now=10, outcome=FetchOutcome.NO_CHANGE)
    assert record.feed.interval == 72
