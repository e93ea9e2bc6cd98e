#!/usr/bin/env python3
"""
State store for the feed notifier.

Feeds and chats live in memory and are owned by a single worker coroutine:
every read or mutation is submitted as a named operation that runs to
completion without awaiting, so callers never hold state across network I/O
and never receive a reference to the live records (copies only).

The whole state is persisted as one JSON document, written to a temporary file
and atomically swapped into place.
"""

import json
import os
import stat
import tempfile
from asyncio import Queue, CancelledError, create_task, get_running_loop
from copy import deepcopy
from dataclasses import dataclass, field
from functools import partial
from time import time
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from config import Config, get_logger
from errors import PersistenceError, StartupError
from telemetry import trace_span
from utils import FetchOutcome, clamp_interval, merge_fingerprints, next_interval

logger = get_logger("store")

STATE_VERSION = 1


@dataclass
class Feed:
    """A polled feed, shared by every chat subscribed to its URL."""

    url: str
    title: str = ""
    link: str = ""
    etag: Optional[str] = None
    last_modified: Optional[str] = None
    # Newest first; bounded by MAX_FINGERPRINTS
    fingerprints: List[str] = field(default_factory=list)
    interval: int = 300
    error_count: int = 0
    last_fetched_at: Optional[float] = None
    next_fetch_at: float = 0.0
    primed: bool = False
    orphaned_at: Optional[float] = None
    subscribers: Set[int] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'url': self.url,
            'title': self.title,
            'link': self.link,
            'etag': self.etag,
            'last_modified': self.last_modified,
            'fingerprints': list(self.fingerprints),
            'interval': self.interval,
            'error_count': self.error_count,
            'last_fetched_at': self.last_fetched_at,
            'next_fetch_at': self.next_fetch_at,
            'primed': self.primed,
            'orphaned_at': self.orphaned_at,
            'subscribers': sorted(self.subscribers),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feed":
        return cls(
            url=str(data['url']),
            title=str(data.get('title') or ""),
            link=str(data.get('link') or ""),
            etag=data.get('etag'),
            last_modified=data.get('last_modified'),
            fingerprints=[str(fp) for fp in data.get('fingerprints', [])],
            interval=int(data['interval']),
            error_count=int(data.get('error_count', 0)),
            last_fetched_at=data.get('last_fetched_at'),
            next_fetch_at=float(data.get('next_fetch_at', 0.0)),
            primed=bool(data.get('primed', False)),
            orphaned_at=data.get('orphaned_at'),
            subscribers={int(chat_id) for chat_id in data.get('subscribers', [])},
        )


@dataclass
class Chat:
    """A Telegram conversation and the feed URLs it follows."""

    id: int
    feeds: Set[str] = field(default_factory=set)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'feeds': sorted(self.feeds)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Chat":
        return cls(id=int(data['id']), feeds={str(url) for url in data.get('feeds', [])})


@dataclass
class FetchRecord:
    """What record_fetch did to a feed."""

    url: str
    feed: Optional[Feed] = None
    dead: bool = False
    removed_subscribers: List[int] = field(default_factory=list)


@dataclass
class SweepReport:
    chats_removed: List[int] = field(default_factory=list)
    feeds_removed: List[str] = field(default_factory=list)
    feeds_orphaned: List[str] = field(default_factory=list)


NEW_FILE_MODE = 0o644


def write_atomic(file_path: str, text: str) -> None:
    """Write text to file_path through a temporary file and an atomic rename.

    The replaced file keeps its permissions; a new file gets NEW_FILE_MODE.
    """
    directory = os.path.dirname(os.path.abspath(file_path))
    try:
        mode = stat.S_IMODE(os.stat(file_path).st_mode)
    except FileNotFoundError:
        mode = NEW_FILE_MODE
    fd, tmp_path = tempfile.mkstemp(prefix=f".{os.path.basename(file_path)}.", suffix=".tmp", dir=directory)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp_path, mode)
        os.replace(tmp_path, file_path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise
    _fsync_directory(directory)


def _fsync_directory(directory: str) -> None:
    """Make the rename durable. Directories cannot be opened for fsync on Windows."""
    if os.name != 'posix':
        return
    dir_fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def init_database(file_path: str) -> None:
    """Create an empty state file. Refuses to overwrite an existing one."""
    if os.path.exists(file_path):
        raise StartupError(f"State file {file_path} already exists")
    write_atomic(file_path, json.dumps({'version': STATE_VERSION, 'feeds': [], 'chats': [], 'undeliverable': []}, indent=2))
    logger.info(f"Created empty state file at {file_path}")


class StateStore:
    """Single-owner store for feeds and chats.

    Operations are plain methods and can be called directly when nothing else
    is running (tests, offline tooling). Inside the service they are submitted
    through execute(), which serializes them on the worker coroutine.
    """

    OPERATIONS = frozenset({
        'get_feed', 'upsert_feed', 'remove_feed', 'subscribe', 'unsubscribe',
        'list_due', 'record_fetch', 'report_undeliverable', 'sweep', 'get_chat',
        'list_feeds', 'list_chats', 'stats', 'snapshot', 'mark_persisted',
    })

    def __init__(
        self,
        file_path: str,
        config: Config,
        feeds: Optional[Iterable[Feed]] = None,
        chats: Optional[Iterable[Chat]] = None,
        undeliverable: Optional[Iterable[int]] = None,
    ):
        self.path = file_path
        self.config = config
        self._feeds: Dict[str, Feed] = {feed.url: feed for feed in feeds or []}
        self._chats: Dict[int, Chat] = {chat.id: chat for chat in chats or []}
        self._undeliverable: Set[int] = set(undeliverable or [])
        self._revision = 0
        self._persisted_revision = 0
        self.queue: Queue = Queue()
        self.running = False
        self.worker_task = None

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------
    @classmethod
    def open(cls, file_path: str, config: Config, create: bool = False) -> "StateStore":
        """Load the store from its state file.

        Args:
            file_path: Path of the JSON state file.
            config: Process configuration (interval bounds, caps).
            create: Start from an empty store when the file does not exist.

        Raises:
            StartupError: If the file is missing (and create is False), unreadable or corrupt.
        """
        if not os.path.exists(file_path):
            if create:
                logger.info(f"State file {file_path} does not exist, starting empty")
                store = cls(file_path, config)
                store._revision = 1
                return store
            raise StartupError(f"State file {file_path} not found (create it with the 'init' command)")

        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                document = json.load(f)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError) as e:
            raise StartupError(f"Cannot read state file {file_path}: {e}") from e

        try:
            store = cls.from_document(file_path, config, document)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StartupError(f"Corrupt state file {file_path}: {e}") from e
        logger.info(f"Loaded {len(store._feeds)} feeds and {len(store._chats)} chats from {file_path}")
        return store

    @classmethod
    def from_document(cls, file_path: str, config: Config, document: Dict[str, Any]) -> "StateStore":
        if not isinstance(document, dict):
            raise ValueError("top level must be an object")
        if document.get('version') != STATE_VERSION:
            raise ValueError(f"unsupported state version {document.get('version')!r}")

        feeds = [Feed.from_dict(item) for item in document.get('feeds', [])]
        chats = [Chat.from_dict(item) for item in document.get('chats', []) if item.get('feeds')]
        for feed in feeds:
            # Bounds may have changed since the file was written
            feed.interval = clamp_interval(feed.interval, config.MIN_INTERVAL, config.MAX_INTERVAL)

        mirrored: Dict[int, Set[str]] = {}
        for feed in feeds:
            for chat_id in feed.subscribers:
                mirrored.setdefault(chat_id, set()).add(feed.url)
        if mirrored != {chat.id: chat.feeds for chat in chats}:
            raise ValueError("feed subscribers and chat subscriptions disagree")

        return cls(file_path, config, feeds, chats, document.get('undeliverable', []))

    def to_document(self) -> Dict[str, Any]:
        return {
            'version': STATE_VERSION,
            'feeds': [feed.to_dict() for feed in sorted(self._feeds.values(), key=lambda f: f.url)],
            'chats': [chat.to_dict() for chat in sorted(self._chats.values(), key=lambda c: c.id)],
            'undeliverable': sorted(self._undeliverable),
        }

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    async def start(self) -> None:
        """Start the store worker."""
        if self.running:
            return
        self.running = True
        self.worker_task = create_task(self._worker())
        logger.info("Store worker started")

    async def stop(self) -> None:
        """Finish queued operations, then stop the worker."""
        if not self.running:
            return
        await self.queue.join()
        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass
            self.worker_task = None
        logger.info("Store worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing store operations one at a time."""
        while True:
            operation_name, params, future = await self.queue.get()
            try:
                if future.cancelled():
                    continue
                result = getattr(self, operation_name)(**params)
                future.set_result(result)
            except Exception as e:
                logger.error(f"Store operation error in {operation_name}: {e}")
                if not future.done():
                    future.set_exception(e)
            finally:
                self.queue.task_done()

    async def execute(self, operation_name: str, **params) -> Any:
        """Run a named store operation on the worker and return its result."""
        if operation_name not in self.OPERATIONS:
            raise ValueError(f"Unknown operation: {operation_name}")
        if not self.running:
            raise RuntimeError("Store worker is not running")
        future = get_running_loop().create_future()
        await self.queue.put((operation_name, params, future))
        return await future

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    @property
    def dirty(self) -> bool:
        return self._revision != self._persisted_revision

    def _touch(self) -> None:
        self._revision += 1

    def snapshot(self) -> Tuple[int, Optional[str]]:
        """Serialize the state if it changed since the last successful write."""
        if not self.dirty:
            return self._revision, None
        return self._revision, json.dumps(self.to_document(), indent=2)

    def mark_persisted(self, revision: int) -> None:
        self._persisted_revision = max(self._persisted_revision, revision)

    @trace_span("store.persist", tracer_name="store")
    async def persist(self) -> bool:
        """Write pending changes to disk.

        Returns:
            True if a write happened, False if nothing changed.

        Raises:
            PersistenceError: If the write failed; the store stays dirty for the next cycle.
        """
        revision, text = await self.execute('snapshot')
        if text is None:
            return False
        loop = get_running_loop()
        try:
            await loop.run_in_executor(None, partial(write_atomic, self.path, text))
        except OSError as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e
        await self.execute('mark_persisted', revision=revision)
        logger.debug(f"Persisted state revision {revision} to {self.path}")
        return True

    def flush(self) -> None:
        """Synchronously write the state, used once the worker is stopped at shutdown."""
        revision, text = self.snapshot()
        if text is None:
            return
        try:
            write_atomic(self.path, text)
        except OSError as e:
            raise PersistenceError(f"Failed to write {self.path}: {e}") from e
        self.mark_persisted(revision)
        logger.info(f"Flushed state to {self.path}")

    # ------------------------------------------------------------------
    # Feed operations
    # ------------------------------------------------------------------
    def get_feed(self, url: str) -> Optional[Feed]:
        feed = self._feeds.get(url)
        return deepcopy(feed) if feed else None

    def list_feeds(self) -> List[Feed]:
        return [deepcopy(feed) for feed in self._feeds.values()]

    def upsert_feed(self, feed: Feed, now: Optional[float] = None) -> Feed:
        """Insert or update a feed's attributes.

        Subscribers are owned by subscribe/unsubscribe: the subscriber set of
        an existing record is kept, a new record starts without subscribers.
        """
        existing = self._feeds.get(feed.url)
        record = deepcopy(feed)
        record.interval = clamp_interval(record.interval, self.config.MIN_INTERVAL, self.config.MAX_INTERVAL)
        if existing:
            record.subscribers = set(existing.subscribers)
            record.orphaned_at = existing.orphaned_at
        else:
            record.subscribers = set()
            record.orphaned_at = time() if now is None else now
        self._feeds[feed.url] = record
        self._touch()
        return deepcopy(record)

    def remove_feed(self, url: str) -> List[int]:
        """Remove a feed and every subscription to it. Returns the former subscribers."""
        feed = self._feeds.pop(url, None)
        if feed is None:
            return []
        for chat_id in feed.subscribers:
            chat = self._chats.get(chat_id)
            if chat is None:
                continue
            chat.feeds.discard(url)
            if not chat.feeds:
                del self._chats[chat_id]
        self._touch()
        logger.info(f"Removed feed {url} ({len(feed.subscribers)} subscribers)")
        return sorted(feed.subscribers)

    def list_due(self, now: float, limit: Optional[int] = None, exclude: Iterable[str] = ()) -> List[str]:
        """URLs of feeds whose next fetch time has passed, most overdue first."""
        skipped = set(exclude)
        due = sorted(
            (feed for feed in self._feeds.values() if feed.next_fetch_at <= now and feed.url not in skipped),
            key=lambda feed: feed.next_fetch_at,
        )
        urls = [feed.url for feed in due]
        return urls if limit is None else urls[:limit]

    def record_fetch(
        self,
        url: str,
        now: float,
        outcome: FetchOutcome,
        seen_fingerprints: Optional[List[str]] = None,
        title: Optional[str] = None,
        link: Optional[str] = None,
        update_validators: bool = False,
        etag: Optional[str] = None,
        last_modified: Optional[str] = None,
    ) -> FetchRecord:
        """Apply the outcome of one fetch cycle to a feed.

        On success the error count is reset, fingerprints of the fetched body
        are merged in and validators replaced. On error the error count grows;
        once it exceeds ERROR_THRESHOLD the feed is removed together with all
        its subscriptions. In every surviving case the interval is adapted and
        the next fetch is scheduled at ``now + interval``.
        """
        feed = self._feeds.get(url)
        if feed is None:
            # Unsubscribed and swept while the fetch was in flight
            return FetchRecord(url=url)

        outcome = FetchOutcome(outcome)
        if outcome is FetchOutcome.ERROR:
            feed.error_count += 1
            if feed.error_count > self.config.ERROR_THRESHOLD:
                subscribers = self.remove_feed(url)
                dead = deepcopy(feed)
                return FetchRecord(url=url, feed=dead, dead=True, removed_subscribers=subscribers)
        else:
            feed.error_count = 0
            if seen_fingerprints is not None:
                feed.fingerprints = merge_fingerprints(seen_fingerprints, feed.fingerprints, self.config.MAX_FINGERPRINTS)
                feed.primed = True
            if title:
                feed.title = title
            if link:
                feed.link = link
            if update_validators:
                feed.etag = etag
                feed.last_modified = last_modified

        feed.interval = next_interval(feed.interval, outcome, self.config.MIN_INTERVAL, self.config.MAX_INTERVAL)
        feed.last_fetched_at = now
        feed.next_fetch_at = now + feed.interval
        self._touch()
        return FetchRecord(url=url, feed=deepcopy(feed))

    # ------------------------------------------------------------------
    # Subscription operations
    # ------------------------------------------------------------------
    def get_chat(self, chat_id: int) -> Optional[Chat]:
        chat = self._chats.get(chat_id)
        return deepcopy(chat) if chat else None

    def list_chats(self) -> List[Chat]:
        return [deepcopy(chat) for chat in self._chats.values()]

    def subscribe(self, chat_id: int, url: str, now: Optional[float] = None) -> bool:
        """Subscribe a chat to a feed URL, creating the feed and chat on first use.

        A new feed starts at MIN_INTERVAL and is due immediately.

        Returns:
            False if the chat was already subscribed.
        """
        now = time() if now is None else now
        feed = self._feeds.get(url)
        if feed is None:
            feed = Feed(url=url, interval=self.config.MIN_INTERVAL, next_fetch_at=now)
            self._feeds[url] = feed
            logger.info(f"Tracking new feed {url}")
        chat = self._chats.setdefault(chat_id, Chat(id=chat_id))
        # A chat that subscribes again is reachable
        self._undeliverable.discard(chat_id)
        if chat_id in feed.subscribers:
            return False
        feed.subscribers.add(chat_id)
        feed.orphaned_at = None
        chat.feeds.add(url)
        self._touch()
        return True

    def unsubscribe(self, chat_id: int, url: str, now: Optional[float] = None) -> bool:
        """Remove one subscription. Drops the chat when it has nothing left.

        Returns:
            False if the subscription did not exist.
        """
        now = time() if now is None else now
        feed = self._feeds.get(url)
        chat = self._chats.get(chat_id)
        if feed is None or chat is None or chat_id not in feed.subscribers:
            return False
        feed.subscribers.discard(chat_id)
        chat.feeds.discard(url)
        if not feed.subscribers:
            feed.orphaned_at = now
        if not chat.feeds:
            del self._chats[chat_id]
        self._touch()
        return True

    def report_undeliverable(self, chat_id: int) -> bool:
        """Remember that a chat rejected delivery permanently; the janitor removes it."""
        if chat_id not in self._chats or chat_id in self._undeliverable:
            return False
        self._undeliverable.add(chat_id)
        self._touch()
        return True

    def sweep(self, now: float, grace: float) -> SweepReport:
        """Prune undeliverable chats and feeds that have had no subscribers for ``grace`` seconds."""
        report = SweepReport()
        for chat_id in sorted(self._undeliverable):
            chat = self._chats.get(chat_id)
            if chat is not None:
                for url in sorted(chat.feeds):
                    self.unsubscribe(chat_id, url, now=now)
                self._chats.pop(chat_id, None)
                report.chats_removed.append(chat_id)
        if self._undeliverable:
            self._undeliverable.clear()
            self._touch()

        for url, feed in list(self._feeds.items()):
            if feed.subscribers:
                continue
            if feed.orphaned_at is None:
                feed.orphaned_at = now
                report.feeds_orphaned.append(url)
                self._touch()
            elif now - feed.orphaned_at >= grace:
                del self._feeds[url]
                report.feeds_removed.append(url)
                self._touch()
        return report

    def stats(self) -> Dict[str, Any]:
        now = time()
        return {
            'feeds': len(self._feeds),
            'chats': len(self._chats),
            'subscriptions': sum(len(feed.subscribers) for feed in self._feeds.values()),
            'due_now': len(self.list_due(now)),
            'failing_feeds': sum(1 for feed in self._feeds.values() if feed.error_count),
            'orphaned_feeds': sum(1 for feed in self._feeds.values() if not feed.subscribers),
            'pending_undeliverable': len(self._undeliverable),
            'dirty': self.dirty,
        }
