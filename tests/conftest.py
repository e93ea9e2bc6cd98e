from typing import Dict, List, Optional, Tuple

import pytest

from config import Config
from errors import TransientFetchError
from feed_parser import parse_feed
from fetcher import FetchResult
from models import StateStore
from notifier import DeliveryResult


def rss(*items: Tuple[str, str], title: str = "Example feed") -> bytes:
    """Build a small RSS 2.0 document from (guid, title) pairs, newest first."""
    body = "".join(
        f"<item><guid>{guid}</guid><title>{item_title}</title><link>https://example.com/{guid}</link></item>"
        for guid, item_title in items
    )
    return (
        f'<?xml version="1.0"?><rss version="2.0"><channel><title>{title}</title>'
        f"<link>https://example.com/</link>{body}</channel></rss>"
    ).encode()


class FakeFetcher:
    """Scripted stand-in for FeedFetcher. Responses are consumed in order per URL."""

    def __init__(self):
        self.responses: Dict[str, List[object]] = {}
        self.calls: List[Tuple[str, Optional[str], Optional[str]]] = []

    def queue(self, url: str, *responses) -> None:
        self.responses.setdefault(url, []).extend(responses)

    async def fetch(self, url, etag=None, last_modified=None) -> FetchResult:
        self.calls.append((url, etag, last_modified))
        pending = self.responses.get(url) or []
        response = pending.pop(0) if len(pending) > 1 else (pending[0] if pending else None)
        if response is None:
            raise TransientFetchError("network", "no scripted response")
        if isinstance(response, Exception):
            raise response
        if isinstance(response, bytes):
            return FetchResult(content=response, etag='"v1"')
        return response

    async def parse(self, content):
        return parse_feed(content)


class FakeNotifier:
    def __init__(self):
        self.sent: List[Tuple[int, str]] = []
        self.results: Dict[int, DeliveryResult] = {}

    async def send(self, chat_id, text) -> DeliveryResult:
        self.sent.append((chat_id, text))
        return self.results.get(chat_id, DeliveryResult.OK)

    def sent_to(self, chat_id) -> List[str]:
        return [text for cid, text in self.sent if cid == chat_id]


@pytest.fixture
def config(tmp_path):
    return Config(
        load_environment=False,
        TELEGRAM_BOT_TOKEN="123456:TEST",
        DATABASE_PATH=str(tmp_path / "state.json"),
        MIN_INTERVAL=60,
        MAX_INTERVAL=43200,
        ERROR_THRESHOLD=24,
        FETCH_CONCURRENCY=10,
        PERSIST_INTERVAL=10,
    )


@pytest.fixture
def store(config):
    return StateStore(config.DATABASE_PATH, config)


@pytest.fixture
def fetcher():
    return FakeFetcher()


@pytest.fixture
def notifier():
    return FakeNotifier()
