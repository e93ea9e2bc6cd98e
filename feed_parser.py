#!/usr/bin/env python3
"""
Feed parsing.

Turns a raw response body into the normalized feed shape the scheduler works
with. Three formats are supported (RSS 0.9x/1.0/2.0, Atom and JSON Feed); XML
flavours go through feedparser, JSON Feed is decoded directly.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import feedparser

from config import get_logger
from errors import FeedParseError

logger = get_logger("feed_parser")

JSON_FEED_VERSION_PREFIX = "https://jsonfeed.org/version/"


class FeedFormat(str, Enum):
    RSS = "rss"
    ATOM = "atom"
    JSON = "json"


@dataclass
class ParsedEntry:
    """One entry of a feed, reduced to the fields used for dedup and messages."""

    title: str = ""
    link: Optional[str] = None
    id: Optional[str] = None
    published: Optional[str] = None


@dataclass
class ParsedFeed:
    """A feed body in normalized form. Entries keep the publisher's order (usually newest first)."""

    format: FeedFormat
    title: str = ""
    link: str = ""
    entries: List[ParsedEntry] = field(default_factory=list)


def detect_format(content: bytes) -> FeedFormat:
    """Guess the feed variant from the body without fully parsing it."""
    head = content.lstrip()[:1]
    if head in (b"{", b"["):
        return FeedFormat.JSON
    # RSS and Atom are told apart by feedparser once parsed
    return FeedFormat.RSS


def parse_feed(content: bytes) -> ParsedFeed:
    """Parse a feed body.

    Args:
        content: Raw bytes as returned by the HTTP fetch.

    Returns:
        The normalized feed. A valid feed without entries yields an empty entry list.

    Raises:
        FeedParseError: If the body is neither a recognizable XML feed nor a JSON Feed.
    """
    if not content or not content.strip():
        raise FeedParseError("Empty response body")
    if detect_format(content) is FeedFormat.JSON:
        return _parse_json_feed(content)
    return _parse_xml_feed(content)


def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _parse_xml_feed(content: bytes) -> ParsedFeed:
    parsed = feedparser.parse(content, sanitize_html=True, resolve_relative_uris=True)
    version = getattr(parsed, 'version', '') or ''
    if not version:
        reason = getattr(parsed, 'bozo_exception', None) or "unrecognized document"
        raise FeedParseError(f"Not an RSS or Atom feed: {reason}")
    if parsed.bozo:
        # Recoverable issues (wrong encoding declaration, undefined entities) still yield entries
        logger.debug(f"Feed parsed with warnings ({version}): {getattr(parsed, 'bozo_exception', '')}")

    feed_format = FeedFormat.ATOM if version.startswith('atom') else FeedFormat.RSS
    meta = parsed.get('feed', {})
    entries = []
    for entry in parsed.get('entries', []):
        entries.append(ParsedEntry(
            title=_clean(entry.get('title')),
            link=_clean(entry.get('link')) or None,
            id=_clean(entry.get('id')) or None,
            published=_clean(entry.get('published') or entry.get('updated')) or None,
        ))
    return ParsedFeed(
        format=feed_format,
        title=_clean(meta.get('title')),
        link=_clean(meta.get('link')),
        entries=entries,
    )


def _parse_json_feed(content: bytes) -> ParsedFeed:
    try:
        document = json.loads(content.decode('utf-8-sig'))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise FeedParseError(f"Invalid JSON Feed: {e}") from e
    if not isinstance(document, dict) or not str(document.get('version', '')).startswith(JSON_FEED_VERSION_PREFIX):
        raise FeedParseError("JSON document is not a JSON Feed")

    items = document.get('items') or []
    if not isinstance(items, list):
        raise FeedParseError("JSON Feed 'items' must be a list")

    entries = []
    for item in items:
        if not isinstance(item, dict):
            continue
        entries.append(_json_item_to_entry(item))
    return ParsedFeed(
        format=FeedFormat.JSON,
        title=_clean(document.get('title')),
        link=_clean(document.get('home_page_url')),
        entries=entries,
    )


def _json_item_to_entry(item: Dict[str, Any]) -> ParsedEntry:
    item_id = item.get('id')
    return ParsedEntry(
        title=_clean(item.get('title')),
        link=_clean(item.get('url') or item.get('external_url')) or None,
        # JSON Feed 1.0 allowed numeric ids
        id=_clean(item_id) or None,
        published=_clean(item.get('date_published') or item.get('date_modified')) or None,
    )
