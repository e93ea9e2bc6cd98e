#!/usr/bin/env python3
"""
Telegram notifier.

Sends messages through the Telegram Bot API and classifies the outcome so the
scheduler can tell a chat that is temporarily unavailable from one that is gone
for good (bot blocked, chat deleted). Rate limiting is handled here, by waiting
for Telegram's retry_after hint, and never leaks into the scheduler.
"""

import html
from asyncio import TimeoutError
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup

from config import Config, get_logger
from errors import PermanentDeliveryError, StartupError
from telemetry import trace_span
from utils import RetryHelper

logger = get_logger("notifier")

TELEGRAM_MESSAGE_LIMIT = 4096
HTTP_FORBIDDEN = 403
HTTP_BAD_REQUEST = 400
HTTP_TOO_MANY_REQUESTS = 429


class DeliveryResult(str, Enum):
    OK = "ok"
    BLOCKED = "blocked"
    CHAT_NOT_FOUND = "chat_not_found"
    RATE_LIMITED = "rate_limited"
    OTHER = "other"

    @property
    def is_permanent(self) -> bool:
        return self in (DeliveryResult.BLOCKED, DeliveryResult.CHAT_NOT_FOUND)


@dataclass(frozen=True)
class BotIdentity:
    """Who the bot is, resolved once at startup via getMe."""

    id: int
    username: str


class _RateLimited(Exception):
    def __init__(self, retry_after: Optional[float]):
        super().__init__(f"retry after {retry_after}")
        self.retry_after = retry_after


class _DeliveryFailed(Exception):
    pass


class TelegramNotifier:
    """Minimal Bot API client covering getMe and sendMessage."""

    def __init__(self, config: Config, session: Optional[ClientSession] = None):
        if not config.TELEGRAM_BOT_TOKEN:
            raise StartupError("TELEGRAM_BOT_TOKEN is not configured")
        self.config = config
        self.base_url = f"{config.TELEGRAM_API_URI}bot{config.TELEGRAM_BOT_TOKEN}"
        self.session = session
        self._owns_session = session is None
        self.retry_helper = RetryHelper(max_retries=config.NOTIFY_MAX_RETRIES, base_delay=1.0, max_delay=60.0)

    async def initialize(self) -> None:
        if self.session is None:
            # Telegram API only uses https; HTTPS_PROXY is picked up from the environment
            self.session = ClientSession(timeout=ClientTimeout(total=self.config.NOTIFY_TIMEOUT), trust_env=True)

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    async def _call(self, method: str, payload: Optional[Dict[str, Any]] = None, chat_id: Optional[int] = None) -> Dict[str, Any]:
        """Invoke a Bot API method and return its ``result``.

        Raises:
            PermanentDeliveryError: The chat blocked the bot or no longer exists.
            _RateLimited: Telegram asked us to slow down.
            _DeliveryFailed: Any other API or transport failure.
        """
        if self.session is None:
            await self.initialize()
        try:
            async with self.session.post(f"{self.base_url}/{method}", json=payload or {}) as response:
                try:
                    body = await response.json(content_type=None)
                except ValueError:
                    body = {}
                if response.status == 200 and body.get('ok'):
                    return body.get('result') or {}
                self._raise_for_error(response.status, body, chat_id)
        except (ClientError, TimeoutError) as e:
            raise _DeliveryFailed(f"{method} failed: {e.__class__.__name__} {e}") from e
        raise _DeliveryFailed(f"{method} returned no result")

    def _raise_for_error(self, status: int, body: Dict[str, Any], chat_id: Optional[int]) -> None:
        code = body.get('error_code', status)
        description = str(body.get('description', ''))
        normalized = description.lower()
        if code == HTTP_TOO_MANY_REQUESTS:
            retry_after = (body.get('parameters') or {}).get('retry_after')
            raise _RateLimited(float(retry_after) if retry_after is not None else None)
        if chat_id is not None:
            if code == HTTP_FORBIDDEN:
                raise PermanentDeliveryError(chat_id, description or "Forbidden", details={"reason": "blocked"})
            if code == HTTP_BAD_REQUEST and "chat not found" in normalized:
                raise PermanentDeliveryError(chat_id, description, details={"reason": "chat_not_found"})
        raise _DeliveryFailed(f"Telegram error {code}: {description}")

    async def get_me(self) -> BotIdentity:
        """Resolve the bot identity; failure here means the process cannot start."""
        try:
            me = await self._call('getMe')
        except (_DeliveryFailed, _RateLimited) as e:
            raise StartupError(f"Initialization failed, check your network and Telegram token: {e}") from e
        return BotIdentity(id=int(me['id']), username=str(me.get('username', '')))

    @trace_span(
        "notify.send",
        tracer_name="notifier",
        attr_from_args=lambda self, chat_id, text: {"chat.id": int(chat_id)},
    )
    async def send(self, chat_id: int, text: str) -> DeliveryResult:
        """Send an HTML message to a chat.

        Rate-limit answers are retried after the advertised delay, up to
        NOTIFY_MAX_RETRIES times; only then is RATE_LIMITED returned.
        """
        payload = {
            'chat_id': chat_id,
            'text': truncate_message(text),
            'parse_mode': 'HTML',
            'disable_web_page_preview': True,
        }
        for attempt in range(self.retry_helper.max_retries + 1):
            try:
                await self._call('sendMessage', payload, chat_id=chat_id)
                return DeliveryResult.OK
            except PermanentDeliveryError as e:
                reason = e.details.get('reason')
                logger.warning(f"Chat {chat_id} is unreachable ({reason}): {e}")
                return DeliveryResult.BLOCKED if reason == "blocked" else DeliveryResult.CHAT_NOT_FOUND
            except _RateLimited as e:
                if attempt >= self.retry_helper.max_retries:
                    logger.warning(f"Giving up on chat {chat_id} after {attempt + 1} rate-limited attempts")
                    return DeliveryResult.RATE_LIMITED
                await self.retry_helper.sleep_for_attempt(attempt, hint=e.retry_after)
            except _DeliveryFailed as e:
                logger.error(f"Failed to deliver message to chat {chat_id}: {e}")
                return DeliveryResult.OTHER
        return DeliveryResult.RATE_LIMITED


def plain_text(value: Optional[str]) -> str:
    """Reduce a possibly HTML-bearing title to escaped plain text for parse_mode=HTML."""
    if not value:
        return ""
    text = BeautifulSoup(value, 'html.parser').get_text(" ", strip=True)
    return html.escape(text, quote=False)


def truncate_message(text: str, limit: int = TELEGRAM_MESSAGE_LIMIT, suffix: str = "…") -> str:
    if len(text) <= limit:
        return text
    return text[:limit - len(suffix)] + suffix


def format_entry_message(feed_title: str, feed_url: str, entry) -> str:
    """Render one new entry for a subscriber."""
    source = plain_text(feed_title) or html.escape(feed_url, quote=False)
    title = plain_text(getattr(entry, 'title', None)) or "(untitled)"
    link = getattr(entry, 'link', None)
    if link:
        return f"<b>{source}</b>\n<a href=\"{html.escape(link)}\">{title}</a>"
    return f"<b>{source}</b>\n{title}"


def format_removal_notice(feed_title: str, feed_url: str, error_count: int) -> str:
    """Tell a subscriber that a dead feed was dropped from their subscriptions."""
    name = plain_text(feed_title) or html.escape(feed_url, quote=False)
    return (
        f"<b>{name}</b> failed {error_count} times in a row and has been unsubscribed.\n"
        f"{html.escape(feed_url, quote=False)}"
    )
