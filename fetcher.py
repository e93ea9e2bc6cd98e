#!/usr/bin/env python3
"""
HTTP feed fetcher.

This module retrieves feed documents with conditional GET (ETag /
Last-Modified), a response size cap, an overall timeout and optional proxy
routing, and hands bodies to the feed parser in a worker thread. Every
transport problem surfaces as a TransientFetchError so the scheduler can back
the feed off without caring about aiohttp specifics.
"""

from asyncio import TimeoutError, get_running_loop
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import timezone
from email.utils import parsedate_to_datetime, format_datetime
from functools import partial
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout, TCPConnector

from config import Config, get_logger
from errors import TransientFetchError
from feed_parser import ParsedFeed, parse_feed
from telemetry import trace_span

logger = get_logger("fetcher")

# HTTP status codes
HTTP_NOT_MODIFIED = 304

READ_CHUNK_SIZE = 64 * 1024


@dataclass
class FetchResult:
    """Outcome of a successful conditional GET.

    Either ``not_modified`` is set, or ``content`` holds the body together with
    the validators the server sent for the next conditional request.
    """

    not_modified: bool = False
    content: bytes = b""
    etag: Optional[str] = None
    last_modified: Optional[str] = None


class FeedFetcher:
    def __init__(self, config: Config, session: Optional[ClientSession] = None) -> None:
        self.config = config
        self.session = session
        self._owns_session = session is None
        self.executor = ThreadPoolExecutor(max_workers=max(1, min(config.FETCH_CONCURRENCY, 4)))

    async def initialize(self) -> None:
        """Create the shared HTTP session (unless one was injected)."""
        if self.session is not None:
            return
        connector_kwargs: Dict[str, Any] = {'limit': self.config.FETCH_CONCURRENCY}
        if self.config.INSECURE:
            logger.warning("INSECURE is set: TLS certificates of feed servers will not be verified")
            connector_kwargs['ssl'] = False
        self.session = ClientSession(
            connector=TCPConnector(**connector_kwargs),
            headers={'User-Agent': self.config.USER_AGENT},
            timeout=ClientTimeout(total=self.config.FETCH_TIMEOUT),
            # Honour HTTP(S)_PROXY from the environment when no explicit proxy is configured
            trust_env=True,
        )
        if self.config.PROXY_URL:
            logger.info("Fetching feeds via proxy %s", self._summarize_proxy(self.config.PROXY_URL))
        logger.info("FeedFetcher initialized")

    def _normalize_http_date(self, date_value: Optional[str]) -> Optional[str]:
        """Normalize HTTP date strings to RFC 7231 format (GMT)."""
        if not date_value:
            return None
        try:
            dt = parsedate_to_datetime(date_value)
            if not dt:
                return None
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            dt = dt.astimezone(timezone.utc)
            return format_datetime(dt, usegmt=True)
        except (TypeError, ValueError, OverflowError) as exc:
            logger.debug(f"Unable to normalize HTTP date '{date_value}': {exc}")
            return None

    def _prepare_request_headers(self, url: str, etag: Optional[str], last_modified: Optional[str]) -> Dict[str, str]:
        """Prepare HTTP headers for conditional requests."""
        headers: Dict[str, str] = {}
        if etag:
            # Quote unquoted ETags; weak and strong ETags are sent back as-is
            if not (etag.startswith('"') or etag.startswith('W/"')):
                etag = f'"{etag}"'
            headers['If-None-Match'] = etag
            logger.debug(f"Using If-None-Match: {etag} for {url}")

        if last_modified:
            normalized_last_modified = self._normalize_http_date(last_modified)
            if normalized_last_modified:
                headers['If-Modified-Since'] = normalized_last_modified
            else:
                logger.warning(f"Invalid Last-Modified for {url}, not sending header (stored value: {last_modified})")
        return headers

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, etag=None, last_modified=None: {
            "http.url": url,
            "http.conditional": bool(etag or last_modified),
        },
    )
    async def fetch(self, url: str, etag: Optional[str] = None, last_modified: Optional[str] = None) -> FetchResult:
        """Fetch a feed with a conditional GET.

        Args:
            url: Feed URL.
            etag: Validator from the previous response, if any.
            last_modified: Validator from the previous response, if any.

        Returns:
            FetchResult with not_modified=True on 304, otherwise the body and new validators.

        Raises:
            TransientFetchError: On timeouts, network errors, unexpected status codes or oversize bodies.
        """
        if self.session is None:
            await self.initialize()

        request_kwargs: Dict[str, Any] = {
            'headers': self._prepare_request_headers(url, etag, last_modified),
            'max_redirects': self.config.MAX_REDIRECTS,
        }
        if self.config.PROXY_URL:
            request_kwargs['proxy'] = self.config.PROXY_URL

        try:
            async with self.session.get(url, **request_kwargs) as response:
                if response.status == HTTP_NOT_MODIFIED:
                    logger.debug(f"Feed {url} not modified since last fetch")
                    return FetchResult(not_modified=True)

                if not 200 <= response.status < 300:
                    raise TransientFetchError("http", f"HTTP {response.status}", status=response.status)

                content = await self._read_capped(url, response)
                return FetchResult(
                    content=content,
                    etag=response.headers.get('ETag'),
                    last_modified=self._normalize_http_date(response.headers.get('Last-Modified')),
                )
        except TimeoutError as e:
            raise TransientFetchError("timeout", f"Timed out after {self.config.FETCH_TIMEOUT}s") from e
        except ClientError as e:
            raise TransientFetchError("network", self._format_client_error(e)) from e

    async def _read_capped(self, url: str, response) -> bytes:
        """Read the response body, refusing anything larger than MAX_FEED_SIZE (0 = unlimited)."""
        max_size = self.config.MAX_FEED_SIZE
        if max_size and response.content_length is not None and response.content_length > max_size:
            raise TransientFetchError(
                "too_large",
                f"Content-Length {response.content_length} exceeds limit of {max_size} bytes",
            )

        chunks: List[bytes] = []
        received = 0
        async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
            received += len(chunk)
            if max_size and received > max_size:
                raise TransientFetchError("too_large", f"Body of {url} exceeds limit of {max_size} bytes")
            chunks.append(chunk)
        return b"".join(chunks)

    async def parse(self, content: bytes) -> ParsedFeed:
        """Parse a feed body in the thread pool; feedparser is not async."""
        loop = get_running_loop()
        return await loop.run_in_executor(self.executor, partial(parse_feed, content))

    async def close(self) -> None:
        """Close connections and clean up resources."""
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None
        # A parse abandoned by a timeout may still be running; wait for it off the event loop
        await get_running_loop().run_in_executor(None, partial(self.executor.shutdown, wait=True))
        logger.info("FeedFetcher closed")

    def _summarize_proxy(self, proxy_url: Optional[str]) -> Optional[str]:
        """Provide a redacted proxy identifier for logging."""
        if not proxy_url:
            return None
        try:
            parsed = urlparse(proxy_url)
            if parsed.scheme and parsed.hostname:
                host = parsed.hostname
                if parsed.port:
                    host = f"{host}:{parsed.port}"
                return f"{parsed.scheme}://{host}"
        except ValueError:
            return proxy_url
        return proxy_url

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        status = getattr(error, 'status', None)
        if status is not None:
            parts.append(f"status={status}")
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            strerror = getattr(os_error, 'strerror', None)
            if errno is not None:
                parts.append(f"errno={errno}")
            if strerror:
                parts.append(str(strerror))
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)
