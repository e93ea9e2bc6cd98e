#!/usr/bin/env python3
"""Common error types shared across modules.

Provides the lightweight exception taxonomy used by the fetcher, parser,
notifier, store and process bootstrap, kept here to avoid circular imports.
"""

from typing import Dict, Any, Optional


class TransientFetchError(Exception):
    """Raised when a feed could not be retrieved (network, timeout, HTTP status, size cap).

    Attributes:
        kind: Short machine-friendly category ("timeout", "http", "network", "too_large", "unexpected").
        status: HTTP status code when the server answered with an unexpected one.
    """

    def __init__(self, kind: str, message: str = "", status: Optional[int] = None):
        super().__init__(message or kind)
        self.kind = kind
        self.status = status


class FeedParseError(Exception):
    """Raised when a response body is not a usable RSS, Atom or JSON feed."""


class PermanentDeliveryError(Exception):
    """Raised when a chat can no longer receive messages (bot blocked, chat deleted).

    Attributes:
        chat_id: The chat that rejected delivery.
        details: Optional provider payload for diagnostics.
    """

    def __init__(self, chat_id: int, message: str = "Chat is permanently unreachable", details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.chat_id = chat_id
        self.details = details or {}


class PersistenceError(Exception):
    """Raised when the state file could not be written. Retried on the next cycle."""


class StartupError(Exception):
    """Raised when the process cannot start (corrupt state file, bad configuration)."""


class ConfigError(StartupError):
    """Raised for invalid configuration values."""


__all__ = [
    "TransientFetchError",
    "FeedParseError",
    "PermanentDeliveryError",
    "PersistenceError",
    "StartupError",
    "ConfigError",
]
