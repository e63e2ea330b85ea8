"""
Error taxonomy for the gatekeeper.

Every failure the reconciler and the sentiment fan-out can hit maps onto one
of these types. Callers catch them at the smallest scope that still lets the
surrounding loop make progress (one permission key, one inbound batch).
"""
from __future__ import annotations

from typing import Optional


class GatekeeperError(Exception):
    """Base exception for all gatekeeper operations."""


class StoreConnectionError(GatekeeperError):
    """The key-value store or the job queue could not be reached."""

    def __init__(self, message: str, url: str = ""):
        self.url = url
        super().__init__(message)


class ParseError(GatekeeperError):
    """A stored record or an inbound payload did not match its schema."""

    def __init__(self, message: str, source: str = ""):
        self.source = source
        super().__init__(message)


class PlatformApiError(GatekeeperError):
    """A Telegram Bot API call failed (transport error, HTTP error or ok=false)."""

    def __init__(
        self,
        message: str,
        method: str = "",
        status_code: Optional[int] = None,
        description: str = "",
        retry_after: Optional[int] = None,
    ):
        self.method = method
        self.status_code = status_code
        self.description = description
        self.retry_after = retry_after
        super().__init__(message)


class ConfigurationError(GatekeeperError):
    """A feature is missing a required setting (usually a destination chat id)."""

    def __init__(self, message: str, setting: str = ""):
        self.setting = setting
        super().__init__(message)
