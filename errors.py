#!/usr/bin/env python3
"""Common error types shared across modules.

Fetch-level errors come from the proxy layer, ParseError from the feed parser.
None of them escape SourceIngestor; they are converted into FailureRecords.
"""

from typing import Optional


class FeedError(Exception):
    """Base class for every ingestion error."""


class FetchError(FeedError):
    """A request through a proxy relay did not produce a body."""

    def __init__(self, message: str, url: Optional[str] = None):
        super().__init__(message)
        self.url = url


class NetworkError(FetchError):
    """Transport failure (DNS, connection reset, TLS, ...)."""


class FetchTimeoutError(FetchError):
    """The per-request deadline elapsed."""

    def __init__(self, timeout: float, url: Optional[str] = None):
        super().__init__(f"Timed out after {timeout:g}s", url=url)
        self.timeout = timeout


class HttpError(FetchError):
    """Non-2xx response.

    Attributes:
        status: HTTP status code returned by the proxy.
    """

    def __init__(self, status: int, url: Optional[str] = None):
        super().__init__(f"HTTP {status}", url=url)
        self.status = status


class ParseError(FeedError):
    """Malformed or unexpected feed payload."""


__all__ = [
    "FeedError",
    "FetchError",
    "NetworkError",
    "FetchTimeoutError",
    "HttpError",
    "ParseError",
]
