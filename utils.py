#!/usr/bin/env python3
"""
Utility functions for the feed processing pipeline.

This module contains helpers shared by the parser, ingestor and image
backfill: HTML stripping, title entity decoding, tolerant date parsing,
URL resolution and the ordered fallback combinator.
"""

from calendar import timegm
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Tuple
import re
from urllib.parse import urlparse

from bs4 import BeautifulSoup
from feedparser.datetimes import _parse_date as feedparser_parse_date

from config import get_logger
from errors import FeedError

# Module-specific logger
logger = get_logger("utils")

# Only these entities are decoded in titles; everything else is left as-is.
TITLE_ENTITIES: Tuple[Tuple[str, str], ...] = (
    ("&amp;", "&"),
    ("&quot;", '"'),
    ("&#8217;", "'"),
    ("&#8216;", "'"),
    ("&#8220;", '"'),
    ("&#8221;", '"'),
)

_WHITESPACE_RE = re.compile(r"\s+")
_IMG_SRC_RE = re.compile(r"""<img[^>]+src=["']([^"']+)["']""", re.I)


def decode_title(title: Optional[str]) -> str:
    """Unescape the small fixed set of entities feeds commonly double-encode."""
    if not title:
        return ""
    for entity, replacement in TITLE_ENTITIES:
        title = title.replace(entity, replacement)
    return title.strip()


def strip_html(html_content: Optional[str]) -> str:
    """Reduce an HTML fragment to a single line of plain text."""
    if not html_content:
        return ""
    text = BeautifulSoup(html_content, "html.parser").get_text(" ")
    return _WHITESPACE_RE.sub(" ", text).strip()


def truncate_string(text: str, max_length: int, suffix: str = "") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def first_img_src(html_content: Optional[str]) -> Optional[str]:
    """Return the first ``<img src>`` in an HTML fragment (regex scan, no parse)."""
    if not html_content:
        return None
    match = _IMG_SRC_RE.search(html_content)
    return match.group(1) if match else None


def resolve_page_url(value: Optional[str], page_url: str) -> Optional[str]:
    """Resolve root- and protocol-relative references against an article URL."""
    if not value:
        return None
    value = value.strip()
    if not value:
        return None
    if value.startswith("//"):
        scheme = urlparse(page_url).scheme or "https"
        return f"{scheme}:{value}"
    if value.startswith("/"):
        parsed = urlparse(page_url)
        if parsed.scheme and parsed.netloc:
            return f"{parsed.scheme}://{parsed.netloc}{value}"
    return value


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL."""
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and '.' in url


# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def date_value_to_datetime(value: Any) -> Optional[datetime]:
    """Convert assorted date representations into an aware UTC datetime.

    Accepts feedparser ``*_parsed`` struct_time tuples, epoch numbers,
    datetimes and strings. Returns None when nothing sensible can be derived.
    """
    if value in (None, ''):
        return None

    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        if value <= 0:
            return None
        try:
            return datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, ValueError, OSError):
            return None

    if isinstance(value, (list, tuple)):
        try:
            # feedparser struct_times are already normalized to UTC
            return datetime.fromtimestamp(timegm(tuple(value)), tz=timezone.utc)
        except (OverflowError, ValueError, OSError, TypeError):
            return None

    if isinstance(value, str):
        return parse_date_string(value)

    return None


def parse_date_string(date_str: str) -> Optional[datetime]:
    date_str = date_str.strip()
    if not date_str:
        return None
    # ISO first: feedparser would read "2025-01-06 10:00:00" as a bare date
    parsers = (
        _parse_with_iso_format,
        _parse_with_feedparser,
        _parse_with_email_utils,
        _parse_with_custom_formats,
    )
    for parser in parsers:
        parsed = parser(date_str)
        if parsed is not None:
            return parsed
    logger.debug(f"Unparseable date '{date_str}'")
    return None


def _parse_with_feedparser(date_str: str) -> Optional[datetime]:
    try:
        time_struct = feedparser_parse_date(date_str)
        if time_struct:
            return datetime.fromtimestamp(timegm(time_struct), tz=timezone.utc)
    except (ValueError, TypeError, AttributeError, OverflowError, OSError):
        return None
    return None


def _parse_with_email_utils(date_str: str) -> Optional[datetime]:
    try:
        dt = parsedate_to_datetime(date_str)
        if dt:
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
    except (TypeError, ValueError, OverflowError, IndexError):
        return None
    return None


def _parse_with_iso_format(date_str: str) -> Optional[datetime]:
    # rss2json emits "2024-01-05 10:00:00"
    try:
        dt = datetime.fromisoformat(date_str.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _parse_with_custom_formats(date_str: str) -> Optional[datetime]:
    custom_formats = [
        "%d %b %Y %H:%M:%S %z",
        "%d %b %Y %H:%M:%S %Z",
        "%d %b %Y %H:%M:%S",
    ]
    for fmt in custom_formats:
        try:
            dt = datetime.strptime(date_str, fmt)
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
        except (ValueError, TypeError):
            continue
    return None


# ---------------------------------------------------------------------------
# Ordered fallback
# ---------------------------------------------------------------------------

class Attempt:
    """Tagged result of :func:`try_in_order`.

    ``ok`` is True when one strategy returned a value; ``strategy`` is the one
    that did. ``errors`` holds ``(strategy, exception)`` for every failure
    encountered on the way, in order.
    """

    def __init__(self, ok: bool, value: Any = None, strategy: Any = None, errors: Optional[List[Tuple[Any, Exception]]] = None):
        self.ok = ok
        self.value = value
        self.strategy = strategy
        self.errors = errors or []

    def __repr__(self) -> str:
        return f"Attempt(ok={self.ok}, strategy={self.strategy!r}, errors={len(self.errors)})"


async def try_in_order(
    strategies: Iterable[Any],
    value: Any,
    call: Optional[Callable[[Any, Any], Awaitable[Any]]] = None,
) -> Attempt:
    """Try each strategy once, in order, until one succeeds.

    Args:
        strategies: Ordered strategies. Without ``call`` each must be an async
                    callable taking ``value``.
        value: Input handed to every strategy.
        call: Optional adapter ``call(strategy, value)`` for strategies that
              are not directly callable.

    Only :class:`errors.FeedError` counts as a strategy failure; anything else
    propagates.
    """
    errors: List[Tuple[Any, Exception]] = []
    for strategy in strategies:
        try:
            if call is not None:
                result = await call(strategy, value)
            else:
                result = await strategy(value)
        except FeedError as e:
            errors.append((strategy, e))
            continue
        return Attempt(True, result, strategy, errors)
    return Attempt(False, None, None, errors)
