#!/usr/bin/env python3
"""
Feed payload parsing.

Converts a raw relay payload into normalized Article objects. Two payload
shapes are supported, selected by the relay that produced them:

- ``xml``: RSS ``item`` / Atom ``entry`` documents, parsed with feedparser,
  with best-effort image extraction and an image cache read-through.
- ``aggregator-json``: the rss2json API shape (``{"status": "ok", "items": [...]}``),
  mapped almost directly, with no image backfill.
"""

import io
import json
from typing import Any, List, Optional

import feedparser

from config import config, get_logger
from errors import ParseError
from models import Article, Source
from proxy import FORMAT_AGGREGATOR_JSON, FORMAT_XML
from utils import (
    date_value_to_datetime,
    decode_title,
    first_img_src,
    strip_html,
    truncate_string,
)

logger = get_logger("feed_parser")


class FeedParser:
    """Normalize feed payloads into Articles.

    Args:
        image_cache: Anything exposing ``lookup(link) -> (hit, image)``; in
                     practice the shared ImageResolutionService. Optional.
        max_entries: Entries kept per source (defaults to config).
        description_max_chars: Summary length cap (defaults to config).
    """

    def __init__(self, image_cache: Any = None, max_entries: Optional[int] = None, description_max_chars: Optional[int] = None):
        self.image_cache = image_cache
        self.max_entries = max_entries or config.MAX_ENTRIES_PER_SOURCE
        self.description_max_chars = description_max_chars or config.DESCRIPTION_MAX_CHARS

    def parse(self, payload: str, source: Source, payload_format: str = FORMAT_XML) -> List[Article]:
        if payload_format == FORMAT_AGGREGATOR_JSON:
            return self.parse_json(payload, source)
        if payload_format == FORMAT_XML:
            return self.parse_xml(payload, source)
        raise ParseError(f"Unsupported payload format {payload_format!r}")

    # ------------------------------------------------------------------
    # XML (RSS / Atom)
    # ------------------------------------------------------------------
    def parse_xml(self, payload: str, source: Source) -> List[Article]:
        feedparser_options = {
            'sanitize_html': True,
            'resolve_relative_uris': True,
        }
        # A stream, so a payload is never mistaken for a URL or a file path
        feed = feedparser.parse(io.BytesIO((payload or "").encode("utf-8")), **feedparser_options)

        if not feed.get('version') and not feed.entries:
            detail = feed.get('bozo_exception') or "not an RSS/Atom document"
            raise ParseError(f"{source.id}: {detail}")
        if feed.bozo:
            logger.debug(f"Feed parsing warning for {source.id}: {feed.get('bozo_exception')}")

        articles: List[Article] = []
        for entry in feed.entries[:self.max_entries]:
            article = self._article_from_entry(entry, source)
            if article is not None:
                articles.append(article)
        logger.debug(f"{source.id}: parsed {len(articles)} articles ({feed.get('version') or 'unknown'} format)")
        return articles

    def _article_from_entry(self, entry, source: Source) -> Optional[Article]:
        title = decode_title(entry.get('title'))
        link = (entry.get('link') or '').strip()
        if not title or not link:
            return None

        description_html = self._entry_description(entry)
        image = self._entry_image(entry, description_html)
        image_loading = False
        if not image:
            hit, cached = self._cache_lookup(link)
            if hit:
                image = cached
            else:
                image_loading = True

        return Article(
            title=title,
            link=link,
            source_id=source.id,
            category_id=source.category_id,
            description=truncate_string(strip_html(description_html), self.description_max_chars),
            image=image,
            image_loading=image_loading,
            published_at=self._entry_date(entry),
        )

    def _entry_description(self, entry) -> str:
        """description / summary, then content; first non-empty wins."""
        for field in ('description', 'summary'):
            value = entry.get(field)
            if value and value.strip():
                return value
        for content_item in entry.get('content') or []:
            value = content_item.get('value')
            if value and value.strip():
                return value
        return ""

    def _entry_image(self, entry, description_html: str) -> Optional[str]:
        """media:content, enclosure, itunes:image, media:thumbnail, then the first inline <img>."""
        for media in entry.get('media_content') or []:
            if media.get('url'):
                return media['url']
        for enclosure in entry.get('enclosures') or []:
            url = enclosure.get('href') or enclosure.get('url')
            if url:
                return url
        itunes_image = entry.get('image')
        if isinstance(itunes_image, dict) and itunes_image.get('href'):
            return itunes_image['href']
        for thumbnail in entry.get('media_thumbnail') or []:
            if thumbnail.get('url'):
                return thumbnail['url']
        return first_img_src(description_html)

    def _entry_date(self, entry):
        """First usable of pubDate/published, then updated."""
        for field in ('published', 'updated'):
            parsed = date_value_to_datetime(entry.get(f"{field}_parsed"))
            if parsed is not None:
                return parsed
            parsed = date_value_to_datetime(entry.get(field))
            if parsed is not None:
                return parsed
        return None

    def _cache_lookup(self, link: str):
        if self.image_cache is None:
            return False, None
        return self.image_cache.lookup(link)

    # ------------------------------------------------------------------
    # Aggregator JSON (rss2json)
    # ------------------------------------------------------------------
    def parse_json(self, payload: str, source: Source) -> List[Article]:
        try:
            data = json.loads(payload)
        except (TypeError, ValueError) as e:
            raise ParseError(f"{source.id}: aggregator payload is not JSON") from e
        if not isinstance(data, dict) or data.get('status') != 'ok':
            status = data.get('status') if isinstance(data, dict) else type(data).__name__
            raise ParseError(f"{source.id}: aggregator status {status!r}")
        items = data.get('items')
        if not isinstance(items, list):
            raise ParseError(f"{source.id}: aggregator payload has no items")

        articles: List[Article] = []
        for item in items[:self.max_entries]:
            if not isinstance(item, dict):
                continue
            title = decode_title(item.get('title'))
            link = (item.get('link') or '').strip()
            if not title or not link:
                continue
            enclosure = item.get('enclosure') if isinstance(item.get('enclosure'), dict) else {}
            articles.append(Article(
                title=title,
                link=link,
                source_id=source.id,
                category_id=source.category_id,
                description=truncate_string(
                    strip_html(item.get('description') or item.get('content') or ''),
                    self.description_max_chars,
                ),
                image=enclosure.get('link') or item.get('thumbnail') or None,
                image_loading=False,
                published_at=date_value_to_datetime(item.get('pubDate')),
            ))
        return articles
