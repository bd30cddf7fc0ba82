#!/usr/bin/env python3
"""
Data model for the aggregation pipeline.

Sources and categories are static configuration; articles are derived from
feed payloads and only ever mutated in their image fields.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional


ALL = "all"


class Category:
    """A dashboard category. The id ``all`` is the unfiltered bucket."""

    def __init__(self, id: str, label: str, icon: str = "", color: str = ""):
        self.id = id
        self.label = label
        self.icon = icon
        self.color = color

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> "Category":
        return cls(data['id'], data.get('label') or data['id'], data.get('icon', ''), data.get('color', ''))

    def __repr__(self) -> str:
        return f"Category({self.id!r})"


class Source:
    """A configured feed. Identity is ``id``; never mutated after load."""

    __slots__ = ("id", "category_id", "label", "feed_url", "color", "short", "background", "domain")

    def __init__(
        self,
        id: str,
        category_id: str,
        label: str,
        feed_url: str,
        color: str = "",
        short: str = "",
        background: str = "",
        domain: str = "",
    ):
        object.__setattr__(self, "id", id)
        object.__setattr__(self, "category_id", category_id)
        object.__setattr__(self, "label", label)
        object.__setattr__(self, "feed_url", feed_url)
        object.__setattr__(self, "color", color)
        object.__setattr__(self, "short", short)
        object.__setattr__(self, "background", background)
        object.__setattr__(self, "domain", domain)

    def __setattr__(self, name, value):
        raise AttributeError(f"Source is immutable (tried to set {name})")

    @classmethod
    def from_config(cls, data: Dict[str, Any]) -> "Source":
        return cls(
            id=data['id'],
            category_id=data.get('category', ''),
            label=data.get('label') or data['id'],
            feed_url=data['url'],
            color=data.get('color', ''),
            short=data.get('short', ''),
            background=data.get('bg', ''),
            domain=data.get('domain', ''),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Source):
            return NotImplemented
        return self.id == other.id

    def __hash__(self) -> int:
        return hash(self.id)

    def __repr__(self) -> str:
        return f"Source({self.id!r}, {self.label!r})"


class Article:
    """A normalized feed entry.

    ``id`` is ``link + source_id``: the same link from two sources yields two
    articles, the same link fetched twice from one source collapses by identity.
    """

    def __init__(
        self,
        title: str,
        link: str,
        source_id: str,
        category_id: str,
        description: str = "",
        image: Optional[str] = None,
        image_loading: bool = False,
        published_at: Optional[datetime] = None,
    ):
        self.id = f"{link}{source_id}"
        self.title = title
        self.link = link
        self.source_id = source_id
        self.category_id = category_id
        self.description = description
        self.image = image
        self.image_loading = image_loading
        self.published_at = published_at
        # Position in the merged, pre-sort list; secondary sort key
        self.fetch_order = 0

    def apply_image(self, image: Optional[str]) -> None:
        """Settle the backfill state; a miss keeps whatever image we already had."""
        self.image = image or self.image
        self.image_loading = False

    def __repr__(self) -> str:
        return f"Article({self.source_id!r}, {self.title[:40]!r})"


class FailureRecord:
    """A source that could not be fetched or parsed through any proxy."""

    def __init__(self, source_label: str, source_id: Optional[str] = None, reason: Optional[str] = None):
        self.source_label = source_label
        self.source_id = source_id
        # Diagnostics only; never shown in the user-facing warning
        self.reason = reason

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, FailureRecord):
            return NotImplemented
        return self.source_label == other.source_label and self.source_id == other.source_id

    def __repr__(self) -> str:
        return f"FailureRecord({self.source_label!r})"


class RefreshResult:
    """Outcome of one aggregation pass."""

    def __init__(self, articles: List[Article], failures: List[FailureRecord], generation: int, committed: bool):
        self.articles = articles
        self.failures = failures
        self.generation = generation
        self.committed = committed

    @property
    def failed_labels(self) -> List[str]:
        return [failure.source_label for failure in self.failures]

    def warning_text(self) -> Optional[str]:
        """Inline, non-blocking warning listing failed sources by label."""
        if not self.failures:
            return None
        return f"Could not load: {', '.join(self.failed_labels)}"

    def __repr__(self) -> str:
        return (
            f"RefreshResult(generation={self.generation}, articles={len(self.articles)}, "
            f"failures={len(self.failures)}, committed={self.committed})"
        )
