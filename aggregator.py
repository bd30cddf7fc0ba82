#!/usr/bin/env python3
"""
Aggregation across all configured sources.

A refresh pass fans out one SourceIngestor call per source, waits for every
one of them to settle, merges and sorts the results by recency and commits
them, unless a newer pass was started meanwhile. The engine also owns the
dashboard view state: category/source filters, the per-source cap and the
growing page prefix.
"""

from asyncio import gather
from collections import Counter
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from config import config, get_logger
from feed_parser import FeedParser
from images import ImageResolutionService
from ingestor import SourceIngestor
from models import ALL, Article, Category, FailureRecord, RefreshResult, Source
from proxy import ProxyFetcher
from telemetry import trace_span

logger = get_logger("aggregator")


def load_sources() -> List[Source]:
    return [Source.from_config(data) for data in config.SOURCES]


def load_categories() -> List[Category]:
    return [Category.from_config(data) for data in config.CATEGORIES]


def sort_key(article: Article):
    """Newest first, undated last, then original fetch order."""
    if article.published_at is None:
        return (1, 0.0, article.fetch_order)
    return (0, -article.published_at.timestamp(), article.fetch_order)


def sort_articles(articles: Iterable[Article]) -> List[Article]:
    return sorted(articles, key=sort_key)


def cap_per_source(articles: Iterable[Article], cap: Optional[int]) -> List[Article]:
    """Keep at most ``cap`` articles per source, preserving order. None/0 disables."""
    if not cap:
        return list(articles)
    counts: Counter = Counter()
    kept = []
    for article in articles:
        counts[article.source_id] += 1
        if counts[article.source_id] <= cap:
            kept.append(article)
    return kept


class DashboardView:
    """Filter, cap and pagination state over the engine's committed articles."""

    def __init__(self, engine: "AggregationEngine", per_source_cap: Optional[int] = None, page_size: Optional[int] = None):
        self.engine = engine
        self.per_source_cap = config.PER_SOURCE_CAP if per_source_cap is None else per_source_cap
        self.page_size = page_size or config.PAGE_SIZE
        self.active_category = ALL
        self.active_source = ALL
        self.visible_count = self.page_size
        self._memo_key: Optional[Tuple[int, str, str]] = None
        self._memo: List[Article] = []

    def filtered(self) -> List[Article]:
        key = (self.engine.version, self.active_category, self.active_source)
        if key != self._memo_key:
            articles = self.engine.articles
            if self.active_category != ALL:
                articles = [a for a in articles if a.category_id == self.active_category]
            if self.active_source != ALL:
                articles = [a for a in articles if a.source_id == self.active_source]
            self._memo = cap_per_source(articles, self.per_source_cap)
            self._memo_key = key
        return self._memo

    def visible(self) -> List[Article]:
        return self.filtered()[:self.visible_count]

    def has_more(self) -> bool:
        return self.visible_count < len(self.filtered())

    def show_more(self) -> int:
        self.visible_count += self.page_size
        return self.visible_count

    def reset_page(self) -> None:
        self.visible_count = self.page_size

    def hero(self) -> Optional[Article]:
        filtered = self.filtered()
        return filtered[0] if filtered else None

    def select_category(self, category_id: str) -> None:
        self.active_category = category_id or ALL
        self.active_source = ALL
        self.reset_page()

    def select_source(self, source_id: str) -> None:
        """Focus one source (and its category); selecting it again clears both."""
        if not source_id or source_id == ALL or source_id == self.active_source:
            self.active_source = ALL
            self.active_category = ALL
        else:
            self.active_source = source_id
            source = self.engine.get_source(source_id)
            if source is not None:
                self.active_category = source.category_id
        self.reset_page()

    def category_counts(self) -> Dict[str, int]:
        counts = Counter(article.category_id for article in self.engine.articles)
        result = {ALL: len(self.engine.articles)}
        for category in self.engine.categories:
            if category.id != ALL:
                result[category.id] = counts.get(category.id, 0)
        return result

    def top_sources(self, limit: int = 12) -> List[Tuple[Source, int]]:
        counts = Counter(article.source_id for article in self.engine.articles)
        ranked = [(source, counts[source.id]) for source in self.engine.sources if counts[source.id] > 0]
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked[:limit]

    def recent_count(self, hours: int = 24, now: Optional[datetime] = None) -> int:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(hours=hours)
        return sum(1 for a in self.engine.articles if a.published_at is not None and a.published_at > cutoff)


class AggregationEngine:
    """Runs refresh passes and holds the committed article set.

    Every pass gets a generation id; only a pass that is still the latest when
    it finishes may commit. An older pass finishing last is discarded.
    """

    def __init__(
        self,
        sources: Optional[List[Source]] = None,
        categories: Optional[List[Category]] = None,
        ingestor: Optional[SourceIngestor] = None,
        image_service: Optional[ImageResolutionService] = None,
        fetcher: Optional[ProxyFetcher] = None,
        per_source_cap: Optional[int] = None,
        page_size: Optional[int] = None,
    ):
        self.sources = list(sources) if sources is not None else load_sources()
        self.categories = list(categories) if categories is not None else load_categories()
        self.fetcher = fetcher
        if self.fetcher is None and (ingestor is None or image_service is None):
            self.fetcher = ProxyFetcher()
        self.image_service = image_service or ImageResolutionService(fetcher=self.fetcher)
        self.ingestor = ingestor or SourceIngestor(self.fetcher, FeedParser(image_cache=self.image_service))

        self.articles: List[Article] = []
        self.failures: List[FailureRecord] = []
        self.version = 0
        self.committed_generation = 0
        self._generation = 0
        self._by_id: Dict[str, List[Article]] = {}

        self.view = DashboardView(self, per_source_cap=per_source_cap, page_size=page_size)
        self._unsubscribe = self.image_service.subscribe(self._apply_image)

    @property
    def generation(self) -> int:
        return self._generation

    def get_source(self, source_id: str) -> Optional[Source]:
        for source in self.sources:
            if source.id == source_id:
                return source
        return None

    @trace_span(
        "refresh",
        tracer_name="aggregator",
        attr_from_args=lambda self, sources=None: {
            "refresh.sources": len(sources) if sources is not None else len(self.sources),
        },
    )
    async def refresh(self, sources: Optional[List[Source]] = None) -> RefreshResult:
        """Run one aggregation pass over ``sources`` (defaults to configured sources)."""
        self._generation += 1
        generation = self._generation
        sources = list(sources) if sources is not None else self.sources
        logger.info(f"Refresh #{generation}: fetching {len(sources)} sources")

        failures: List[FailureRecord] = []
        results = await gather(
            *(self.ingestor.ingest(source, failures) for source in sources),
            return_exceptions=True,
        )

        merged: List[Article] = []
        seen = set()
        for source, result in zip(sources, results):
            if isinstance(result, BaseException):
                # ingest() is not supposed to raise; degrade the same way anyway
                logger.error(f"{source.id}: ingestion raised {result!r}")
                failures.append(FailureRecord(source.label, source.id, repr(result)))
                continue
            for article in result:
                if not article.title or article.id in seen:
                    continue
                seen.add(article.id)
                article.fetch_order = len(merged)
                merged.append(article)

        order = {source.id: index for index, source in enumerate(sources)}
        failures.sort(key=lambda failure: order.get(failure.source_id, len(order)))
        articles = sort_articles(merged)

        if generation != self._generation:
            logger.info(f"Refresh #{generation} superseded by #{self._generation}; discarding {len(articles)} articles")
            return RefreshResult(articles, failures, generation, committed=False)

        self._commit(articles, failures, generation)
        logger.info(
            f"Refresh #{generation}: {len(articles)} articles from {len(sources) - len(failures)} sources, "
            f"{len(failures)} failed"
        )
        return RefreshResult(articles, failures, generation, committed=True)

    def _commit(self, articles: List[Article], failures: List[FailureRecord], generation: int) -> None:
        self.articles = articles
        self.failures = failures
        self.committed_generation = generation
        self.version += 1
        self._by_id = {}
        for article in articles:
            self._by_id.setdefault(article.id, []).append(article)
        self.view.reset_page()

        queued = 0
        for article in articles:
            if not article.image_loading:
                continue
            hit, image = self.image_service.lookup(article.link)
            if hit:
                # Resolved after this pass parsed the feed
                article.apply_image(image)
            elif self.image_service.enqueue(article):
                queued += 1
        if queued:
            logger.info(f"Queued {queued} articles for image backfill")

    def _apply_image(self, article_id: str, image: Optional[str]) -> None:
        # Patched in place; filter membership is unchanged so the memo stays valid
        for article in self._by_id.get(article_id, []):
            article.apply_image(image)

    def warning_text(self) -> Optional[str]:
        return RefreshResult(self.articles, self.failures, self.committed_generation, True).warning_text()

    async def close(self) -> None:
        self._unsubscribe()
        await self.image_service.close()
        if self.fetcher is not None:
            await self.fetcher.close()
