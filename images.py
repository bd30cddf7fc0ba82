#!/usr/bin/env python3
"""
Image resolution: the session image cache and the backfill queue.

Articles the parser could not find an image for are queued here. A single
lazily-started worker drains the queue in small concurrent batches, fetching
each article page through the image relay and scraping a representative
image (og:image, twitter:image, or the first image in a common content
container). Results, including misses, are cached by link and announced to
subscribers as ``(article_id, image)`` events.
"""

from asyncio import CancelledError, Task, create_task, gather
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

from config import config, get_logger
from models import Article
from proxy import ProxyBackend, ProxyFetcher, image_backend
from telemetry import trace_span
from utils import resolve_page_url

logger = get_logger("images")

META_IMAGE_SELECTORS = (
    'meta[property="og:image"]',
    'meta[name="twitter:image"]',
)
CONTENT_IMAGE_SELECTOR = 'article img, .post-thumbnail img, .featured-image img'

ImageListener = Callable[[str, Optional[str]], None]


def extract_page_image(html_content: str, page_url: str) -> Optional[str]:
    """Pick a representative image from an article page."""
    if not html_content:
        return None
    soup = BeautifulSoup(html_content, 'html.parser')
    image = None
    for selector in META_IMAGE_SELECTORS:
        tag = soup.select_one(selector)
        if tag is not None and tag.get('content'):
            image = tag['content']
            break
    if not image:
        tag = soup.select_one(CONTENT_IMAGE_SELECTOR)
        if tag is not None:
            image = tag.get('src')
    return resolve_page_url(image, page_url)


class ImageResolutionService:
    """Owns the link -> image cache and the backfill worker.

    Cache values are an image URL or None; None is a negative entry ("checked,
    nothing found") and is never retried. The cache is never evicted.
    """

    def __init__(
        self,
        fetcher: Optional[ProxyFetcher] = None,
        backend: Optional[ProxyBackend] = None,
        timeout: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.fetcher = fetcher
        self.backend = backend or image_backend()
        self.timeout = timeout if timeout is not None else config.IMAGE_TIMEOUT
        self.batch_size = batch_size or config.IMAGE_BATCH_SIZE
        self._cache: Dict[str, Optional[str]] = {}
        # link -> ids of every article waiting on that link, FIFO by first submission
        self._queue: "OrderedDict[str, List[str]]" = OrderedDict()
        self._in_flight: Dict[str, List[str]] = {}
        self._listeners: List[ImageListener] = []
        self._worker: Optional[Task] = None

    # -- cache -----------------------------------------------------------
    def lookup(self, link: str) -> Tuple[bool, Optional[str]]:
        """Return ``(hit, image)``; a hit with ``image=None`` is a negative entry."""
        if link in self._cache:
            return True, self._cache[link]
        return False, None

    def contains(self, link: str) -> bool:
        return link in self._cache

    def store(self, link: str, image: Optional[str]) -> None:
        # Last write wins
        self._cache[link] = image

    def cache_size(self) -> int:
        return len(self._cache)

    # -- events ----------------------------------------------------------
    def subscribe(self, listener: ImageListener) -> Callable[[], None]:
        """Register for ``(article_id, image)`` events; returns an unsubscribe function."""
        self._listeners.append(listener)

        def _unsubscribe():
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    on_resolved = subscribe

    def _emit(self, article_id: str, image: Optional[str]) -> None:
        for listener in list(self._listeners):
            try:
                listener(article_id, image)
            except Exception as e:
                logger.exception(f"Image listener failed for {article_id}: {e}")

    # -- queue -----------------------------------------------------------
    def enqueue(self, article: Article) -> bool:
        """Queue an article for backfill.

        Returns False when the link is already cached; when it is already
        queued or being fetched the article id is attached to that entry so it
        still receives its own event.
        """
        link = article.link
        if not link or link in self._cache:
            return False
        pending = self._queue.get(link) or self._in_flight.get(link)
        if pending is not None:
            if article.id not in pending:
                pending.append(article.id)
            return False
        self._queue[link] = [article.id]
        self._ensure_worker()
        return True

    def pending_count(self) -> int:
        return len(self._queue) + len(self._in_flight)

    def is_running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def _ensure_worker(self) -> None:
        if self.is_running():
            return
        self._worker = create_task(self._drain())

    async def _drain(self) -> None:
        try:
            while self._queue:
                batch: List[str] = []
                while self._queue and len(batch) < self.batch_size:
                    link, ids = self._queue.popitem(last=False)
                    self._in_flight[link] = ids
                    batch.append(link)
                try:
                    await self._resolve_batch(batch)
                finally:
                    # Cancelled batches must not stay pending
                    for link in batch:
                        self._in_flight.pop(link, None)
        finally:
            self._worker = None
        logger.debug(f"Image backfill queue drained ({len(self._cache)} links cached)")

    @trace_span(
        "image_backfill_batch",
        tracer_name="images",
        attr_from_args=lambda self, batch: {"images.batch_size": len(batch)},
    )
    async def _resolve_batch(self, batch: List[str]) -> None:
        await gather(*(self._resolve(link) for link in batch))

    async def _resolve(self, link: str) -> None:
        try:
            html_content = await self.backend.fetch(self._get_fetcher(), link, timeout=self.timeout)
            image = extract_page_image(html_content, link)
        except CancelledError:
            raise
        except Exception as e:
            # A failed lookup is final for the session
            logger.debug(f"Image backfill failed for {link}: {e}")
            image = None
        self.store(link, image)
        for article_id in self._in_flight.pop(link, []):
            self._emit(article_id, image)

    def _get_fetcher(self) -> ProxyFetcher:
        if self.fetcher is None:
            self.fetcher = ProxyFetcher()
        return self.fetcher

    async def wait_idle(self) -> None:
        """Wait until the queue is empty and the worker has stopped."""
        while self._worker is not None:
            await self._worker

    async def close(self) -> None:
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except CancelledError:
                pass
        self._worker = None
