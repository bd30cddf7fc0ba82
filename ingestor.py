#!/usr/bin/env python3
"""
Per-source ingestion.

A source is fetched through an ordered chain of proxy relays (primary plus
fallbacks), each tried once per refresh cycle. The first relay that returns a
body wins and its payload is handed to the FeedParser. If every relay fails,
or the winning payload does not parse, the source contributes no articles and
one FailureRecord. Nothing raises out of :meth:`SourceIngestor.ingest`.
"""

from typing import List, Optional

from config import config, get_logger
from errors import FeedError
from feed_parser import FeedParser
from models import Article, FailureRecord, Source
from proxy import ProxyBackend, ProxyFetcher, backend_chain
from telemetry import trace_span
from utils import try_in_order

logger = get_logger("ingestor")


class SourceIngestor:
    """Fetch and parse one source through a fixed relay fallback chain."""

    def __init__(
        self,
        fetcher: ProxyFetcher,
        parser: FeedParser,
        backends: Optional[List[ProxyBackend]] = None,
        timeout: Optional[float] = None,
    ):
        self.fetcher = fetcher
        self.parser = parser
        self.backends = list(backends) if backends is not None else backend_chain()
        self.timeout = timeout if timeout is not None else config.FEED_TIMEOUT

    async def _fetch_via(self, backend: ProxyBackend, source: Source) -> str:
        logger.debug(f"Fetching {source.id} via {backend.name}")
        return await backend.fetch(self.fetcher, source.feed_url, timeout=self.timeout)

    @trace_span(
        "ingest_source",
        tracer_name="ingestor",
        attr_from_args=lambda self, source, failures: {
            "feed.source": source.id,
            "feed.url": source.feed_url,
        },
    )
    async def ingest(self, source: Source, failures: List[FailureRecord]) -> List[Article]:
        """Return the source's articles, or [] after appending one FailureRecord to ``failures``.

        The caller owns ``failures``; a refresh pass passes one list to every source.
        """
        try:
            attempt = await try_in_order(self.backends, source, self._fetch_via)
            for backend, error in attempt.errors:
                logger.warning(f"{source.id}: proxy {backend.name} failed: {error}")

            if not attempt.ok:
                reason = "; ".join(f"{backend.name}: {error}" for backend, error in attempt.errors) or "no proxies configured"
                logger.error(f"{source.id}: all proxies failed ({reason})")
                failures.append(FailureRecord(source.label, source.id, reason))
                return []

            backend = attempt.strategy
            articles = self.parser.parse(attempt.value, source, backend.payload_format)
        except FeedError as e:
            logger.error(f"{source.id}: could not parse feed: {e}")
            failures.append(FailureRecord(source.label, source.id, str(e)))
            return []
        except Exception as e:
            logger.exception(f"{source.id}: unexpected error during ingestion: {e}")
            failures.append(FailureRecord(source.label, source.id, f"Unexpected error: {e}"))
            return []

        if not articles:
            logger.info(f"{source.id}: feed fetched via {backend.name} but had no usable entries")
        else:
            logger.info(f"{source.id}: {len(articles)} articles via {backend.name}")
        return articles
