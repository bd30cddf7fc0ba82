#!/usr/bin/env python3
"""
Newsdesk command line.

Modes:
  refresh  Run one aggregation pass and print the dashboard (hero, page, warnings)
  probe    Check which proxy relays can currently deliver which feeds
  sources  List configured categories and sources
"""

import argparse
import asyncio
import sys
from typing import List, Optional

from aggregator import AggregationEngine
from config import config, get_logger
from models import ALL, Article
from proxy import PROBE_OK, ProxyBackend, ProxyFetcher, probe_backend, summarize_proxy
from telemetry import init_telemetry, trace_span
from utils import validate_url

logger = get_logger("main")
init_telemetry("newsdesk")

# Feeds used by the probe when none are given on the command line
DEFAULT_PROBE_FEEDS = [
    "https://openai.com/blog/rss.xml",
    "https://www.anthropic.com/rss.xml",
    "https://devops.com/feed/",
]


def format_article(article: Article, source_labels: dict) -> str:
    when = article.published_at.strftime("%Y-%m-%d %H:%M") if article.published_at else "undated"
    if article.image:
        image = "img"
    elif article.image_loading:
        image = "..."
    else:
        image = "-"
    return f"  [{when}] {source_labels.get(article.source_id, article.source_id)}: {article.title} ({image})\n    {article.link}"


@trace_span("cli.refresh", tracer_name="main")
async def run_refresh(category: str, source: Optional[str], pages: int, wait_images: bool) -> int:
    engine = AggregationEngine()
    if not engine.sources:
        print(f"No sources configured in {config.FEEDS_CONFIG_PATH}")
        await engine.close()
        return 1
    try:
        result = await engine.refresh()
        if wait_images:
            await engine.image_service.wait_idle()

        view = engine.view
        if source:
            view.select_source(source)
        else:
            view.select_category(category)
        for _ in range(max(pages, 1) - 1):
            view.show_more()

        labels = {s.id: s.label for s in engine.sources}
        counts = view.category_counts()
        active = config.get_category(view.active_category)
        heading = active["label"] if active else "All sources"
        if view.active_source != ALL:
            heading = f"{heading} / {labels.get(view.active_source, view.active_source)}"
        print(heading)
        print(f"{len(view.filtered())} articles · {view.recent_count()} new today · {counts.get(ALL, 0)} total")
        top = view.top_sources(limit=5)
        if top:
            print("Top sources: " + ", ".join(f"{top_source.label} ({count})" for top_source, count in top))
        warning = result.warning_text()
        if warning:
            print(f"⚠ {warning}")

        hero = view.hero()
        if hero is None:
            print("No articles.")
            return 0
        print("\nTop story")
        print(format_article(hero, labels))
        rest = view.visible()[1:]
        if rest:
            print("\nLatest")
            for article in rest:
                print(format_article(article, labels))
        if view.has_more():
            print(f"\n… {len(view.filtered()) - view.visible_count} more (use --pages)")
        return 0
    finally:
        await engine.close()


async def run_probe(feeds: List[str], proxies: List[str]) -> int:
    invalid = [feed for feed in feeds if not validate_url(feed)]
    if invalid:
        print(f"Not an http(s) URL: {', '.join(invalid)}")
        return 2
    names = proxies or list(config.PROXY_BACKENDS)
    fetcher = ProxyFetcher()
    any_ok = False
    try:
        for name in names:
            settings = config.PROXY_BACKENDS.get(name)
            if settings is None:
                print(f"Unknown proxy: {name}")
                continue
            backend = ProxyBackend.from_config(name, settings)
            print(f"\nTesting proxy: {name} ({summarize_proxy(backend.base_url)})")
            results = await asyncio.gather(*(probe_backend(fetcher, backend, feed) for feed in feeds))
            for feed, (status, detail) in zip(feeds, results):
                any_ok = any_ok or status == PROBE_OK
                print(f"  [{status:<4}] {feed}: {detail}")
    finally:
        await fetcher.close()
    return 0 if any_ok else 1


def print_sources() -> None:
    by_category = {}
    for source in config.SOURCES:
        by_category.setdefault(source['category'], []).append(source)
    for category in config.CATEGORIES:
        print(f"{category.get('icon', '')} {category['label']} ({category['id']})".strip())
        for source in by_category.pop(category['id'], []):
            print(f"  {source['id']:<14} {source['label']:<22} {source['url']}")
    for category_id, sources in by_category.items():
        print(f"? {category_id or '(none)'}")
        for source in sources:
            print(f"  {source['id']:<14} {source['label']:<22} {source['url']}")


def main():
    parser = argparse.ArgumentParser(description='Newsdesk feed aggregator')
    parser.add_argument('mode', choices=['refresh', 'probe', 'sources'], help='Operation mode')
    parser.add_argument('--category', default=ALL, help='Category filter for refresh (default: all)')
    parser.add_argument('--source', help='Source filter for refresh (also selects its category)')
    parser.add_argument('--pages', type=int, default=1, help='Number of pages to reveal')
    parser.add_argument('--wait-images', action='store_true', help='Wait for image backfill before printing')
    parser.add_argument('--feed', action='append', default=[], help='Feed URL to probe (repeatable)')
    parser.add_argument('--proxy', action='append', default=[], help='Proxy backend to probe (repeatable)')

    args = parser.parse_args()

    try:
        if args.mode == 'refresh':
            sys.exit(asyncio.run(run_refresh(args.category, args.source, args.pages, args.wait_images)))
        elif args.mode == 'probe':
            sys.exit(asyncio.run(run_probe(args.feed or DEFAULT_PROBE_FEEDS, args.proxy)))
        elif args.mode == 'sources':
            print_sources()
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
