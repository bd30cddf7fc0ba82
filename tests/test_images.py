import asyncio

import pytest

from errors import FetchTimeoutError, HttpError
from images import ImageResolutionService, extract_page_image
from models import Article


PAGE = "https://blog.example.com/2025/01/launch"


class FakeImageBackend:
    """Serves article pages by link, tracking concurrency."""

    name = "fake"
    payload_format = "xml"

    def __init__(self, pages=None, delay=0.01):
        self.pages = pages or {}
        self.delay = delay
        self.calls = []
        self.active = 0
        self.max_active = 0

    async def fetch(self, fetcher, target_url, timeout=None):
        self.calls.append(target_url)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            page = self.pages.get(target_url, HttpError(404))
            if isinstance(page, Exception):
                raise page
            return page
        finally:
            self.active -= 1


def og_page(image):
    return f'<html><head><meta property="og:image" content="{image}"></head><body></body></html>'


def article(link, source_id="src"):
    return Article(title="Title", link=link, source_id=source_id, category_id="ai", image_loading=True)


def test_og_image_preferred():
    html = """<html><head>
      <meta name="twitter:image" content="https://img.example.com/twitter.jpg">
      <meta property="og:image" content="https://img.example.com/og.jpg">
    </head><body><article><img src="https://img.example.com/body.jpg"></article></body></html>"""

    assert extract_page_image(html, PAGE) == "https://img.example.com/og.jpg"


def test_twitter_image_fallback_is_resolved_against_page_origin():
    html = '<html><head><meta name="twitter:image" content="/media/card.png"></head></html>'

    assert extract_page_image(html, PAGE) == "https://blog.example.com/media/card.png"


@pytest.mark.parametrize("markup", [
    '<article><p>x</p><img src="https://img.example.com/a.jpg"></article>',
    '<div class="post-thumbnail"><img src="https://img.example.com/a.jpg"></div>',
    '<figure class="featured-image"><img src="https://img.example.com/a.jpg"></figure>',
])
def test_content_container_images(markup):
    assert extract_page_image(f"<html><body>{markup}</body></html>", PAGE) == "https://img.example.com/a.jpg"


def test_no_image_found():
    html = '<html><body><img src="https://img.example.com/logo.png"><p>text</p></body></html>'

    assert extract_page_image(html, PAGE) is None
    assert extract_page_image("", PAGE) is None


@pytest.mark.asyncio
async def test_backfill_resolves_and_emits_per_article():
    backend = FakeImageBackend({PAGE: og_page("https://img.example.com/og.jpg")})
    service = ImageResolutionService(backend=backend, timeout=1)
    events = []
    service.subscribe(lambda article_id, image: events.append((article_id, image)))

    assert service.enqueue(article(PAGE)) is True
    await service.wait_idle()

    assert events == [(f"{PAGE}src", "https://img.example.com/og.jpg")]
    assert service.lookup(PAGE) == (True, "https://img.example.com/og.jpg")
    assert service.pending_count() == 0
    assert not service.is_running()


@pytest.mark.asyncio
async def test_shared_link_is_fetched_once_but_every_article_is_notified():
    backend = FakeImageBackend({PAGE: og_page("https://img.example.com/og.jpg")})
    service = ImageResolutionService(backend=backend, timeout=1)
    events = []
    service.subscribe(lambda article_id, image: events.append(article_id))

    service.enqueue(article(PAGE, "first"))
    service.enqueue(article(PAGE, "second"))
    service.enqueue(article(PAGE, "first"))
    await service.wait_idle()

    assert backend.calls == [PAGE]
    assert events == [f"{PAGE}first", f"{PAGE}second"]


@pytest.mark.asyncio
async def test_failure_is_cached_as_negative_entry():
    backend = FakeImageBackend({PAGE: FetchTimeoutError(5)})
    service = ImageResolutionService(backend=backend, timeout=1)
    events = []
    service.subscribe(lambda article_id, image: events.append((article_id, image)))

    service.enqueue(article(PAGE))
    await service.wait_idle()

    assert events == [(f"{PAGE}src", None)]
    assert service.lookup(PAGE) == (True, None)
    # Never retried within the session
    assert service.enqueue(article(PAGE)) is False
    await service.wait_idle()
    assert backend.calls == [PAGE]


@pytest.mark.asyncio
async def test_page_without_image_is_a_negative_entry():
    backend = FakeImageBackend({PAGE: "<html><body><p>Nothing here</p></body></html>"})
    service = ImageResolutionService(backend=backend, timeout=1)

    service.enqueue(article(PAGE))
    await service.wait_idle()

    assert service.lookup(PAGE) == (True, None)


@pytest.mark.asyncio
async def test_batches_bound_concurrency_and_keep_fifo_order():
    links = [f"https://blog.example.com/post/{n}" for n in range(12)]
    backend = FakeImageBackend({link: og_page(f"{link}.jpg") for link in links})
    service = ImageResolutionService(backend=backend, timeout=1, batch_size=5)
    resolved = []
    service.subscribe(lambda article_id, image: resolved.append(image))

    for link in links:
        service.enqueue(article(link))
    await service.wait_idle()

    assert backend.max_active == 5
    assert backend.calls == links
    assert sorted(resolved) == sorted(f"{link}.jpg" for link in links)
    assert service.cache_size() == 12


@pytest.mark.asyncio
async def test_worker_restarts_after_draining():
    backend = FakeImageBackend({
        PAGE: og_page("https://img.example.com/1.jpg"),
        PAGE + "/2": og_page("https://img.example.com/2.jpg"),
    })
    service = ImageResolutionService(backend=backend, timeout=1)

    service.enqueue(article(PAGE))
    await service.wait_idle()
    service.enqueue(article(PAGE + "/2"))
    await service.wait_idle()

    assert service.lookup(PAGE + "/2") == (True, "https://img.example.com/2.jpg")


@pytest.mark.asyncio
async def test_listener_errors_do_not_stop_the_worker():
    backend = FakeImageBackend({PAGE: og_page("https://img.example.com/og.jpg")})
    service = ImageResolutionService(backend=backend, timeout=1)
    received = []

    def broken(article_id, image):
        raise ValueError("listener bug")

    service.subscribe(broken)
    service.subscribe(lambda article_id, image: received.append(image))
    service.enqueue(article(PAGE))
    await service.wait_idle()

    assert received == ["https://img.example.com/og.jpg"]


@pytest.mark.asyncio
async def test_unsubscribe_and_close():
    backend = FakeImageBackend({PAGE: og_page("https://img.example.com/og.jpg")}, delay=0.5)
    service = ImageResolutionService(backend=backend, timeout=1)
    events = []
    unsubscribe = service.subscribe(lambda article_id, image: events.append(image))
    unsubscribe()

    service.enqueue(article(PAGE))
    assert service.is_running()
    await service.close()

    assert not service.is_running()
    assert events == []


@pytest.mark.asyncio
async def test_close_mid_batch_releases_pending_links():
    backend = FakeImageBackend({PAGE: og_page("https://img.example.com/og.jpg")}, delay=0.5)
    service = ImageResolutionService(backend=backend, timeout=1)

    service.enqueue(article(PAGE))
    while not backend.calls:
        await asyncio.sleep(0)
    await service.close()

    assert service.pending_count() == 0
    assert not service.contains(PAGE)
    # The link can be queued again after a restart
    assert service.enqueue(article(PAGE)) is True
    await service.close()


@pytest.mark.asyncio
async def test_cache_store_and_contains():
    service = ImageResolutionService(backend=FakeImageBackend(), timeout=1)
    seen = []
    service.on_resolved(lambda article_id, image: seen.append(image))

    assert not service.contains(PAGE)
    assert service.lookup(PAGE) == (False, None)
    service.store(PAGE, "https://img.example.com/manual.jpg")

    assert service.contains(PAGE)
    assert service.enqueue(article(PAGE)) is False
    assert seen == []
    assert not service.is_running()
