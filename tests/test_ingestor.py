import json

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from errors import HttpError, NetworkError
from feed_parser import FeedParser
from ingestor import SourceIngestor
from models import FailureRecord, Source
from proxy import ProxyBackend, ProxyFetcher


SOURCE = Source("docker", "devops", "Docker", "https://www.docker.com/blog/feed/")

RSS = """<?xml version="1.0"?>
<rss version="2.0"><channel><title>Docker</title>
<item><title>Compose 3</title><link>https://www.docker.com/blog/compose-3</link>
<pubDate>Mon, 06 Jan 2025 10:00:00 GMT</pubDate></item>
<item><title>Desktop 5</title><link>https://www.docker.com/blog/desktop-5</link>
<pubDate>Sun, 05 Jan 2025 10:00:00 GMT</pubDate></item>
</channel></rss>"""


class FakeBackend:
    """Relay strategy with a canned outcome; records every attempt."""

    def __init__(self, name, outcome, payload_format="xml"):
        self.name = name
        self.outcome = outcome
        self.payload_format = payload_format
        self.calls = []

    async def fetch(self, fetcher, target_url, timeout=None):
        self.calls.append((target_url, timeout))
        if isinstance(self.outcome, BaseException):
            raise self.outcome
        return self.outcome


def make_ingestor(*backends):
    return SourceIngestor(fetcher=None, parser=FeedParser(), backends=list(backends), timeout=8)


@pytest.mark.asyncio
async def test_primary_success_skips_fallbacks():
    primary = FakeBackend("codetabs", RSS)
    fallback = FakeBackend("corsproxy", RSS)
    failures = []

    articles = await make_ingestor(primary, fallback).ingest(SOURCE, failures)

    assert [a.title for a in articles] == ["Compose 3", "Desktop 5"]
    assert primary.calls == [(SOURCE.feed_url, 8)]
    assert fallback.calls == []
    assert failures == []


@pytest.mark.asyncio
async def test_second_fallback_success():
    first = FakeBackend("codetabs", HttpError(500))
    second = FakeBackend("corsproxy", NetworkError("connection reset"))
    third = FakeBackend("thingproxy", RSS)
    failures = []

    articles = await make_ingestor(first, second, third).ingest(SOURCE, failures)

    assert len(articles) == 2
    assert len(first.calls) == len(second.calls) == len(third.calls) == 1
    assert failures == []


@pytest.mark.asyncio
async def test_all_proxies_failing_records_one_failure():
    backends = [
        FakeBackend("codetabs", HttpError(403)),
        FakeBackend("corsproxy", HttpError(429)),
        FakeBackend("thingproxy", NetworkError("dns")),
    ]
    failures = []

    articles = await make_ingestor(*backends).ingest(SOURCE, failures)

    assert articles == []
    assert failures == [FailureRecord("Docker", "docker")]
    # Each relay is tried exactly once; no retries
    assert [len(b.calls) for b in backends] == [1, 1, 1]
    assert "codetabs: HTTP 403" in failures[0].reason


@pytest.mark.asyncio
async def test_unparseable_payload_records_failure_without_further_fallback():
    blocked = FakeBackend("codetabs", "<html><body>Please enable JavaScript</body></html>")
    fallback = FakeBackend("corsproxy", RSS)
    failures = []

    articles = await make_ingestor(blocked, fallback).ingest(SOURCE, failures)

    assert articles == []
    assert failures == [FailureRecord("Docker", "docker")]
    assert fallback.calls == []


@pytest.mark.asyncio
async def test_unexpected_exception_is_contained():
    failures = []

    articles = await make_ingestor(FakeBackend("codetabs", RuntimeError("boom"))).ingest(SOURCE, failures)

    assert articles == []
    assert len(failures) == 1
    assert "boom" in failures[0].reason


@pytest.mark.asyncio
async def test_aggregator_json_backend_uses_json_parser():
    payload = json.dumps({"status": "ok", "items": [{"title": "From JSON", "link": "https://www.docker.com/blog/json"}]})
    backend = FakeBackend("rss2json", payload, payload_format="aggregator-json")

    articles = await make_ingestor(backend).ingest(SOURCE, [])

    assert [a.title for a in articles] == ["From JSON"]
    assert articles[0].image_loading is False


@pytest.mark.asyncio
async def test_valid_empty_feed_is_not_a_failure():
    empty = '<?xml version="1.0"?><rss version="2.0"><channel><title>Quiet</title></channel></rss>'
    failures = []

    articles = await make_ingestor(FakeBackend("codetabs", empty)).ingest(SOURCE, failures)

    assert articles == []
    assert failures == []
@pytest.mark.asyncio
async def test_each_pass_gets_its_own_failures():
    ingestor = make_ingestor(FakeBackend("codetabs", HttpError(500)))
    first_pass, second_pass = [], []

    await ingestor.ingest(SOURCE, first_pass)
    await ingestor.ingest(SOURCE, second_pass)

    assert first_pass == [FailureRecord("Docker", "docker")]
    assert second_pass == [FailureRecord("Docker", "docker")]
    assert not hasattr(ingestor, "failures")


@pytest.mark.asyncio
async def test_unknown_charset_from_relay_does_not_abort_the_chain():
    ok_feed = ('<?xml version="1.0"?><rss version="2.0"><channel><title>Docker</title>'
               '<item><title>Ok</title><link>https://www.docker.com/blog/ok</link></item>'
               '</channel></rss>').encode("utf-8")

    async def bogus_charset(request):
        return web.Response(body=ok_feed, headers={"Content-Type": "text/xml; charset=bogus-enc"})

    async def working(request):
        return web.Response(body=ok_feed, content_type="application/rss+xml")

    app = web.Application()
    app.router.add_get("/bogus", bogus_charset)
    app.router.add_get("/working", working)
    server = TestServer(app)
    await server.start_server()
    root = f"http://{server.host}:{server.port}"
    fetcher = ProxyFetcher()
    ingestor = SourceIngestor(
        fetcher=fetcher,
        parser=FeedParser(),
        backends=[ProxyBackend("bogus", f"{root}/bogus?quest="), ProxyBackend("working", f"{root}/working?quest=")],
        timeout=2,
    )
    failures = []
    try:
        articles = await ingestor.ingest(SOURCE, failures)
    finally:
        await fetcher.close()
        await server.close()

    assert [a.title for a in articles] == ["Ok"]
    assert failures == []
