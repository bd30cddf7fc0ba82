#!/usr/bin/env python3
"""
Proxy relay fetching.

Every outbound request goes through a public CORS relay: the target URL is
percent-encoded and appended to the relay's base URL. ProxyFetcher issues a
single GET with a hard deadline and maps failures onto the fetch error
taxonomy; it never retries, retry policy belongs to the caller.
"""

from asyncio import TimeoutError
import json
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote, urlparse

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import FetchError, FetchTimeoutError, HttpError, NetworkError, ParseError

logger = get_logger("proxy")

ENVELOPE_RAW = "raw"
ENVELOPE_JSON_CONTENTS = "json-contents"
FORMAT_XML = "xml"
FORMAT_AGGREGATOR_JSON = "aggregator-json"


def build_proxy_url(proxy_base: str, target_url: str, suffix: str = "") -> str:
    """Concatenate the relay base with the percent-encoded target."""
    return f"{proxy_base}{quote(target_url, safe='')}{suffix or ''}"


def summarize_proxy(proxy_url: Optional[str]) -> Optional[str]:
    """Provide a short relay identifier for logging (scheme://host)."""
    if not proxy_url:
        return None
    try:
        parsed = urlparse(proxy_url)
        if parsed.scheme and parsed.hostname:
            host = parsed.hostname
            if parsed.port:
                host = f"{host}:{parsed.port}"
            return f"{parsed.scheme}://{host}"
    except ValueError:
        return proxy_url
    return proxy_url


class ProxyFetcher:
    """Single-shot GET through a relay, returning the response text."""

    def __init__(self, session: Optional[ClientSession] = None, user_agent: Optional[str] = None):
        self._session = session
        self._owns_session = session is None
        self.user_agent = user_agent or config.USER_AGENT

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(headers={'User-Agent': self.user_agent})
            self._owns_session = True
        return self._session

    async def fetch(self, proxy_base: str, target_url: str, timeout: Optional[float] = None, suffix: str = "") -> str:
        """Fetch ``target_url`` through ``proxy_base``.

        Raises:
            HttpError: non-2xx response
            FetchTimeoutError: deadline exceeded
            NetworkError: transport failure
        """
        deadline = timeout if timeout is not None else config.FEED_TIMEOUT
        url = build_proxy_url(proxy_base, target_url, suffix)
        session = self._get_session()
        try:
            async with session.get(url, timeout=ClientTimeout(total=deadline)) as response:
                if not 200 <= response.status < 300:
                    raise HttpError(response.status, url=target_url)
                body = await response.read()
        except TimeoutError as e:
            # aiohttp surfaces deadlines as asyncio.TimeoutError
            raise FetchTimeoutError(deadline, url=target_url) from e
        except ClientError as e:
            raise NetworkError(self._format_client_error(e), url=target_url) from e
        return self._decode(body, response.charset, target_url)

    def _decode(self, body: bytes, charset: Optional[str], target_url: str) -> str:
        try:
            return body.decode(charset or 'utf-8', errors='replace')
        except LookupError:
            # Relays sometimes echo a charset Python has no codec for
            logger.debug(f"Unknown charset {charset!r} for {target_url}; decoding as UTF-8")
            return body.decode('utf-8', errors='replace')

    def _format_client_error(self, error: ClientError) -> str:
        """Describe aiohttp client errors with any available status/errno."""
        parts: List[str] = [error.__class__.__name__]
        os_error = getattr(error, 'os_error', None)
        if os_error is not None:
            errno = getattr(os_error, 'errno', None)
            if errno is not None:
                parts.append(f"errno={errno}")
        message = str(error)
        if message:
            parts.append(message)
        return " ".join(parts)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()


class ProxyBackend:
    """One relay strategy in a fallback chain.

    Attributes:
        name: Short identifier used in logs and configuration.
        base_url: Relay base the encoded target is appended to.
        envelope: ``raw`` (body is the payload) or ``json-contents`` (payload
                  sits in the ``contents`` field of a JSON object).
        payload_format: ``xml`` or ``aggregator-json``; tells the parser which
                        shape to expect.
        suffix: Extra query string appended after the encoded target.
    """

    def __init__(self, name: str, base_url: str, envelope: str = ENVELOPE_RAW, payload_format: str = FORMAT_XML, suffix: str = ""):
        self.name = name
        self.base_url = base_url
        self.envelope = envelope
        self.payload_format = payload_format
        self.suffix = suffix or ""

    @classmethod
    def from_config(cls, name: str, settings: Dict[str, Any]) -> "ProxyBackend":
        return cls(
            name,
            settings['url'],
            envelope=settings.get('envelope', ENVELOPE_RAW),
            payload_format=settings.get('format', FORMAT_XML),
            suffix=settings.get('suffix', ''),
        )

    async def fetch(self, fetcher: ProxyFetcher, target_url: str, timeout: Optional[float] = None) -> str:
        """Fetch through this relay and unwrap its envelope."""
        text = await fetcher.fetch(self.base_url, target_url, timeout=timeout, suffix=self.suffix)
        return self.unwrap(text)

    def unwrap(self, text: str) -> str:
        if self.envelope != ENVELOPE_JSON_CONTENTS:
            return text
        try:
            data = json.loads(text)
        except ValueError as e:
            raise ParseError(f"{self.name}: envelope is not JSON") from e
        contents = data.get('contents') if isinstance(data, dict) else None
        if not isinstance(contents, str) or not contents:
            raise ParseError(f"{self.name}: envelope has no contents")
        return contents

    def __repr__(self) -> str:
        return f"ProxyBackend({self.name!r})"


def backend_chain(names: Optional[List[str]] = None) -> List[ProxyBackend]:
    """Build the ordered relay chain from configuration."""
    names = names if names is not None else config.FEED_PROXY_CHAIN
    return [ProxyBackend.from_config(name, config.PROXY_BACKENDS[name]) for name in names if name in config.PROXY_BACKENDS]


def image_backend() -> ProxyBackend:
    return ProxyBackend.from_config(config.IMAGE_PROXY, config.PROXY_BACKENDS[config.IMAGE_PROXY])


PROBE_OK = "OK"
PROBE_FAIL = "FAIL"
PROBE_BAD = "BAD"
PROBE_ERR = "ERR"


def looks_like_feed(text: str, payload_format: str = FORMAT_XML) -> bool:
    """Cheap sniff used by the relay probe; no real parse."""
    if not text:
        return False
    if payload_format == FORMAT_AGGREGATOR_JSON:
        try:
            data = json.loads(text)
        except ValueError:
            return False
        return isinstance(data, dict) and data.get('status') == 'ok'
    return "<rss" in text or "<feed" in text or "<xml" in text or "<?xml" in text


async def probe_backend(fetcher: ProxyFetcher, backend: ProxyBackend, feed_url: str, timeout: Optional[float] = None) -> Tuple[str, str]:
    """Check whether one relay can deliver one feed.

    Returns ``(status, detail)`` where status is OK, FAIL (HTTP error),
    BAD (body is not a feed) or ERR (timeout/transport failure).
    """
    deadline = timeout if timeout is not None else config.PROBE_TIMEOUT
    try:
        text = await backend.fetch(fetcher, feed_url, timeout=deadline)
    except HttpError as e:
        return PROBE_FAIL, str(e)
    except ParseError as e:
        return PROBE_BAD, str(e)
    except FetchError as e:
        return PROBE_ERR, str(e)
    if looks_like_feed(text, backend.payload_format):
        return PROBE_OK, f"length: {len(text)}"
    return PROBE_BAD, "Not a feed"
