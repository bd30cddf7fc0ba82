#!/usr/bin/env python3
"""
Configuration for Newsdesk.

Everything tunable lives here: logging, HTTP deadlines, parsing limits, view
policy and the feeds.yaml catalogue of categories, sources and proxy relay
backends. Other modules import the global ``config`` instance.
"""

from os import environ, path, access, R_OK
from typing import Any, Callable, Dict, List, Optional, Union
from logging import getLogger, basicConfig, StreamHandler, DEBUG, INFO, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}


def _setup_global_logger():
    """Configure the root handler once for the whole process.

    LOG_LEVEL picks the level (default INFO), LOG_TIMESTAMPS=false drops the
    time prefix and AIOHTTP_LOG_LEVEL (default WARNING) quiets aiohttp.
    """
    level = LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").upper(), INFO)
    prefix = '' if environ.get("LOG_TIMESTAMPS", "true").lower() == "false" else '%(asctime)s - '

    basicConfig(
        level=level,
        format=prefix + '%(name)s - %(levelname)s - %(message)s',
        handlers=[StreamHandler(sys.stdout)],
        force=True,
    )

    # aiohttp client chatter is only useful when debugging relays
    getLogger("aiohttp").setLevel(LOG_LEVELS.get(environ.get("AIOHTTP_LOG_LEVEL", "WARNING").upper(), WARNING))

    return getLogger("Newsdesk")


def get_logger(name: str):
    """Return the ``Newsdesk.<name>`` logger for a module."""
    return getLogger(f"Newsdesk.{name}")


logger = _setup_global_logger()


# Relays that accept a percent-encoded target appended to their base URL.
# Used when feeds.yaml does not declare its own backends.
DEFAULT_PROXY_BACKENDS: Dict[str, Dict[str, Any]] = {
    "codetabs": {"url": "https://api.codetabs.com/v1/proxy?quest=", "envelope": "raw", "format": "xml"},
    "corsproxy": {"url": "https://corsproxy.io/?", "envelope": "raw", "format": "xml"},
    "thingproxy": {"url": "https://thingproxy.freeboard.io/fetch/", "envelope": "raw", "format": "xml"},
    "allorigins": {"url": "https://api.allorigins.win/get?url=", "envelope": "json-contents", "format": "xml"},
    "rss2json": {
        "url": "https://api.rss2json.com/v1/api.json?rss_url=",
        "envelope": "raw",
        "format": "aggregator-json",
        "suffix": "&count=8",
    },
}
DEFAULT_FEED_CHAIN = ["codetabs", "corsproxy", "thingproxy"]
DEFAULT_IMAGE_PROXY = "codetabs"

VALID_ENVELOPES = ("raw", "json-contents")
VALID_FORMATS = ("xml", "aggregator-json")


class Config:
    """Newsdesk settings.

    Precedence, lowest first: process environment, a ``.env`` file next to
    this module, then the YAML file named by SECRETS_FILE (which writes into
    the environment). The catalogue comes from FEEDS_CONFIG_PATH, by default
    ``feeds.yaml`` next to this module.
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        env_file = path.join(path.dirname(path.abspath(__file__)), '.env')
        if path.exists(env_file):
            load_dotenv(env_file)
            logger.info(f"Environment overrides loaded from {env_file}")
        self._load_secrets_file()

    def _env_number(self, env_var: str, default: Union[int, float], cast: Callable, min_val: Union[int, float]):
        raw = environ.get(env_var)
        if raw is None or raw.strip() == '':
            return default
        try:
            value = cast(raw)
        except (ValueError, TypeError):
            logger.warning(f"{env_var}={raw!r} is not a number; falling back to {default}")
            return default
        if value < min_val:
            logger.warning(f"{env_var}={value} is below the minimum of {min_val}; falling back to {default}")
            return default
        return value

    def _validate_positive_int(self, env_var: str, default: int, min_val: int = 1) -> int:
        return self._env_number(env_var, default, int, min_val)

    def _validate_positive_float(self, env_var: str, default: float, min_val: float = 0.1) -> float:
        return self._env_number(env_var, default, float, min_val)

    def _validate_and_set_config(self):
        self.USER_AGENT = environ.get("USER_AGENT", "Mozilla/5.0 (compatible; Newsdesk/1.0)")

        # Per-call-site HTTP deadlines (seconds)
        self.FEED_TIMEOUT = self._validate_positive_float("FEED_TIMEOUT", 8.0)
        self.IMAGE_TIMEOUT = self._validate_positive_float("IMAGE_TIMEOUT", 5.0)
        self.PROBE_TIMEOUT = self._validate_positive_float("PROBE_TIMEOUT", 10.0)

        # Parsing limits
        self.MAX_ENTRIES_PER_SOURCE = self._validate_positive_int("MAX_ENTRIES_PER_SOURCE", 8)
        self.DESCRIPTION_MAX_CHARS = self._validate_positive_int("DESCRIPTION_MAX_CHARS", 160)

        # View policy; PER_SOURCE_CAP=0 disables the cap
        self.PER_SOURCE_CAP = self._validate_positive_int("PER_SOURCE_CAP", 6, 0)
        self.PAGE_SIZE = self._validate_positive_int("PAGE_SIZE", 24)

        # Image backfill concurrency
        self.IMAGE_BATCH_SIZE = self._validate_positive_int("IMAGE_BATCH_SIZE", 5)

        self.FEEDS_CONFIG_PATH = environ.get(
            "FEEDS_CONFIG_PATH",
            path.join(path.dirname(path.abspath(__file__)), "feeds.yaml"),
        )

    def _load_secrets_file(self):
        """Copy variables from the SECRETS_FILE YAML into the environment.

        The file is a mapping of names to values, either at the top level or
        under an ``environment`` key.
        """
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        data = self._safe_read_yaml(secrets_path, 2 * 1024 * 1024, 'secrets')
        if not isinstance(data, dict):
            if data is not None:
                logger.warning(f"Ignoring {secrets_path}: expected a mapping of variable names")
            return

        variables = data['environment'] if isinstance(data.get('environment'), dict) else data
        applied = 0
        for key, value in variables.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ[key] = str(value)
            applied += 1
        logger.info(f"Applied {applied} variables from {secrets_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Optional[Any]:
        """Load a YAML document, or None (with a log line) if it is unusable.

        ``kind`` only labels log messages ('secrets', 'feeds').
        """
        if not path.isfile(file_path):
            logger.warning(f"No {kind} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"Cannot read {kind} file {file_path}")
            return None
        size = path.getsize(file_path)
        if size > max_size:
            logger.error(f"Refusing {kind} file {file_path}: {size} bytes exceeds {max_size}")
            return None
        try:
            with open(file_path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            logger.error(f"Invalid YAML in {kind} file {file_path}: {e}")
            return None
        except OSError as e:
            logger.error(f"Failed to read {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{kind.capitalize()} file {file_path} is empty")
            return None
        return data

    def _load_feed_sources(self) -> None:
        """Populate categories, sources and proxy backends from feeds.yaml.

        Any failure results in empty catalogues and the built-in proxy backends.
        """
        feeds_path = self.FEEDS_CONFIG_PATH
        config_data = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(config_data, dict):
            config_data = {}

        self.CATEGORIES = self._parse_categories(config_data.get('categories'))
        self.SOURCES = self._parse_sources(config_data.get('sources'), {c['id'] for c in self.CATEGORIES})
        self._parse_proxies(config_data.get('proxies'))

        logger.info(
            "Loaded %d categories, %d sources, feed proxy chain %s from %s",
            len(self.CATEGORIES),
            len(self.SOURCES),
            ",".join(self.FEED_PROXY_CHAIN),
            feeds_path,
        )

    def _parse_categories(self, section: Any) -> List[Dict[str, Any]]:
        categories: List[Dict[str, Any]] = []
        if section is None:
            return categories
        if not isinstance(section, list):
            logger.warning("categories in feeds.yaml must be a list; ignoring")
            return categories
        for entry in section:
            if isinstance(entry, dict) and entry.get('id'):
                categories.append({
                    'id': str(entry['id']),
                    'label': str(entry.get('label') or entry['id']),
                    'icon': entry.get('icon', ''),
                    'color': entry.get('color', ''),
                })
            else:
                logger.warning(f"Skipping invalid category entry: {entry}")
        return categories

    def _parse_sources(self, section: Any, category_ids: set) -> List[Dict[str, Any]]:
        sources: List[Dict[str, Any]] = []
        if section is None:
            return sources
        if not isinstance(section, list):
            logger.warning("sources in feeds.yaml must be a list; ignoring")
            return sources
        seen = set()
        for entry in section:
            if not isinstance(entry, dict) or not entry.get('id') or not entry.get('url'):
                logger.warning(f"Skipping invalid source entry: {entry}")
                continue
            source_id = str(entry['id'])
            if source_id in seen:
                logger.warning(f"Duplicate source id '{source_id}' in feeds.yaml; keeping the first one")
                continue
            seen.add(source_id)
            category_id = str(entry.get('category') or '')
            if category_ids and category_id not in category_ids:
                logger.warning(f"Source '{source_id}' references unknown category '{category_id}'")
            sources.append({
                'id': source_id,
                'category': category_id,
                'label': str(entry.get('label') or source_id),
                'url': str(entry['url']).strip(),
                'color': entry.get('color', ''),
                'short': entry.get('short', ''),
                'bg': entry.get('bg', ''),
                'domain': entry.get('domain', ''),
            })
        return sources

    def _parse_proxies(self, section: Any) -> None:
        backends: Dict[str, Dict[str, Any]] = {name: dict(settings) for name, settings in DEFAULT_PROXY_BACKENDS.items()}
        feed_chain: List[str] = list(DEFAULT_FEED_CHAIN)
        image_proxy: str = DEFAULT_IMAGE_PROXY

        if isinstance(section, dict):
            for name, settings in (section.get('backends') or {}).items():
                if not isinstance(settings, dict) or not isinstance(settings.get('url'), str) or not settings['url'].strip():
                    logger.warning(f"Skipping proxy backend '{name}' without a url")
                    continue
                envelope = settings.get('envelope', 'raw')
                payload_format = settings.get('format', 'xml')
                if envelope not in VALID_ENVELOPES or payload_format not in VALID_FORMATS:
                    logger.warning(f"Skipping proxy backend '{name}' with unsupported envelope/format {envelope}/{payload_format}")
                    continue
                backends[str(name)] = {
                    'url': settings['url'].strip(),
                    'envelope': envelope,
                    'format': payload_format,
                    'suffix': settings.get('suffix', ''),
                }

            chain = section.get('feed_chain')
            if isinstance(chain, list) and chain:
                known = [str(name) for name in chain if str(name) in backends]
                unknown = [str(name) for name in chain if str(name) not in backends]
                if unknown:
                    logger.warning(f"Ignoring unknown proxies in feed_chain: {', '.join(unknown)}")
                if known:
                    feed_chain = known

            configured_image_proxy = section.get('image_proxy')
            if configured_image_proxy:
                if str(configured_image_proxy) in backends:
                    image_proxy = str(configured_image_proxy)
                else:
                    logger.warning(f"Unknown image_proxy '{configured_image_proxy}'; using {image_proxy}")
        elif section not in (None, False):
            logger.warning("proxies in feeds.yaml must be a mapping; using built-in backends")

        self.PROXY_BACKENDS = backends
        self.FEED_PROXY_CHAIN = feed_chain
        self.IMAGE_PROXY = image_proxy

    def get_category(self, category_id: str) -> Optional[Dict[str, Any]]:
        for category in self.CATEGORIES:
            if category['id'] == category_id:
                return category
        return None

    def reload_feed_sources(self):
        """Reload categories, sources and proxies from configuration file."""
        logger.info("Reloading feed sources configuration")
        self._load_feed_sources()

    def get_config_summary(self) -> Dict[str, Any]:
        """Get a summary of current configuration for logging/debugging."""
        return {
            "feeds_config_path": self.FEEDS_CONFIG_PATH,
            "feed_timeout": self.FEED_TIMEOUT,
            "image_timeout": self.IMAGE_TIMEOUT,
            "max_entries_per_source": self.MAX_ENTRIES_PER_SOURCE,
            "per_source_cap": self.PER_SOURCE_CAP,
            "page_size": self.PAGE_SIZE,
            "image_batch_size": self.IMAGE_BATCH_SIZE,
            "category_count": len(self.CATEGORIES),
            "source_count": len(self.SOURCES),
            "feed_proxy_chain": list(self.FEED_PROXY_CHAIN),
            "image_proxy": self.IMAGE_PROXY,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }

# Global configuration instance
config = Config()
