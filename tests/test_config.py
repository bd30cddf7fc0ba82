import textwrap

from config import DEFAULT_FEED_CHAIN, Config, config


def write_feeds(tmp_path, content):
    feeds = tmp_path / "feeds.yaml"
    feeds.write_text(textwrap.dedent(content))
    return feeds


def test_bundled_catalogue_loads():
    assert len(config.CATEGORIES) == 6
    assert len(config.SOURCES) == 22
    assert config.FEED_PROXY_CHAIN == ["codetabs", "corsproxy", "thingproxy"]
    assert config.IMAGE_PROXY == "codetabs"
    category_ids = {c["id"] for c in config.CATEGORIES}
    assert all(source["category"] in category_ids for source in config.SOURCES)


def test_sources_and_categories_are_validated(tmp_path, monkeypatch):
    feeds = write_feeds(tmp_path, """
        categories:
          - {id: ai, label: AI}
          - {label: missing id}
        sources:
          - {id: one, category: ai, label: One, url: " https://one.example/feed "}
          - {id: one, category: ai, label: Duplicate, url: "https://dup.example/feed"}
          - {id: two, category: nowhere, url: "https://two.example/feed"}
          - {id: three, category: ai}
    """)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(feeds))

    cfg = Config()

    assert [c["id"] for c in cfg.CATEGORIES] == ["ai"]
    assert [s["id"] for s in cfg.SOURCES] == ["one", "two"]
    assert cfg.SOURCES[0]["url"] == "https://one.example/feed"
    assert cfg.SOURCES[0]["label"] == "One"
    # Unknown categories are kept; the source is only visible under "all"
    assert cfg.SOURCES[1]["category"] == "nowhere"
    assert cfg.SOURCES[1]["label"] == "two"


def test_custom_proxy_backends(tmp_path, monkeypatch):
    feeds = write_feeds(tmp_path, """
        sources: []
        proxies:
          feed_chain: [mine, bogus, allorigins]
          image_proxy: mine
          backends:
            mine: {url: "https://relay.internal/?u=", envelope: raw, format: xml}
            broken: {envelope: raw}
            weird: {url: "https://weird.example/?", envelope: gzip}
    """)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(feeds))

    cfg = Config()

    assert cfg.FEED_PROXY_CHAIN == ["mine", "allorigins"]
    assert cfg.IMAGE_PROXY == "mine"
    assert cfg.PROXY_BACKENDS["mine"]["url"] == "https://relay.internal/?u="
    assert "broken" not in cfg.PROXY_BACKENDS
    assert "weird" not in cfg.PROXY_BACKENDS
    # Built-ins stay available
    assert cfg.PROXY_BACKENDS["rss2json"]["format"] == "aggregator-json"


def test_missing_feeds_file_falls_back_to_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))

    cfg = Config()

    assert cfg.SOURCES == []
    assert cfg.CATEGORIES == []
    assert cfg.FEED_PROXY_CHAIN == DEFAULT_FEED_CHAIN


def test_numeric_settings_are_validated(tmp_path, monkeypatch):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("FEED_TIMEOUT", "2.5")
    monkeypatch.setenv("PAGE_SIZE", "0")
    monkeypatch.setenv("PER_SOURCE_CAP", "0")
    monkeypatch.setenv("IMAGE_BATCH_SIZE", "lots")

    cfg = Config()

    assert cfg.FEED_TIMEOUT == 2.5
    assert cfg.PAGE_SIZE == 24
    assert cfg.PER_SOURCE_CAP == 0
    assert cfg.IMAGE_BATCH_SIZE == 5
    assert cfg.get_config_summary()["feed_timeout"] == 2.5


def test_secrets_file_overrides_environment(tmp_path, monkeypatch):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  PAGE_SIZE: 12\n")
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    # Secrets are written into os.environ; monkeypatch restores it afterwards
    monkeypatch.setenv("PAGE_SIZE", "24")

    cfg = Config()

    assert cfg.PAGE_SIZE == 12


def test_reload_and_lookup_category(tmp_path, monkeypatch):
    feeds = write_feeds(tmp_path, """
        categories:
          - {id: ai, label: AI, icon: "*"}
    """)
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(feeds))
    cfg = Config()
    assert cfg.get_category("ai")["icon"] == "*"
    assert cfg.get_category("cloud") is None

    feeds.write_text("categories:\n  - {id: cloud, label: Cloud}\n")
    cfg.reload_feed_sources()

    assert cfg.get_category("ai") is None
    assert cfg.get_category("cloud")["label"] == "Cloud"
