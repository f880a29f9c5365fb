import os

from config import Config


FEEDS_YAML = """
feeds:
  gabonreview:
    name: "Gabon Review"
    url: " https://www.gabonreview.com/rss "
    category: "actualites"
    author_fallback: "Rédaction Gabon Review"
  voxpopuli:
    name: "Vox Populi"
    url: "https://voxpopuligabon.com/feed/"
    interval_minutes: 30
    active: false
  broken:
    name: "Sans URL"

maintenance:
  time: "03:30"
  timezone: "Africa/Libreville"
"""


def test_feed_definitions_loaded_from_yaml(tmp_path, monkeypatch):
    feeds_file = tmp_path / "feeds.yaml"
    feeds_file.write_text(FEEDS_YAML, encoding="utf-8")
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(feeds_file))

    cfg = Config()

    assert set(cfg.FEED_DEFINITIONS) == {"gabonreview", "voxpopuli"}, "feeds without a url are skipped"
    review = cfg.FEED_DEFINITIONS["gabonreview"]
    assert review["url"] == "https://www.gabonreview.com/rss"
    assert review["interval_minutes"] == cfg.DEFAULT_FETCH_INTERVAL_MINUTES
    assert review["author_fallback"] == "Rédaction Gabon Review"
    assert cfg.FEED_DEFINITIONS["voxpopuli"]["interval_minutes"] == 30
    assert cfg.FEED_DEFINITIONS["voxpopuli"]["active"] is False
    assert cfg.MAINTENANCE_TIME == "03:30"
    assert cfg.MAINTENANCE_TIMEZONE == "Africa/Libreville"


def test_missing_feeds_file_yields_empty_definitions(tmp_path, monkeypatch):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))

    cfg = Config()

    assert cfg.FEED_DEFINITIONS == {}
    assert cfg.MAINTENANCE_TIME == "02:00"


def test_invalid_numeric_settings_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("FETCH_TIMEOUT", "soon")
    monkeypatch.setenv("MAX_CONSECUTIVE_ERRORS", "0")
    monkeypatch.setenv("IMAGE_SCRAPE_ENABLED", "no")

    cfg = Config()

    assert cfg.FETCH_TIMEOUT == 10
    assert cfg.MAX_CONSECUTIVE_ERRORS == 5
    assert cfg.IMAGE_SCRAPE_ENABLED is False


def test_secrets_file_does_not_override_real_environment(tmp_path, monkeypatch):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text(
        "environment:\n"
        "  USER_AGENT: \"Secrets UA/1.0\"\n"
        "  DEFAULT_AUTHOR: \"Rédaction Gabonews\"\n",
        encoding="utf-8",
    )
    env = dict(os.environ, SECRETS_FILE=str(secrets), USER_AGENT="Env UA/2.0")
    env.pop("DEFAULT_AUTHOR", None)
    monkeypatch.setattr("config.environ", env)

    cfg = Config()

    assert cfg.USER_AGENT == "Env UA/2.0"
    assert cfg.DEFAULT_AUTHOR == "Rédaction Gabonews"
