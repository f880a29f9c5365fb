#!/usr/bin/env python3
"""
Configuration for the news ingestion pipeline.

Settings come from the process environment, optionally pre-populated from a
.env file next to this module and from a YAML secrets file (SECRETS_FILE).
The feed seed list and the maintenance window live in feeds.yaml.

Every module reads settings through the global ``config`` instance and logs
through ``get_logger()``.
"""

from os import environ, path, access, R_OK
from typing import Dict, Any, Callable, List
from logging import getLogger, basicConfig, StreamHandler, INFO, DEBUG, WARNING, ERROR
import sys
import yaml
from dotenv import load_dotenv

_LOG_LEVELS = {"DEBUG": DEBUG, "INFO": INFO, "WARNING": WARNING, "ERROR": ERROR}
_BASE_DIR = path.dirname(path.abspath(__file__))


def _setup_global_logger():
    """Configure the root handler once for the whole process.

    LOG_LEVEL picks the level (INFO by default) and LOG_TIMESTAMPS=false drops
    the timestamp column, which is handy under systemd or Docker where the
    collector already stamps lines. Output goes to line-buffered stdout.
    """
    environ.setdefault("PYTHONUNBUFFERED", "1")
    level = _LOG_LEVELS.get(environ.get("LOG_LEVEL", "INFO").strip().upper(), INFO)
    fields = ['%(name)s', '%(levelname)s', '%(message)s']
    if environ.get("LOG_TIMESTAMPS", "true").strip().lower() != "false":
        fields.insert(0, '%(asctime)s')

    basicConfig(level=level, format=' - '.join(fields), handlers=[StreamHandler(sys.stdout)], force=True)

    # pytest may replace stdout with an object lacking reconfigure()
    for stream in (sys.stdout, sys.stderr):
        if hasattr(stream, "reconfigure"):
            stream.reconfigure(line_buffering=True)

    # aiohttp access logs are noisy at INFO
    getLogger("aiohttp").setLevel(max(level, WARNING))

    return getLogger("NewsIngest")


def get_logger(name: str):
    """Return the "NewsIngest.<name>" child logger."""
    return getLogger(f"NewsIngest.{name}")


logger = _setup_global_logger()

# Category vocabulary and keyword lists, in tie-break order.
DEFAULT_CATEGORY_KEYWORDS: Dict[str, List[str]] = {
    "politique": ["politique", "gouvernement", "ministre", "president", "assemblee",
                  "senat", "election", "parti", "depute", "transition"],
    "economie": ["economie", "economique", "finance", "budget", "entreprise",
                 "commerce", "investissement", "banque", "petrole", "emploi"],
    "sport": ["sport", "football", "panthers", "match", "championnat",
              "equipe", "joueur", "stade", "basket", "handball"],
    "culture": ["culture", "culturel", "musique", "art", "festival",
                "cinema", "livre", "theatre", "patrimoine", "artiste"],
    "sante": ["sante", "hopital", "medecin", "maladie", "vaccin",
              "epidemie", "medical", "soins", "patient", "paludisme"],
    "education": ["education", "ecole", "universite", "etudiant", "enseignant",
                  "eleve", "formation", "examen", "baccalaureat", "scolaire"],
    "environnement": ["environnement", "climat", "foret", "biodiversite", "pollution",
                      "ecologie", "parc national", "faune", "ocean", "deforestation"],
}


class Config:
    """All runtime settings, resolved once at import time.

    Precedence: real environment variables, then .env, then the secrets file
    (which only fills keys that are still unset), then built-in defaults.
    """

    def __init__(self):
        self._load_environment()
        self._validate_and_set_config()
        self._load_feed_sources()

    def _load_environment(self):
        dotenv_path = path.join(_BASE_DIR, '.env')
        if path.exists(dotenv_path):
            load_dotenv(dotenv_path)
            logger.info(f"Loaded .env overrides from {dotenv_path}")
        self._load_secrets_file()

    @staticmethod
    def _number(env_var: str, default, minimum, cast: Callable[[str], Any]):
        raw = environ.get(env_var)
        if raw is None or not raw.strip():
            return default
        try:
            value = cast(raw.strip())
        except (ValueError, TypeError):
            logger.warning(f"{env_var}={raw!r} is not a valid number; using {default}")
            return default
        if value < minimum:
            logger.warning(f"{env_var}={value} is below the minimum of {minimum}; using {default}")
            return default
        return value

    def _int(self, env_var: str, default: int, minimum: int = 1) -> int:
        return self._number(env_var, default, minimum, int)

    def _float(self, env_var: str, default: float, minimum: float = 0.0) -> float:
        return self._number(env_var, default, minimum, float)

    @staticmethod
    def _flag(env_var: str, default: bool) -> bool:
        return environ.get(env_var, "true" if default else "false").strip().lower() in ("1", "true", "yes", "on")

    def _validate_and_set_config(self):
        # Storage
        self.DATABASE_PATH = environ.get("DATABASE_PATH", "news.db")
        self.SCHEMA_FILE_PATH = path.join(_BASE_DIR, "schema.sql")
        self.SCHEMA_FILE_SIZE_LIMIT_MB = self._int("SCHEMA_FILE_SIZE_LIMIT_MB", 10)
        self.FEEDS_CONFIG_PATH = environ.get("FEEDS_CONFIG_PATH", path.join(_BASE_DIR, "feeds.yaml"))

        # Feed fetching
        self.USER_AGENT = environ.get("USER_AGENT", "GabonNews RSS Reader/1.0 (+https://gabonnews.ga)")
        self.FETCH_TIMEOUT = self._int("FETCH_TIMEOUT", 10)
        self.DEFAULT_FETCH_INTERVAL_MINUTES = self._int("DEFAULT_FETCH_INTERVAL_MINUTES", 15)
        self.MAX_ITEMS_PER_FEED = self._int("MAX_ITEMS_PER_FEED", 10)
        self.FEED_PACING_SECONDS = self._float("FEED_PACING_SECONDS", 2.0)
        self.FEED_CONCURRENCY = self._int("FEED_CONCURRENCY", 1)

        # Article page scraping (image fallback)
        self.IMAGE_SCRAPE_ENABLED = self._flag("IMAGE_SCRAPE_ENABLED", True)
        self.IMAGE_SCRAPE_TIMEOUT = self._int("IMAGE_SCRAPE_TIMEOUT", 5)
        self.SCRAPE_REQUESTS_PER_MINUTE = self._int("SCRAPE_REQUESTS_PER_MINUTE", 30)
        self.SCRAPER_USER_AGENT = environ.get(
            "SCRAPER_USER_AGENT",
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/120.0 Safari/537.36",
        )

        # Feed health
        self.MAX_CONSECUTIVE_ERRORS = self._int("MAX_CONSECUTIVE_ERRORS", 5)
        self.FEED_BACKOFF_ENABLED = self._flag("FEED_BACKOFF_ENABLED", True)
        self.BACKOFF_BASE_MINUTES = self._int("BACKOFF_BASE_MINUTES", 15)
        self.MAX_BACKOFF_MINUTES = self._int("MAX_BACKOFF_MINUTES", 360)

        # Dedup cache (optimization only; storage is authoritative)
        self.DEDUP_CACHE_TTL_SECONDS = self._int("DEDUP_CACHE_TTL_SECONDS", 900)
        self.DEDUP_CACHE_MAX_SIZE = self._int("DEDUP_CACHE_MAX_SIZE", 5000)

        # Normalization
        self.SUMMARY_MAX_LENGTH = self._int("SUMMARY_MAX_LENGTH", 500, 10)
        self.DEFAULT_AUTHOR = environ.get("DEFAULT_AUTHOR", "Rédaction")
        self.DEFAULT_TITLE = environ.get("DEFAULT_TITLE", "Sans titre")
        self.CATEGORY_KEYWORDS = DEFAULT_CATEGORY_KEYWORDS

        # Enrichment queue
        self.ENRICHMENT_PRIORITY = self._int("ENRICHMENT_PRIORITY", 1, 0)
        self.ENRICHMENT_MAX_ATTEMPTS = self._int("ENRICHMENT_MAX_ATTEMPTS", 3)
        self.ENRICHMENT_RETRY_BASE_SECONDS = self._float("ENRICHMENT_RETRY_BASE_SECONDS", 2.0, 0.1)
        self.ENRICHMENT_MAX_CONTENT_CHARS = self._int("ENRICHMENT_MAX_CONTENT_CHARS", 8000, 100)

        # Retention
        self.ARTICLE_RETENTION_DAYS = self._int("ARTICLE_RETENTION_DAYS", 30)

        # Scheduler
        self.SCHEDULER_INTERVAL_MINUTES = self._int("SCHEDULER_INTERVAL_MINUTES", 15)
        self.SCHEDULER_TIMEZONE = environ.get("SCHEDULER_TIMEZONE", "Africa/Libreville")
        self.SCHEDULER_RUN_IMMEDIATELY = self._flag("SCHEDULER_RUN_IMMEDIATELY", True)

    def _load_secrets_file(self):
        """Copy entries of the SECRETS_FILE YAML mapping into unset environment keys.

        The mapping may sit at the top level or under an ``environment`` key.
        """
        secrets_path = environ.get("SECRETS_FILE")
        if not secrets_path:
            return

        data = self._safe_read_yaml(secrets_path, 2 * 1024 * 1024, 'secrets')
        if data is None:
            return
        if not isinstance(data, dict):
            logger.warning(f"Ignoring secrets file {secrets_path}: expected a YAML mapping")
            return

        entries = data['environment'] if isinstance(data.get('environment'), dict) else data
        applied = 0
        for key, value in entries.items():
            if not isinstance(key, str) or value is None:
                logger.warning(f"Ignoring secrets entry {key!r}")
                continue
            environ.setdefault(key, str(value))
            applied += 1
        logger.info(f"Applied {applied} settings from secrets file {secrets_path}")

    def _safe_read_yaml(self, file_path: str, max_size: int, kind: str) -> Any | None:
        """Load a YAML document, or return None (after logging) if it is missing, oversized or invalid."""
        if not path.isfile(file_path):
            logger.warning(f"No {kind} file at {file_path}")
            return None
        if not access(file_path, R_OK):
            logger.error(f"Cannot read {kind} file {file_path}: permission denied")
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
            logger.error(f"Could not read {kind} file {file_path}: {e}")
            return None
        if not data:
            logger.warning(f"{kind.capitalize()} file {file_path} is empty")
            return None
        return data

    def _load_feed_sources(self) -> None:
        """Populate FEED_DEFINITIONS and the maintenance window from feeds.yaml.

        A missing or malformed file yields no feed definitions and the default
        02:00 maintenance time.
        """
        self.MAINTENANCE_TIME = "02:00"
        self.MAINTENANCE_TIMEZONE = self.SCHEDULER_TIMEZONE
        self.FEED_DEFINITIONS: Dict[str, Dict[str, Any]] = {}

        feeds_path = self.FEEDS_CONFIG_PATH
        document = self._safe_read_yaml(feeds_path, 5 * 1024 * 1024, 'feeds')
        if not isinstance(document, dict):
            return

        maintenance = document.get('maintenance')
        if isinstance(maintenance, dict):
            if isinstance(maintenance.get('time'), str):
                self.MAINTENANCE_TIME = maintenance['time'].strip()
            if isinstance(maintenance.get('timezone'), str):
                self.MAINTENANCE_TIMEZONE = maintenance['timezone'].strip()
        elif maintenance is not None:
            logger.warning(f"'maintenance' in {feeds_path} must be a mapping; keeping defaults")

        feeds = document.get('feeds')
        if not isinstance(feeds, dict):
            logger.warning(f"No 'feeds' mapping in {feeds_path}")
            return

        for slug, entry in feeds.items():
            if not isinstance(entry, dict) or not isinstance(entry.get('url'), str):
                logger.warning(f"Feed '{slug}' in {feeds_path} has no url; skipped")
                continue
            try:
                interval = max(1, int(entry.get('interval_minutes', self.DEFAULT_FETCH_INTERVAL_MINUTES)))
            except (TypeError, ValueError):
                logger.warning(f"Feed '{slug}' has an invalid interval_minutes; "
                               f"using {self.DEFAULT_FETCH_INTERVAL_MINUTES}")
                interval = self.DEFAULT_FETCH_INTERVAL_MINUTES
            self.FEED_DEFINITIONS[str(slug)] = {
                'slug': str(slug),
                'name': str(entry.get('name') or slug),
                'url': entry['url'].strip(),
                'category': entry.get('category'),
                'interval_minutes': interval,
                'author_fallback': entry.get('author_fallback'),
                'active': bool(entry.get('active', True)),
            }

        logger.info(f"Loaded {len(self.FEED_DEFINITIONS)} feed definitions from {feeds_path}")

    def get_config_summary(self) -> Dict[str, Any]:
        """Non-secret settings worth logging at startup."""
        return {
            "database_path": self.DATABASE_PATH,
            "feed_count": len(self.FEED_DEFINITIONS),
            "fetch_timeout": self.FETCH_TIMEOUT,
            "scheduler_interval_minutes": self.SCHEDULER_INTERVAL_MINUTES,
            "feed_pacing_seconds": self.FEED_PACING_SECONDS,
            "feed_concurrency": self.FEED_CONCURRENCY,
            "max_items_per_feed": self.MAX_ITEMS_PER_FEED,
            "max_consecutive_errors": self.MAX_CONSECUTIVE_ERRORS,
            "feed_backoff_enabled": self.FEED_BACKOFF_ENABLED,
            "image_scrape_enabled": self.IMAGE_SCRAPE_ENABLED,
            "article_retention_days": self.ARTICLE_RETENTION_DAYS,
            "maintenance_time": self.MAINTENANCE_TIME,
            "secrets_file_configured": bool(environ.get("SECRETS_FILE")),
        }


config = Config()
