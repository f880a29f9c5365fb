#!/usr/bin/env python3
"""
Database models and operations for the ingestion pipeline.

All SQLite access goes through DatabaseQueue, a single worker coroutine that
executes named operations one at a time. Every operation is therefore atomic
with respect to the others, which is what the feed health transitions and the
dedup insert rely on.
"""

from os import path, access, R_OK
from time import time
import json
from sqlite3 import connect, Row, Error, IntegrityError
from asyncio import Queue, create_task, wait_for, TimeoutError, CancelledError, Event
from uuid import uuid4
from typing import Dict, List, Optional, Any

from config import config, get_logger
from errors import IngestionError, PersistenceError
from records import CanonicalArticle, Feed, FeedHealth, FeedStatus, InsertResult, StoredArticle
from telemetry import trace_span
from utils import exponential_delay

logger = get_logger("models")

SECONDS_PER_DAY = 24 * 60 * 60


def initialize_database(conn) -> None:
    """Create tables and indexes from schema.sql (idempotent)."""
    cursor = conn.cursor()
    try:
        cursor.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='feeds'")
        if cursor.fetchone() is None:
            logger.info("Database is new or empty. Initializing schema.")
        cursor.executescript(_read_schema_file())
        conn.commit()
    except Error as e:
        logger.error(f"Error initializing database: {e}")
        raise
    finally:
        cursor.close()


def _read_schema_file() -> str:
    """Read the schema from the SQL file."""
    schema_path = config.SCHEMA_FILE_PATH

    if not path.isfile(schema_path):
        raise FileNotFoundError(f"Schema file not found at {schema_path}")
    if not access(schema_path, R_OK):
        raise PermissionError(f"No read permission for schema file at {schema_path}")

    file_size = path.getsize(schema_path)
    max_size = config.SCHEMA_FILE_SIZE_LIMIT_MB * 1024 * 1024
    if file_size > max_size:
        raise ValueError(f"Schema file too large: {file_size} bytes (limit: {max_size} bytes)")

    with open(schema_path, 'r', encoding='utf-8') as f:
        return f.read()


def _now(now: Optional[int]) -> int:
    return int(time()) if now is None else int(now)


class DatabaseQueue:
    """A queue for database operations to ensure serialized, atomic access."""

    def __init__(self, db_path: str):
        self.db_path = db_path
        self.queue = Queue()
        self.results: Dict[str, Dict] = {}
        self.events: Dict[str, Event] = {}
        self.conn = None
        self.running = False
        self.worker_task = None
        self._ready = Event()

    async def start(self) -> None:
        """Start the database worker and wait for the schema to be ready."""
        if self.running:
            return

        self.running = True
        self.worker_task = create_task(self._worker())
        await self._ready.wait()
        if self.conn is None:
            # the worker failed during connect/initialize
            self.running = False
            await self.worker_task
        logger.debug(f"Database worker started on {self.db_path}")

    async def stop(self) -> None:
        """Stop the database worker."""
        if not self.running:
            return

        self.running = False
        if self.worker_task:
            self.worker_task.cancel()
            try:
                await self.worker_task
            except CancelledError:
                pass

        if self.conn:
            self.conn.close()
            self.conn = None

        # Release any waiters so no caller hangs on shutdown
        for operation_id, event in self.events.items():
            self.results.setdefault(operation_id, {"error": PersistenceError("Database worker stopped")})
            event.set()
        self.events.clear()

        logger.debug("Database worker stopped")

    async def _worker(self) -> None:
        """Worker coroutine processing database operations."""
        if not path.isfile(self.db_path):
            logger.info(f"Database file {self.db_path} does not exist. A new database will be created.")

        try:
            self.conn = connect(self.db_path)
            self.conn.row_factory = Row
            initialize_database(self.conn)
        except (Error, OSError, ValueError):
            if self.conn:
                self.conn.close()
            self.conn = None
            raise
        finally:
            self._ready.set()

        while self.running:
            try:
                operation_id, operation_name, params = await wait_for(self.queue.get(), timeout=1.0)
            except TimeoutError:
                continue
            except CancelledError:
                logger.debug("Database worker cancelled")
                break

            try:
                method = getattr(self, operation_name, None)
                if operation_name.startswith('_') or not callable(method):
                    raise PersistenceError(f"Unknown operation: {operation_name}", operation=operation_name)
                self.results[operation_id] = {"result": method(**params)}
            except IngestionError as e:
                self.results[operation_id] = {"error": e}
            except Error as e:
                logger.error(f"Database operation error in {operation_name}: {e}")
                self.conn.rollback()
                self.results[operation_id] = {"error": PersistenceError(str(e), operation=operation_name)}
            except Exception as e:
                logger.error(f"Unexpected error in database operation {operation_name}: {e}")
                self.results[operation_id] = {"error": e}
            finally:
                event = self.events.get(operation_id)
                if event:
                    event.set()
                self.queue.task_done()

    @trace_span(
        "db.execute",
        tracer_name="db",
        static_attrs={"db.system": "sqlite"},
        attr_from_args=lambda self, operation_name, **params: {
            "db.operation": operation_name,
            "db.params.keys": ",".join(sorted(params.keys())) if params else "",
        },
    )
    async def execute(self, operation_name: str, **params) -> Any:
        """Execute a named database operation and return its result.

        Exceptions raised by the operation are re-raised with their original
        type; raw sqlite3 errors arrive as PersistenceError.
        """
        if not self.running:
            raise PersistenceError("Database worker is not running", operation=operation_name)

        operation_id = str(uuid4())
        event = Event()
        self.events[operation_id] = event

        try:
            await self.queue.put((operation_id, operation_name, params))
            await event.wait()
            result = self.results.pop(operation_id)
            if "error" in result:
                raise result["error"]
            return result["result"]
        finally:
            self.events.pop(operation_id, None)
            self.results.pop(operation_id, None)

    # ------------------------------------------------------------------
    # Feed management
    # ------------------------------------------------------------------
    def upsert_feed(self, slug: str, name: str, url: str, category: Optional[str] = None,
                    interval_minutes: int = 15, author_fallback: Optional[str] = None,
                    active: bool = True, now: Optional[int] = None) -> int:
        """Create a feed or update its descriptive fields. Health state is left untouched."""
        ts = _now(now)
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                INSERT INTO feeds (slug, name, url, category, author_fallback, active,
                                   fetch_interval_minutes, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(slug) DO UPDATE SET
                    name = excluded.name,
                    url = excluded.url,
                    category = excluded.category,
                    author_fallback = excluded.author_fallback,
                    fetch_interval_minutes = excluded.fetch_interval_minutes,
                    updated_at = excluded.updated_at
            """, (slug, name, url, category, author_fallback, 1 if active else 0, interval_minutes, ts, ts))
            cursor.execute("SELECT id FROM feeds WHERE slug = ?", (slug,))
            feed_id = cursor.fetchone()['id']
            self.conn.commit()
            return feed_id
        finally:
            cursor.close()

    def get_feed(self, feed_id: int) -> Optional[Feed]:
        row = self.conn.execute("SELECT * FROM feeds WHERE id = ?", (feed_id,)).fetchone()
        return Feed.from_row(dict(row)) if row else None

    def get_feed_by_slug(self, slug: str) -> Optional[Feed]:
        row = self.conn.execute("SELECT * FROM feeds WHERE slug = ?", (slug,)).fetchone()
        return Feed.from_row(dict(row)) if row else None

    def get_active_feeds(self) -> List[Feed]:
        """Feeds eligible for scheduling: active flag set and not disabled."""
        rows = self.conn.execute(
            "SELECT * FROM feeds WHERE active = 1 AND status != 'disabled' ORDER BY id"
        ).fetchall()
        return [Feed.from_row(dict(row)) for row in rows]

    def list_feeds(self) -> List[Feed]:
        rows = self.conn.execute("SELECT * FROM feeds ORDER BY slug").fetchall()
        return [Feed.from_row(dict(row)) for row in rows]

    def _feed_health(self, feed_id: int, changed: bool) -> Optional[FeedHealth]:
        row = self.conn.execute(
            "SELECT id, status, error_count, active FROM feeds WHERE id = ?", (feed_id,)
        ).fetchone()
        if row is None:
            return None
        return FeedHealth(
            feed_id=row['id'],
            status=FeedStatus(row['status']),
            error_count=row['error_count'],
            active=bool(row['active']),
            changed=changed,
        )

    def record_feed_success(self, feed_id: int, now: Optional[int] = None) -> Optional[FeedHealth]:
        """Reset the error count after a successful fetch. Disabled feeds are left alone."""
        ts = _now(now)
        cursor = self.conn.execute("""
            UPDATE feeds
            SET error_count = 0, status = 'active', last_error = NULL,
                last_fetch_at = ?, last_success_at = ?, updated_at = ?
            WHERE id = ? AND status != 'disabled'
        """, (ts, ts, ts, feed_id))
        changed = cursor.rowcount > 0
        self.conn.commit()
        return self._feed_health(feed_id, changed)

    def record_feed_failure(self, feed_id: int, error: str, max_errors: int,
                            now: Optional[int] = None) -> Optional[FeedHealth]:
        """Increment the error count in one conditional UPDATE, disabling at the threshold.

        SQLite evaluates every SET expression against the pre-update row, so the
        increment and the status decision see the same error_count.
        """
        ts = _now(now)
        cursor = self.conn.execute("""
            UPDATE feeds
            SET error_count = error_count + 1,
                status = CASE WHEN error_count + 1 >= ? THEN 'disabled' ELSE 'error' END,
                active = CASE WHEN error_count + 1 >= ? THEN 0 ELSE active END,
                last_error = ?, last_fetch_at = ?, updated_at = ?
            WHERE id = ? AND status != 'disabled'
        """, (max_errors, max_errors, (error or '')[:1000], ts, ts, feed_id))
        changed = cursor.rowcount > 0
        self.conn.commit()
        return self._feed_health(feed_id, changed)

    def reactivate_feed(self, slug: str, now: Optional[int] = None) -> bool:
        """Administrative re-enable of a disabled feed."""
        ts = _now(now)
        cursor = self.conn.execute("""
            UPDATE feeds
            SET active = 1, status = 'active', error_count = 0, last_error = NULL, updated_at = ?
            WHERE slug = ?
        """, (ts, slug))
        self.conn.commit()
        return cursor.rowcount > 0

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------
    def exists_by_hash(self, identity_hash: str) -> bool:
        row = self.conn.execute(
            "SELECT 1 FROM articles WHERE identity_hash = ? LIMIT 1", (identity_hash,)
        ).fetchone()
        return row is not None

    def get_article_by_hash(self, identity_hash: str) -> Optional[StoredArticle]:
        row = self.conn.execute(
            "SELECT * FROM articles WHERE identity_hash = ?", (identity_hash,)
        ).fetchone()
        return StoredArticle.from_row(dict(row)) if row else None

    def get_article(self, article_id: int) -> Optional[StoredArticle]:
        row = self.conn.execute("SELECT * FROM articles WHERE id = ?", (article_id,)).fetchone()
        return StoredArticle.from_row(dict(row)) if row else None

    def insert_article(self, article: CanonicalArticle) -> InsertResult:
        """Insert an article; a uniqueness conflict on identity_hash returns the existing row."""
        row = article.to_row()
        columns = ", ".join(row)
        placeholders = ", ".join("?" for _ in row)
        try:
            cursor = self.conn.execute(
                f"INSERT INTO articles ({columns}) VALUES ({placeholders})",
                tuple(row.values()),
            )
            article_id = cursor.lastrowid
            self.conn.commit()
        except IntegrityError as e:
            self.conn.rollback()
            existing = self.get_article_by_hash(article.identity_hash)
            if existing is None:
                # a different constraint failed (NOT NULL, CHECK...)
                raise PersistenceError(f"Integrity error inserting article: {e}", operation="insert_article") from e
            return InsertResult(inserted=False, stored_article=existing)

        return InsertResult(inserted=True, stored_article=self.get_article(article_id))

    def count_articles(self) -> int:
        return self.conn.execute("SELECT COUNT(*) FROM articles").fetchone()[0]

    def expire_old_articles(self, retention_days: int, now: Optional[int] = None) -> int:
        """Delete articles ingested more than ``retention_days`` ago, with their jobs.

        Ingestion time is used rather than publication time so that an old
        article is never deleted and re-ingested on the next cycle.
        """
        if retention_days <= 0:
            logger.warning("Invalid retention_days value, skipping expiration")
            return 0

        cutoff = _now(now) - retention_days * SECONDS_PER_DAY
        cursor = self.conn.cursor()
        try:
            cursor.execute("""
                DELETE FROM enrichment_jobs
                WHERE article_id IN (SELECT id FROM articles WHERE ingested_at < ?)
            """, (cutoff,))
            jobs_deleted = cursor.rowcount
            cursor.execute("DELETE FROM articles WHERE ingested_at < ?", (cutoff,))
            articles_deleted = cursor.rowcount
            self.conn.commit()
        finally:
            cursor.close()

        if articles_deleted:
            logger.info(f"Database maintenance: deleted {articles_deleted} articles and {jobs_deleted} jobs "
                        f"older than {retention_days} days")
        return articles_deleted

    # ------------------------------------------------------------------
    # Enrichment jobs
    # ------------------------------------------------------------------
    def enqueue_enrichment_job(self, article_id: int, payload: Dict[str, Any], priority: int,
                               max_attempts: int, now: Optional[int] = None) -> int:
        ts = _now(now)
        cursor = self.conn.execute("""
            INSERT INTO enrichment_jobs (article_id, payload, priority, status, attempts,
                                         max_attempts, available_at, created_at, updated_at)
            VALUES (?, ?, ?, 'pending', 0, ?, ?, ?, ?)
        """, (article_id, json.dumps(payload, ensure_ascii=False), priority, max_attempts, ts, ts, ts))
        self.conn.commit()
        return cursor.lastrowid

    def claim_enrichment_jobs(self, limit: int = 10, now: Optional[int] = None) -> List[Dict[str, Any]]:
        """Mark up to ``limit`` due jobs as running, lowest priority number first."""
        ts = _now(now)
        rows = self.conn.execute("""
            SELECT * FROM enrichment_jobs
            WHERE status = 'pending' AND available_at <= ?
            ORDER BY priority ASC, id ASC
            LIMIT ?
        """, (ts, limit)).fetchall()
        if not rows:
            return []
        ids = [row['id'] for row in rows]
        self.conn.executemany("""
            UPDATE enrichment_jobs SET status = 'running', attempts = attempts + 1, updated_at = ?
            WHERE id = ?
        """, [(ts, job_id) for job_id in ids])
        self.conn.commit()

        claimed = []
        for row in rows:
            job = dict(row)
            job['payload'] = json.loads(job['payload'])
            job['status'] = 'running'
            job['attempts'] += 1
            claimed.append(job)
        return claimed

    def complete_enrichment_job(self, job_id: int, now: Optional[int] = None) -> bool:
        cursor = self.conn.execute("""
            UPDATE enrichment_jobs SET status = 'done', last_error = NULL, updated_at = ?
            WHERE id = ? AND status = 'running'
        """, (_now(now), job_id))
        self.conn.commit()
        return cursor.rowcount > 0

    def fail_enrichment_job(self, job_id: int, error: str, retry_base_seconds: float,
                            now: Optional[int] = None) -> Optional[str]:
        """Reschedule a running job with exponential delay, or mark it failed when out of attempts."""
        ts = _now(now)
        row = self.conn.execute(
            "SELECT attempts, max_attempts FROM enrichment_jobs WHERE id = ? AND status = 'running'",
            (job_id,),
        ).fetchone()
        if row is None:
            return None
        if row['attempts'] >= row['max_attempts']:
            status, available_at = 'failed', ts
        else:
            status = 'pending'
            available_at = ts + int(exponential_delay(retry_base_seconds, row['attempts']))
        self.conn.execute("""
            UPDATE enrichment_jobs SET status = ?, available_at = ?, last_error = ?, updated_at = ?
            WHERE id = ?
        """, (status, available_at, (error or '')[:1000], ts, job_id))
        self.conn.commit()
        return status

    def count_enrichment_jobs(self) -> Dict[str, int]:
        counts = {status: 0 for status in ('pending', 'running', 'done', 'failed')}
        for row in self.conn.execute("SELECT status, COUNT(*) AS n FROM enrichment_jobs GROUP BY status"):
            counts[row['status']] = row['n']
        return counts

    def purge_finished_jobs(self, older_than_days: int, now: Optional[int] = None) -> int:
        cutoff = _now(now) - older_than_days * SECONDS_PER_DAY
        cursor = self.conn.execute(
            "DELETE FROM enrichment_jobs WHERE status = 'done' AND updated_at < ?", (cutoff,)
        )
        self.conn.commit()
        return cursor.rowcount
