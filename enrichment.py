#!/usr/bin/env python3
"""
Enrichment job queue.

Ingestion only decides when a new article needs enrichment (summary,
sentiment, keywords) and what payload to send. The LLM work happens in an
external worker, which uses claim/complete/fail on the consumer side.

Lower priority numbers are served first. A failed job is retried with
exponential delay until it runs out of attempts.
"""

from typing import Any, Dict, List, Optional

from config import config, get_logger
from models import DatabaseQueue
from records import EnrichmentJob, StoredArticle
from utils import truncate_string

logger = get_logger("enrichment")


def build_job(article: StoredArticle, source_name: str, max_content_chars: Optional[int] = None) -> EnrichmentJob:
    """Build the worker payload for a freshly inserted article."""
    limit = max_content_chars or config.ENRICHMENT_MAX_CONTENT_CHARS
    return EnrichmentJob(
        article_id=article.id,
        title=article.title,
        content=truncate_string(article.content or article.summary, limit),
        source_name=source_name,
    )


class EnrichmentQueue:
    def __init__(self, db: DatabaseQueue, max_attempts: Optional[int] = None,
                 retry_base_seconds: Optional[float] = None) -> None:
        self.db = db
        self.max_attempts = max_attempts or config.ENRICHMENT_MAX_ATTEMPTS
        self.retry_base_seconds = retry_base_seconds or config.ENRICHMENT_RETRY_BASE_SECONDS

    async def enqueue(self, job: EnrichmentJob, priority: Optional[int] = None, now: Optional[int] = None) -> int:
        """Enqueue a job and return its id."""
        job_priority = config.ENRICHMENT_PRIORITY if priority is None else priority
        job_id = await self.db.execute(
            'enqueue_enrichment_job',
            article_id=job.article_id,
            payload=job.to_payload(),
            priority=job_priority,
            max_attempts=self.max_attempts,
            now=now,
        )
        logger.debug(f"Enqueued enrichment job {job_id} for article {job.article_id} (priority {job_priority})")
        return job_id

    async def claim(self, limit: int = 10) -> List[Dict[str, Any]]:
        return await self.db.execute('claim_enrichment_jobs', limit=limit)

    async def complete(self, job_id: int) -> bool:
        return await self.db.execute('complete_enrichment_job', job_id=job_id)

    async def fail(self, job_id: int, error: str) -> Optional[str]:
        """Record a failed attempt; returns the job's new status ('pending' or 'failed')."""
        status = await self.db.execute(
            'fail_enrichment_job', job_id=job_id, error=error, retry_base_seconds=self.retry_base_seconds,
        )
        if status == 'failed':
            logger.warning(f"Enrichment job {job_id} failed permanently: {error}")
        return status

    async def counts(self) -> Dict[str, int]:
        return await self.db.execute('count_enrichment_jobs')
