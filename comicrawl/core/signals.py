"""
Cooperative pause/cancel signal.

A process-wide cache of paused and cancelled job ids consulted by the
handlers between items. The database is the source of truth: a miss
re-reads the job status, and cached hits older than the TTL are
re-validated so a job resumed by another process is not stuck here.
"""

import time
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.database.connection import get_session
from comicrawl.database.models import JobStatus
from comicrawl.database.repository import JobRepository
from comicrawl.utils.exceptions import CrawlInterrupted
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


class PauseSignal:
    """Keyed store of pause/cancel intents with explicit invalidation."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        ttl_seconds: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._session_factory = session_factory
        self._ttl = ttl_seconds
        self._clock = clock
        self._paused: dict[int, float] = {}
        self._cancelled: dict[int, float] = {}

    def mark_paused(self, job_id: int) -> None:
        self._cancelled.pop(job_id, None)
        self._paused[job_id] = self._clock()

    def mark_cancelled(self, job_id: int) -> None:
        self._paused.pop(job_id, None)
        self._cancelled[job_id] = self._clock()

    def invalidate(self, job_id: int) -> None:
        """Forget anything cached for ``job_id``; the next check reads the store."""
        self._paused.pop(job_id, None)
        self._cancelled.pop(job_id, None)

    def is_paused(self, job_id: int) -> bool:
        return self._fresh(self._paused, job_id)

    def is_cancelled(self, job_id: int) -> bool:
        return self._fresh(self._cancelled, job_id)

    def _fresh(self, cache: dict[int, float], job_id: int) -> bool:
        cached_at = cache.get(job_id)
        if cached_at is None:
            return False
        if self._clock() - cached_at > self._ttl:
            del cache[job_id]
            return False
        return True

    async def check(self, job_id: int, last_index: int) -> None:
        """
        Raise CrawlInterrupted if ``job_id`` should stop.

        Args:
            job_id: Job being executed
            last_index: Last successfully completed item index (-1 if none)

        Raises:
            CrawlInterrupted: Carrying ``last_index``; ``cancelled`` tells
                cancel from pause
        """
        if self.is_cancelled(job_id):
            raise CrawlInterrupted(job_id, last_index, cancelled=True)
        if self.is_paused(job_id):
            raise CrawlInterrupted(job_id, last_index)

        async with get_session(self._session_factory) as session:
            status = await JobRepository.get_status(session, job_id)

        if status is JobStatus.CANCELLED or status is None:
            self.mark_cancelled(job_id)
            logger.info("Cancel observed", job_id=job_id, last_index=last_index)
            raise CrawlInterrupted(job_id, last_index, cancelled=True)
        if status is JobStatus.PAUSED:
            self.mark_paused(job_id)
            logger.info("Pause observed", job_id=job_id, last_index=last_index)
            raise CrawlInterrupted(job_id, last_index)
