"""
Tests for the cooperative pause/cancel signal.
"""

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.core.signals import PauseSignal
from comicrawl.database.connection import get_session
from comicrawl.database.models import JobLevel, JobStatus
from comicrawl.database.repository import JobRepository
from comicrawl.utils.exceptions import CrawlInterrupted


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


async def make_job(factory, status: JobStatus = JobStatus.RUNNING) -> int:
    async with get_session(factory) as session:
        job = await JobRepository.create(
            session, level=JobLevel.COMIC, target_url="https://comics.test/truyen-tranh/signal"
        )
        if status is not JobStatus.PENDING:
            await JobRepository.transition(session, job.id, JobStatus.RUNNING)
        if status not in (JobStatus.PENDING, JobStatus.RUNNING):
            await JobRepository.transition(session, job.id, status)
        return job.id


async def set_status(factory, job_id: int, status: JobStatus) -> None:
    async with get_session(factory) as session:
        assert await JobRepository.transition(session, job_id, status)


class TestPauseSignal:
    """Tests for PauseSignal.check()."""

    @pytest.mark.integration
    async def test_running_job_passes(self, memory_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test a RUNNING job is let through."""
        signal = PauseSignal(memory_factory)
        job_id = await make_job(memory_factory)

        await signal.check(job_id, 3)

    @pytest.mark.integration
    async def test_paused_in_store(self, memory_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test a PAUSED status raises a pause carrying the last index."""
        signal = PauseSignal(memory_factory)
        job_id = await make_job(memory_factory, JobStatus.PAUSED)

        with pytest.raises(CrawlInterrupted) as exc_info:
            await signal.check(job_id, 7)

        assert exc_info.value.last_index == 7
        assert not exc_info.value.cancelled
        assert signal.is_paused(job_id)

    @pytest.mark.integration
    async def test_cancelled_in_store(self, memory_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test a CANCELLED status raises a cancel."""
        signal = PauseSignal(memory_factory)
        job_id = await make_job(memory_factory, JobStatus.CANCELLED)

        with pytest.raises(CrawlInterrupted) as exc_info:
            await signal.check(job_id, -1)

        assert exc_info.value.cancelled
        assert signal.is_cancelled(job_id)

    @pytest.mark.integration
    async def test_missing_job_counts_as_cancelled(self, memory_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test a job that no longer exists stops like a cancel."""
        signal = PauseSignal(memory_factory)

        with pytest.raises(CrawlInterrupted) as exc_info:
            await signal.check(98765, 0)

        assert exc_info.value.cancelled

    @pytest.mark.integration
    async def test_cached_mark_wins_without_store_read(
        self,
        memory_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Test a local mark stops the job even though the store still says RUNNING."""
        signal = PauseSignal(memory_factory)
        job_id = await make_job(memory_factory)

        signal.mark_paused(job_id)
        with pytest.raises(CrawlInterrupted):
            await signal.check(job_id, 1)

        signal.invalidate(job_id)
        await signal.check(job_id, 1)

    @pytest.mark.integration
    async def test_stale_mark_revalidated(self, memory_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test a cached pause older than the TTL is re-read from the store."""
        clock = FakeClock()
        signal = PauseSignal(memory_factory, ttl_seconds=300, clock=clock)
        job_id = await make_job(memory_factory, JobStatus.PAUSED)

        with pytest.raises(CrawlInterrupted):
            await signal.check(job_id, 0)

        # resumed by another process: the store moves on, this cache does not
        await set_status(memory_factory, job_id, JobStatus.RUNNING)
        clock.now += 299
        with pytest.raises(CrawlInterrupted):
            await signal.check(job_id, 0)

        clock.now += 2
        await signal.check(job_id, 0)
        assert not signal.is_paused(job_id)

    @pytest.mark.unit
    async def test_cancel_replaces_pause(self, memory_factory: async_sessionmaker[AsyncSession]) -> None:
        """Test marking cancelled drops a pending pause mark."""
        signal = PauseSignal(memory_factory)

        signal.mark_paused(1)
        signal.mark_cancelled(1)

        assert signal.is_cancelled(1)
        assert not signal.is_paused(1)
