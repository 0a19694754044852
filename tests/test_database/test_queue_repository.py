"""
Tests for QueueRepository: enqueue, the claim protocol and retry
scheduling.
"""

import asyncio
from datetime import timedelta

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.database.connection import get_session
from comicrawl.database.models import CrawlJob, JobLevel, JobStatus, QueueStatus
from comicrawl.database.queue_repository import QueueRepository
from comicrawl.database.repository import JobRepository
from comicrawl.models.schemas import ChildLink
from comicrawl.utils.clock import utcnow


def links(count: int, start: int = 0) -> list[tuple[int, ChildLink]]:
    return [
        (i, ChildLink(url=f"https://comics.test/truyen-tranh/q/chapter-{i + 1}", name=f"Chapter {i + 1}"))
        for i in range(start, start + count)
    ]


async def running_job(session: AsyncSession) -> CrawlJob:
    job = await JobRepository.create(
        session, level=JobLevel.COMIC, target_url="https://comics.test/truyen-tranh/q"
    )
    await JobRepository.transition(session, job.id, JobStatus.RUNNING)
    return job


class TestEnqueue:
    """Tests for QueueRepository.enqueue()."""

    @pytest.mark.integration
    async def test_enqueue_creates_pending_rows(self, test_session: AsyncSession) -> None:
        """Test entries are created PENDING with the given budget."""
        job = await running_job(test_session)

        entries = await QueueRepository.enqueue(
            test_session, job.id, JobLevel.CHAPTER, links(3), max_retries=4
        )

        assert [e.position for e in entries] == [0, 1, 2]
        assert all(e.status is QueueStatus.PENDING for e in entries)
        assert all(e.max_retries == 4 and e.retry_count == 0 for e in entries)
        assert entries[1].target_name == "Chapter 2"

    @pytest.mark.integration
    async def test_enqueue_skips_existing_positions(self, test_session: AsyncSession) -> None:
        """Test re-enqueueing a position never duplicates it."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(2))

        entries = await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(3))

        assert [e.position for e in entries] == [2]
        assert await QueueRepository.positions_for_job(test_session, job.id) == {0, 1, 2}


class TestClaim:
    """Tests for QueueRepository.claim()."""

    @pytest.mark.integration
    async def test_claim_marks_processing(self, test_session: AsyncSession) -> None:
        """Test claimed rows become PROCESSING with a claim time."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(5))

        claimed = await QueueRepository.claim(test_session, 3)

        assert len(claimed) == 3
        assert all(e.status is QueueStatus.PROCESSING for e in claimed)
        assert all(e.claimed_at is not None for e in claimed)
        counts = await QueueRepository.count_by_status(test_session, job.id)
        assert counts["processing"] == 3
        assert counts["pending"] == 2

    @pytest.mark.integration
    async def test_claim_priority_then_age(self, test_session: AsyncSession) -> None:
        """Test higher priority rows are claimed first."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(2))
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(1, start=5), priority=10)

        claimed = await QueueRepository.claim(test_session, 2)

        assert [e.position for e in claimed] == [5, 0]

    @pytest.mark.integration
    async def test_claim_only_for_running_jobs(self, test_session: AsyncSession) -> None:
        """Test entries of paused or pending jobs are not claimable."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(2))
        await JobRepository.transition(test_session, job.id, JobStatus.PAUSED)

        assert await QueueRepository.claim(test_session, 10) == []
        assert not await QueueRepository.has_ready(test_session)

    @pytest.mark.integration
    async def test_delayed_entry_waits_for_retry_time(self, test_session: AsyncSession) -> None:
        """Test a DELAYED row is claimable only once next_retry_at has passed."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(1))
        [entry] = await QueueRepository.claim(test_session, 1)

        due = await QueueRepository.schedule_retry(test_session, entry.id, 60, "HTTP 503")

        assert await QueueRepository.claim(test_session, 1) == []
        later = await QueueRepository.claim(test_session, 1, now=due + timedelta(seconds=1))
        assert [e.id for e in later] == [entry.id]
        assert later[0].retry_count == 1

    @pytest.mark.integration
    async def test_concurrent_claims_are_exclusive(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Test four workers claiming at once never share a row and lose none."""
        async with get_session(session_factory) as session:
            job = await running_job(session)
            await QueueRepository.enqueue(session, job.id, JobLevel.CHAPTER, links(20))

        async def worker() -> list[int]:
            async with get_session(session_factory) as session:
                return [entry.id for entry in await QueueRepository.claim(session, 10)]

        batches = await asyncio.gather(*(worker() for _ in range(4)))

        claimed = [entry_id for batch in batches for entry_id in batch]
        assert len(claimed) == len(set(claimed))
        assert len(claimed) == 20
        async with get_session(session_factory) as session:
            counts = await QueueRepository.count_by_status(session, job.id)
        assert counts["processing"] == 20


class TestOutcomes:
    """Tests for finishing, parking and re-queueing entries."""

    @pytest.mark.integration
    async def test_finish_only_from_processing(self, test_session: AsyncSession) -> None:
        """Test an unclaimed row cannot be marked completed."""
        job = await running_job(test_session)
        [entry] = await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(1))

        assert not await QueueRepository.mark_completed(test_session, entry.id)
        await QueueRepository.claim(test_session, 1)
        assert await QueueRepository.mark_completed(test_session, entry.id)

    @pytest.mark.integration
    async def test_park_and_requeue(self, test_session: AsyncSession) -> None:
        """Test a parked row stays put until its position is requeued."""
        job = await running_job(test_session)
        [entry] = await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(1))
        await QueueRepository.claim(test_session, 1)

        assert await QueueRepository.park(test_session, entry.id, "Job paused")
        assert await QueueRepository.claim(test_session, 1, now=utcnow() + timedelta(days=1)) == []

        assert await QueueRepository.requeue_position(test_session, job.id, 0)
        assert len(await QueueRepository.claim(test_session, 1)) == 1

    @pytest.mark.integration
    async def test_reset_positions_restores_budget(self, test_session: AsyncSession) -> None:
        """Test a failed row comes back PENDING with zero retries spent."""
        job = await running_job(test_session)
        [entry] = await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(1))
        await QueueRepository.claim(test_session, 1)
        await QueueRepository.schedule_retry(test_session, entry.id, 0, "HTTP 503")
        await QueueRepository.claim(test_session, 1, now=utcnow() + timedelta(seconds=1))
        await QueueRepository.mark_failed(test_session, entry.id, "HTTP 503")

        assert await QueueRepository.reset_positions(test_session, job.id, [0]) == 1

        [reset] = await QueueRepository.list_for_job(test_session, job.id)
        await test_session.refresh(reset)
        assert reset.status is QueueStatus.PENDING
        assert reset.retry_count == 0
        assert reset.error_message is None

    @pytest.mark.integration
    async def test_skip_open_leaves_finished_rows(self, test_session: AsyncSession) -> None:
        """Test skipping a job's open rows keeps the completed ones."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(3))
        [first] = await QueueRepository.claim(test_session, 1)
        await QueueRepository.mark_completed(test_session, first.id)

        skipped = await QueueRepository.skip_open_for_jobs(test_session, [job.id], "Job cancelled")

        assert skipped == 2
        counts = await QueueRepository.count_by_status(test_session, job.id)
        assert counts["completed"] == 1
        assert counts["skipped"] == 2

    @pytest.mark.integration
    async def test_requeue_stale(self, test_session: AsyncSession) -> None:
        """Test rows claimed long ago go back to PENDING."""
        job = await running_job(test_session)
        await QueueRepository.enqueue(test_session, job.id, JobLevel.CHAPTER, links(1))
        await QueueRepository.claim(test_session, 1, now=utcnow() - timedelta(hours=2))

        assert await QueueRepository.requeue_stale(test_session, timedelta(hours=1)) == 1
        counts = await QueueRepository.count_by_status(test_session, job.id)
        assert counts["pending"] == 1
