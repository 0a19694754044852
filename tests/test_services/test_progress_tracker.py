"""
Tests for ProgressTracker: counter mirroring and the message history.
"""

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.database.connection import get_session
from comicrawl.database.models import JobLevel, JobStatus
from comicrawl.database.repository import JobRepository
from comicrawl.services.progress_tracker import (
    MAX_MESSAGES,
    ProgressTracker,
    estimate_remaining_seconds,
    percent_of,
)

COMIC_URL = "https://comics.test/truyen-tranh/slow-burn"


class TestHelpers:
    """Tests for percent and ETA arithmetic."""

    @pytest.mark.unit
    def test_percent_is_capped(self) -> None:
        """Test percent stays within 0..100 and handles an unknown total."""
        assert percent_of(1, 3) == 33.33
        assert percent_of(5, 3) == 100.0
        assert percent_of(1, 0) == 0.0

    @pytest.mark.unit
    def test_estimate_needs_a_finished_item(self) -> None:
        """Test no ETA is given before the first item finishes."""
        assert estimate_remaining_seconds(10.0, 0, 5) is None
        assert estimate_remaining_seconds(10.0, 2, 6) == 20.0


class TestMessages:
    """Tests for the capped message history."""

    @pytest.mark.integration
    async def test_sync_and_finalize(self, test_session: AsyncSession) -> None:
        """Test counters are mirrored and finalize closes at 100 percent."""
        job = await JobRepository.create(test_session, level=JobLevel.COMIC, target_url=COMIC_URL)
        await JobRepository.transition(test_session, job.id, JobStatus.RUNNING)
        await JobRepository.set_total(test_session, job.id, 4)
        await JobRepository.increment_counters(test_session, job.id, completed=1, failed=1)

        progress = await ProgressTracker.sync(test_session, job.id)
        assert (progress.completed_items, progress.failed_items, progress.percent) == (1, 1, 50.0)

        await ProgressTracker.finalize(test_session, job.id, "Crawl completed")
        progress = await ProgressTracker.get(test_session, job.id)
        assert progress.percent == 100.0
        assert progress.message == "Crawl completed"
        assert progress.messages[-1] == "Crawl completed"

    @pytest.mark.integration
    async def test_history_is_capped(self, test_session: AsyncSession) -> None:
        """Test only the newest messages are kept."""
        job = await JobRepository.create(test_session, level=JobLevel.COMIC, target_url=COMIC_URL)

        for n in range(MAX_MESSAGES + 5):
            await ProgressTracker.add_message(test_session, job.id, f"step {n}")

        progress = await ProgressTracker.get(test_session, job.id)
        assert len(progress.messages) == MAX_MESSAGES
        assert progress.messages[0] == "step 5"
        assert progress.message == f"step {MAX_MESSAGES + 4}"

    @pytest.mark.integration
    async def test_concurrent_messages_all_kept(
        self,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        """Test writers appending at once from separate sessions lose no entry."""
        async with get_session(session_factory) as session:
            job = await JobRepository.create(session, level=JobLevel.COMIC, target_url=COMIC_URL)

        async def writer(n: int) -> None:
            async with get_session(session_factory) as session:
                await ProgressTracker.add_message(session, job.id, f"child {n} done")

        await asyncio.gather(*(writer(n) for n in range(8)))

        async with get_session(session_factory) as session:
            progress = await ProgressTracker.get(session, job.id)
        assert sorted(progress.messages) == sorted(f"child {n} done" for n in range(8))
