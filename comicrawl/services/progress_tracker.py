"""
Progress tracker: live, display-oriented mirror of a job's counters.

The job row stays authoritative; ``sync`` copies its counters here and
derives percent and the remaining-time estimate. Messages are kept in a
capped history, appended under the row's write lock.
"""

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.database.models import CrawlJob, CrawlProgress
from comicrawl.utils.clock import ensure_utc, utcnow
from comicrawl.utils.exceptions import DatabaseError

MAX_MESSAGES = 100


def estimate_remaining_seconds(
    elapsed_seconds: float,
    finished: int,
    total: int,
) -> float | None:
    """Average seconds per finished item times the items left; None before the first one."""
    if finished <= 0 or total <= 0:
        return None
    remaining = max(total - finished, 0)
    return round(elapsed_seconds / finished * remaining, 2)


def percent_of(processed: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(min(processed * 100.0 / total, 100.0), 2)


class ProgressTracker:
    """Static async operations on CrawlProgress rows."""

    @staticmethod
    async def get(session: AsyncSession, job_id: int) -> CrawlProgress:
        """
        Raises:
            DatabaseError: If the job has no progress row
        """
        result = await session.execute(
            select(CrawlProgress)
            .where(CrawlProgress.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        progress = result.scalar_one_or_none()
        if progress is None:
            raise DatabaseError(
                f"Progress missing for job {job_id}",
                operation="select",
                table="crawl_progress",
                details={"job_id": job_id},
            )
        return progress

    @staticmethod
    async def lock(session: AsyncSession, job_id: int) -> CrawlProgress:
        """Load the progress row for a read-modify-write, holding its write lock."""
        await session.execute(
            update(CrawlProgress)
            .where(CrawlProgress.job_id == job_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return await ProgressTracker.get(session, job_id)

    @staticmethod
    async def start(session: AsyncSession, job_id: int, message: str = "Crawl started") -> None:
        progress = await ProgressTracker.lock(session, job_id)
        if progress.started_at is None:
            progress.started_at = utcnow()
        ProgressTracker._append(progress, message)
        await session.flush()

    @staticmethod
    async def set_current(
        session: AsyncSession,
        job_id: int,
        index: int,
        *,
        name: str | None = None,
        url: str | None = None,
    ) -> None:
        await session.execute(
            update(CrawlProgress)
            .where(CrawlProgress.job_id == job_id)
            .values(current_index=index, current_item_name=name, current_item_url=url)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def add_bytes(session: AsyncSession, job_id: int, size: int) -> None:
        await session.execute(
            update(CrawlProgress)
            .where(CrawlProgress.job_id == job_id)
            .values(bytes_downloaded=CrawlProgress.bytes_downloaded + size)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def sync(session: AsyncSession, job_id: int) -> CrawlProgress:
        """Copy the job's counters and recompute percent and ETA."""
        result = await session.execute(
            select(
                CrawlJob.total_items,
                CrawlJob.completed_items,
                CrawlJob.failed_items,
                CrawlJob.skipped_items,
            ).where(CrawlJob.id == job_id)
        )
        row = result.one()
        progress = await ProgressTracker.get(session, job_id)

        progress.total_items = row.total_items
        progress.completed_items = row.completed_items
        progress.failed_items = row.failed_items
        progress.skipped_items = row.skipped_items

        processed = row.completed_items + row.failed_items + row.skipped_items
        progress.percent = percent_of(processed, row.total_items)

        started_at = ensure_utc(progress.started_at)
        if started_at is not None:
            elapsed = (utcnow() - started_at).total_seconds()
            progress.estimated_remaining_seconds = estimate_remaining_seconds(
                elapsed, processed, row.total_items
            )
        await session.flush()
        return progress

    @staticmethod
    async def add_message(session: AsyncSession, job_id: int, message: str) -> None:
        progress = await ProgressTracker.lock(session, job_id)
        ProgressTracker._append(progress, message)
        await session.flush()

    @staticmethod
    async def record_error(session: AsyncSession, job_id: int, error: str) -> None:
        await ProgressTracker.add_message(session, job_id, f"Error: {error}")

    @staticmethod
    async def finalize(session: AsyncSession, job_id: int, message: str) -> None:
        await ProgressTracker.lock(session, job_id)
        progress = await ProgressTracker.sync(session, job_id)
        progress.percent = 100.0
        progress.estimated_remaining_seconds = 0.0
        ProgressTracker._append(progress, message)
        await session.flush()

    @staticmethod
    def _append(progress: CrawlProgress, message: str) -> None:
        progress.message = message
        progress.messages = [*(progress.messages or []), message][-MAX_MESSAGES:]
