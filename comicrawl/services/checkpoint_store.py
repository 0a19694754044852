"""
Checkpoint store: the resumable cursor of a job.

Handlers write the last completed index after every item, so a pause or
crash resumes at ``last_item_index + 1``. Failed indices (flat, and
nested per child for image failures) are kept as deduplicated sorted
lists. JSON columns are always replaced, never mutated in place, and
read-modify-write sequences lock the row first.
"""

from collections.abc import Iterable
from datetime import datetime

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.database.models import CrawlCheckpoint
from comicrawl.models.schemas import ImageResult, ImageUrlList, checkpoint_state_adapter
from comicrawl.utils.clock import utcnow
from comicrawl.utils.exceptions import DatabaseError
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


def resume_index(checkpoint: CrawlCheckpoint) -> int:
    """First index still to process."""
    return checkpoint.last_item_index + 1


class CheckpointStore:
    """Static async operations on CrawlCheckpoint rows."""

    @staticmethod
    async def get(session: AsyncSession, job_id: int) -> CrawlCheckpoint:
        """
        Raises:
            DatabaseError: If the job has no checkpoint row
        """
        result = await session.execute(
            select(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id)
            .execution_options(populate_existing=True)
        )
        checkpoint = result.scalar_one_or_none()
        if checkpoint is None:
            raise DatabaseError(
                f"Checkpoint missing for job {job_id}",
                operation="select",
                table="crawl_checkpoints",
                details={"job_id": job_id},
            )
        return checkpoint

    @staticmethod
    async def lock(session: AsyncSession, job_id: int) -> CrawlCheckpoint:
        """
        Load the checkpoint for a read-modify-write.

        The no-op UPDATE takes the row's write lock on every backend
        (SQLite has no SELECT ... FOR UPDATE), so concurrent children
        editing the same failure lists serialize instead of overwriting.
        """
        await session.execute(
            update(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return await CheckpointStore.get(session, job_id)

    @staticmethod
    async def claim_stale(session: AsyncSession, job_id: int, cutoff: datetime) -> bool:
        """
        Touch a checkpoint last written before ``cutoff``.

        True only for the one caller whose UPDATE matched; the others see
        the fresh timestamp and leave the job alone.
        """
        result = await session.execute(
            update(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id, CrawlCheckpoint.updated_at < cutoff)
            .values(updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def save_progress(session: AsyncSession, job_id: int, last_index: int) -> None:
        """Record ``last_index`` as fully processed."""
        await session.execute(
            update(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id)
            .values(last_item_index=last_index, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def add_failed(session: AsyncSession, job_id: int, index: int) -> None:
        checkpoint = await CheckpointStore.lock(session, job_id)
        checkpoint.failed_indices = sorted({*checkpoint.failed_indices, index})
        await session.flush()

    @staticmethod
    async def remove_failed(session: AsyncSession, job_id: int, indices: Iterable[int]) -> None:
        drop = set(indices)
        checkpoint = await CheckpointStore.lock(session, job_id)
        checkpoint.failed_indices = [i for i in checkpoint.failed_indices if i not in drop]
        await session.flush()

    @staticmethod
    async def add_nested_failure(
        session: AsyncSession,
        job_id: int,
        parent_index: int,
        child_index: int,
    ) -> None:
        """Record that grandchild ``child_index`` under child ``parent_index`` failed."""
        checkpoint = await CheckpointStore.lock(session, job_id)
        nested = dict(checkpoint.failed_nested or {})
        key = str(parent_index)
        nested[key] = sorted({*nested.get(key, []), child_index})
        checkpoint.failed_nested = nested
        await session.flush()

    @staticmethod
    async def remove_nested_failures(
        session: AsyncSession,
        job_id: int,
        parent_index: int,
        child_indices: Iterable[int],
    ) -> None:
        drop = set(child_indices)
        checkpoint = await CheckpointStore.lock(session, job_id)
        nested = dict(checkpoint.failed_nested or {})
        key = str(parent_index)
        remaining = [i for i in nested.get(key, []) if i not in drop]
        if remaining:
            nested[key] = remaining
        else:
            nested.pop(key, None)
        checkpoint.failed_nested = nested
        await session.flush()

    @staticmethod
    async def set_state(
        session: AsyncSession,
        job_id: int,
        state: ImageUrlList | ImageResult,
    ) -> None:
        await session.execute(
            update(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id)
            .values(state=state.model_dump(mode="json"), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def get_state(session: AsyncSession, job_id: int) -> ImageUrlList | ImageResult | None:
        checkpoint = await CheckpointStore.get(session, job_id)
        if not checkpoint.state:
            return None
        return checkpoint_state_adapter.validate_python(checkpoint.state)

    @staticmethod
    async def record_pause(session: AsyncSession, job_id: int, last_index: int) -> None:
        now = utcnow()
        await session.execute(
            update(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id)
            .values(last_item_index=last_index, paused_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("Checkpoint paused", job_id=job_id, last_index=last_index)

    @staticmethod
    async def record_resume(session: AsyncSession, job_id: int) -> CrawlCheckpoint:
        now = utcnow()
        await session.execute(
            update(CrawlCheckpoint)
            .where(CrawlCheckpoint.job_id == job_id)
            .values(
                resume_count=CrawlCheckpoint.resume_count + 1,
                resumed_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        checkpoint = await CheckpointStore.get(session, job_id)
        logger.info(
            "Checkpoint resumed",
            job_id=job_id,
            resume_index=resume_index(checkpoint),
            resume_count=checkpoint.resume_count,
        )
        return checkpoint
