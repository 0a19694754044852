"""
Repository pattern for CrawlJob and its one-per-job companion rows.

All methods take an AsyncSession so the caller controls transaction
boundaries. Counter changes and status transitions are single
conditional UPDATE statements: concurrent children finishing at the same
time never lose an increment, and a transition only happens from the
states that allow it.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.database.models import (
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    CrawlCheckpoint,
    CrawlJob,
    CrawlProgress,
    CrawlQueueEntry,
    CrawlSettings,
    DownloadMode,
    JobLevel,
    JobStatus,
)
from comicrawl.models.schemas import CrawlSettingsData
from comicrawl.utils.clock import utcnow
from comicrawl.utils.exceptions import DatabaseError, InvalidTransitionError, JobNotFoundError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.urls import extract_slug, normalize_url

logger = get_logger(__name__)


class JobRepository:
    """
    Repository for CrawlJob database operations.

    All methods require an AsyncSession to be passed in,
    allowing the caller to control transaction boundaries.
    """

    @staticmethod
    async def create(
        session: AsyncSession,
        *,
        level: JobLevel,
        target_url: str,
        target_name: str = "",
        parent: CrawlJob | None = None,
        item_index: int = 0,
        download_mode: DownloadMode = DownloadMode.FULL,
        created_by: str = "system",
        content_id: int = -1,
        settings: CrawlSettingsData | None = None,
    ) -> CrawlJob:
        """
        Create a job together with its settings, progress and checkpoint rows.

        Tree fields come from ``parent``: root is the parent's root (or the
        parent itself), depth is one deeper, and the operator is inherited.

        Raises:
            DatabaseError: If creation fails
        """
        settings = settings or CrawlSettingsData()
        try:
            job = CrawlJob(
                level=level,
                parent_id=parent.id if parent else None,
                root_id=(parent.root_id or parent.id) if parent else None,
                depth=parent.depth + 1 if parent else 0,
                item_index=item_index,
                target_url=target_url,
                normalized_url=normalize_url(target_url),
                target_slug=extract_slug(target_url),
                target_name=target_name,
                content_id=content_id,
                created_by=parent.created_by if parent else created_by,
                status=JobStatus.PENDING,
                download_mode=download_mode,
            )
            session.add(job)
            await session.flush()  # Get the ID without committing

            session.add_all(
                [
                    CrawlSettings(job_id=job.id, **settings.model_dump(mode="json")),
                    CrawlProgress(job_id=job.id, message="Starting crawl...", messages=[]),
                    CrawlCheckpoint(
                        job_id=job.id, last_item_index=-1, failed_indices=[], failed_nested={}
                    ),
                ]
            )
            await session.flush()

            logger.info(
                "Job created",
                job_id=job.id,
                level=level.value,
                parent_id=job.parent_id,
                url=target_url,
            )
            return job

        except SQLAlchemyError as e:
            logger.error("Failed to create job", error=str(e), url=target_url)
            raise DatabaseError(
                f"Failed to create crawl job: {e}",
                operation="insert",
                table="crawl_jobs",
            ) from e

    @staticmethod
    async def get_by_id(
        session: AsyncSession,
        job_id: int,
        *,
        include_deleted: bool = False,
    ) -> CrawlJob:
        """
        Get a job by ID.

        Raises:
            JobNotFoundError: If job doesn't exist (or is soft-deleted)
        """
        job = await JobRepository.get_by_id_or_none(
            session, job_id, include_deleted=include_deleted
        )
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    @staticmethod
    async def get_by_id_or_none(
        session: AsyncSession,
        job_id: int,
        *,
        include_deleted: bool = False,
    ) -> CrawlJob | None:
        query = select(CrawlJob).where(CrawlJob.id == job_id)
        if not include_deleted:
            query = query.where(CrawlJob.deleted_at.is_(None))
        result = await session.execute(query.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    @staticmethod
    async def get_status(session: AsyncSession, job_id: int) -> JobStatus | None:
        """Read only the status column (cheap, used by the pause/cancel check)."""
        result = await session.execute(
            select(CrawlJob.status).where(CrawlJob.id == job_id, CrawlJob.deleted_at.is_(None))
        )
        status = result.scalar_one_or_none()
        return JobStatus(status) if status is not None else None

    @staticmethod
    async def get_child(session: AsyncSession, parent_id: int, item_index: int) -> CrawlJob | None:
        result = await session.execute(
            select(CrawlJob)
            .where(CrawlJob.parent_id == parent_id, CrawlJob.item_index == item_index)
            .order_by(CrawlJob.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def get_settings(session: AsyncSession, job_id: int) -> CrawlSettingsData:
        row = await session.get(CrawlSettings, job_id)
        if row is None:
            return CrawlSettingsData()
        return CrawlSettingsData.model_validate(row)

    @staticmethod
    async def update_settings(
        session: AsyncSession,
        job_id: int,
        settings: CrawlSettingsData,
    ) -> CrawlSettingsData:
        row = await session.get(CrawlSettings, job_id)
        values = settings.model_dump(mode="json")
        if row is None:
            session.add(CrawlSettings(job_id=job_id, **values))
        else:
            for key, value in values.items():
                setattr(row, key, value)
        await session.flush()
        logger.info("Job settings updated", job_id=job_id)
        return settings

    # ============================================================
    # State transitions
    # ============================================================

    @staticmethod
    async def transition(
        session: AsyncSession,
        job_id: int,
        target: JobStatus,
        *,
        allowed_from: Iterable[JobStatus] | None = None,
        error_message: str | None = None,
        increment_retry: bool = False,
    ) -> bool:
        """
        Move a job to ``target`` if its current state allows it.

        A single conditional UPDATE; returns False (and changes nothing)
        when the job is not in one of the source states.
        """
        sources = frozenset(allowed_from) if allowed_from is not None else ALLOWED_TRANSITIONS[target]
        now = utcnow()
        values: dict = {"status": target, "updated_at": now}

        if target is JobStatus.RUNNING:
            values["error_message"] = None
            values["completed_at"] = None
            values["started_at"] = func.coalesce(CrawlJob.started_at, now)
        if target in TERMINAL_STATUSES:
            values["completed_at"] = now
        if error_message is not None:
            values["error_message"] = error_message
        if increment_retry:
            values["retry_count"] = CrawlJob.retry_count + 1

        result = await session.execute(
            update(CrawlJob)
            .where(
                CrawlJob.id == job_id,
                CrawlJob.status.in_(sources),
                CrawlJob.deleted_at.is_(None),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        if changed:
            logger.info("Job status updated", job_id=job_id, status=target.value)
        return changed

    @staticmethod
    async def require_transition(
        session: AsyncSession,
        job_id: int,
        target: JobStatus,
        **kwargs,
    ) -> None:
        """
        Like ``transition`` but raises when the move is not allowed.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If the current state forbids ``target``
        """
        if await JobRepository.transition(session, job_id, target, **kwargs):
            return
        job = await JobRepository.get_by_id(session, job_id)
        raise InvalidTransitionError(job_id, JobStatus(job.status).value, target.value)

    @staticmethod
    async def complete_if_settled(session: AsyncSession, job_id: int) -> bool:
        """
        Mark a RUNNING job COMPLETED once every counted item is accounted for.

        Safe to race: of several children finishing together exactly one
        caller sees rowcount 1.
        """
        processed = CrawlJob.completed_items + CrawlJob.failed_items + CrawlJob.skipped_items
        now = utcnow()
        result = await session.execute(
            update(CrawlJob)
            .where(
                CrawlJob.id == job_id,
                CrawlJob.status == JobStatus.RUNNING,
                CrawlJob.deleted_at.is_(None),
                processed >= CrawlJob.total_items,
            )
            .values(status=JobStatus.COMPLETED, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 1:
            logger.info("Job status updated", job_id=job_id, status=JobStatus.COMPLETED.value)
            return True
        return False

    @staticmethod
    async def absorb_remaining_as_skipped(session: AsyncSession, job_id: int) -> None:
        """Count every not-yet-processed item as skipped (used when a job ends early)."""
        processed = CrawlJob.completed_items + CrawlJob.failed_items + CrawlJob.skipped_items
        await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id, CrawlJob.total_items > processed)
            .values(skipped_items=CrawlJob.total_items - CrawlJob.completed_items - CrawlJob.failed_items)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def release_absorbed_skip(session: AsyncSession, job_id: int) -> bool:
        """
        Give back one absorbed skip of a job that ended early.

        A child still in flight when its parent failed or was cancelled
        reports later; its outcome takes the place of the skip it was
        absorbed as, so the counters never exceed the total.
        """
        processed = CrawlJob.completed_items + CrawlJob.failed_items + CrawlJob.skipped_items
        result = await session.execute(
            update(CrawlJob)
            .where(
                CrawlJob.id == job_id,
                CrawlJob.status.in_([JobStatus.FAILED, JobStatus.CANCELLED]),
                CrawlJob.skipped_items > 0,
                processed > CrawlJob.total_items,
            )
            .values(skipped_items=CrawlJob.skipped_items - 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    # ============================================================
    # Counters & links
    # ============================================================

    @staticmethod
    async def increment_counters(
        session: AsyncSession,
        job_id: int,
        *,
        completed: int = 0,
        failed: int = 0,
        skipped: int = 0,
    ) -> None:
        """Atomically add to the item counters (negative values undo)."""
        await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id)
            .values(
                completed_items=CrawlJob.completed_items + completed,
                failed_items=CrawlJob.failed_items + failed,
                skipped_items=CrawlJob.skipped_items + skipped,
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def set_total(session: AsyncSession, job_id: int, total: int) -> None:
        await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id)
            .values(total_items=total, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def recount_skipped(session: AsyncSession, job_id: int) -> int:
        """
        Reset skipped_items to the cancelled children already counted.

        Drops the skips absorbed when the job ended early; used when a
        failed job runs again.
        """
        result = await session.execute(
            select(func.count(CrawlJob.id)).where(
                CrawlJob.parent_id == job_id,
                CrawlJob.status == JobStatus.CANCELLED,
                CrawlJob.parent_notified.is_(True),
            )
        )
        skipped = int(result.scalar_one())
        await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id)
            .values(skipped_items=skipped)
            .execution_options(synchronize_session=False)
        )
        return skipped

    @staticmethod
    async def link_content(session: AsyncSession, job_id: int, content_id: int) -> None:
        await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id == job_id)
            .values(content_id=content_id, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        logger.info("Job linked to content", job_id=job_id, content_id=content_id)

    @staticmethod
    async def relink_content(session: AsyncSession, old_content_id: int, new_content_id: int) -> int:
        """Point every job linked to ``old_content_id`` at ``new_content_id``."""
        result = await session.execute(
            update(CrawlJob)
            .where(CrawlJob.content_id == old_content_id)
            .values(content_id=new_content_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def find_for_content(
        session: AsyncSession,
        content_id: int,
        *,
        statuses: Iterable[JobStatus] | None = None,
    ) -> CrawlJob | None:
        query = select(CrawlJob).where(
            CrawlJob.content_id == content_id,
            CrawlJob.deleted_at.is_(None),
        )
        if statuses is not None:
            query = query.where(CrawlJob.status.in_(list(statuses)))
        result = await session.execute(query.order_by(CrawlJob.id.desc()).limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def mark_parent_notified(session: AsyncSession, job_id: int) -> bool:
        """
        Flip the parent_notified flag; True only for the first caller.

        The flag and the parent's counter changes commit together, so a
        replayed propagation for the same child is a no-op.
        """
        result = await session.execute(
            update(CrawlJob)
            .where(
                CrawlJob.id == job_id,
                CrawlJob.parent_notified.is_(False),
                CrawlJob.status.in_(TERMINAL_STATUSES),
            )
            .values(parent_notified=True)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def clear_parent_notified(session: AsyncSession, job_ids: Sequence[int]) -> None:
        if not job_ids:
            return
        await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id.in_(job_ids))
            .values(parent_notified=False)
            .execution_options(synchronize_session=False)
        )

    # ============================================================
    # Queries
    # ============================================================

    @staticmethod
    async def list_children(
        session: AsyncSession,
        parent_id: int,
        *,
        status: JobStatus | None = None,
        include_deleted: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CrawlJob]:
        query = select(CrawlJob).where(CrawlJob.parent_id == parent_id)
        if status is not None:
            query = query.where(CrawlJob.status == status)
        if not include_deleted:
            query = query.where(CrawlJob.deleted_at.is_(None))
        query = query.order_by(CrawlJob.item_index.asc(), CrawlJob.id.asc()).limit(limit).offset(offset)
        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def list_recent(
        session: AsyncSession,
        *,
        status: JobStatus | None = None,
        level: JobLevel | None = None,
        roots_only: bool = False,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CrawlJob]:
        """
        List jobs ordered by creation date, newest first.

        Args:
            session: Database session
            status: Filter by status (None for all)
            level: Filter by level (None for all)
            roots_only: Only jobs without a parent
            limit: Maximum jobs to return
            offset: Number of jobs to skip
        """
        query = select(CrawlJob).where(CrawlJob.deleted_at.is_(None))
        if status is not None:
            query = query.where(CrawlJob.status == status)
        if level is not None:
            query = query.where(CrawlJob.level == level)
        if roots_only:
            query = query.where(CrawlJob.parent_id.is_(None))
        query = query.order_by(CrawlJob.created_at.desc(), CrawlJob.id.desc()).limit(limit).offset(offset)

        result = await session.execute(query)
        return list(result.scalars().all())

    @staticmethod
    async def subtree_ids(
        session: AsyncSession,
        job_id: int,
        *,
        include_deleted: bool = True,
    ) -> list[int]:
        """
        Ids of ``job_id`` and all its descendants (breadth-first bulk reads).
        """
        ids = [job_id]
        frontier = [job_id]
        while frontier:
            query = select(CrawlJob.id).where(CrawlJob.parent_id.in_(frontier))
            if not include_deleted:
                query = query.where(CrawlJob.deleted_at.is_(None))
            result = await session.execute(query)
            frontier = list(result.scalars().all())
            ids.extend(frontier)
        return ids

    @staticmethod
    async def count_running_roots(session: AsyncSession, operator: str | None = None) -> int:
        """Running root jobs, system-wide or for one operator."""
        query = select(func.count(CrawlJob.id)).where(
            CrawlJob.parent_id.is_(None),
            CrawlJob.status == JobStatus.RUNNING,
            CrawlJob.deleted_at.is_(None),
        )
        if operator is not None:
            query = query.where(CrawlJob.created_by == operator)
        result = await session.execute(query)
        return int(result.scalar_one())

    @staticmethod
    async def running_roots_by_operator(session: AsyncSession) -> dict[str, int]:
        result = await session.execute(
            select(CrawlJob.created_by, func.count(CrawlJob.id))
            .where(
                CrawlJob.parent_id.is_(None),
                CrawlJob.status == JobStatus.RUNNING,
                CrawlJob.deleted_at.is_(None),
            )
            .group_by(CrawlJob.created_by)
        )
        return {operator: int(count) for operator, count in result.all()}

    @staticmethod
    async def list_pending_roots(session: AsyncSession, limit: int = 100) -> list[CrawlJob]:
        """Root jobs still waiting for admission, oldest first."""
        result = await session.execute(
            select(CrawlJob)
            .where(
                CrawlJob.parent_id.is_(None),
                CrawlJob.status == JobStatus.PENDING,
                CrawlJob.deleted_at.is_(None),
            )
            .order_by(CrawlJob.created_at.asc(), CrawlJob.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_stale_running_roots(
        session: AsyncSession,
        cutoff: datetime,
        limit: int = 100,
    ) -> list[CrawlJob]:
        """RUNNING root jobs whose row and checkpoint have not moved since ``cutoff``."""
        result = await session.execute(
            select(CrawlJob)
            .join(CrawlCheckpoint, CrawlCheckpoint.job_id == CrawlJob.id)
            .where(
                CrawlJob.parent_id.is_(None),
                CrawlJob.status == JobStatus.RUNNING,
                CrawlJob.deleted_at.is_(None),
                CrawlJob.updated_at < cutoff,
                CrawlCheckpoint.updated_at < cutoff,
            )
            .order_by(CrawlJob.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_unnotified_terminal_children(
        session: AsyncSession,
        limit: int = 100,
    ) -> list[CrawlJob]:
        """Terminal child jobs whose outcome never reached their parent."""
        result = await session.execute(
            select(CrawlJob)
            .where(
                CrawlJob.parent_id.is_not(None),
                CrawlJob.parent_notified.is_(False),
                CrawlJob.status.in_([JobStatus.COMPLETED, JobStatus.CANCELLED]),
                CrawlJob.deleted_at.is_(None),
            )
            .order_by(CrawlJob.id.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def find_by_normalized_url(
        session: AsyncSession,
        normalized_url: str,
        *,
        statuses: Iterable[JobStatus] | None = None,
    ) -> CrawlJob | None:
        query = select(CrawlJob).where(
            CrawlJob.normalized_url == normalized_url,
            CrawlJob.deleted_at.is_(None),
            CrawlJob.level.in_([JobLevel.CATEGORY, JobLevel.COMIC]),
        )
        if statuses is not None:
            query = query.where(CrawlJob.status.in_(list(statuses)))
        result = await session.execute(query.order_by(CrawlJob.id.desc()).limit(1))
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_slug(session: AsyncSession, slug: str) -> CrawlJob | None:
        if not slug:
            return None
        result = await session.execute(
            select(CrawlJob)
            .where(
                CrawlJob.target_slug == slug,
                CrawlJob.deleted_at.is_(None),
                CrawlJob.level == JobLevel.COMIC,
            )
            .order_by(CrawlJob.id.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def count_by_status(session: AsyncSession) -> dict[str, int]:
        """Job counts grouped by status (soft-deleted jobs excluded)."""
        result = await session.execute(
            select(CrawlJob.status, func.count(CrawlJob.id).label("count"))
            .where(CrawlJob.deleted_at.is_(None))
            .group_by(CrawlJob.status)
        )

        counts = {status.value: 0 for status in JobStatus}
        for row in result:
            counts[JobStatus(row.status).value] = row.count
        return counts

    @staticmethod
    async def get_stats(session: AsyncSession) -> dict:
        """
        Overall job statistics.

        Returns:
            Dict with total, counts by status, and success rate
        """
        counts = await JobRepository.count_by_status(session)
        total = sum(counts.values())

        completed = counts[JobStatus.COMPLETED.value]
        failed = counts[JobStatus.FAILED.value]
        finished = completed + failed
        success_rate = (completed / finished * 100) if finished > 0 else 0.0

        return {
            "total": total,
            "by_status": counts,
            "success_rate": round(success_rate, 2),
        }

    # ============================================================
    # Soft delete / restore / purge
    # ============================================================

    @staticmethod
    async def soft_delete(session: AsyncSession, job_ids: Sequence[int]) -> int:
        now = utcnow()
        result = await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id.in_(job_ids), CrawlJob.deleted_at.is_(None))
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(CrawlQueueEntry)
            .where(CrawlQueueEntry.job_id.in_(job_ids), CrawlQueueEntry.deleted_at.is_(None))
            .values(deleted_at=now)
            .execution_options(synchronize_session=False)
        )
        logger.info("Jobs soft-deleted", count=result.rowcount)
        return result.rowcount

    @staticmethod
    async def restore(session: AsyncSession, job_ids: Sequence[int]) -> int:
        result = await session.execute(
            update(CrawlJob)
            .where(CrawlJob.id.in_(job_ids), CrawlJob.deleted_at.is_not(None))
            .values(deleted_at=None)
            .execution_options(synchronize_session=False)
        )
        await session.execute(
            update(CrawlQueueEntry)
            .where(CrawlQueueEntry.job_id.in_(job_ids))
            .values(deleted_at=None)
            .execution_options(synchronize_session=False)
        )
        logger.info("Jobs restored", count=result.rowcount)
        return result.rowcount

    @staticmethod
    async def purge(session: AsyncSession, job_ids: Sequence[int]) -> int:
        """Hard-delete jobs and every row keyed by them."""
        for model in (CrawlQueueEntry, CrawlCheckpoint, CrawlProgress, CrawlSettings):
            await session.execute(
                delete(model)
                .where(model.job_id.in_(job_ids))
                .execution_options(synchronize_session=False)
            )
        # Children before parents so the self-referencing FK never blocks
        result = await session.execute(
            select(CrawlJob.id, CrawlJob.depth).where(CrawlJob.id.in_(job_ids))
        )
        ordered = [row.id for row in sorted(result.all(), key=lambda r: r.depth, reverse=True)]
        for job_id in ordered:
            await session.execute(
                delete(CrawlJob)
                .where(CrawlJob.id == job_id)
                .execution_options(synchronize_session=False)
            )
        logger.info("Jobs purged", count=len(ordered))
        return len(ordered)
