"""
Repository for the crawl queue (discovered children waiting to run).

Claim protocol: select ready rows ordered by priority then age with
``FOR UPDATE SKIP LOCKED`` (honoured by PostgreSQL, ignored by SQLite),
then flip each one to PROCESSING with a conditional UPDATE. Only a
rowcount of 1 counts as a claim, so two workers can never both own a
row even on a backend without row locks.
"""

from collections.abc import Iterable, Sequence
from datetime import datetime, timedelta

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.database.models import (
    CrawlJob,
    CrawlQueueEntry,
    JobLevel,
    JobStatus,
    QueueStatus,
)
from comicrawl.models.schemas import ChildLink
from comicrawl.utils.clock import ensure_utc, utcnow
from comicrawl.utils.exceptions import DatabaseError, QueueEntryNotFoundError
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)

READY_STATUSES = (QueueStatus.PENDING, QueueStatus.DELAYED)
OPEN_STATUSES = (QueueStatus.PENDING, QueueStatus.DELAYED, QueueStatus.PROCESSING)


def _ready_clause(now: datetime):
    return or_(
        CrawlQueueEntry.status == QueueStatus.PENDING,
        and_(
            CrawlQueueEntry.status == QueueStatus.DELAYED,
            CrawlQueueEntry.next_retry_at <= now,
        ),
    )


class QueueRepository:
    """Static async operations on CrawlQueueEntry rows."""

    @staticmethod
    async def enqueue(
        session: AsyncSession,
        job_id: int,
        level: JobLevel,
        items: Iterable[tuple[int, ChildLink]],
        *,
        priority: int = 0,
        max_retries: int = 3,
    ) -> list[CrawlQueueEntry]:
        """
        Add children of ``job_id`` at the given positions.

        Positions already queued for the job are left alone, so re-running
        a handler after a crash never duplicates entries.

        Raises:
            DatabaseError: If the insert fails
        """
        items = list(items)
        if not items:
            return []

        try:
            result = await session.execute(
                select(CrawlQueueEntry.position).where(
                    CrawlQueueEntry.job_id == job_id,
                    CrawlQueueEntry.position.in_([position for position, _ in items]),
                )
            )
            existing = set(result.scalars().all())

            entries = [
                CrawlQueueEntry(
                    job_id=job_id,
                    level=level,
                    target_url=link.url,
                    target_name=link.name,
                    position=position,
                    priority=priority,
                    status=QueueStatus.PENDING,
                    max_retries=max_retries,
                )
                for position, link in items
                if position not in existing
            ]
            session.add_all(entries)
            await session.flush()

        except SQLAlchemyError as e:
            logger.error("Failed to enqueue children", job_id=job_id, error=str(e))
            raise DatabaseError(
                f"Failed to enqueue children: {e}",
                operation="insert",
                table="crawl_queue",
            ) from e

        if entries:
            logger.debug(
                "Children enqueued",
                job_id=job_id,
                level=level.value,
                count=len(entries),
                already_queued=len(existing),
            )
        return entries

    @staticmethod
    async def claim(
        session: AsyncSession,
        limit: int,
        *,
        now: datetime | None = None,
        max_rounds: int = 5,
    ) -> list[CrawlQueueEntry]:
        """
        Claim up to ``limit`` ready entries and mark them PROCESSING.

        Only entries whose owning job is RUNNING are eligible; children of
        paused or cancelled jobs stay where they are. Rows another worker
        wins in between the select and the update are skipped and the
        select is retried, so losing a race never loses a row.
        """
        now = now or utcnow()
        claimed_ids: list[int] = []

        for _ in range(max_rounds):
            wanted = limit - len(claimed_ids)
            if wanted <= 0:
                break

            query = (
                select(CrawlQueueEntry.id)
                .join(CrawlJob, CrawlJob.id == CrawlQueueEntry.job_id)
                .where(
                    _ready_clause(now),
                    CrawlQueueEntry.deleted_at.is_(None),
                    CrawlJob.status == JobStatus.RUNNING,
                    CrawlJob.deleted_at.is_(None),
                )
                .order_by(
                    CrawlQueueEntry.priority.desc(),
                    CrawlQueueEntry.created_at.asc(),
                    CrawlQueueEntry.id.asc(),
                )
                .limit(wanted)
                .with_for_update(skip_locked=True, of=CrawlQueueEntry)
            )
            candidates = list((await session.execute(query)).scalars().all())
            if not candidates:
                break

            lost = 0
            for entry_id in candidates:
                result = await session.execute(
                    update(CrawlQueueEntry)
                    .where(
                        CrawlQueueEntry.id == entry_id,
                        _ready_clause(now),
                    )
                    .values(
                        status=QueueStatus.PROCESSING,
                        claimed_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed_ids.append(entry_id)
                else:
                    lost += 1

            if lost == 0:
                break

        if not claimed_ids:
            return []

        result = await session.execute(
            select(CrawlQueueEntry)
            .where(CrawlQueueEntry.id.in_(claimed_ids))
            .order_by(
                CrawlQueueEntry.priority.desc(),
                CrawlQueueEntry.created_at.asc(),
                CrawlQueueEntry.id.asc(),
            )
            .execution_options(populate_existing=True)
        )
        entries = list(result.scalars().all())
        logger.debug("Queue entries claimed", count=len(entries))
        return entries

    @staticmethod
    async def get_by_id(session: AsyncSession, entry_id: int) -> CrawlQueueEntry:
        """
        Raises:
            QueueEntryNotFoundError: If the entry doesn't exist
        """
        entry = await session.get(CrawlQueueEntry, entry_id, populate_existing=True)
        if entry is None:
            raise QueueEntryNotFoundError(entry_id)
        return entry

    @staticmethod
    async def get_by_position(
        session: AsyncSession,
        job_id: int,
        position: int,
    ) -> CrawlQueueEntry | None:
        result = await session.execute(
            select(CrawlQueueEntry).where(
                CrawlQueueEntry.job_id == job_id,
                CrawlQueueEntry.position == position,
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def positions_for_job(session: AsyncSession, job_id: int) -> set[int]:
        result = await session.execute(
            select(CrawlQueueEntry.position).where(CrawlQueueEntry.job_id == job_id)
        )
        return set(result.scalars().all())

    @staticmethod
    async def list_for_job(
        session: AsyncSession,
        job_id: int,
        *,
        status: QueueStatus | None = None,
    ) -> list[CrawlQueueEntry]:
        query = select(CrawlQueueEntry).where(CrawlQueueEntry.job_id == job_id)
        if status is not None:
            query = query.where(CrawlQueueEntry.status == status)
        result = await session.execute(query.order_by(CrawlQueueEntry.position.asc()))
        return list(result.scalars().all())

    # ============================================================
    # Outcomes
    # ============================================================

    @staticmethod
    async def _finish(
        session: AsyncSession,
        entry_id: int,
        status: QueueStatus,
        *,
        error_message: str | None = None,
        from_statuses: Sequence[QueueStatus] = (QueueStatus.PROCESSING,),
    ) -> bool:
        now = utcnow()
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(CrawlQueueEntry.id == entry_id, CrawlQueueEntry.status.in_(from_statuses))
            .values(
                status=status,
                error_message=error_message,
                finished_at=now,
                updated_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def mark_completed(session: AsyncSession, entry_id: int) -> bool:
        return await QueueRepository._finish(session, entry_id, QueueStatus.COMPLETED)

    @staticmethod
    async def mark_failed(session: AsyncSession, entry_id: int, error_message: str) -> bool:
        """Final failure: retries exhausted or the error is not retryable."""
        changed = await QueueRepository._finish(
            session, entry_id, QueueStatus.FAILED, error_message=error_message
        )
        if changed:
            logger.warning("Queue entry failed", entry_id=entry_id, error=error_message)
        return changed

    @staticmethod
    async def mark_skipped(
        session: AsyncSession,
        entry_id: int,
        reason: str | None = None,
    ) -> bool:
        return await QueueRepository._finish(
            session,
            entry_id,
            QueueStatus.SKIPPED,
            error_message=reason,
            from_statuses=OPEN_STATUSES,
        )

    @staticmethod
    async def schedule_retry(
        session: AsyncSession,
        entry_id: int,
        delay_seconds: float,
        error_message: str,
    ) -> datetime:
        """PROCESSING → DELAYED with ``next_retry_at = now + delay``."""
        next_retry_at = utcnow() + timedelta(seconds=delay_seconds)
        await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.id == entry_id,
                CrawlQueueEntry.status == QueueStatus.PROCESSING,
            )
            .values(
                status=QueueStatus.DELAYED,
                retry_count=CrawlQueueEntry.retry_count + 1,
                next_retry_at=next_retry_at,
                error_message=error_message,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "Queue entry delayed",
            entry_id=entry_id,
            delay_seconds=round(delay_seconds, 2),
            error=error_message,
        )
        return next_retry_at

    @staticmethod
    async def park(session: AsyncSession, entry_id: int, reason: str) -> bool:
        """
        PROCESSING → DELAYED without a retry time.

        Used when the child job paused: the row is neither claimable nor
        finished until ``requeue_position`` brings it back.
        """
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.id == entry_id,
                CrawlQueueEntry.status == QueueStatus.PROCESSING,
            )
            .values(
                status=QueueStatus.DELAYED,
                next_retry_at=None,
                error_message=reason,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def requeue_position(session: AsyncSession, job_id: int, position: int) -> bool:
        """Make the entry at ``position`` claimable again (parked or completed → PENDING)."""
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.job_id == job_id,
                CrawlQueueEntry.position == position,
                CrawlQueueEntry.status.in_([QueueStatus.DELAYED, QueueStatus.COMPLETED]),
                CrawlQueueEntry.deleted_at.is_(None),
            )
            .values(
                status=QueueStatus.PENDING,
                next_retry_at=None,
                finished_at=None,
                claimed_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def release(session: AsyncSession, entry_id: int) -> bool:
        """Give a claimed row back untouched (PROCESSING → PENDING)."""
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.id == entry_id,
                CrawlQueueEntry.status == QueueStatus.PROCESSING,
            )
            .values(status=QueueStatus.PENDING, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    async def requeue_stale(session: AsyncSession, older_than: timedelta) -> int:
        """Return PROCESSING rows whose worker vanished to PENDING."""
        cutoff = utcnow() - older_than
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.status == QueueStatus.PROCESSING,
                CrawlQueueEntry.claimed_at < cutoff,
            )
            .values(status=QueueStatus.PENDING, claimed_at=None)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            logger.warning("Stale queue entries requeued", count=result.rowcount)
        return result.rowcount

    @staticmethod
    async def reset_positions(
        session: AsyncSession,
        job_id: int,
        positions: Iterable[int],
    ) -> int:
        """Put finished entries at ``positions`` back to PENDING with a fresh retry budget."""
        positions = list(positions)
        if not positions:
            return 0
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.job_id == job_id,
                CrawlQueueEntry.position.in_(positions),
                CrawlQueueEntry.status.in_([QueueStatus.FAILED, QueueStatus.COMPLETED]),
            )
            .values(
                status=QueueStatus.PENDING,
                retry_count=0,
                next_retry_at=None,
                error_message=None,
                claimed_at=None,
                finished_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def reopen_skipped(session: AsyncSession, job_id: int) -> int:
        """SKIPPED → PENDING for one job (used when a failed or paused job runs again)."""
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.job_id == job_id,
                CrawlQueueEntry.status == QueueStatus.SKIPPED,
                CrawlQueueEntry.deleted_at.is_(None),
            )
            .values(status=QueueStatus.PENDING, finished_at=None, error_message=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    @staticmethod
    async def skip_open_for_jobs(
        session: AsyncSession,
        job_ids: Sequence[int],
        reason: str,
    ) -> int:
        """PENDING/DELAYED → SKIPPED for every listed job; in-flight rows finish naturally."""
        if not job_ids:
            return 0
        now = utcnow()
        result = await session.execute(
            update(CrawlQueueEntry)
            .where(
                CrawlQueueEntry.job_id.in_(job_ids),
                CrawlQueueEntry.status.in_(READY_STATUSES),
            )
            .values(
                status=QueueStatus.SKIPPED,
                error_message=reason,
                finished_at=now,
                next_retry_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    # ============================================================
    # Statistics
    # ============================================================

    @staticmethod
    async def count_by_status(
        session: AsyncSession,
        job_id: int | None = None,
    ) -> dict[str, int]:
        query = select(CrawlQueueEntry.status, func.count(CrawlQueueEntry.id).label("count")).where(
            CrawlQueueEntry.deleted_at.is_(None)
        )
        if job_id is not None:
            query = query.where(CrawlQueueEntry.job_id == job_id)
        result = await session.execute(query.group_by(CrawlQueueEntry.status))

        counts = {status.value: 0 for status in QueueStatus}
        for row in result:
            counts[QueueStatus(row.status).value] = row.count
        return counts

    @staticmethod
    async def next_retry_due(session: AsyncSession) -> datetime | None:
        """Earliest ``next_retry_at`` among DELAYED rows, if any."""
        result = await session.execute(
            select(func.min(CrawlQueueEntry.next_retry_at)).where(
                CrawlQueueEntry.status == QueueStatus.DELAYED,
                CrawlQueueEntry.deleted_at.is_(None),
            )
        )
        return ensure_utc(result.scalar_one_or_none())

    @staticmethod
    async def has_ready(session: AsyncSession, *, now: datetime | None = None) -> bool:
        result = await session.execute(
            select(CrawlQueueEntry.id)
            .join(CrawlJob, CrawlJob.id == CrawlQueueEntry.job_id)
            .where(
                _ready_clause(now or utcnow()),
                CrawlQueueEntry.deleted_at.is_(None),
                CrawlJob.status == JobStatus.RUNNING,
                CrawlJob.deleted_at.is_(None),
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None
