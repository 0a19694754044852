"""
Job lifecycle: terminal transitions and their propagation up the tree.

A child's terminal outcome is applied to its parent exactly once: the
child's ``parent_notified`` flag flips with a conditional UPDATE in the
same transaction as the parent's counter increments, so replaying a
propagation (orphan sweep, crash recovery) changes nothing. Once every
counted item of a RUNNING parent is accounted for the parent completes,
and its own outcome propagates in turn.

All methods run inside the caller's session and return the jobs that
reached a terminal state, so the caller can publish events after commit.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.database.models import JobLevel, JobStatus
from comicrawl.database.queue_repository import QueueRepository
from comicrawl.database.repository import JobRepository
from comicrawl.services.checkpoint_store import CheckpointStore
from comicrawl.services.events import EventKind, EventSink, publish_safely
from comicrawl.services.progress_tracker import ProgressTracker
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class Finished:
    job_id: int
    status: JobStatus


class JobLifecycle:
    """Terminal transitions, idempotent propagation and the cancel cascade."""

    def __init__(self, events: EventSink | None = None) -> None:
        self._events = events

    async def complete(self, session: AsyncSession, job_id: int) -> list[Finished]:
        """RUNNING → COMPLETED for a job whose own work is done (leaf jobs)."""
        if not await JobRepository.transition(session, job_id, JobStatus.COMPLETED):
            return []
        return await self._finished(session, job_id, JobStatus.COMPLETED)

    async def settle(self, session: AsyncSession, job_id: int) -> list[Finished]:
        """Complete a RUNNING parent once its counters cover the total."""
        if not await JobRepository.complete_if_settled(session, job_id):
            return []
        return await self._finished(session, job_id, JobStatus.COMPLETED)

    async def fail(self, session: AsyncSession, job_id: int, message: str) -> list[Finished]:
        """
        Final failure: no further automatic retry.

        Like a cancel, the job's open queue rows become SKIPPED and its
        unprocessed items count as skipped, so a failed job's counters
        add up to its total. Retrying the job gives the skips back.
        """
        if not await JobRepository.transition(
            session, job_id, JobStatus.FAILED, error_message=message
        ):
            return []
        await QueueRepository.skip_open_for_jobs(session, [job_id], "Job failed")
        await JobRepository.absorb_remaining_as_skipped(session, job_id)
        return await self._finished(session, job_id, JobStatus.FAILED)

    async def reopen(self, session: AsyncSession, job_id: int) -> None:
        """Give back the skips ``fail`` absorbed; call once the job is RUNNING again."""
        await QueueRepository.reopen_skipped(session, job_id)
        await JobRepository.recount_skipped(session, job_id)
        await ProgressTracker.sync(session, job_id)

    async def _finished(
        self,
        session: AsyncSession,
        job_id: int,
        status: JobStatus,
    ) -> list[Finished]:
        await ProgressTracker.sync(session, job_id)
        if status is JobStatus.COMPLETED:
            await ProgressTracker.finalize(session, job_id, "Crawl completed")
        return [Finished(job_id, status), *await self.propagate(session, job_id)]

    async def propagate(self, session: AsyncSession, job_id: int) -> list[Finished]:
        """
        Apply a terminal child's outcome to its parent, once.

        COMPLETED counts as completed, CANCELLED as skipped, FAILED as
        failed plus the child's index in the parent's failed set; an
        IMAGE failure is also recorded in the grandparent's nested map
        under the chapter's index. A parent that already ended early
        counted the child as an absorbed skip, which the outcome replaces.
        """
        job = await JobRepository.get_by_id(session, job_id, include_deleted=True)
        if job.parent_id is None:
            return []
        if not await JobRepository.mark_parent_notified(session, job_id):
            return []

        status = JobStatus(job.status)
        parent_id = job.parent_id
        match status:
            case JobStatus.COMPLETED:
                await JobRepository.increment_counters(session, parent_id, completed=1)
            case JobStatus.CANCELLED:
                await JobRepository.increment_counters(session, parent_id, skipped=1)
            case JobStatus.FAILED:
                await JobRepository.increment_counters(session, parent_id, failed=1)
                await CheckpointStore.add_failed(session, parent_id, job.item_index)
                if job.level is JobLevel.IMAGE:
                    chapter = await JobRepository.get_by_id(session, parent_id, include_deleted=True)
                    if chapter.parent_id is not None:
                        await CheckpointStore.add_nested_failure(
                            session, chapter.parent_id, chapter.item_index, job.item_index
                        )

        await JobRepository.release_absorbed_skip(session, parent_id)
        await ProgressTracker.sync(session, parent_id)
        logger.debug(
            "Child outcome propagated",
            job_id=job_id,
            parent_id=parent_id,
            status=status.value,
        )
        return await self.settle(session, parent_id)

    async def cancel_subtree(self, session: AsyncSession, job_id: int) -> list[int]:
        """
        Cancel ``job_id`` and every non-terminal descendant.

        Open queue rows of the cancelled jobs become SKIPPED and their
        unprocessed items count as skipped, so every cancelled job's
        counters add up to its total. Descendants are accounted for by
        that absorption; only the top job propagates to its parent.

        Raises:
            InvalidTransitionError: If ``job_id`` itself cannot be cancelled
        """
        await JobRepository.require_transition(session, job_id, JobStatus.CANCELLED)
        cancelled = [job_id]
        for descendant_id in (await JobRepository.subtree_ids(session, job_id, include_deleted=False))[1:]:
            if await JobRepository.transition(session, descendant_id, JobStatus.CANCELLED):
                cancelled.append(descendant_id)

        await QueueRepository.skip_open_for_jobs(session, cancelled, "Job cancelled")
        for cancelled_id in cancelled:
            await JobRepository.absorb_remaining_as_skipped(session, cancelled_id)
            await ProgressTracker.sync(session, cancelled_id)
            await ProgressTracker.add_message(session, cancelled_id, "Crawl cancelled")

        cancelled_set = set(cancelled)
        for descendant_id in cancelled[1:]:
            descendant = await JobRepository.get_by_id(session, descendant_id, include_deleted=True)
            if descendant.parent_id in cancelled_set:
                await JobRepository.mark_parent_notified(session, descendant_id)
            else:
                await self.propagate(session, descendant_id)
        await self.propagate(session, job_id)

        logger.info("Job cancelled", job_id=job_id, cascaded=len(cancelled) - 1)
        return cancelled

    async def announce(self, finished: list[Finished]) -> None:
        """Publish status events; call after the transaction committed."""
        for item in finished:
            await publish_safely(
                self._events, item.job_id, EventKind.STATUS, {"status": item.status.value}
            )
