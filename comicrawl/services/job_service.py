"""
Job service: the job control surface.

Creation, the state-machine operations an operator triggers (start,
pause, resume, retry, cancel), soft delete and restore, settings updates
and read-side queries. Every operation that changes a job's status also
invalidates or primes the pause/cancel signal so running handlers see
the change on their next check.

Execution itself belongs to the queue processor: after ``start``,
``resume`` or ``retry`` of a root job the caller runs
``QueueProcessor.run_job``; child jobs are picked up by the next drain.
"""

from collections.abc import Iterable, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.core.config import Settings
from comicrawl.core.download_mode import suggest_mode
from comicrawl.database.connection import get_session
from comicrawl.database.models import (
    Comic,
    CrawlCheckpoint,
    CrawlJob,
    CrawlProgress,
    DownloadMode,
    JobLevel,
    JobStatus,
)
from comicrawl.database.queue_repository import QueueRepository
from comicrawl.database.repository import JobRepository
from comicrawl.handlers.base import CrawlServices
from comicrawl.models.schemas import (
    BatchCheckSummary,
    CrawlSettingsData,
    DuplicateCheckResult,
)
from comicrawl.services.checkpoint_store import CheckpointStore
from comicrawl.services.lifecycle import Finished, JobLifecycle
from comicrawl.services.progress_tracker import ProgressTracker
from comicrawl.utils.exceptions import (
    ConcurrencyLimitError,
    DuplicateCrawlError,
    InvalidTransitionError,
    JobNotFoundError,
)
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


class JobService:
    """
    Operator-facing job operations.

    Usage:
        service = JobService(services)
        job = await service.create("https://example.com/truyen/foo", operator="alice")
        await service.start(job.id)
    """

    def __init__(
        self,
        services: CrawlServices,
        lifecycle: JobLifecycle | None = None,
    ) -> None:
        self.services = services
        self.lifecycle = lifecycle or JobLifecycle(services.events)

    @property
    def settings(self) -> Settings:
        return self.services.settings

    def _session(self):
        return get_session(self.services.session_factory)

    def default_settings(self) -> CrawlSettingsData:
        return CrawlSettingsData(
            parallel_limit=self.settings.default_parallel_limit,
            image_quality=self.settings.default_image_quality,
            timeout_seconds=self.settings.default_timeout_seconds,
        )

    # ============================================================
    # Creation
    # ============================================================

    async def create(
        self,
        url: str,
        *,
        level: JobLevel = JobLevel.COMIC,
        operator: str = "system",
        name: str = "",
        download_mode: DownloadMode = DownloadMode.FULL,
        settings: CrawlSettingsData | None = None,
    ) -> CrawlJob:
        """
        Create a PENDING root job.

        A FULL COMIC crawl of something already catalogued with chapters
        is switched to UPDATE and linked to the existing record, so only
        new chapters are fetched.

        Raises:
            DuplicateCrawlError: If a crawl of ``url`` is already pending, running or paused
        """
        async with self._session() as session:
            active = await self.services.detector.find_active_in_session(session, url)
            if active is not None:
                raise DuplicateCrawlError(url, active.id)

            content_id = -1
            if level is JobLevel.COMIC and download_mode is DownloadMode.FULL:
                duplicate = await self.services.detector.check_in_session(session, url)
                if suggest_mode(duplicate) is DownloadMode.UPDATE:
                    download_mode = DownloadMode.UPDATE
                    content_id = duplicate.existing_content_id if duplicate.existing_content_id is not None else -1
                    logger.info(
                        "Existing comic found, switching to update mode",
                        url=url,
                        match_type=duplicate.match_type.value,
                        content_id=content_id,
                    )

            job = await JobRepository.create(
                session,
                level=level,
                target_url=url,
                target_name=name,
                download_mode=download_mode,
                created_by=operator,
                content_id=content_id,
                settings=settings or self.default_settings(),
            )
        return job

    # ============================================================
    # State machine
    # ============================================================

    async def _check_capacity(self, session: AsyncSession, operator: str) -> None:
        """
        Raises:
            ConcurrencyLimitError: If either running-job ceiling is reached
        """
        total_limit = self.settings.max_running_total
        if await JobRepository.count_running_roots(session) >= total_limit:
            raise ConcurrencyLimitError(
                f"System-wide limit of {total_limit} running crawls reached",
                limit=total_limit,
            )
        operator_limit = self.settings.max_running_per_operator
        if await JobRepository.count_running_roots(session, operator) >= operator_limit:
            raise ConcurrencyLimitError(
                f"Operator {operator} already runs {operator_limit} crawls",
                operator=operator,
                limit=operator_limit,
            )

    async def start(self, job_id: int) -> CrawlJob:
        """
        PENDING → RUNNING for a root job.

        Raises:
            JobNotFoundError: If the job doesn't exist
            InvalidTransitionError: If the job is not a PENDING root
            ConcurrencyLimitError: If a running-job ceiling is reached;
                the job stays PENDING for the next drain
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id)
            if job.parent_id is not None:
                raise InvalidTransitionError(job_id, JobStatus(job.status).value, JobStatus.RUNNING.value)
            await self._check_capacity(session, job.created_by)
            await JobRepository.require_transition(
                session, job_id, JobStatus.RUNNING, allowed_from=[JobStatus.PENDING]
            )
            await ProgressTracker.add_message(session, job_id, "Crawl queued for execution")
            job = await JobRepository.get_by_id(session, job_id)

        self.services.signal.invalidate(job_id)
        return job

    async def pause(self, job_id: int) -> list[int]:
        """
        RUNNING → PAUSED for the job and its running descendants.

        Handlers notice at their next item boundary and checkpoint there.

        Raises:
            InvalidTransitionError: If the job itself is not RUNNING
        """
        async with self._session() as session:
            await JobRepository.require_transition(session, job_id, JobStatus.PAUSED)
            paused = [job_id]
            for descendant_id in (await JobRepository.subtree_ids(session, job_id, include_deleted=False))[1:]:
                if await JobRepository.transition(session, descendant_id, JobStatus.PAUSED):
                    paused.append(descendant_id)
            await ProgressTracker.add_message(session, job_id, "Pause requested")

        for paused_id in paused:
            self.services.signal.mark_paused(paused_id)
        logger.info("Job paused", job_id=job_id, cascaded=len(paused) - 1)
        return paused

    async def resume(self, job_id: int) -> CrawlJob:
        """
        PAUSED → RUNNING for the job and its paused descendants.

        Resumed child jobs get their queue row back; the handler resumes
        from the checkpoint cursor.

        Raises:
            InvalidTransitionError: If the job is not PAUSED
            ConcurrencyLimitError: If resuming a root would exceed a ceiling
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id)
            if job.parent_id is None:
                await self._check_capacity(session, job.created_by)
            await JobRepository.require_transition(
                session, job_id, JobStatus.RUNNING, allowed_from=[JobStatus.PAUSED]
            )
            resumed = [job_id]
            for descendant_id in (await JobRepository.subtree_ids(session, job_id, include_deleted=False))[1:]:
                if await JobRepository.transition(
                    session, descendant_id, JobStatus.RUNNING, allowed_from=[JobStatus.PAUSED]
                ):
                    resumed.append(descendant_id)

            for resumed_id in resumed:
                resumed_job = await JobRepository.get_by_id(session, resumed_id)
                checkpoint = await CheckpointStore.record_resume(session, resumed_id)
                await ProgressTracker.add_message(
                    session, resumed_id, f"Resumed at item {checkpoint.last_item_index + 1}"
                )
                if resumed_job.parent_id is not None:
                    await QueueRepository.requeue_position(
                        session, resumed_job.parent_id, resumed_job.item_index
                    )
            job = await JobRepository.get_by_id(session, job_id)

        for resumed_id in resumed:
            self.services.signal.invalidate(resumed_id)
        return job

    async def retry(self, job_id: int) -> CrawlJob:
        """
        Run a FAILED job again.

        A root goes FAILED → RUNNING (retry count +1) and is executed by
        the caller. A child is retried through its parent: its index is
        reset so the next drain claims it again.

        Raises:
            InvalidTransitionError: If the job is not FAILED
            ConcurrencyLimitError: If retrying a root would exceed a ceiling
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id)
            if job.status is not JobStatus.FAILED:
                raise InvalidTransitionError(job_id, JobStatus(job.status).value, JobStatus.RUNNING.value)

            if job.parent_id is not None:
                if job.parent_notified:
                    parent = await JobRepository.get_by_id(session, job.parent_id)
                    await self._retry_items(session, parent, [job.item_index])
                else:
                    # Failure still awaiting an automatic retry: make it due now
                    await QueueRepository.requeue_position(session, job.parent_id, job.item_index)
            else:
                await self._check_capacity(session, job.created_by)
                await JobRepository.require_transition(
                    session,
                    job_id,
                    JobStatus.RUNNING,
                    allowed_from=[JobStatus.FAILED],
                    increment_retry=True,
                )
                await self.lifecycle.reopen(session, job_id)
                await ProgressTracker.add_message(session, job_id, "Retrying crawl")
            job = await JobRepository.get_by_id(session, job_id)

        self.services.signal.invalidate(job_id)
        return job

    async def retry_failed_items(self, job_id: int, indices: Iterable[int] | None = None) -> int:
        """
        Reset failed children of a job so they run again.

        With ``indices`` None every failed child is retried, and for a
        COMIC also every failed image recorded in its nested map. Returns
        the number of children reset.

        Raises:
            InvalidTransitionError: If the job has nothing failed to retry
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id)
            checkpoint = await CheckpointStore.get(session, job_id)
            if job.failed_items <= 0 and not checkpoint.failed_nested:
                raise InvalidTransitionError(job_id, JobStatus(job.status).value, JobStatus.RUNNING.value)

            targets = set(checkpoint.failed_indices)
            if indices is not None:
                targets &= set(indices)
            count = await self._retry_items(session, job, sorted(targets))

            if indices is None and job.level is JobLevel.COMIC:
                for chapter_index, image_indices in dict(checkpoint.failed_nested or {}).items():
                    chapter = await JobRepository.get_child(session, job_id, int(chapter_index))
                    if chapter is not None:
                        count += await self._retry_items(session, chapter, image_indices)

        self.services.signal.invalidate(job_id)
        logger.info("Failed items reset for retry", job_id=job_id, count=count)
        return count

    async def _retry_items(
        self,
        session: AsyncSession,
        job: CrawlJob,
        indices: Sequence[int],
    ) -> int:
        if not indices:
            return 0

        child_ids = []
        for index in indices:
            child = await JobRepository.get_child(session, job.id, index)
            if child is not None and child.status is JobStatus.FAILED and child.parent_notified:
                child_ids.append(child.id)

        await CheckpointStore.remove_failed(session, job.id, indices)
        if job.level is JobLevel.CHAPTER and job.parent_id is not None:
            await CheckpointStore.remove_nested_failures(session, job.parent_id, job.item_index, indices)
        await JobRepository.increment_counters(session, job.id, failed=-len(child_ids))
        await JobRepository.clear_parent_notified(session, child_ids)
        await QueueRepository.reset_positions(session, job.id, indices)
        await self._reopen(session, job.id)
        await ProgressTracker.sync(session, job.id)
        await ProgressTracker.add_message(session, job.id, f"Retrying {len(child_ids)} failed items")
        return len(child_ids)

    async def _reopen(self, session: AsyncSession, job_id: int) -> None:
        """
        COMPLETED → RUNNING, taking the completion back from every
        ancestor it was counted in.
        """
        if not await JobRepository.transition(
            session, job_id, JobStatus.RUNNING, allowed_from=[JobStatus.COMPLETED]
        ):
            return
        job = await JobRepository.get_by_id(session, job_id)
        if job.parent_id is None or not job.parent_notified:
            return
        await JobRepository.increment_counters(session, job.parent_id, completed=-1)
        await JobRepository.clear_parent_notified(session, [job_id])
        await ProgressTracker.sync(session, job.parent_id)
        await self._reopen(session, job.parent_id)

    async def cancel(self, job_id: int) -> list[int]:
        """
        Cancel a job and all its non-terminal descendants.

        Raises:
            InvalidTransitionError: If the job is already terminal
        """
        async with self._session() as session:
            cancelled = await self.lifecycle.cancel_subtree(session, job_id)

        for cancelled_id in cancelled:
            self.services.signal.mark_cancelled(cancelled_id)
        await self.lifecycle.announce([Finished(i, JobStatus.CANCELLED) for i in cancelled])
        return cancelled

    # ============================================================
    # Delete / restore / settings
    # ============================================================

    async def soft_delete(self, job_id: int) -> int:
        """
        Raises:
            InvalidTransitionError: If the job is already deleted
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id, include_deleted=True)
            if job.deleted_at is not None:
                raise InvalidTransitionError(job_id, "deleted", "deleted")
            ids = await JobRepository.subtree_ids(session, job_id, include_deleted=False)
            count = await JobRepository.soft_delete(session, ids)

        for deleted_id in ids:
            self.services.signal.invalidate(deleted_id)
        return count

    async def restore(self, job_id: int) -> int:
        """
        Raises:
            InvalidTransitionError: If the job is not deleted
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id, include_deleted=True)
            if job.deleted_at is None:
                raise InvalidTransitionError(job_id, "active", "restored")
            ids = await JobRepository.subtree_ids(session, job_id)
            count = await JobRepository.restore(session, ids)

        for restored_id in ids:
            self.services.signal.invalidate(restored_id)
        return count

    async def purge(self, job_id: int) -> int:
        """
        Hard-delete a soft-deleted job and its subtree.

        Raises:
            InvalidTransitionError: If the job has not been soft-deleted first
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id, include_deleted=True)
            if job.deleted_at is None:
                raise InvalidTransitionError(job_id, "active", "purged")
            ids = await JobRepository.subtree_ids(session, job_id)
            return await JobRepository.purge(session, ids)

    async def update_settings(self, job_id: int, settings: CrawlSettingsData) -> CrawlSettingsData:
        """
        Replace a job's settings. Takes effect the next time its handler runs.

        Raises:
            InvalidTransitionError: If the job was cancelled
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id)
            if job.status is JobStatus.CANCELLED:
                raise InvalidTransitionError(job_id, JobStatus(job.status).value, "reconfigured")
            return await JobRepository.update_settings(session, job_id, settings)

    # ============================================================
    # Queries
    # ============================================================

    async def get_job(self, job_id: int, *, include_deleted: bool = False) -> CrawlJob:
        async with self._session() as session:
            return await JobRepository.get_by_id(session, job_id, include_deleted=include_deleted)

    async def get_settings(self, job_id: int) -> CrawlSettingsData:
        async with self._session() as session:
            await JobRepository.get_by_id(session, job_id)
            return await JobRepository.get_settings(session, job_id)

    async def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        level: JobLevel | None = None,
        roots_only: bool = True,
        limit: int = 50,
        offset: int = 0,
    ) -> list[CrawlJob]:
        async with self._session() as session:
            return await JobRepository.list_recent(
                session,
                status=status,
                level=level,
                roots_only=roots_only,
                limit=limit,
                offset=offset,
            )

    async def list_children(
        self,
        job_id: int,
        *,
        status: JobStatus | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CrawlJob]:
        async with self._session() as session:
            await JobRepository.get_by_id(session, job_id)
            return await JobRepository.list_children(
                session, job_id, status=status, limit=limit, offset=offset
            )

    async def get_progress(self, job_id: int) -> tuple[CrawlJob, CrawlProgress, CrawlCheckpoint]:
        """
        Raises:
            JobNotFoundError: If the job doesn't exist
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id_or_none(session, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            progress = await ProgressTracker.get(session, job_id)
            checkpoint = await CheckpointStore.get(session, job_id)
            return job, progress, checkpoint

    async def get_stats(self) -> dict:
        async with self._session() as session:
            return await JobRepository.get_stats(session)

    # ============================================================
    # Duplicates
    # ============================================================

    async def check_duplicate(self, url: str, *, include_content_hash: bool = False) -> DuplicateCheckResult:
        return await self.services.detector.check_url(url, include_content_hash=include_content_hash)

    async def check_duplicates(
        self,
        urls: Iterable[str],
    ) -> tuple[dict[str, DuplicateCheckResult], BatchCheckSummary]:
        results = await self.services.detector.batch_check(urls)
        return results, self.services.detector.summarize(results)

    async def merge(self, primary_id: int, secondary_id: int) -> Comic:
        """
        Raises:
            MergeConflictError: If the records cannot be merged
            ContentNotFoundError: If either record is missing
        """
        return await self.services.detector.merge_comics(primary_id, secondary_id)
