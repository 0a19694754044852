"""
Queue processor: admission, claim-based dispatch and retry scheduling.

Each drain resumes RUNNING roots left behind by a dead worker, admits
PENDING root jobs while the running-job ceilings allow, runs them, then
claims ready queue rows in batches and executes each as a child job
until nothing is ready. Workers coordinate only through the claim
protocol, so several processes can drain one database.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import timedelta

from comicrawl.core.config import Settings, get_settings
from comicrawl.core.engine import CrawlEngine, ExecutionResult, ExecutionStatus
from comicrawl.database.connection import get_session
from comicrawl.database.models import (
    CrawlJob,
    CrawlQueueEntry,
    DownloadMode,
    JobLevel,
    JobStatus,
)
from comicrawl.database.queue_repository import QueueRepository
from comicrawl.database.repository import JobRepository
from comicrawl.models.schemas import ChildLink, CrawlSettingsData
from comicrawl.services.checkpoint_store import CheckpointStore
from comicrawl.services.error_policy import CrawlErrorType, RetryPolicy, is_store_failure
from comicrawl.services.events import EventKind, publish_safely
from comicrawl.services.lifecycle import Finished
from comicrawl.utils.clock import utcnow
from comicrawl.utils.exceptions import CrawlError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.urls import normalize_url

logger = get_logger(__name__)

STALE_CLAIM_AGE = timedelta(hours=1)


@dataclass
class DrainReport:
    recovered: int = 0
    requeued: int = 0
    admitted: list[int] = field(default_factory=list)
    resumed: list[int] = field(default_factory=list)
    processed: int = 0
    batches: int = 0


class QueueProcessor:
    """
    Drains the crawl queue.

    Usage:
        processor = QueueProcessor(engine)
        report = await processor.drain()
    """

    def __init__(
        self,
        engine: CrawlEngine,
        settings: Settings | None = None,
        policy: RetryPolicy | None = None,
    ) -> None:
        self.engine = engine
        self.settings = settings or get_settings()
        self.policy = policy or RetryPolicy(
            self.settings.retry_base_delay_seconds, self.settings.retry_max_delay_seconds
        )
        self._drain_lock = asyncio.Lock()
        self._drain_requested = asyncio.Event()

    @property
    def _session_factory(self):
        return self.engine.services.session_factory

    def _session(self):
        return get_session(self._session_factory)

    # ============================================================
    # Admission
    # ============================================================

    async def admit_pending(self) -> list[int]:
        """Start PENDING root jobs, oldest first, while both ceilings allow."""
        max_total = self.settings.max_running_total
        max_per_operator = self.settings.max_running_per_operator
        admitted: list[int] = []

        async with self._session() as session:
            running_total = await JobRepository.count_running_roots(session)
            if running_total >= max_total:
                return admitted
            per_operator = await JobRepository.running_roots_by_operator(session)

            for job in await JobRepository.list_pending_roots(session, limit=max_total * 4):
                if running_total >= max_total:
                    break
                if per_operator.get(job.created_by, 0) >= max_per_operator:
                    continue
                if await JobRepository.transition(
                    session, job.id, JobStatus.RUNNING, allowed_from=[JobStatus.PENDING]
                ):
                    running_total += 1
                    per_operator[job.created_by] = per_operator.get(job.created_by, 0) + 1
                    admitted.append(job.id)

        for job_id in admitted:
            self.engine.services.signal.invalidate(job_id)
        if admitted:
            logger.info("Pending jobs admitted", count=len(admitted), job_ids=admitted)
        return admitted

    # ============================================================
    # Execution
    # ============================================================

    async def run_job(self, job_id: int) -> ExecutionResult:
        """
        Execute a root job directly (roots have no queue entry).

        A root failure is final; retrying it is an operator action.
        """
        result = await self.engine.execute(job_id)
        if result.status is ExecutionStatus.FAILED:
            async with self._session() as session:
                finished = await self.engine.lifecycle.fail(session, job_id, result.error or "Crawl failed")
            await self.engine.lifecycle.announce(finished)
        return result

    async def process_entry(self, entry: CrawlQueueEntry) -> ExecutionResult | None:
        """
        Materialize and execute the child job behind a claimed entry.

        A store failure releases the entry back to PENDING untouched.
        """
        try:
            async with self._session() as session:
                job_id, created = await self._materialize(session, entry)
            if job_id is None:
                return None
            if created:
                await publish_safely(
                    self.engine.services.events,
                    entry.job_id,
                    EventKind.CHILD_CREATED,
                    {"child_id": job_id, "level": entry.level.value, "position": entry.position},
                )

            result = await self.engine.execute(job_id)
            await self._record_outcome(entry, job_id, result)
            return result

        except Exception as e:
            if not is_store_failure(e):
                raise
            logger.error(
                "Store failure while processing entry, releasing it",
                entry_id=entry.id,
                job_id=entry.job_id,
                error=str(e),
            )
            async with self._session() as session:
                await QueueRepository.release(session, entry.id)
            return None

    async def _materialize(
        self,
        session,
        entry: CrawlQueueEntry,
    ) -> tuple[int | None, bool]:
        """
        Find or create the child job for ``entry`` and make it RUNNING.

        Returns (None, False) when there is nothing to execute; the entry
        has then been settled according to the child's state.
        """
        parent = await JobRepository.get_by_id_or_none(session, entry.job_id)
        if parent is None:
            await QueueRepository.mark_skipped(session, entry.id, "Parent job deleted")
            return None, False

        created = False
        child = await JobRepository.get_child(session, parent.id, entry.position)
        if child is None:
            settings, mode = await self._child_settings(session, parent, entry)
            child = await JobRepository.create(
                session,
                level=entry.level,
                target_url=entry.target_url,
                target_name=entry.target_name,
                parent=parent,
                item_index=entry.position,
                download_mode=mode,
                content_id=parent.content_id if entry.level in (JobLevel.CHAPTER, JobLevel.IMAGE) else -1,
                settings=settings,
            )
            created = True

        match JobStatus(child.status):
            case JobStatus.PENDING:
                await JobRepository.transition(
                    session, child.id, JobStatus.RUNNING, allowed_from=[JobStatus.PENDING]
                )
            case JobStatus.FAILED:
                if await JobRepository.transition(
                    session,
                    child.id,
                    JobStatus.RUNNING,
                    allowed_from=[JobStatus.FAILED],
                    increment_retry=True,
                ):
                    await self.engine.lifecycle.reopen(session, child.id)
            case JobStatus.RUNNING:
                pass
            case JobStatus.PAUSED:
                await QueueRepository.park(session, entry.id, "Job paused")
                return None, False
            case JobStatus.COMPLETED:
                await QueueRepository.mark_completed(session, entry.id)
                return None, False
            case JobStatus.CANCELLED:
                await QueueRepository.mark_skipped(session, entry.id, "Job cancelled")
                return None, False

        return child.id, created

    async def _child_settings(
        self,
        session,
        parent: CrawlJob,
        entry: CrawlQueueEntry,
    ) -> tuple[CrawlSettingsData, DownloadMode]:
        """
        Settings a new child starts with.

        Tuning and headers are inherited; item lists and ranges belong to
        the parent's own children and are reset. A COMIC child of a
        CATEGORY picks up its per-item override, if any. Only COMIC
        children inherit the download mode: chapter and image selection
        has already been narrowed one level up.
        """
        parent_settings = await JobRepository.get_settings(session, parent.id)
        settings = CrawlSettingsData(
            parallel_limit=parent_settings.parallel_limit,
            image_quality=parent_settings.image_quality,
            timeout_seconds=parent_settings.timeout_seconds,
            custom_headers=dict(parent_settings.custom_headers),
        )
        mode = DownloadMode(parent.download_mode) if entry.level is JobLevel.COMIC else DownloadMode.FULL

        if parent.level is JobLevel.CATEGORY:
            override = parent_settings.override_for(normalize_url(entry.target_url))
            if override is not None:
                settings.skip_items = list(override.skip_items)
                settings.redownload_items = list(override.redownload_items)
                settings.range_start = override.range_start
                settings.range_end = override.range_end
                mode = override.download_mode or mode
        return settings, mode

    async def _record_outcome(
        self,
        entry: CrawlQueueEntry,
        job_id: int,
        result: ExecutionResult,
    ) -> None:
        finished: list[Finished] = []
        async with self._session() as session:
            status = result.status
            if status is ExecutionStatus.NOT_RUNNING:
                current = await JobRepository.get_status(session, job_id)
                status = {
                    JobStatus.PAUSED: ExecutionStatus.PAUSED,
                    JobStatus.CANCELLED: ExecutionStatus.CANCELLED,
                    JobStatus.COMPLETED: ExecutionStatus.COMPLETED,
                }.get(current, ExecutionStatus.NOT_RUNNING)

            match status:
                case ExecutionStatus.COMPLETED | ExecutionStatus.AWAITING_CHILDREN:
                    await QueueRepository.mark_completed(session, entry.id)
                case ExecutionStatus.PAUSED:
                    # resumed while unwinding: run it again instead of parking
                    if await JobRepository.get_status(session, job_id) is JobStatus.RUNNING:
                        await QueueRepository.release(session, entry.id)
                    else:
                        await QueueRepository.park(session, entry.id, "Job paused")
                case ExecutionStatus.CANCELLED:
                    await QueueRepository.mark_skipped(session, entry.id, "Job cancelled")
                case ExecutionStatus.FAILED:
                    finished = await self._handle_failure(session, entry, job_id, result)
                case _:
                    await QueueRepository.release(session, entry.id)
        await self.engine.lifecycle.announce(finished)

    async def _handle_failure(
        self,
        session,
        entry: CrawlQueueEntry,
        job_id: int,
        result: ExecutionResult,
    ) -> list[Finished]:
        error = result.error or "Crawl failed"
        decision = self.policy.decide(
            result.error_type or CrawlErrorType.UNKNOWN,
            entry.retry_count,
            entry.max_retries,
        )
        if decision.retry:
            # FAILED but not propagated: the parent only counts final outcomes
            await JobRepository.transition(session, job_id, JobStatus.FAILED, error_message=error)
            await QueueRepository.schedule_retry(session, entry.id, decision.delay_seconds, error)
            return []

        await QueueRepository.mark_failed(session, entry.id, error)
        logger.warning(
            "Job failed permanently",
            job_id=job_id,
            error_type=decision.error_type.value,
            action=decision.action.value,
            retries=entry.retry_count,
        )
        return await self.engine.lifecycle.fail(session, job_id, error)

    async def process_next_batch(self, limit: int | None = None) -> int:
        """Claim up to ``limit`` ready entries and execute them concurrently."""
        async with self._session() as session:
            if not await QueueRepository.has_ready(session):
                return 0
            entries = await QueueRepository.claim(session, limit or self.settings.queue_batch_size)
        if not entries:
            return 0

        semaphore = asyncio.Semaphore(self.settings.queue_worker_concurrency)

        async def run(entry: CrawlQueueEntry) -> None:
            async with semaphore:
                await self.process_entry(entry)

        await asyncio.gather(*(run(entry) for entry in entries))
        return len(entries)

    # ============================================================
    # Drain & recovery
    # ============================================================

    async def sweep_orphans(self, limit: int = 100) -> int:
        """Replay propagation for terminal children their parent never counted."""
        async with self._session() as session:
            orphans = await JobRepository.list_unnotified_terminal_children(session, limit=limit)
            finished: list[Finished] = []
            for orphan in orphans:
                finished.extend(await self.engine.lifecycle.propagate(session, orphan.id))
        await self.engine.lifecycle.announce(finished)
        if orphans:
            logger.warning("Orphaned child outcomes replayed", count=len(orphans))
        return len(orphans)

    async def requeue_stale(self, older_than: timedelta = STALE_CLAIM_AGE) -> int:
        async with self._session() as session:
            return await QueueRepository.requeue_stale(session, older_than)

    async def recover_stale_roots(self, older_than: timedelta = STALE_CLAIM_AGE) -> list[int]:
        """
        Claim RUNNING roots whose worker died inside the root handler.

        A running handler moves its checkpoint after every item and its
        children move its counters, so a root where neither changed for
        ``older_than`` has no live worker.
        Touching the checkpoint claims the root for this worker; the caller
        runs it again and the handler resumes after the checkpoint.
        """
        cutoff = utcnow() - older_than
        recovered: list[int] = []
        async with self._session() as session:
            for job in await JobRepository.list_stale_running_roots(session, cutoff):
                if await CheckpointStore.claim_stale(session, job.id, cutoff):
                    recovered.append(job.id)
        if recovered:
            logger.warning("Stale running jobs recovered", count=len(recovered), job_ids=recovered)
        return recovered

    async def drain(self, *, max_batches: int | None = None) -> DrainReport:
        """
        Admit, run and dispatch until no ready entry remains.

        Concurrent calls in the same process serialize.
        """
        async with self._drain_lock:
            report = DrainReport()
            report.recovered = await self.sweep_orphans()
            report.requeued = await self.requeue_stale()
            report.resumed = await self.recover_stale_roots()
            report.admitted = await self.admit_pending()

            semaphore = asyncio.Semaphore(self.settings.queue_worker_concurrency)

            async def run_root(job_id: int) -> None:
                async with semaphore:
                    try:
                        await self.run_job(job_id)
                    except Exception as e:
                        if not is_store_failure(e):
                            raise
                        logger.error("Store failure while running job", job_id=job_id, error=str(e))

            roots = [*report.resumed, *report.admitted]
            await asyncio.gather(*(run_root(job_id) for job_id in roots))

            while max_batches is None or report.batches < max_batches:
                count = await self.process_next_batch()
                if count == 0:
                    break
                report.processed += count
                report.batches += 1

            logger.info(
                "Queue drained",
                admitted=len(report.admitted),
                resumed=len(report.resumed),
                processed=report.processed,
                batches=report.batches,
                recovered=report.recovered,
            )
            return report

    def request_drain(self) -> None:
        """Wake ``run_forever`` now instead of at the next interval."""
        self._drain_requested.set()

    async def _seconds_until_next_drain(self) -> float:
        interval = float(self.settings.drain_interval_seconds)
        async with self._session() as session:
            due = await QueueRepository.next_retry_due(session)
        if due is None:
            return interval
        return max(0.0, min(interval, (due - utcnow()).total_seconds()))

    async def run_forever(self, stop: asyncio.Event | None = None) -> None:
        """
        Drain every ``drain_interval_seconds``, earlier when a delayed
        entry becomes due or ``request_drain`` is called, until ``stop``.
        """
        stop = stop or asyncio.Event()
        logger.info("Queue worker started", interval=self.settings.drain_interval_seconds)

        while not stop.is_set():
            self._drain_requested.clear()
            try:
                await self.drain()
                timeout = await self._seconds_until_next_drain()
            except Exception as e:
                if not is_store_failure(e):
                    raise
                logger.error("Drain aborted by store failure", error=str(e))
                timeout = float(self.settings.drain_interval_seconds)

            waiters = [
                asyncio.create_task(self._drain_requested.wait()),
                asyncio.create_task(stop.wait()),
            ]
            _, pending = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()

        logger.info("Queue worker stopped")

    # ============================================================
    # Operator helpers
    # ============================================================

    async def enqueue_items(
        self,
        job_id: int,
        urls: list[str],
        *,
        priority: int = 0,
    ) -> list[CrawlQueueEntry]:
        """
        Append operator-provided child URLs to a job.

        Raises:
            JobNotFoundError: If the job doesn't exist
            CrawlError: If the job's level has no children
        """
        async with self._session() as session:
            job = await JobRepository.get_by_id(session, job_id)
            child_level = JobLevel(job.level).child_level
            if child_level is None:
                raise CrawlError(
                    f"{JobLevel(job.level).value} jobs have no children",
                    details={"job_id": job_id},
                )

            existing = await QueueRepository.positions_for_job(session, job_id)
            start = max(existing) + 1 if existing else 0
            entries = await QueueRepository.enqueue(
                session,
                job_id,
                child_level,
                [(start + i, ChildLink(url=url)) for i, url in enumerate(urls)],
                priority=priority,
                max_retries=self.settings.queue_max_retries,
            )
            await JobRepository.set_total(session, job_id, job.total_items + len(entries))

        logger.info("Items enqueued by operator", job_id=job_id, count=len(entries))
        self.request_drain()
        return entries

    async def stats(self) -> dict:
        async with self._session() as session:
            return {
                "queue": await QueueRepository.count_by_status(session),
                "jobs": await JobRepository.get_stats(session),
                "running_roots": await JobRepository.running_roots_by_operator(session),
                "limits": {
                    "per_operator": self.settings.max_running_per_operator,
                    "total": self.settings.max_running_total,
                },
            }


async def execute_crawl_job(processor: QueueProcessor, job_id: int) -> None:
    """
    Run a started root job as a background task, then wake the drain
    loop so its children get picked up.

    This is the entry point for FastAPI BackgroundTasks; nothing is
    raised to the caller.
    """
    logger.info("Background crawl started", job_id=job_id)
    try:
        result = await processor.run_job(job_id)
        logger.info("Background crawl finished", job_id=job_id, status=result.status.value)
    except Exception as e:
        logger.error(
            "Background crawl failed unexpectedly",
            job_id=job_id,
            error=str(e),
            exc_type=type(e).__name__,
        )
    finally:
        processor.request_drain()
