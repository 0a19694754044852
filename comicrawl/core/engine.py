"""
Crawl Engine - executes one job with the handler for its level.

Composes the level handler with the content extractor picked for the
job's domain, runs it, and turns the way it ended into a lifecycle step:
completion, a paused checkpoint, a cancel acknowledgement, or a failure
report the caller decides to retry or not.
"""

from dataclasses import dataclass
from enum import Enum

from comicrawl.database.connection import get_session
from comicrawl.database.models import DownloadMode, JobLevel, JobStatus
from comicrawl.database.repository import JobRepository
from comicrawl.handlers.base import (
    CrawlServices,
    HandlerContext,
    HandlerOutcome,
    LevelHandler,
)
from comicrawl.handlers.category import CategoryHandler
from comicrawl.handlers.chapter import ChapterHandler
from comicrawl.handlers.comic import ComicHandler
from comicrawl.handlers.image import ImageHandler
from comicrawl.services.checkpoint_store import CheckpointStore, resume_index
from comicrawl.services.error_policy import CrawlErrorType, classify_error, is_store_failure
from comicrawl.services.lifecycle import JobLifecycle
from comicrawl.services.progress_tracker import ProgressTracker
from comicrawl.utils.exceptions import CrawlError, CrawlInterrupted
from comicrawl.utils.logging import bound_context, get_logger

logger = get_logger(__name__)


class ExecutionStatus(str, Enum):
    COMPLETED = "completed"
    AWAITING_CHILDREN = "awaiting_children"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FAILED = "failed"
    NOT_RUNNING = "not_running"


@dataclass
class ExecutionResult:
    job_id: int
    status: ExecutionStatus
    error: str | None = None
    error_type: CrawlErrorType | None = None
    last_index: int | None = None


class CrawlEngine:
    """
    Executes crawl jobs.

    Usage:
        engine = CrawlEngine(services)
        result = await engine.execute(job_id)
    """

    def __init__(self, services: CrawlServices, lifecycle: JobLifecycle | None = None) -> None:
        self.services = services
        self.lifecycle = lifecycle or JobLifecycle(services.events)
        self._handlers: dict[JobLevel, LevelHandler] = {
            handler.level: handler
            for handler in (
                CategoryHandler(services),
                ComicHandler(services),
                ChapterHandler(services),
                ImageHandler(services),
            )
        }

    def handler_for(self, level: JobLevel) -> LevelHandler:
        return self._handlers[level]

    async def execute(self, job_id: int) -> ExecutionResult:
        """
        Run the handler of a RUNNING job from its checkpoint.

        Raises:
            DatabaseError: Store failure; nothing about the outcome was persisted
        """
        self.services.signal.invalidate(job_id)

        async with get_session(self.services.session_factory) as session:
            job = await JobRepository.get_by_id_or_none(session, job_id)
            if job is None or job.status is not JobStatus.RUNNING:
                return ExecutionResult(job_id, ExecutionStatus.NOT_RUNNING)

            checkpoint = await CheckpointStore.get(session, job_id)
            ctx = HandlerContext(
                job_id=job.id,
                level=JobLevel(job.level),
                target_url=job.target_url,
                target_name=job.target_name,
                item_index=job.item_index,
                parent_id=job.parent_id,
                content_id=job.content_id,
                download_mode=DownloadMode(job.download_mode),
                settings=await JobRepository.get_settings(session, job_id),
                extractor=self.services.extractors.for_url(job.target_url),
                resume_index=resume_index(checkpoint),
            )
            await ProgressTracker.start(
                session,
                job_id,
                "Crawl started" if ctx.resume_index == 0 else f"Resuming at item {ctx.resume_index}",
            )

        with bound_context(job_id=job_id, level=ctx.level.value):
            logger.info(
                "Job execution started",
                url=ctx.target_url,
                extractor=ctx.extractor.name,
                resume_index=ctx.resume_index,
            )
            try:
                outcome = await self.handler_for(ctx.level).run(ctx)
            except CrawlInterrupted as e:
                return await self._interrupted(e)
            except Exception as e:
                if is_store_failure(e):
                    raise
                return await self._failed(job_id, e)

            async with get_session(self.services.session_factory) as session:
                if outcome is HandlerOutcome.COMPLETED:
                    finished = await self.lifecycle.complete(session, job_id)
                else:
                    finished = await self.lifecycle.settle(session, job_id)
            await self.lifecycle.announce(finished)

            logger.info("Job execution finished", outcome=outcome.value)
            return ExecutionResult(job_id, ExecutionStatus(outcome.value))

    async def _interrupted(self, interrupt: CrawlInterrupted) -> ExecutionResult:
        job_id = interrupt.job_id
        if interrupt.cancelled:
            async with get_session(self.services.session_factory) as session:
                await CheckpointStore.save_progress(session, job_id, interrupt.last_index)
            logger.info("Job execution cancelled", last_index=interrupt.last_index)
            return ExecutionResult(job_id, ExecutionStatus.CANCELLED, last_index=interrupt.last_index)

        async with get_session(self.services.session_factory) as session:
            await CheckpointStore.record_pause(session, job_id, interrupt.last_index)
            await ProgressTracker.add_message(session, job_id, f"Paused at item {interrupt.last_index}")
        logger.info("Job execution paused", last_index=interrupt.last_index)
        return ExecutionResult(job_id, ExecutionStatus.PAUSED, last_index=interrupt.last_index)

    async def _failed(self, job_id: int, error: Exception) -> ExecutionResult:
        error_type = classify_error(error)
        message = error.message if isinstance(error, CrawlError) else str(error) or type(error).__name__

        async with get_session(self.services.session_factory) as session:
            await ProgressTracker.record_error(session, job_id, message)

        logger.warning(
            "Job execution failed",
            error=message,
            error_type=error_type.value,
            exc_type=type(error).__name__,
        )
        return ExecutionResult(job_id, ExecutionStatus.FAILED, error=message, error_type=error_type)
