"""
Level handler contract.

One handler per job level does that level's work with whichever content
extractor the target's domain maps to; the engine composes the pair at
dispatch time. Parent levels share the enqueue loop below: it sets the
job total up front, then enqueues one child per selected index with a
checkpoint write after each, checking the pause/cancel signal first.
"""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import ClassVar

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.core.config import Settings
from comicrawl.core.signals import PauseSignal
from comicrawl.database.connection import get_session
from comicrawl.database.models import DownloadMode, JobLevel
from comicrawl.database.queue_repository import QueueRepository
from comicrawl.database.repository import JobRepository
from comicrawl.extractors.base import ContentExtractor
from comicrawl.extractors.registry import ExtractorRegistry
from comicrawl.models.schemas import ChildLink, CrawlSettingsData
from comicrawl.services.checkpoint_store import CheckpointStore
from comicrawl.services.duplicate_service import DuplicateDetector
from comicrawl.services.events import EventKind, EventSink, publish_safely
from comicrawl.services.fetch_client import FetchClient
from comicrawl.services.progress_tracker import ProgressTracker
from comicrawl.services.storage import ObjectStore
from comicrawl.utils.logging import get_logger
from comicrawl.utils.urls import domain_of


class HandlerOutcome(str, Enum):
    """How a handler run ended when it did not raise."""

    COMPLETED = "completed"
    AWAITING_CHILDREN = "awaiting_children"


@dataclass
class CrawlServices:
    """Collaborators shared by every handler."""

    session_factory: async_sessionmaker[AsyncSession]
    settings: Settings
    fetch_client: FetchClient
    extractors: ExtractorRegistry
    signal: PauseSignal
    store: ObjectStore
    events: EventSink
    detector: DuplicateDetector


@dataclass
class HandlerContext:
    """Detached snapshot of the job being executed."""

    job_id: int
    level: JobLevel
    target_url: str
    target_name: str
    item_index: int
    parent_id: int | None
    content_id: int
    download_mode: DownloadMode
    settings: CrawlSettingsData
    extractor: ContentExtractor
    resume_index: int = 0

    @property
    def domain(self) -> str:
        return domain_of(self.target_url)

    @property
    def headers(self) -> dict[str, str]:
        return dict(self.settings.custom_headers)


class LevelHandler(ABC):
    """Base class for the CATEGORY, COMIC, CHAPTER and IMAGE handlers."""

    level: ClassVar[JobLevel]

    def __init__(self, services: CrawlServices) -> None:
        self.services = services
        self._logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def run(self, ctx: HandlerContext) -> HandlerOutcome:
        """
        Do this level's work for one job.

        Raises:
            CrawlInterrupted: Pause or cancel observed between items
            CrawlError: Extraction, fetch or storage failure
        """

    def session(self):
        return get_session(self.services.session_factory)

    async def note(self, job_id: int, message: str) -> None:
        async with self.session() as session:
            await ProgressTracker.add_message(session, job_id, message)


class ParentHandler(LevelHandler):
    """Handler whose work is discovering and enqueueing the next level."""

    async def dispatch_children(
        self,
        ctx: HandlerContext,
        links: Sequence[ChildLink],
        selected: Sequence[int],
    ) -> HandlerOutcome:
        """
        Enqueue ``links[i]`` for each selected index from the resume point on.

        Positions queued by an earlier run stay part of the selection, so
        the total does not move when a resumed run sees a different
        catalog state.
        """
        child_level = ctx.level.child_level
        if child_level is None:
            raise ValueError(f"{ctx.level.value} jobs have no children")

        async with self.session() as session:
            already = await QueueRepository.positions_for_job(session, ctx.job_id)
            indices = sorted({i for i in selected if 0 <= i < len(links)} | already)
            await JobRepository.set_total(session, ctx.job_id, len(indices))
            await ProgressTracker.sync(session, ctx.job_id)

        self._logger.info(
            "Children selected",
            job_id=ctx.job_id,
            discovered=len(links),
            selected=len(indices),
            resume_index=ctx.resume_index,
        )

        last_index = ctx.resume_index - 1
        enqueued = 0
        for index in indices:
            if index < ctx.resume_index:
                continue
            await self.services.signal.check(ctx.job_id, last_index)

            link = links[index] if index < len(links) else None
            async with self.session() as session:
                if link is not None:
                    created = await QueueRepository.enqueue(
                        session,
                        ctx.job_id,
                        child_level,
                        [(index, link)],
                        max_retries=self.services.settings.queue_max_retries,
                    )
                    enqueued += len(created)
                await CheckpointStore.save_progress(session, ctx.job_id, index)
                await ProgressTracker.set_current(
                    session,
                    ctx.job_id,
                    index,
                    name=link.name if link else None,
                    url=link.url if link else None,
                )
            last_index = index

        await publish_safely(
            self.services.events,
            ctx.job_id,
            EventKind.PROGRESS,
            {"discovered": len(links), "selected": len(indices), "enqueued": enqueued},
        )
        return HandlerOutcome.AWAITING_CHILDREN
