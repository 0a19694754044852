"""
Wiring for the crawl core.

Builds the shared collaborators once and hands out the engine, queue
processor and job service that the API and CLI drive.
"""

from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.core.config import Settings, get_settings
from comicrawl.core.engine import CrawlEngine
from comicrawl.core.signals import PauseSignal
from comicrawl.database.connection import get_session_factory
from comicrawl.extractors.registry import ExtractorRegistry
from comicrawl.handlers.base import CrawlServices
from comicrawl.services.duplicate_service import DuplicateDetector
from comicrawl.services.events import EventSink, create_event_sink
from comicrawl.services.fetch_client import FetchClient
from comicrawl.services.job_service import JobService
from comicrawl.services.queue_processor import QueueProcessor
from comicrawl.services.storage import LocalImageStore, ObjectStore
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class CrawlRuntime:
    services: CrawlServices
    engine: CrawlEngine
    processor: QueueProcessor
    jobs: JobService

    async def close(self) -> None:
        await self.services.fetch_client.close()
        close_events = getattr(self.services.events, "close", None)
        if close_events is not None:
            await close_events()
        logger.info("Crawl runtime closed")


def build_runtime(
    settings: Settings | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    *,
    fetch_client: FetchClient | None = None,
    extractors: ExtractorRegistry | None = None,
    store: ObjectStore | None = None,
    events: EventSink | None = None,
) -> CrawlRuntime:
    """
    Assemble a runtime; any collaborator can be swapped (tests pass fakes).
    """
    settings = settings or get_settings()
    session_factory = session_factory or get_session_factory()
    fetch_client = fetch_client or FetchClient(settings)
    extractors = extractors or ExtractorRegistry(fetch_client, settings)

    services = CrawlServices(
        session_factory=session_factory,
        settings=settings,
        fetch_client=fetch_client,
        extractors=extractors,
        signal=PauseSignal(session_factory, ttl_seconds=settings.signal_ttl_seconds),
        store=store or LocalImageStore(settings.storage_dir),
        events=events or create_event_sink(settings),
        detector=DuplicateDetector(
            session_factory, settings, fetch_client=fetch_client, extractors=extractors
        ),
    )
    engine = CrawlEngine(services)
    return CrawlRuntime(
        services=services,
        engine=engine,
        processor=QueueProcessor(engine, settings),
        jobs=JobService(services, engine.lifecycle),
    )
