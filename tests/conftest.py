"""
Pytest configuration and fixtures.

Provides shared fixtures for testing the crawl core, the job API and
the repositories.

Modern pytest-asyncio configuration (v0.23+):

Configuration in pyproject.toml:
    asyncio_mode = "auto"
        - Auto-detects async test functions
        - No need for @pytest.mark.asyncio decorator

    asyncio_default_fixture_loop_scope = "session"
        - Async fixtures share session-scoped event loop by default

Fixture scoping patterns:
    @pytest_asyncio.fixture(loop_scope="session", scope="function")
        - loop_scope: which event loop to run in (session = shared)
        - scope: how long to cache fixture value (function = fresh each test)

Database fixtures come in two flavours. ``test_session`` is an
in-memory SQLite session for sequential repository tests. Anything that
runs the queue processor uses ``session_factory``, a file-backed SQLite
database under ``tmp_path``, because concurrent sessions need separate
connections.
"""

import os
from collections.abc import AsyncGenerator, Mapping
from pathlib import Path
from typing import Any

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

TEST_API_KEY = "test-api-key-for-testing-purposes-1234567890"

# create_app() and get_settings() read the environment
os.environ.setdefault("API_KEY", TEST_API_KEY)
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("EMBEDDED_WORKER", "false")

from comicrawl.core.config import Settings  # noqa: E402
from comicrawl.core.runtime import CrawlRuntime, build_runtime  # noqa: E402
from comicrawl.database.connection import (  # noqa: E402
    create_engine_for_url,
    create_session_factory,
    get_session,
    init_db,
)
from comicrawl.database.models import Base, DownloadMode, JobLevel  # noqa: E402
from comicrawl.extractors.base import ContentExtractor  # noqa: E402
from comicrawl.extractors.registry import ExtractorRegistry  # noqa: E402
from comicrawl.models.schemas import (  # noqa: E402
    ChapterInfo,
    ChildLink,
    ComicInfo,
    CrawlSettingsData,
    LeafQuery,
)
from comicrawl.services.events import EventKind  # noqa: E402
from comicrawl.services.fetch_client import FetchClient  # noqa: E402
from comicrawl.utils.exceptions import ExtractionError  # noqa: E402
from comicrawl.utils.urls import extract_slug  # noqa: E402

SITE_DOMAIN = "comics.test"
SITE_ROOT = f"https://{SITE_DOMAIN}"
IMAGE_ROOT = "https://img.test"


# ============================================================
# Fake source site
# ============================================================


class FakeSite:
    """
    An in-memory comic site.

    Pages (comic info, child links, image lists) are served through
    ``FakeExtractor``; image bytes through ``handle``, an httpx
    MockTransport handler.
    """

    def __init__(self) -> None:
        self.comics: dict[str, ComicInfo] = {}
        self.children: dict[str, list[ChildLink]] = {}
        self.images: dict[str, list[str]] = {}
        self.page_errors: dict[str, Exception] = {}
        self.image_status: dict[str, int] = {}
        self.requests: list[str] = []

    def add_comic(self, slug: str, chapter_sizes: list[int], *, name: str | None = None) -> str:
        """Register a comic with one chapter per entry of ``chapter_sizes``; returns its URL."""
        url = f"{SITE_ROOT}/truyen-tranh/{slug}"
        self.comics[url] = ComicInfo(
            name=name or slug.replace("-", " ").title(),
            source_url=url,
            slug=slug,
        )
        self.children[url] = []
        for number, size in enumerate(chapter_sizes, start=1):
            self.add_chapter(url, number, size)
        return url

    def add_chapter(self, comic_url: str, number: int, size: int) -> str:
        slug = extract_slug(comic_url)
        chapter_url = f"{comic_url}/chapter-{number}"
        self.children[comic_url].append(ChildLink(url=chapter_url, name=f"Chapter {number}"))
        self.images[chapter_url] = [
            f"{IMAGE_ROOT}/{slug}/{number}/{page}.jpg" for page in range(1, size + 1)
        ]
        return chapter_url

    def add_category(self, slug: str, comic_urls: list[str]) -> str:
        url = f"{SITE_ROOT}/the-loai/{slug}"
        self.children[url] = [ChildLink(url=u, name=extract_slug(u)) for u in comic_urls]
        return url

    def image_url(self, comic_url: str, chapter_number: int, page: int) -> str:
        return self.images[f"{comic_url}/chapter-{chapter_number}"][page]

    def handle(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        status = self.image_status.get(url, 200)
        if status != 200:
            return httpx.Response(status, text="error")
        return httpx.Response(
            200,
            content=f"image:{url}".encode(),
            headers={"content-type": "image/jpeg"},
        )

    def request_count(self, url: str) -> int:
        return self.requests.count(url)

    def _raise_for(self, url: str) -> None:
        if url in self.page_errors:
            raise self.page_errors[url]


class FakeExtractor(ContentExtractor):
    """Extractor reading from a FakeSite instead of the network."""

    name = "fake"

    def __init__(self, site: FakeSite, fetch_client: FetchClient, settings: Settings) -> None:
        super().__init__(fetch_client, settings)
        self.site = site

    def is_structured_source(self) -> bool:
        return True

    async def detect_top_level_info(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ComicInfo:
        self.site._raise_for(url)
        if url not in self.site.comics:
            raise ExtractionError("Comic not found", url=url, extractor=self.name)
        return self.site.comics[url]

    async def list_children(
        self,
        url: str,
        domain: str,
        *,
        level: JobLevel = JobLevel.COMIC,
        headers: Mapping[str, str] | None = None,
    ) -> list[ChildLink]:
        self.site._raise_for(url)
        return list(self.site.children.get(url, []))

    async def list_leaf_urls(self, query: LeafQuery) -> list[str]:
        self.site._raise_for(query.url)
        return list(self.site.images.get(query.url, []))

    async def detect_leaf_info(self, url: str, children: list[str]) -> ChapterInfo:
        return ChapterInfo(name=url.rsplit("/", 1)[-1], source_url=url, image_urls=list(children))


class RecordingSink:
    """Event sink that keeps every published event."""

    def __init__(self) -> None:
        self.events: list[tuple[int, EventKind, dict[str, Any]]] = []

    async def publish(self, job_id: int, kind: EventKind, payload: Mapping[str, Any]) -> None:
        self.events.append((job_id, kind, dict(payload)))

    def of_kind(self, kind: EventKind) -> list[tuple[int, EventKind, dict[str, Any]]]:
        return [event for event in self.events if event[1] is kind]


# ============================================================
# Settings Fixtures
# ============================================================


@pytest.fixture
def test_settings(tmp_path: Path) -> Settings:
    """Create test settings: no waits between retries, no embedded worker."""
    return Settings(
        app_name="Comicrawl Test",
        debug=True,
        log_level="DEBUG",
        api_key=TEST_API_KEY,
        database_url="sqlite+aiosqlite:///:memory:",
        storage_dir=str(tmp_path / "storage"),
        fetch_max_retries=1,
        fetch_retry_delay=0,
        retry_base_delay_seconds=0,
        queue_worker_concurrency=2,
        embedded_worker=False,
        api_base_url="https://gallery.test",
        api_domains=["gallery.test"],
        event_webhook_url=None,
    )


# ============================================================
# Database Fixtures
# ============================================================


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def test_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    """
    Create a test database engine with in-memory SQLite.

    Uses session-scoped event loop but function-scoped caching
    for test isolation.
    """
    engine = create_async_engine(
        test_settings.database_url,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def test_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session with automatic rollback."""
    async_session = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    async with async_session() as session:
        yield session
        await session.rollback()


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def memory_factory(test_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory over the in-memory engine (sequential use only)."""
    return create_session_factory(test_engine)


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def file_engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine, None]:
    """File-backed SQLite engine; every session gets its own connection."""
    engine = create_engine_for_url(f"sqlite+aiosqlite:///{tmp_path / 'crawl.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def session_factory(file_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(file_engine)


# ============================================================
# Runtime Fixtures
# ============================================================


@pytest.fixture
def site() -> FakeSite:
    return FakeSite()


@pytest.fixture
def events() -> RecordingSink:
    return RecordingSink()


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def fetch_client(test_settings: Settings, site: FakeSite) -> AsyncGenerator[FetchClient, None]:
    client = FetchClient(test_settings, transport=httpx.MockTransport(site.handle))
    yield client
    await client.close()


@pytest.fixture
def extractors(
    test_settings: Settings,
    site: FakeSite,
    fetch_client: FetchClient,
) -> ExtractorRegistry:
    registry = ExtractorRegistry(fetch_client, test_settings)
    registry.register(SITE_DOMAIN, FakeExtractor(site, fetch_client, test_settings))
    return registry


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def runtime(
    test_settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    fetch_client: FetchClient,
    extractors: ExtractorRegistry,
    events: RecordingSink,
) -> AsyncGenerator[CrawlRuntime, None]:
    """
    Crawl runtime wired to the fake site and a file database.

    Use ``crawl`` to run a root job and drain its whole tree.
    """
    crawl_runtime = build_runtime(
        test_settings,
        session_factory,
        fetch_client=fetch_client,
        extractors=extractors,
        events=events,
    )
    yield crawl_runtime
    await crawl_runtime.close()


# ============================================================
# Auth Fixtures
# ============================================================


@pytest.fixture
def valid_api_key(test_settings: Settings) -> str:
    """Return the valid test API key."""
    return test_settings.api_key


@pytest.fixture
def invalid_api_key() -> str:
    """Return an invalid API key."""
    return "invalid-key-that-should-fail"


# ============================================================
# HTTP Client Fixtures (for API testing)
# ============================================================


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def test_client(
    test_settings: Settings,
    runtime: CrawlRuntime,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    """
    Create a test client for the FastAPI app.

    The lifespan does not run under ASGITransport, so the test runtime
    is attached to the app directly.
    """
    from httpx import ASGITransport, AsyncClient

    from api.app import create_app
    from comicrawl.core.config import get_settings

    app = create_app()
    app.state.runtime = runtime
    app.dependency_overrides[get_settings] = lambda: test_settings

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


# ============================================================
# Helper Functions
# ============================================================


async def start_root(
    runtime: CrawlRuntime,
    url: str,
    *,
    level: JobLevel = JobLevel.COMIC,
    mode: DownloadMode = DownloadMode.FULL,
    settings: CrawlSettingsData | None = None,
    operator: str = "tester",
) -> int:
    """Create and start a root job, run its own handler once; children stay queued."""
    job = await runtime.jobs.create(
        url, level=level, operator=operator, download_mode=mode, settings=settings
    )
    await runtime.jobs.start(job.id)
    await runtime.processor.run_job(job.id)
    return job.id


async def crawl(runtime: CrawlRuntime, url: str, **kwargs: Any) -> int:
    """Run a root job and drain the queue until its tree has nothing left to do."""
    job_id = await start_root(runtime, url, **kwargs)
    await runtime.processor.drain()
    return job_id


async def reload_job(runtime: CrawlRuntime, job_id: int):
    from comicrawl.database.repository import JobRepository

    async with get_session(runtime.services.session_factory) as session:
        return await JobRepository.get_by_id(session, job_id, include_deleted=True)


def assert_counters_consistent(job) -> None:
    """completed + failed + skipped never exceeds total, and matches it once terminal."""
    processed = job.completed_items + job.failed_items + job.skipped_items
    assert processed <= job.total_items
    if job.is_terminal:
        assert processed == job.total_items
