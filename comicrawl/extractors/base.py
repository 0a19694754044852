"""
Base content extractor.

One extractor per source protocol (HTML pages or a JSON API). Handlers
call the same five operations regardless of protocol; the registry picks
the implementation from the target URL's domain.
"""

from abc import ABC, abstractmethod
from collections.abc import Mapping
from urllib.parse import urlparse

from comicrawl.core.config import Settings, get_settings
from comicrawl.database.models import JobLevel
from comicrawl.models.schemas import ChapterInfo, ChildLink, ComicInfo, LeafQuery
from comicrawl.services.fetch_client import FetchClient
from comicrawl.utils.exceptions import ExtractionError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.urls import domain_of


class ContentExtractor(ABC):
    """
    Abstract base class for all content extractors.

    Attributes:
        name: Short identifier used in logs and errors
        fetch_client: Shared HTTP client
    """

    name = "base"

    def __init__(self, fetch_client: FetchClient, settings: Settings | None = None) -> None:
        self.fetch_client = fetch_client
        self.settings = settings or get_settings()
        self._logger = get_logger(self.__class__.__name__)

    @abstractmethod
    async def detect_top_level_info(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ComicInfo:
        """
        Detect comic metadata on ``url``.

        Raises:
            ExtractionError: If no comic can be recognised
            FetchError: If the page could not be fetched
        """

    @abstractmethod
    async def list_children(
        self,
        url: str,
        domain: str,
        *,
        level: JobLevel = JobLevel.COMIC,
        headers: Mapping[str, str] | None = None,
    ) -> list[ChildLink]:
        """
        Discover the children of a CATEGORY (comics) or COMIC (chapters) page.

        Returns links in source order with duplicates removed.
        """

    @abstractmethod
    async def list_leaf_urls(self, query: LeafQuery) -> list[str]:
        """Image URLs of a chapter, in reading order."""

    @abstractmethod
    async def detect_leaf_info(self, url: str, children: list[str]) -> ChapterInfo:
        """Chapter metadata given its already listed image URLs."""

    @abstractmethod
    def is_structured_source(self) -> bool:
        """True for JSON API sources, False for HTML scraping."""

    def validate_source(self, url: str) -> None:
        """
        Raises:
            ExtractionError: If ``url`` is not an absolute http(s) URL
        """
        if not url:
            raise ExtractionError("Source cannot be empty", extractor=self.name)
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https"):
            raise ExtractionError(
                f"Invalid URL scheme: {parsed.scheme}. Must be http or https.",
                url=url,
                extractor=self.name,
            )
        if not parsed.netloc:
            raise ExtractionError("Invalid URL: missing domain", url=url, extractor=self.name)

    def _headers(self, url: str, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        return self.fetch_client.build_headers(domain_of(url), extra)

    async def _get_text(self, url: str, headers: Mapping[str, str] | None = None) -> str:
        """Fetch a page, keeping the status code on failure for classification."""
        response = await self.fetch_client.fetch_or_raise(url, self._headers(url, headers))
        return response.text

    def _log_start(self, operation: str, url: str) -> None:
        self._logger.debug(
            "Starting extraction",
            operation=operation,
            source=url[:100] + "..." if len(url) > 100 else url,
            extractor=self.name,
        )

    def _log_success(self, operation: str, url: str, count: int) -> None:
        self._logger.info(
            "Extraction completed",
            operation=operation,
            source=url[:50] + "..." if len(url) > 50 else url,
            count=count,
        )
