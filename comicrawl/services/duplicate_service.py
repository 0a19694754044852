"""
Duplicate detection and catalog merge.

Pre-crawl: classify candidate URLs against existing jobs and catalog
records (exact URL, then same slug on another mirror, then optionally the
cover image hash). Post-crawl: score a newly created comic against every
non-merged record and auto-merge, flag for review, or accept it.
"""

import hashlib
from collections.abc import Iterable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from comicrawl.core.config import Settings, get_settings
from comicrawl.database.catalog_repository import CatalogRepository, merge_names
from comicrawl.database.connection import get_session
from comicrawl.database.models import ACTIVE_STATUSES, Comic, ComicStatus, CrawlJob
from comicrawl.database.repository import JobRepository
from comicrawl.extractors.registry import ExtractorRegistry
from comicrawl.models.schemas import (
    BatchCheckSummary,
    CatalogDecision,
    CatalogOutcome,
    DuplicateCheckResult,
    DuplicateType,
    SimilarComic,
)
from comicrawl.services.fetch_client import FetchClient
from comicrawl.utils.exceptions import CrawlError, MergeConflictError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.similarity import NameRecord, record_similarity
from comicrawl.utils.urls import domain_of, extract_slug, normalize_url

logger = get_logger(__name__)


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def name_record(comic: Comic) -> NameRecord:
    return NameRecord(
        name=comic.name or "",
        origin_name=comic.origin_name or "",
        author=comic.author or "",
        alternative_names=tuple(comic.alternative_names or ()),
    )


class DuplicateDetector:
    """
    Finds existing work matching a URL or a new catalog record.

    ``fetch_client`` and ``extractors`` are only needed for the optional
    content-hash check.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        settings: Settings | None = None,
        *,
        fetch_client: FetchClient | None = None,
        extractors: ExtractorRegistry | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings or get_settings()
        self._fetch_client = fetch_client
        self._extractors = extractors

    # ============================================================
    # Pre-crawl URL checks
    # ============================================================

    async def check_url(self, url: str, *, include_content_hash: bool = False) -> DuplicateCheckResult:
        async with get_session(self._session_factory) as session:
            result = await self.check_in_session(session, url)

        if result.has_duplicate or not include_content_hash:
            return result

        cover_hash = await self._cover_hash_for(url)
        if not cover_hash:
            return result

        async with get_session(self._session_factory) as session:
            comic = await CatalogRepository.find_by_cover_hash(session, cover_hash)
            if comic is None:
                return result
            return await self._comic_match(session, url, comic, DuplicateType.CONTENT_HASH)

    async def check_in_session(self, session: AsyncSession, url: str) -> DuplicateCheckResult:
        """URL-only check (exact, then slug) inside the caller's transaction."""
        normalized = normalize_url(url)

        comic = await CatalogRepository.find_by_source(session, url)
        if comic is not None:
            return await self._comic_match(session, url, comic, DuplicateType.EXACT_URL)

        job = await JobRepository.find_by_normalized_url(session, normalized)
        if job is not None:
            return await self._job_match(session, url, job, DuplicateType.EXACT_URL)

        slug = extract_slug(url)
        comic = await CatalogRepository.find_by_slug(session, slug)
        if comic is not None:
            return await self._comic_match(session, url, comic, DuplicateType.SIMILAR_URL)

        job = await JobRepository.find_by_slug(session, slug)
        if job is not None:
            return await self._job_match(session, url, job, DuplicateType.SIMILAR_URL)

        return DuplicateCheckResult.none(url)

    async def batch_check(self, urls: Iterable[str]) -> dict[str, DuplicateCheckResult]:
        results: dict[str, DuplicateCheckResult] = {}
        async with get_session(self._session_factory) as session:
            for url in urls:
                if url not in results:
                    results[url] = await self.check_in_session(session, url)
        return results

    @staticmethod
    def summarize(results: dict[str, DuplicateCheckResult]) -> BatchCheckSummary:
        summary = BatchCheckSummary(total=len(results))
        for result in results.values():
            match result.match_type:
                case DuplicateType.EXACT_URL:
                    summary.exact += 1
                case DuplicateType.CONTENT_HASH:
                    summary.content_hash += 1
                case DuplicateType.SIMILAR_URL:
                    summary.similar += 1
                case _:
                    summary.none += 1
        return summary

    async def find_active_crawl(self, url: str) -> CrawlJob | None:
        """Newest PENDING, RUNNING or PAUSED job targeting ``url``."""
        async with get_session(self._session_factory) as session:
            return await self.find_active_in_session(session, url)

    async def find_active_in_session(self, session: AsyncSession, url: str) -> CrawlJob | None:
        return await JobRepository.find_by_normalized_url(
            session, normalize_url(url), statuses=ACTIVE_STATUSES
        )

    async def _comic_match(
        self,
        session: AsyncSession,
        url: str,
        comic: Comic,
        match_type: DuplicateType,
    ) -> DuplicateCheckResult:
        job = await JobRepository.find_for_content(session, comic.id, statuses=ACTIVE_STATUSES)
        return DuplicateCheckResult.matched(
            url,
            match_type,
            existing_job_id=job.id if job else None,
            existing_content_id=comic.id,
            matched_url=comic.source_url,
            existing_child_count=await CatalogRepository.count_chapters(session, comic.id),
        )

    async def _job_match(
        self,
        session: AsyncSession,
        url: str,
        job: CrawlJob,
        match_type: DuplicateType,
    ) -> DuplicateCheckResult:
        content_id = job.content_id if job.content_id >= 0 else None
        child_count = (
            await CatalogRepository.count_chapters(session, content_id)
            if content_id is not None
            else job.total_items
        )
        return DuplicateCheckResult.matched(
            url,
            match_type,
            existing_job_id=job.id,
            existing_content_id=content_id,
            matched_url=job.target_url,
            existing_child_count=child_count,
        )

    async def _cover_hash_for(self, url: str) -> str | None:
        if self._fetch_client is None or self._extractors is None:
            return None
        try:
            extractor = self._extractors.for_url(url)
            info = await extractor.detect_top_level_info(url)
            if not info.thumbnail_url:
                return None
            data = await self._fetch_client.fetch_binary(
                info.thumbnail_url, self._fetch_client.build_headers(domain_of(url))
            )
        except CrawlError as e:
            logger.warning("Content hash check failed", url=url, error=e.message)
            return None
        return content_hash(data) if data else None

    # ============================================================
    # Post-crawl catalog screening
    # ============================================================

    async def find_similar(self, session: AsyncSession, comic_id: int) -> list[SimilarComic]:
        """Records scoring at or above the review threshold, most similar first."""
        comic = await CatalogRepository.get_comic(session, comic_id)
        record = name_record(comic)

        matches = []
        for other in await CatalogRepository.list_for_similarity(session, exclude_id=comic_id):
            score = record_similarity(record, name_record(other))
            if score >= self._settings.review_threshold:
                matches.append(SimilarComic(comic_id=other.id, name=other.name, similarity=round(score, 4)))

        matches.sort(key=lambda m: (-m.similarity, m.comic_id))
        return matches

    async def evaluate(self, session: AsyncSession, comic_id: int) -> CatalogOutcome:
        """
        Screen a newly created comic.

        ``>= auto_merge_threshold`` merges it into the existing record,
        ``>= review_threshold`` flags it DUPLICATE_DETECTED, anything
        lower leaves it ACTIVE.
        """
        similar = await self.find_similar(session, comic_id)
        if not similar:
            return CatalogOutcome(decision=CatalogDecision.ACCEPTED, content_id=comic_id)

        best = similar[0]
        if best.similarity >= self._settings.auto_merge_threshold:
            await self.merge(session, best.comic_id, comic_id)
            return CatalogOutcome(
                decision=CatalogDecision.MERGED, content_id=best.comic_id, best_match=best
            )

        await CatalogRepository.set_status(session, comic_id, ComicStatus.DUPLICATE_DETECTED)
        logger.info(
            "Comic flagged for duplicate review",
            comic_id=comic_id,
            similar_to=best.comic_id,
            similarity=best.similarity,
        )
        return CatalogOutcome(decision=CatalogDecision.FLAGGED, content_id=comic_id, best_match=best)

    async def merge(self, session: AsyncSession, primary_id: int, secondary_id: int) -> Comic:
        """
        Fold ``secondary_id`` into ``primary_id`` inside the caller's transaction.

        Chapters and alternative names are unioned, view/like/follow
        counters take the maximum, the secondary becomes MERGED with a
        back-reference and every job linked to it is relinked.

        Raises:
            MergeConflictError: Same record, or either side already merged
        """
        if primary_id == secondary_id:
            raise MergeConflictError(primary_id, secondary_id, "same record")

        primary = await CatalogRepository.get_comic(session, primary_id, for_update=True)
        secondary = await CatalogRepository.get_comic(session, secondary_id, for_update=True)
        if ComicStatus.MERGED in (primary.status, secondary.status):
            raise MergeConflictError(primary_id, secondary_id, "already merged")

        moved = await CatalogRepository.move_chapters(session, secondary_id, primary_id)

        extra_names = [secondary.name, secondary.origin_name, *(secondary.alternative_names or [])]
        own_names = {n.strip().lower() for n in (primary.name, primary.origin_name) if n}
        primary.alternative_names = merge_names(
            primary.alternative_names or [],
            [n for n in extra_names if n and n.strip().lower() not in own_names],
        )
        primary.views = max(primary.views, secondary.views)
        primary.likes = max(primary.likes, secondary.likes)
        primary.follows = max(primary.follows, secondary.follows)
        if not primary.cover_hash and secondary.cover_hash:
            primary.cover_hash = secondary.cover_hash

        secondary.status = ComicStatus.MERGED
        secondary.merged_into_id = primary_id
        await session.flush()

        relinked = await JobRepository.relink_content(session, secondary_id, primary_id)

        logger.info(
            "Comics merged",
            primary_id=primary_id,
            secondary_id=secondary_id,
            chapters_moved=moved,
            jobs_relinked=relinked,
        )
        return primary

    async def merge_comics(self, primary_id: int, secondary_id: int) -> Comic:
        """Operator-triggered merge in its own transaction."""
        async with get_session(self._session_factory) as session:
            return await self.merge(session, primary_id, secondary_id)
