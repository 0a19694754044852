"""
Repository for catalog records (comics and their chapters).

Create-or-update is keyed by the normalized source URL, so recrawling a
comic refreshes its record instead of creating a second one.
"""

from collections.abc import Sequence

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from comicrawl.database.models import Chapter, Comic, ComicStatus
from comicrawl.models.schemas import ComicInfo
from comicrawl.utils.exceptions import ContentNotFoundError, DatabaseError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.urls import normalize_url

logger = get_logger(__name__)


class CatalogRepository:
    """Static async operations on Comic and Chapter rows."""

    # ============================================================
    # Comics
    # ============================================================

    @staticmethod
    async def get_comic(session: AsyncSession, comic_id: int, *, for_update: bool = False) -> Comic:
        """
        Raises:
            ContentNotFoundError: If the comic doesn't exist
        """
        query = select(Comic).where(Comic.id == comic_id)
        if for_update:
            query = query.with_for_update()
        result = await session.execute(query.execution_options(populate_existing=True))
        comic = result.scalar_one_or_none()
        if comic is None:
            raise ContentNotFoundError(comic_id)
        return comic

    @staticmethod
    async def find_by_source(session: AsyncSession, source_url: str) -> Comic | None:
        result = await session.execute(
            select(Comic)
            .where(Comic.normalized_source == normalize_url(source_url))
            .order_by(Comic.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_slug(session: AsyncSession, slug: str) -> Comic | None:
        if not slug:
            return None
        result = await session.execute(
            select(Comic)
            .where(Comic.slug == slug, Comic.status != ComicStatus.MERGED)
            .order_by(Comic.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def find_by_cover_hash(session: AsyncSession, cover_hash: str) -> Comic | None:
        if not cover_hash:
            return None
        result = await session.execute(
            select(Comic)
            .where(Comic.cover_hash == cover_hash, Comic.status != ComicStatus.MERGED)
            .order_by(Comic.id.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def known_sources(session: AsyncSession, urls: Sequence[str]) -> set[str]:
        """Normalized forms of ``urls`` that already have a catalog record."""
        normalized = {normalize_url(url) for url in urls if url}
        if not normalized:
            return set()
        result = await session.execute(
            select(Comic.normalized_source).where(Comic.normalized_source.in_(normalized))
        )
        return set(result.scalars().all())

    @staticmethod
    async def create_or_update_comic(
        session: AsyncSession,
        info: ComicInfo,
    ) -> tuple[Comic, bool]:
        """
        Upsert a comic by source URL.

        Returns:
            (comic, created) where ``created`` is True for a new record

        Raises:
            DatabaseError: If the write fails
        """
        try:
            comic = await CatalogRepository.find_by_source(session, info.source_url)
            created = comic is None

            if comic is None:
                comic = Comic(
                    source_url=info.source_url,
                    normalized_source=normalize_url(info.source_url),
                    status=ComicStatus.ACTIVE,
                    name=info.name,
                )
                session.add(comic)

            comic.name = info.name or comic.name
            comic.slug = info.slug or comic.slug or ""
            comic.origin_name = info.origin_name or comic.origin_name or ""
            comic.author = info.author or comic.author or ""
            comic.description = info.description or comic.description or ""
            comic.thumbnail_url = info.thumbnail_url or comic.thumbnail_url or ""
            comic.progress_status = info.progress_status
            comic.alternative_names = merge_names(comic.alternative_names or [], info.alternative_names)
            comic.views = max(comic.views or 0, info.views)
            comic.likes = max(comic.likes or 0, info.likes)
            comic.follows = max(comic.follows or 0, info.follows)

            await session.flush()

        except SQLAlchemyError as e:
            logger.error("Failed to upsert comic", url=info.source_url, error=str(e))
            raise DatabaseError(
                f"Failed to upsert comic: {e}",
                operation="upsert",
                table="comics",
            ) from e

        logger.info(
            "Comic created" if created else "Comic updated",
            comic_id=comic.id,
            name=comic.name,
        )
        return comic, created

    @staticmethod
    async def set_cover_hash(session: AsyncSession, comic_id: int, cover_hash: str) -> None:
        await session.execute(
            update(Comic)
            .where(Comic.id == comic_id)
            .values(cover_hash=cover_hash)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def set_status(session: AsyncSession, comic_id: int, status: ComicStatus) -> None:
        await session.execute(
            update(Comic)
            .where(Comic.id == comic_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )

    @staticmethod
    async def list_for_similarity(
        session: AsyncSession,
        *,
        exclude_id: int | None = None,
    ) -> list[Comic]:
        """Every non-merged comic, for the pairwise similarity scan."""
        query = select(Comic).where(Comic.status != ComicStatus.MERGED)
        if exclude_id is not None:
            query = query.where(Comic.id != exclude_id)
        result = await session.execute(query.order_by(Comic.id.asc()))
        return list(result.scalars().all())

    # ============================================================
    # Chapters
    # ============================================================

    @staticmethod
    async def upsert_chapter(
        session: AsyncSession,
        comic_id: int,
        *,
        name: str,
        position: int,
        source_url: str,
        image_count: int = 0,
    ) -> Chapter:
        normalized = normalize_url(source_url)
        result = await session.execute(
            select(Chapter).where(
                Chapter.comic_id == comic_id,
                Chapter.normalized_source == normalized,
            )
        )
        chapter = result.scalar_one_or_none()
        if chapter is None:
            chapter = Chapter(
                comic_id=comic_id,
                source_url=source_url,
                normalized_source=normalized,
            )
            session.add(chapter)

        chapter.name = name or chapter.name or ""
        chapter.position = position
        chapter.image_count = image_count or chapter.image_count or 0
        await session.flush()
        return chapter

    @staticmethod
    async def get_chapter(session: AsyncSession, comic_id: int, source_url: str) -> Chapter | None:
        result = await session.execute(
            select(Chapter).where(
                Chapter.comic_id == comic_id,
                Chapter.normalized_source == normalize_url(source_url),
            )
        )
        return result.scalar_one_or_none()

    @staticmethod
    async def chapter_sources(session: AsyncSession, comic_id: int) -> set[str]:
        """Normalized source URLs of the chapters already catalogued for a comic."""
        result = await session.execute(
            select(Chapter.normalized_source).where(Chapter.comic_id == comic_id)
        )
        return set(result.scalars().all())

    @staticmethod
    async def count_chapters(session: AsyncSession, comic_id: int) -> int:
        result = await session.execute(
            select(func.count(Chapter.id)).where(Chapter.comic_id == comic_id)
        )
        return int(result.scalar_one())

    @staticmethod
    async def move_chapters(session: AsyncSession, source_id: int, target_id: int) -> int:
        """
        Re-parent chapters from ``source_id`` to ``target_id``.

        Chapters the target already has (same normalized source) are
        dropped from the source instead of duplicated.
        """
        existing = await CatalogRepository.chapter_sources(session, target_id)
        result = await session.execute(select(Chapter).where(Chapter.comic_id == source_id))
        moved = 0
        for chapter in result.scalars().all():
            if chapter.normalized_source in existing:
                await session.delete(chapter)
                continue
            chapter.comic_id = target_id
            existing.add(chapter.normalized_source)
            moved += 1
        await session.flush()
        return moved


def merge_names(current: Sequence[str], extra: Sequence[str]) -> list[str]:
    """Union preserving first-seen order, ignoring case and blank names."""
    merged: list[str] = []
    seen: set[str] = set()
    for name in [*current, *extra]:
        key = name.strip().lower()
        if key and key not in seen:
            seen.add(key)
            merged.append(name.strip())
    return merged
