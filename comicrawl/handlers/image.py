"""
IMAGE handler: the atomic leaf. Downloads one image, stores it and
records the result; there is no mid-job resume at this level.
"""

from comicrawl.database.models import CrawlJob, JobLevel
from comicrawl.database.repository import JobRepository
from comicrawl.handlers.base import HandlerContext, HandlerOutcome, LevelHandler
from comicrawl.models.schemas import ImagePlacement, ImageResult, ImageUrlList
from comicrawl.services.checkpoint_store import CheckpointStore
from comicrawl.services.progress_tracker import ProgressTracker
from comicrawl.utils.exceptions import FetchError, StorageError
from comicrawl.utils.urls import domain_of


class ImageHandler(LevelHandler):
    level = JobLevel.IMAGE

    async def run(self, ctx: HandlerContext) -> HandlerOutcome:
        async with self.session() as session:
            chapter = (
                await JobRepository.get_by_id_or_none(session, ctx.parent_id)
                if ctx.parent_id is not None
                else None
            )
            comic = (
                await JobRepository.get_by_id_or_none(session, chapter.parent_id)
                if chapter is not None and chapter.parent_id is not None
                else None
            )
            image_url = ctx.target_url
            if chapter is not None:
                state = await CheckpointStore.get_state(session, chapter.id)
                if isinstance(state, ImageUrlList) and 0 <= ctx.item_index < len(state.urls):
                    image_url = state.urls[ctx.item_index]

        referer = chapter.target_url if chapter is not None else image_url
        client = self.services.fetch_client
        try:
            response = await client.fetch_image(image_url, client.build_headers(domain_of(referer), ctx.headers))
            placement = ImagePlacement(
                comic_key=self._comic_key(comic, ctx),
                chapter_key=self._chapter_key(chapter),
                image_index=ctx.item_index,
                source_url=image_url,
                content_type=response.headers.get("content-type"),
            )
            stored = await self.services.store.store(response.content, placement)
        except (FetchError, StorageError):
            async with self.session() as session:
                await CheckpointStore.set_state(
                    session,
                    ctx.job_id,
                    ImageResult(image_index=ctx.item_index, original_url=image_url, status="failed"),
                )
            raise

        async with self.session() as session:
            await CheckpointStore.set_state(
                session,
                ctx.job_id,
                ImageResult(
                    image_index=ctx.item_index,
                    original_url=image_url,
                    path=stored.path,
                    preview=stored.preview,
                    size_bytes=stored.size_bytes,
                ),
            )
            await ProgressTracker.add_bytes(session, ctx.job_id, stored.size_bytes)
            if chapter is not None:
                await ProgressTracker.add_bytes(session, chapter.id, stored.size_bytes)

        self._logger.debug("Image stored", job_id=ctx.job_id, path=stored.path)
        return HandlerOutcome.COMPLETED

    @staticmethod
    def _comic_key(comic: CrawlJob | None, ctx: HandlerContext) -> str:
        if comic is not None:
            return comic.target_slug or comic.target_name or f"comic-{comic.id}"
        if ctx.content_id >= 0:
            return f"comic-{ctx.content_id}"
        return "unsorted"

    @staticmethod
    def _chapter_key(chapter: CrawlJob | None) -> str:
        if chapter is None:
            return "images"
        return f"{chapter.item_index + 1:04d}-{chapter.target_name or 'chapter'}"
