"""
CHAPTER handler: list image URLs, hand them to the IMAGE children through
the checkpoint state, and enqueue the selected images.
"""

from comicrawl.core.download_mode import resolve_indices
from comicrawl.database.catalog_repository import CatalogRepository
from comicrawl.database.models import DownloadMode, JobLevel
from comicrawl.database.repository import JobRepository
from comicrawl.handlers.base import HandlerContext, HandlerOutcome, ParentHandler
from comicrawl.models.schemas import ChildLink, ImageUrlList, LeafQuery
from comicrawl.services.checkpoint_store import CheckpointStore
from comicrawl.services.progress_tracker import ProgressTracker


class ChapterHandler(ParentHandler):
    level = JobLevel.CHAPTER

    async def run(self, ctx: HandlerContext) -> HandlerOutcome:
        query = LeafQuery(
            url=ctx.target_url,
            domain=ctx.domain,
            name=ctx.target_name,
            headers=ctx.headers,
        )
        image_urls = await ctx.extractor.list_leaf_urls(query)
        info = await ctx.extractor.detect_leaf_info(ctx.target_url, image_urls)

        previous_total = 0
        async with self.session() as session:
            await CheckpointStore.set_state(session, ctx.job_id, ImageUrlList(urls=image_urls))
            if ctx.content_id >= 0:
                existing = await CatalogRepository.get_chapter(session, ctx.content_id, ctx.target_url)
                previous_total = existing.image_count if existing else 0
                await CatalogRepository.upsert_chapter(
                    session,
                    ctx.content_id,
                    name=ctx.target_name or info.name,
                    position=ctx.item_index,
                    source_url=ctx.target_url,
                    image_count=len(image_urls),
                )

        if ctx.download_mode is DownloadMode.NONE:
            async with self.session() as session:
                await JobRepository.set_total(session, ctx.job_id, 0)
                await ProgressTracker.add_message(
                    session, ctx.job_id, f"Found {len(image_urls)} images, download disabled"
                )
            return HandlerOutcome.AWAITING_CHILDREN

        selected = resolve_indices(
            len(image_urls),
            ctx.download_mode,
            ctx.settings,
            previous_total=previous_total,
        )
        links = [ChildLink(url=url, name=f"Image {i + 1}") for i, url in enumerate(image_urls)]
        await self.note(ctx.job_id, f"Found {len(image_urls)} images, {len(selected)} selected")
        return await self.dispatch_children(ctx, links, selected)
