"""
COMIC handler: detect metadata, upsert and screen the catalog record,
link the job to it, then enqueue the selected chapters.
"""

from comicrawl.core.download_mode import resolve_indices
from comicrawl.database.catalog_repository import CatalogRepository
from comicrawl.database.models import ComicStatus, JobLevel
from comicrawl.database.repository import JobRepository
from comicrawl.handlers.base import HandlerContext, HandlerOutcome, ParentHandler
from comicrawl.models.schemas import CatalogDecision, ComicInfo
from comicrawl.services.duplicate_service import content_hash
from comicrawl.services.events import EventKind, publish_safely
from comicrawl.utils.urls import normalize_url


class ComicHandler(ParentHandler):
    level = JobLevel.COMIC

    async def run(self, ctx: HandlerContext) -> HandlerOutcome:
        info = await ctx.extractor.detect_top_level_info(ctx.target_url, headers=ctx.headers)
        content_id = await self._catalog(ctx, info)
        ctx.content_id = content_id

        links = await ctx.extractor.list_children(
            ctx.target_url, ctx.domain, level=JobLevel.COMIC, headers=ctx.headers
        )

        async with self.session() as session:
            catalogued = await CatalogRepository.chapter_sources(session, content_id)
        present = {i for i, link in enumerate(links) if normalize_url(link.url) in catalogued}

        selected = resolve_indices(len(links), ctx.download_mode, ctx.settings, present=present)
        await self.note(ctx.job_id, f"Found {len(links)} chapters, {len(selected)} selected")
        return await self.dispatch_children(ctx, links, selected)

    async def _catalog(self, ctx: HandlerContext, info: ComicInfo) -> int:
        """Upsert the comic, run duplicate screening on new records, link the job."""
        async with self.session() as session:
            comic, created = await CatalogRepository.create_or_update_comic(session, info)
            content_id = comic.id
            if not created and comic.status is ComicStatus.MERGED and comic.merged_into_id:
                content_id = comic.merged_into_id

            outcome = None
            if created:
                outcome = await self.services.detector.evaluate(session, comic.id)
                content_id = outcome.content_id

            await JobRepository.link_content(session, ctx.job_id, content_id)
            if info.name and not ctx.target_name:
                job = await JobRepository.get_by_id(session, ctx.job_id)
                job.target_name = info.name

        if outcome is not None and outcome.decision is not CatalogDecision.ACCEPTED:
            await self.note(
                ctx.job_id,
                f"Comic {outcome.decision.value} (similar to #{outcome.best_match.comic_id})"
                if outcome.best_match
                else f"Comic {outcome.decision.value}",
            )
            await publish_safely(
                self.services.events,
                ctx.job_id,
                EventKind.DUPLICATE,
                outcome.model_dump(mode="json"),
            )

        if created and info.thumbnail_url and content_id == comic.id:
            await self._store_cover_hash(ctx, content_id, info.thumbnail_url)
        return content_id

    async def _store_cover_hash(self, ctx: HandlerContext, content_id: int, thumbnail_url: str) -> None:
        client = self.services.fetch_client
        data = await client.fetch_binary(thumbnail_url, client.build_headers(ctx.domain, ctx.headers))
        if not data:
            self._logger.debug("Cover not fetched, no content hash", job_id=ctx.job_id)
            return
        async with self.session() as session:
            await CatalogRepository.set_cover_hash(session, content_id, content_hash(data))
