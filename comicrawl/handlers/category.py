"""
CATEGORY handler: listing page(s) → one COMIC queue entry per comic.
"""

from comicrawl.core.download_mode import resolve_indices
from comicrawl.database.catalog_repository import CatalogRepository
from comicrawl.database.models import DownloadMode, JobLevel
from comicrawl.handlers.base import HandlerContext, HandlerOutcome, ParentHandler
from comicrawl.utils.urls import normalize_url


class CategoryHandler(ParentHandler):
    level = JobLevel.CATEGORY

    async def run(self, ctx: HandlerContext) -> HandlerOutcome:
        links = await ctx.extractor.list_children(
            ctx.target_url, ctx.domain, level=JobLevel.CATEGORY, headers=ctx.headers
        )

        present: set[int] = set()
        if ctx.download_mode is DownloadMode.UPDATE:
            async with self.session() as session:
                known = await CatalogRepository.known_sources(session, [link.url for link in links])
            present = {i for i, link in enumerate(links) if normalize_url(link.url) in known}

        selected = resolve_indices(len(links), ctx.download_mode, ctx.settings, present=present)

        excluded = {
            i
            for i, link in enumerate(links)
            if (override := ctx.settings.override_for(normalize_url(link.url))) and override.skip
        }
        if excluded:
            self._logger.info("Comics excluded by per-item settings", job_id=ctx.job_id, count=len(excluded))
        selected = [i for i in selected if i not in excluded]

        await self.note(ctx.job_id, f"Found {len(links)} comics, {len(selected)} selected")
        return await self.dispatch_children(ctx, links, selected)
