"""
JSON API extractor for gallery sites.

Galleries are addressed as ``/g/<id>``. The chapter list and each
chapter's pages come from the site's JSON endpoints, so nothing is
scraped from HTML.
"""

import re
from collections.abc import Mapping
from typing import Any

from comicrawl.database.models import JobLevel
from comicrawl.extractors.base import ContentExtractor
from comicrawl.models.schemas import ChapterInfo, ChildLink, ComicInfo, LeafQuery
from comicrawl.utils.exceptions import ExtractionError
from comicrawl.utils.urls import gallery_id

GALLERY_ENDPOINT = "/api/v1/manga/gallery/"
CHAPTER_ENDPOINT = "/api/v1/manga/chapter"

_CHAPTER_ID_PATTERN = re.compile(r"/chapter/(\d+)")


class ApiExtractor(ContentExtractor):
    """Extractor for the gallery JSON API configured by ``api_base_url``."""

    name = "api"

    @property
    def base_url(self) -> str:
        return self.settings.api_base_url.rstrip("/")

    def is_structured_source(self) -> bool:
        return True

    def chapter_url(self, gid: str, chapter_id: Any) -> str:
        return f"{self.base_url}/g/{gid}/chapter/{chapter_id}"

    def _gallery_id(self, url: str) -> str:
        gid = gallery_id(url)
        if gid is None:
            raise ExtractionError(
                f"Invalid gallery URL, expected {self.base_url}/g/<id>",
                url=url,
                extractor=self.name,
            )
        return gid

    async def _get_json(self, url: str, headers: Mapping[str, str] | None = None) -> Any:
        response = await self.fetch_client.fetch_or_raise(url, self._headers(self.base_url, headers))
        try:
            return response.json()
        except ValueError as e:
            raise ExtractionError("Invalid JSON response", url=url, extractor=self.name) from e

    async def _gallery_chapters(
        self,
        gid: str,
        headers: Mapping[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        url = f"{self.base_url}{GALLERY_ENDPOINT}{gid}"
        payload = await self._get_json(url, headers)
        chapters = payload.get("response") if isinstance(payload, dict) else None
        if not isinstance(chapters, list):
            raise ExtractionError("Gallery response has no chapter list", url=url, extractor=self.name)
        return [c for c in chapters if isinstance(c, dict) and c.get("id") is not None]

    async def detect_top_level_info(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ComicInfo:
        self.validate_source(url)
        gid = self._gallery_id(url)
        self._log_start("detect_top_level_info", url)

        chapters = await self._gallery_chapters(gid, headers)
        name = ""
        if chapters:
            name = str(chapters[0].get("manga_title") or "").strip()

        info = ComicInfo(
            name=name or f"Manga_{gid}",
            source_url=url,
            slug=f"gallery-{gid}",
        )
        self._log_success("detect_top_level_info", url, 1)
        return info

    async def list_children(
        self,
        url: str,
        domain: str,
        *,
        level: JobLevel = JobLevel.COMIC,
        headers: Mapping[str, str] | None = None,
    ) -> list[ChildLink]:
        self.validate_source(url)
        if level is not JobLevel.COMIC:
            raise ExtractionError(
                f"{level.value} crawls are not supported by the gallery API",
                url=url,
                extractor=self.name,
            )

        gid = self._gallery_id(url)
        self._log_start("list_children", url)
        chapters = await self._gallery_chapters(gid, headers)
        if not chapters:
            raise ExtractionError("Gallery has no chapters", url=url, extractor=self.name)

        links = []
        seen: set[str] = set()
        for number, chapter in enumerate(chapters, start=1):
            chapter_id = str(chapter["id"])
            if chapter_id in seen:
                continue
            seen.add(chapter_id)
            title = str(chapter.get("title") or "").strip()
            links.append(ChildLink(url=self.chapter_url(gid, chapter_id), name=title or f"Chapter {number}"))

        self._log_success("list_children", url, len(links))
        return links

    async def list_leaf_urls(self, query: LeafQuery) -> list[str]:
        match = _CHAPTER_ID_PATTERN.search(query.url)
        chapter_id = match.group(1) if match else self._gallery_id(query.url)
        api_url = f"{self.base_url}{CHAPTER_ENDPOINT}?id={chapter_id}"
        self._log_start("list_leaf_urls", api_url)

        payload = await self._get_json(api_url, query.headers)
        pages = payload.get("pages") if isinstance(payload, dict) else None
        urls = [str(p) for p in pages or [] if p]
        if not urls:
            raise ExtractionError("Chapter has no pages", url=api_url, extractor=self.name)

        self._log_success("list_leaf_urls", api_url, len(urls))
        return urls

    async def detect_leaf_info(self, url: str, children: list[str]) -> ChapterInfo:
        match = _CHAPTER_ID_PATTERN.search(url)
        name = f"chapter-{match.group(1)}" if match else "chapter-1"
        return ChapterInfo(name=name, source_url=url, image_urls=list(children))
