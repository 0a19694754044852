"""
Tests for HtmlExtractor.

Parsing helpers are exercised on BeautifulSoup documents directly; the
async operations run against an httpx mock transport serving canned
pages.
"""

from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from bs4 import BeautifulSoup

from comicrawl.core.config import Settings
from comicrawl.database.models import JobLevel
from comicrawl.extractors.html import HtmlExtractor, chapter_name, clean_comic_name, name_from_url
from comicrawl.models.schemas import LeafQuery
from comicrawl.services.fetch_client import FetchClient
from comicrawl.utils.exceptions import ExtractionError, FetchError

SITE = "https://comics.test"

COMIC_PAGE = """
<html><head>
<title>Night Market - TruyenQQ</title>
<meta name="description" content="Stalls open at midnight.">
</head><body>
<h1 class="detail-title">Night Market - Đọc truyện</h1>
<div class="detail-info">
  <p><span class="label">Tên khác:</span> Yoru no Ichi, Nightmarket</p>
  <p><a href="/tac-gia/kim">Kim</a></p>
  <p>Tình trạng: Hoàn thành</p>
</div>
<div class="detail-cover"><img data-original="/covers/night.jpg" src="data:image/gif;base64,R0lG"></div>
<div class="works-chapter-list">
  <a href="/truyen-tranh/night-market/chapter-3">Chapter 3</a>
  <a href="/truyen-tranh/night-market/chapter-2">Chapter 2</a>
  <a href="/truyen-tranh/night-market/chapter-1">Chapter 1</a>
  <a href="/truyen-tranh/night-market/chapter-1">Chapter 1</a>
</div>
</body></html>
"""

CATEGORY_PAGE = """
<html><body>
<div class="list-story-item"><a href="/truyen-tranh/alpha" title="Alpha">Alpha</a></div>
<div class="list-story-item"><a href="/truyen-tranh/alpha/chapter-5">Chapter 5</a></div>
<div class="list-story-item"><a href="https://comics.test/truyen-tranh/beta">Beta</a></div>
<a href="/the-loai/action">Action</a>
<div class="pagination">
  <a href="/the-loai/action">1</a>
  <a href="/the-loai/action/trang-3">3</a>
  <a href="/the-loai/action/trang-2">2</a>
  <a href="/the-loai/action/trang-2">Next</a>
</div>
</body></html>
"""

CATEGORY_PAGE_2 = """
<html><body>
<div class="list-story-item"><a href="/truyen-tranh/gamma">Gamma</a></div>
<div class="list-story-item"><a href="/truyen-tranh/beta">Beta</a></div>
</body></html>
"""

CATEGORY_PAGE_3 = """
<html><body><div class="list-story-item"><a href="/truyen-tranh/delta">Delta</a></div></body></html>
"""

CHAPTER_PAGE = """
<html><body>
<h1 class="detail-title">Night Market - Chapter 2</h1>
<div class="page-chapter"><img data-original="//cdn.comics.test/nm/2/1.jpg" src="data:image/gif;base64,R0lG"></div>
<div class="page-chapter"><img src="/nm/2/2.jpg"></div>
<div class="page-chapter"><img data-src="https://cdn.comics.test/nm/2/1.jpg"></div>
</body></html>
"""

PAGES = {
    f"{SITE}/truyen-tranh/night-market": COMIC_PAGE,
    f"{SITE}/the-loai/action": CATEGORY_PAGE,
    f"{SITE}/the-loai/action/trang-2": CATEGORY_PAGE_2,
    f"{SITE}/the-loai/action/trang-3": CATEGORY_PAGE_3,
    f"{SITE}/truyen-tranh/night-market/chapter-2": CHAPTER_PAGE,
    f"{SITE}/truyen-tranh/night-market/chapter-9": "<html><body><p>Removed</p></body></html>",
}


def serve(request: httpx.Request) -> httpx.Response:
    body = PAGES.get(str(request.url))
    if body is None:
        return httpx.Response(404, text="not found")
    return httpx.Response(200, text=body, headers={"Content-Type": "text/html; charset=utf-8"})


def soup_of(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


@pytest_asyncio.fixture(loop_scope="session", scope="function")
async def extractor(test_settings: Settings) -> AsyncGenerator[HtmlExtractor, None]:
    client = FetchClient(test_settings, transport=httpx.MockTransport(serve))
    yield HtmlExtractor(client, test_settings)
    await client.close()


class TestHelpers:
    """Tests for the module-level parsing helpers."""

    @pytest.mark.unit
    def test_clean_comic_name(self) -> None:
        """Test site suffixes are stripped from titles."""
        assert clean_comic_name("Night Market - TruyenQQ") == "Night Market"
        assert clean_comic_name("Night Market | Đọc truyện online") == "Night Market"
        assert clean_comic_name("Night Market") == "Night Market"

    @pytest.mark.unit
    def test_name_from_url(self) -> None:
        """Test a readable name is built from the slug without its numeric suffix."""
        assert name_from_url(f"{SITE}/truyen-tranh/silent-sea-123") == "Silent Sea"

    @pytest.mark.unit
    def test_chapter_name(self) -> None:
        """Test chapter numbers come from link text first, then the URL."""
        assert chapter_name(f"{SITE}/x/chapter-12", "Chương 12.5") == "Chapter 12.5"
        assert chapter_name(f"{SITE}/x/chapter-12") == "Chapter 12"
        assert chapter_name(f"{SITE}/x/extra", "Extra") == "Extra"


class TestComicPage:
    """Tests for comic metadata parsing."""

    @pytest.mark.unit
    def test_parse_full_page(self, extractor: HtmlExtractor) -> None:
        """Test every field is read from a complete comic page."""
        url = f"{SITE}/truyen-tranh/night-market"

        info = extractor.parse_comic_page(soup_of(COMIC_PAGE), url)

        assert info.name == "Night Market"
        assert info.slug == "night-market"
        assert info.origin_name == "Yoru no Ichi"
        assert info.alternative_names == ["Nightmarket"]
        assert info.author == "Kim"
        assert info.description == "Stalls open at midnight."
        assert info.thumbnail_url == f"{SITE}/covers/night.jpg"
        assert info.progress_status == "completed"

    @pytest.mark.unit
    def test_name_falls_back_to_title(self, extractor: HtmlExtractor) -> None:
        """Test the <title> is used when no heading exists."""
        html = "<html><head><title>Moon Walk | TruyenQQ</title></head><body><p>x</p></body></html>"

        info = extractor.parse_comic_page(soup_of(html), f"{SITE}/truyen-tranh/moon-walk")

        assert info.name == "Moon Walk"
        assert info.progress_status == "ongoing"

    @pytest.mark.unit
    def test_name_falls_back_to_url(self, extractor: HtmlExtractor) -> None:
        """Test the slug is used when the page has no title at all."""
        html = "<html><body><p>nothing here</p></body></html>"

        info = extractor.parse_comic_page(soup_of(html), f"{SITE}/truyen-tranh/silent-sea-123")

        assert info.name == "Silent Sea"

    @pytest.mark.integration
    async def test_detect_top_level_info(self, extractor: HtmlExtractor) -> None:
        """Test the page is fetched and parsed."""
        info = await extractor.detect_top_level_info(f"{SITE}/truyen-tranh/night-market")

        assert info.name == "Night Market"
        assert info.source_url == f"{SITE}/truyen-tranh/night-market"

    @pytest.mark.unit
    async def test_invalid_scheme_rejected(self, extractor: HtmlExtractor) -> None:
        """Test non-http URLs never reach the network."""
        with pytest.raises(ExtractionError):
            await extractor.detect_top_level_info("ftp://comics.test/truyen-tranh/night-market")

    @pytest.mark.integration
    async def test_missing_page_keeps_status(self, extractor: HtmlExtractor) -> None:
        """Test a 404 surfaces as a FetchError carrying the status code."""
        with pytest.raises(FetchError) as exc_info:
            await extractor.detect_top_level_info(f"{SITE}/truyen-tranh/nowhere")

        assert exc_info.value.status_code == 404


class TestChildren:
    """Tests for chapter and story listing."""

    @pytest.mark.unit
    def test_chapter_links_oldest_first(self, extractor: HtmlExtractor) -> None:
        """Test chapters are deduplicated and reversed into reading order."""
        links = extractor.parse_chapter_links(
            soup_of(COMIC_PAGE), f"{SITE}/truyen-tranh/night-market", "comics.test"
        )

        assert [link.url for link in links] == [
            f"{SITE}/truyen-tranh/night-market/chapter-1",
            f"{SITE}/truyen-tranh/night-market/chapter-2",
            f"{SITE}/truyen-tranh/night-market/chapter-3",
        ]
        assert [link.name for link in links] == ["Chapter 1", "Chapter 2", "Chapter 3"]

    @pytest.mark.unit
    def test_chapter_links_without_container(self, extractor: HtmlExtractor) -> None:
        """Test bare chapter links are found by their URL pattern."""
        html = """
        <html><body>
          <a href="/about">About</a>
          <a href="/truyen-tranh/x/chuong-2">Chương 2</a>
          <a href="/truyen-tranh/x/chuong-1">Chương 1</a>
        </body></html>
        """

        links = extractor.parse_chapter_links(soup_of(html), f"{SITE}/truyen-tranh/x", "comics.test")

        assert [link.name for link in links] == ["Chapter 1", "Chapter 2"]

    @pytest.mark.unit
    def test_story_links_filter_chapters(self, extractor: HtmlExtractor) -> None:
        """Test chapter and category links are not mistaken for stories."""
        links = extractor.parse_story_links(soup_of(CATEGORY_PAGE), f"{SITE}/the-loai/action")

        assert [link.url for link in links] == [f"{SITE}/truyen-tranh/alpha", f"{SITE}/truyen-tranh/beta"]
        assert links[0].name == "Alpha"

    @pytest.mark.unit
    def test_listing_pages_sorted(self, extractor: HtmlExtractor) -> None:
        """Test pagination links are deduplicated and ordered by page number."""
        pages = extractor.listing_pages(soup_of(CATEGORY_PAGE), f"{SITE}/the-loai/action")

        assert pages == [f"{SITE}/the-loai/action/trang-2", f"{SITE}/the-loai/action/trang-3"]

    @pytest.mark.integration
    async def test_category_follows_pagination(self, extractor: HtmlExtractor) -> None:
        """Test every listing page contributes and repeats are dropped."""
        links = await extractor.list_children(f"{SITE}/the-loai/action", "comics.test", level=JobLevel.CATEGORY)

        assert [link.url.rsplit("/", 1)[-1] for link in links] == ["alpha", "beta", "gamma", "delta"]

    @pytest.mark.integration
    async def test_comic_children(self, extractor: HtmlExtractor) -> None:
        """Test a COMIC page lists its chapters."""
        links = await extractor.list_children(f"{SITE}/truyen-tranh/night-market", "comics.test")

        assert len(links) == 3

    @pytest.mark.integration
    async def test_chapter_has_no_children(self, extractor: HtmlExtractor) -> None:
        """Test CHAPTER pages cannot be listed as children."""
        with pytest.raises(ExtractionError):
            await extractor.list_children(
                f"{SITE}/truyen-tranh/night-market/chapter-2", "comics.test", level=JobLevel.CHAPTER
            )


class TestImages:
    """Tests for chapter image discovery."""

    @pytest.mark.integration
    async def test_list_leaf_urls(self, extractor: HtmlExtractor) -> None:
        """Test lazy-load attributes win and protocol-relative URLs are resolved."""
        urls = await extractor.list_leaf_urls(LeafQuery(url=f"{SITE}/truyen-tranh/night-market/chapter-2"))

        assert urls == ["https://cdn.comics.test/nm/2/1.jpg", f"{SITE}/nm/2/2.jpg"]

    @pytest.mark.unit
    def test_common_reader_fallback(self, extractor: HtmlExtractor) -> None:
        """Test reader containers are searched when the primary selector misses."""
        html = '<html><body><div class="reading-content"><img src="p1.png"><img src="p2.png"></div></body></html>'

        urls = extractor.parse_image_urls(soup_of(html), f"{SITE}/read/7/")

        assert urls == [f"{SITE}/read/7/p1.png", f"{SITE}/read/7/p2.png"]

    @pytest.mark.integration
    async def test_chapter_without_images(self, extractor: HtmlExtractor) -> None:
        """Test a chapter with no images is an extraction error."""
        with pytest.raises(ExtractionError):
            await extractor.list_leaf_urls(LeafQuery(url=f"{SITE}/truyen-tranh/night-market/chapter-9"))

    @pytest.mark.unit
    async def test_detect_leaf_info(self, extractor: HtmlExtractor) -> None:
        """Test chapter info is named from the URL."""
        info = await extractor.detect_leaf_info(f"{SITE}/truyen-tranh/night-market/chapter-12", ["a.jpg"])

        assert info.name == "Chapter 12"
        assert info.image_urls == ["a.jpg"]
