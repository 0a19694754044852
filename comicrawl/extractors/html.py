"""
HTML content extractor using BeautifulSoup.

Scrapes comic sites that render everything server-side. Each kind of
content is found with an ordered list of CSS selectors, falling back to
URL-pattern scans when a site's markup matches none of them.

Uses lxml as BeautifulSoup parser for performance (faster than html.parser).
"""

import re
from collections.abc import Iterable, Mapping

from bs4 import BeautifulSoup, Tag

from comicrawl.database.models import JobLevel
from comicrawl.extractors.base import ContentExtractor
from comicrawl.models.schemas import ChapterInfo, ChildLink, ComicInfo, LeafQuery
from comicrawl.utils.exceptions import ExtractionError
from comicrawl.utils.urls import absolutize, extract_slug, normalize_url

# ===================
# Comic page
# ===================

NAME_SELECTORS = [
    "h1.detail-title",
    "h1.txt-primary",
    "h1.title",
    "h1.book-title",
    "article h1",
    "div.detail-info h1",
    "div.book-info h1",
    "div.manga-info h1",
    "div.comic-info h1",
    "h1",
]
NAME_SUFFIX_PATTERNS = [
    re.compile(r"\s*[-–|]\s*TruyenQQ.*$", re.IGNORECASE),
    re.compile(r"\s*[-–|]\s*Đọc.*$", re.IGNORECASE),
    re.compile(r"\s*[-–|]\s*Truyện.*$", re.IGNORECASE),
]
INFO_SECTION_SELECTOR = "div.detail-info, div.book-info, div.info, div.meta"
INFO_LABEL_SELECTOR = "span.label, span.title, strong, b"
ORIGIN_LABELS = ("tên gốc", "tên khác", "origin", "other name", "alternative")
AUTHOR_LINK_SELECTOR = "div.detail-info a[href*='author'], div.info a[href*='author'], a[href*='tac-gia']"
AUTHOR_TEXT_PATTERN = re.compile(r"(?:Tác giả|Author)\s*[:：]\s*(.+?)(?:\n|$)", re.IGNORECASE)
DESCRIPTION_SELECTORS = [
    "div.detail-content",
    "div.description",
    "div.summary",
    "div.story-detail-info",
    "meta[name='description']",
]
THUMBNAIL_SELECTORS = [
    "div.detail-cover img",
    "div.book img",
    "div.cover img",
    "img.cover",
    "img[src*='thumb']",
    "meta[property='og:image']",
]
COMPLETED_MARKERS = ("hoàn thành", "completed", "finished", "full")

# ===================
# Category listing
# ===================

STORY_SELECTORS = [
    "div.list-story-item a",
    "div.story-item a",
    "div.item-story a",
    "div.comic-item a",
    "a[href*='/truyen-tranh/']",
    "a[href*='/truyen/']",
    ".list-story a",
    ".story-list a",
]
STORY_URL_MARKERS = ("/truyen-tranh/", "/truyen/", "/manga/")
NOT_STORY_MARKERS = ("/chapter", "/chap", "/chuong", "/the-loai", "/category", "/trang")
PAGINATION_SELECTORS = [
    "div.pagination a",
    "ul.pagination a",
    "nav.pagination a",
    "div.paging a",
    ".pagination a",
    ".paging a",
]
PAGE_NUMBER_PATTERNS = [
    re.compile(r"trang[_-]?(\d+)", re.IGNORECASE),
    re.compile(r"[?&]page[=:]?(\d+)", re.IGNORECASE),
    re.compile(r"/page/(\d+)", re.IGNORECASE),
]
MAX_LISTING_PAGES = 50

# ===================
# Chapter list
# ===================

SITE_CHAPTER_SELECTORS = {
    "truyenqq": "div.works-chapter-list a, div.list-chapter a, section.works-chapter-list a",
    "nettruyen": "div.list-chapter a, div#nt_listchapter a",
    "mangadex": "div.chapter-list a, .chapter-feed a",
}
CHAPTER_CONTAINER_SELECTORS = [
    "#list-chapter a",
    "#list_chapter a",
    "#nt_listchapter a",
    "#chapters a",
    ".list-chapter a",
    ".list_chapter a",
    ".chapter-list a",
    ".chapters a",
    ".works-chapter-list a",
    ".works-chapter-item a",
    "section[class*='chapter'] a",
    "article[class*='chapter'] a",
    "div[class*='chapter-list'] a",
    "div[class*='list-chapter'] a",
    "ul[class*='chapter'] a",
    "ol[class*='chapter'] a",
]
CHAPTER_HREF_SELECTOR = (
    "a[href*='chuong-'], a[href*='/chuong/'], a[href*='chapter-'], a[href*='/chapter/'], "
    "a[href*='chap-'], a[href*='/chap/'], a[href*='/ch-']"
)
CHAPTER_URL_PATTERN = re.compile(r"(chuong|chapter|chap|ch)[/-]?\d+|/\d+/?$", re.IGNORECASE)
CHAPTER_TEXT_PATTERN = re.compile(r"^(chương|chapter|chap|ch\.?)?\s*\d+.*$", re.IGNORECASE)
CHAPTER_NUMBER_PATTERN = re.compile(r"(?:chapter|chap|chương|chuong)[\s_-]*(\d+(?:\.\d+)?)", re.IGNORECASE)

# ===================
# Images
# ===================

IMAGE_ATTRIBUTES = ("data-original", "data-src", "src")
PRIMARY_IMAGE_SELECTOR = "div.page-chapter img"
COMMON_IMAGE_SELECTORS = "div.reading-content img, div.chapter-content img, div.viewer img, .viewer img"
IMAGE_CONTAINER_SELECTORS = (
    "div[class*='page'], div[class*='chapter'], div[class*='viewer'], "
    "div[class*='reading'], div[class*='content']"
)
CHAPTER_TITLE_SELECTORS = ["h1.detail-title.txt-primary", "h1.detail-title", "h1"]


def _parse(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "lxml")


def _text(tag: Tag | None) -> str:
    if tag is None:
        return ""
    return re.sub(r"\s+", " ", tag.get_text(" ", strip=True)).strip()


def _dedupe(links: Iterable[ChildLink]) -> list[ChildLink]:
    seen: set[str] = set()
    unique = []
    for link in links:
        key = normalize_url(link.url)
        if key and key not in seen:
            seen.add(key)
            unique.append(link)
    return unique


def clean_comic_name(name: str) -> str:
    for pattern in NAME_SUFFIX_PATTERNS:
        name = pattern.sub("", name)
    return name.strip()


def name_from_url(url: str) -> str:
    slug = extract_slug(url)
    slug = re.sub(r"-\d+$", "", slug)
    return " ".join(part.capitalize() for part in slug.split("-") if part)


def is_story_url(url: str) -> bool:
    lower = url.lower()
    return any(m in lower for m in STORY_URL_MARKERS) and not any(m in lower for m in NOT_STORY_MARKERS)


def is_chapter_link(tag: Tag) -> bool:
    href = (tag.get("href") or "").strip()
    if not href or href == "#" or href.startswith("javascript:"):
        return False
    if CHAPTER_URL_PATTERN.search(href):
        return True
    text = _text(tag)
    if text and CHAPTER_TEXT_PATTERN.match(text):
        return True
    lower = text.lower()
    return lower.startswith("chương") or lower.isdigit()


def image_url_of(img: Tag) -> str | None:
    for attribute in IMAGE_ATTRIBUTES:
        value = (img.get(attribute) or "").strip()
        if value and not value.startswith("data:"):
            return value
    return None


def chapter_name(url: str, text: str = "") -> str:
    """``Chapter 12`` from link text or URL; empty if neither carries a number."""
    for source in (text, url):
        match = CHAPTER_NUMBER_PATTERN.search(source or "")
        if match:
            return f"Chapter {match.group(1)}"
    return text.strip()


class HtmlExtractor(ContentExtractor):
    """
    Extractor for server-rendered comic sites.

    Example:
        >>> extractor = HtmlExtractor(FetchClient())
        >>> info = await extractor.detect_top_level_info("https://site.example/truyen-tranh/abc")
    """

    name = "html"

    def is_structured_source(self) -> bool:
        return False

    # ============================================================
    # Comic info
    # ============================================================

    async def detect_top_level_info(
        self,
        url: str,
        *,
        headers: Mapping[str, str] | None = None,
    ) -> ComicInfo:
        self.validate_source(url)
        self._log_start("detect_top_level_info", url)
        soup = _parse(await self._get_text(url, headers))

        info = self.parse_comic_page(soup, url)
        self._log_success("detect_top_level_info", url, 1)
        return info

    def parse_comic_page(self, soup: BeautifulSoup, url: str) -> ComicInfo:
        name = ""
        for selector in NAME_SELECTORS:
            name = clean_comic_name(_text(soup.select_one(selector)))
            if name:
                break
        if not name and soup.title is not None:
            name = clean_comic_name(_text(soup.title))
        if not name:
            name = name_from_url(url)
        if not name:
            raise ExtractionError("Comic name not found", url=url, extractor=self.name)

        origin_name, alternative_names = self._origin_names(soup)

        return ComicInfo(
            name=name,
            source_url=url,
            slug=extract_slug(url),
            origin_name=origin_name,
            alternative_names=alternative_names,
            author=self._author(soup),
            description=self._description(soup),
            thumbnail_url=self._thumbnail(soup, url),
            progress_status=self._progress_status(soup),
        )

    def _origin_names(self, soup: BeautifulSoup) -> tuple[str, list[str]]:
        for section in soup.select(INFO_SECTION_SELECTOR):
            for label in section.select(INFO_LABEL_SELECTOR):
                label_text = _text(label).lower()
                if not any(marker in label_text for marker in ORIGIN_LABELS):
                    continue
                parent_text = _text(label.parent)
                value = parent_text.replace(_text(label), "", 1).strip(" :：")
                names = [n.strip() for n in re.split(r"[,;/]", value) if n.strip()]
                if names:
                    return names[0], names[1:]
        return "", []

    def _author(self, soup: BeautifulSoup) -> str:
        link = soup.select_one(AUTHOR_LINK_SELECTOR)
        if link is not None and _text(link):
            return _text(link)
        for section in soup.select(INFO_SECTION_SELECTOR):
            match = AUTHOR_TEXT_PATTERN.search(section.get_text("\n", strip=True))
            if match:
                return match.group(1).strip()
        return ""

    def _description(self, soup: BeautifulSoup) -> str:
        for selector in DESCRIPTION_SELECTORS:
            tag = soup.select_one(selector)
            if tag is None:
                continue
            value = (tag.get("content") or "").strip() if tag.name == "meta" else _text(tag)
            if value:
                return value
        return ""

    def _thumbnail(self, soup: BeautifulSoup, url: str) -> str:
        for selector in THUMBNAIL_SELECTORS:
            tag = soup.select_one(selector)
            if tag is None:
                continue
            raw = tag.get("content") if tag.name == "meta" else image_url_of(tag)
            resolved = absolutize(url, raw)
            if resolved:
                return resolved
        return ""

    def _progress_status(self, soup: BeautifulSoup) -> str:
        for section in soup.select(INFO_SECTION_SELECTOR):
            text = _text(section).lower()
            if any(marker in text for marker in COMPLETED_MARKERS):
                return "completed"
        return "ongoing"

    # ============================================================
    # Children
    # ============================================================

    async def list_children(
        self,
        url: str,
        domain: str,
        *,
        level: JobLevel = JobLevel.COMIC,
        headers: Mapping[str, str] | None = None,
    ) -> list[ChildLink]:
        self.validate_source(url)
        self._log_start(f"list_children:{level.value}", url)
        soup = _parse(await self._get_text(url, headers))

        if level is JobLevel.CATEGORY:
            links = self.parse_story_links(soup, url)
            for page_url in self.listing_pages(soup, url):
                page = _parse(await self._get_text(page_url, headers))
                links.extend(self.parse_story_links(page, page_url))
            links = _dedupe(links)
        elif level is JobLevel.COMIC:
            links = self.parse_chapter_links(soup, url, domain)
        else:
            raise ExtractionError(
                f"{level.value} pages have no listable children",
                url=url,
                extractor=self.name,
            )

        if not links:
            raise ExtractionError(
                f"No {level.child_level.value if level.child_level else 'child'} links found",
                url=url,
                extractor=self.name,
            )
        self._log_success(f"list_children:{level.value}", url, len(links))
        return links

    def parse_story_links(self, soup: BeautifulSoup, base_url: str) -> list[ChildLink]:
        links = []
        for selector in STORY_SELECTORS:
            for tag in soup.select(selector):
                resolved = absolutize(base_url, tag.get("href"))
                if resolved and is_story_url(resolved):
                    links.append(ChildLink(url=resolved, name=_text(tag) or (tag.get("title") or "")))
        if not links:
            for tag in soup.select("a[href]"):
                resolved = absolutize(base_url, tag.get("href"))
                if resolved and is_story_url(resolved):
                    links.append(ChildLink(url=resolved, name=_text(tag)))
        return _dedupe(links)

    def listing_pages(self, soup: BeautifulSoup, url: str) -> list[str]:
        """Further listing pages linked from the pagination of the first one."""
        current = normalize_url(url)
        pages: dict[str, str] = {}
        for selector in PAGINATION_SELECTORS:
            for tag in soup.select(selector):
                resolved = absolutize(url, tag.get("href"))
                if not resolved or normalize_url(resolved) == current:
                    continue
                if any(p.search(resolved) for p in PAGE_NUMBER_PATTERNS):
                    pages.setdefault(normalize_url(resolved), resolved)

        def page_number(page_url: str) -> int:
            for pattern in PAGE_NUMBER_PATTERNS:
                match = pattern.search(page_url)
                if match:
                    return int(match.group(1))
            return 0

        ordered = sorted(pages.values(), key=page_number)
        return [p for p in ordered if page_number(p) > 1][: MAX_LISTING_PAGES - 1]

    def parse_chapter_links(self, soup: BeautifulSoup, base_url: str, domain: str) -> list[ChildLink]:
        """
        Chapter links, oldest first.

        Sites list the newest chapter on top, so the document order is
        reversed after deduplication.
        """
        tags: list[Tag] = []
        site_selector = next(
            (selector for key, selector in SITE_CHAPTER_SELECTORS.items() if key in (domain or "").lower()),
            None,
        )
        if site_selector:
            tags = [t for t in soup.select(site_selector) if is_chapter_link(t)]

        if not tags:
            for selector in CHAPTER_CONTAINER_SELECTORS:
                tags = [t for t in soup.select(selector) if is_chapter_link(t)]
                if tags:
                    break

        if not tags:
            tags = [t for t in soup.select(CHAPTER_HREF_SELECTOR) if is_chapter_link(t)]

        if not tags:
            tags = [t for t in soup.select("a[href]") if is_chapter_link(t)]

        links = []
        for tag in tags:
            resolved = absolutize(base_url, tag.get("href"))
            if resolved:
                links.append(ChildLink(url=resolved, name=chapter_name(resolved, _text(tag))))

        links = _dedupe(links)
        links.reverse()
        return links

    # ============================================================
    # Leaves
    # ============================================================

    async def list_leaf_urls(self, query: LeafQuery) -> list[str]:
        self.validate_source(query.url)
        self._log_start("list_leaf_urls", query.url)
        soup = _parse(await self._get_text(query.url, query.headers))

        urls = self.parse_image_urls(soup, query.url)
        if not urls:
            raise ExtractionError("No chapter images found", url=query.url, extractor=self.name)
        self._log_success("list_leaf_urls", query.url, len(urls))
        return urls

    def parse_image_urls(self, soup: BeautifulSoup, base_url: str) -> list[str]:
        for selector in (PRIMARY_IMAGE_SELECTOR, COMMON_IMAGE_SELECTORS, IMAGE_CONTAINER_SELECTORS):
            images = soup.select(selector)
            if selector == IMAGE_CONTAINER_SELECTORS:
                images = [img for container in images for img in container.select("img")]
            urls = []
            for img in images:
                resolved = absolutize(base_url, image_url_of(img))
                if resolved and resolved not in urls:
                    urls.append(resolved)
            if urls:
                return urls
        return []

    async def detect_leaf_info(self, url: str, children: list[str]) -> ChapterInfo:
        return ChapterInfo(name=chapter_name(url) or "Chapter", source_url=url, image_urls=list(children))

    def parse_chapter_title(self, soup: BeautifulSoup) -> str:
        for selector in CHAPTER_TITLE_SELECTORS:
            title = _text(soup.select_one(selector))
            if title:
                return title
        return ""
