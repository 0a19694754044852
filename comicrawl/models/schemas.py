"""
Pydantic schemas for crawl domain values.

Extractor results, per-job settings snapshots, the typed checkpoint
state, duplicate-check results and object-store placements. These are
plain values passed between services; ORM rows live in database.models.
"""

from enum import Enum
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from comicrawl.database.models import DownloadMode
from comicrawl.utils.urls import normalize_url

# ============================================================
# Extractor results
# ============================================================


class ComicInfo(BaseModel):
    """Top-level metadata detected on a comic page."""

    model_config = ConfigDict(extra="ignore")

    name: str = Field(description="Display name of the comic")
    source_url: str = Field(description="URL the info was detected on")
    slug: str = Field(default="", description="Stable identifier derived from the URL")
    origin_name: str = Field(default="", description="Original-language title")
    alternative_names: list[str] = Field(default_factory=list)
    author: str = ""
    description: str = ""
    thumbnail_url: str = ""
    progress_status: Literal["ongoing", "completed"] = "ongoing"
    likes: int = Field(default=0, ge=0)
    follows: int = Field(default=0, ge=0)
    views: int = Field(default=0, ge=0)


class ChapterInfo(BaseModel):
    """Leaf-container metadata (a chapter and its images)."""

    name: str
    source_url: str
    title: str = ""
    image_urls: list[str] = Field(default_factory=list)


class ChildLink(BaseModel):
    """One discovered child: where it lives and what to call it."""

    url: str
    name: str = ""


class LeafQuery(BaseModel):
    """Parameters for listing the leaf (image) URLs of a chapter."""

    url: str
    domain: str = ""
    name: str = ""
    headers: dict[str, str] = Field(default_factory=dict)


# ============================================================
# Settings snapshot
# ============================================================


class PerItemSetting(BaseModel):
    """Override a CATEGORY job passes to one specific COMIC child (matched by URL)."""

    model_config = ConfigDict(extra="ignore")

    url: str
    skip: bool = Field(default=False, description="Do not enqueue this comic at all")
    download_mode: DownloadMode | None = None
    skip_items: list[int] = Field(default_factory=list)
    redownload_items: list[int] = Field(default_factory=list)
    range_start: int = -1
    range_end: int = -1


class CrawlSettingsData(BaseModel):
    """
    Detached copy of a job's settings row.

    ``skip_items``, ``redownload_items`` and the range are 1-based;
    -1 leaves a range bound open.
    """

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    parallel_limit: int = Field(default=3, ge=1)
    image_quality: int = Field(default=85, ge=1, le=100)
    timeout_seconds: int = Field(default=30, ge=1)
    skip_items: list[int] = Field(default_factory=list)
    redownload_items: list[int] = Field(default_factory=list)
    range_start: int = -1
    range_end: int = -1
    per_item_settings: list[PerItemSetting] = Field(default_factory=list)
    custom_headers: dict[str, str] = Field(default_factory=dict)

    def override_for(self, normalized_url: str) -> PerItemSetting | None:
        for item in self.per_item_settings:
            if normalize_url(item.url) == normalized_url:
                return item
        return None


# ============================================================
# Checkpoint state snapshot
# ============================================================


class ImageUrlList(BaseModel):
    """Image URLs a CHAPTER job discovered, read back by its IMAGE children."""

    kind: Literal["image_urls"] = "image_urls"
    urls: list[str] = Field(default_factory=list)


class ImageResult(BaseModel):
    """Outcome of one IMAGE job."""

    kind: Literal["image_result"] = "image_result"
    image_index: int
    original_url: str
    path: str | None = None
    preview: str | None = None
    size_bytes: int = 0
    status: Literal["downloaded", "failed"] = "downloaded"


CheckpointState = Annotated[ImageUrlList | ImageResult, Field(discriminator="kind")]
checkpoint_state_adapter: TypeAdapter[ImageUrlList | ImageResult] = TypeAdapter(CheckpointState)


# ============================================================
# Duplicate detection
# ============================================================


class DuplicateType(str, Enum):
    """How a candidate URL matched existing work."""

    NO_DUPLICATE = "no_duplicate"
    EXACT_URL = "exact_url"
    SIMILAR_URL = "similar_url"
    CONTENT_HASH = "content_hash"

    @property
    def confidence(self) -> int:
        return _CONFIDENCE[self]


_CONFIDENCE = {
    DuplicateType.EXACT_URL: 100,
    DuplicateType.CONTENT_HASH: 90,
    DuplicateType.SIMILAR_URL: 85,
    DuplicateType.NO_DUPLICATE: 0,
}


class DuplicateCheckResult(BaseModel):
    """Pre-crawl duplicate verdict for one URL (computed, never stored)."""

    url: str
    match_type: DuplicateType = DuplicateType.NO_DUPLICATE
    existing_job_id: int | None = None
    existing_content_id: int | None = None
    confidence: int = 0
    matched_url: str | None = None
    existing_child_count: int = 0

    @property
    def has_duplicate(self) -> bool:
        return self.match_type is not DuplicateType.NO_DUPLICATE

    @classmethod
    def none(cls, url: str) -> "DuplicateCheckResult":
        return cls(url=url)

    @classmethod
    def matched(
        cls,
        url: str,
        match_type: DuplicateType,
        *,
        existing_job_id: int | None = None,
        existing_content_id: int | None = None,
        matched_url: str | None = None,
        existing_child_count: int = 0,
    ) -> "DuplicateCheckResult":
        return cls(
            url=url,
            match_type=match_type,
            existing_job_id=existing_job_id,
            existing_content_id=existing_content_id,
            confidence=match_type.confidence,
            matched_url=matched_url,
            existing_child_count=existing_child_count,
        )


class BatchCheckSummary(BaseModel):
    """Counts over a batch of duplicate checks."""

    total: int = 0
    exact: int = 0
    content_hash: int = 0
    similar: int = 0
    none: int = 0

    @property
    def duplicates(self) -> int:
        return self.exact + self.content_hash + self.similar

    @property
    def duplicate_percentage(self) -> float:
        return round(self.duplicates * 100.0 / self.total, 2) if self.total else 0.0


class SimilarComic(BaseModel):
    """A catalog record resembling another one."""

    comic_id: int
    name: str
    similarity: float


class CatalogDecision(str, Enum):
    """What happened to a newly created catalog record after screening."""

    ACCEPTED = "accepted"
    FLAGGED = "flagged"
    MERGED = "merged"


class CatalogOutcome(BaseModel):
    """Screening result: the id the crawl should link to and why."""

    decision: CatalogDecision
    content_id: int
    best_match: SimilarComic | None = None


# ============================================================
# Object store
# ============================================================


class ImagePlacement(BaseModel):
    """Where a downloaded image belongs in the catalog."""

    comic_key: str
    chapter_key: str
    image_index: int
    source_url: str
    content_type: str | None = None


class StoredObject(BaseModel):
    """What the object store returns for a stored image."""

    path: str
    size_bytes: int
    preview: str | None = Field(default=None, description="Opaque lightweight preview token")
