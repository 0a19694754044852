"""
Pydantic schemas for the job control API.

Request bodies for creating and steering crawl jobs, and response views
over job, progress and catalog rows.
"""

from datetime import datetime
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, field_validator

from comicrawl.database.models import (
    ComicStatus,
    CrawlCheckpoint,
    CrawlJob,
    CrawlProgress,
    DownloadMode,
    JobLevel,
    JobStatus,
)
from comicrawl.models.schemas import BatchCheckSummary, CrawlSettingsData, DuplicateCheckResult


def _require_http(url: str) -> str:
    url = url.strip()
    if not url.lower().startswith(("http://", "https://")):
        raise ValueError("url must start with http:// or https://")
    return url


class CreateJobRequest(BaseModel):
    """
    Request schema for creating a root crawl job.

    Example:
        {
            "url": "https://truyenqq.com/truyen-tranh/one-piece",
            "level": "comic",
            "download_mode": "full",
            "settings": {"skip_items": [3], "range_start": 1, "range_end": 10}
        }
    """

    model_config = ConfigDict(extra="forbid")

    url: str = Field(description="Category listing or comic page to crawl")
    level: JobLevel = Field(default=JobLevel.COMIC, description="Level of the root job")
    name: str = Field(default="", max_length=500)
    download_mode: DownloadMode = Field(default=DownloadMode.FULL)
    settings: CrawlSettingsData | None = Field(
        default=None,
        description="Job settings (defaults from configuration when omitted)",
    )
    start: bool = Field(default=True, description="Start immediately when capacity allows")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        return _require_http(v)

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: JobLevel) -> JobLevel:
        if v not in (JobLevel.CATEGORY, JobLevel.COMIC):
            raise ValueError("root jobs are CATEGORY or COMIC")
        return v


class RetryItemsRequest(BaseModel):
    indices: list[int] | None = Field(
        default=None,
        description="0-based child indices to retry (all failed children when omitted)",
    )


class EnqueueItemsRequest(BaseModel):
    urls: list[str] = Field(min_length=1)
    priority: int = 0

    @field_validator("urls")
    @classmethod
    def validate_urls(cls, v: list[str]) -> list[str]:
        return [_require_http(url) for url in v]


class DuplicateCheckRequest(BaseModel):
    urls: list[str] = Field(min_length=1, max_length=500)
    include_content_hash: bool = False


class MergeRequest(BaseModel):
    primary_id: int = Field(description="Record that survives")
    secondary_id: int = Field(description="Record folded into the primary")


class JobResponse(BaseModel):
    """
    View of one crawl job.

    Used by GET /api/v1/jobs/{job_id} and every state-changing route.
    """

    model_config = ConfigDict(from_attributes=True)

    id: int
    level: JobLevel
    parent_id: int | None = None
    root_id: int | None = None
    depth: int = 0
    item_index: int = 0
    target_url: str
    target_name: str = ""
    content_id: int = -1
    created_by: str
    status: JobStatus
    download_mode: DownloadMode
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    retry_count: int = 0
    error_message: str | None = None
    created_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    deleted_at: datetime | None = None


class JobListResponse(BaseModel):
    """
    Response schema for listing jobs.

    Used by GET /api/v1/jobs and GET /api/v1/jobs/{job_id}/children.
    """

    jobs: list[JobResponse]
    limit: int
    offset: int


class ActionResponse(BaseModel):
    """Result of a control action (pause, cancel, delete, ...)."""

    job_id: int
    message: str
    affected: list[int] = Field(default_factory=list)
    count: int = 0


class ProgressResponse(BaseModel):
    """Live progress and checkpoint cursor of a job."""

    job_id: int
    status: JobStatus
    total_items: int = 0
    completed_items: int = 0
    failed_items: int = 0
    skipped_items: int = 0
    percent: float = 0.0
    current_index: int = -1
    current_item_name: str | None = None
    current_item_url: str | None = None
    bytes_downloaded: int = 0
    message: str | None = None
    messages: list[str] = Field(default_factory=list)
    estimated_remaining_seconds: float | None = None
    last_item_index: int = -1
    failed_indices: list[int] = Field(default_factory=list)
    failed_nested: dict[str, list[int]] = Field(default_factory=dict)
    resume_count: int = 0

    @classmethod
    def from_rows(cls, job: CrawlJob, progress: CrawlProgress, checkpoint: CrawlCheckpoint) -> Self:
        return cls(
            job_id=job.id,
            status=job.status,
            total_items=progress.total_items,
            completed_items=progress.completed_items,
            failed_items=progress.failed_items,
            skipped_items=progress.skipped_items,
            percent=progress.percent,
            current_index=progress.current_index,
            current_item_name=progress.current_item_name,
            current_item_url=progress.current_item_url,
            bytes_downloaded=progress.bytes_downloaded,
            message=progress.message,
            messages=list(progress.messages or []),
            estimated_remaining_seconds=progress.estimated_remaining_seconds,
            last_item_index=checkpoint.last_item_index,
            failed_indices=list(checkpoint.failed_indices or []),
            failed_nested=dict(checkpoint.failed_nested or {}),
            resume_count=checkpoint.resume_count,
        )


class DuplicateCheckResponse(BaseModel):
    results: list[DuplicateCheckResult]
    summary: BatchCheckSummary
    duplicate_percentage: float = 0.0


class ComicResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    slug: str = ""
    source_url: str
    status: ComicStatus
    alternative_names: list[str] = Field(default_factory=list)
    merged_into_id: int | None = None
    views: int = 0
    likes: int = 0
    follows: int = 0


class StatsResponse(BaseModel):
    """
    Response schema for job and queue statistics.

    Used by GET /api/v1/stats endpoint.
    """

    jobs: dict[str, Any]
    queue: dict[str, int]
    running_roots: dict[str, int]
    limits: dict[str, int]


class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""

    status: str = Field(
        default="healthy",
        description="Service status",
    )
    version: str = Field(
        description="API version",
    )
    database: str = Field(
        default="connected",
        description="Database connection status",
    )
