"""
SQLAlchemy ORM models for database tables.

Crawl side: jobs (one per unit at any level), their queue of discovered
children, and the one-per-job checkpoint, progress and settings rows.
Catalog side: comics and chapters populated by the crawl.

Tree links (parent, root, merged-into) are plain foreign-key columns,
never relationships, so aggregate queries stay simple bulk reads.
"""

from datetime import datetime
from enum import Enum as PyEnum
from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class JobLevel(str, PyEnum):
    """Position of a job in the crawl hierarchy."""

    CATEGORY = "category"
    COMIC = "comic"
    CHAPTER = "chapter"
    IMAGE = "image"

    @property
    def child_level(self) -> "JobLevel | None":
        order = list(JobLevel)
        index = order.index(self)
        return order[index + 1] if index + 1 < len(order) else None


class JobStatus(str, PyEnum):
    """
    Status enum for crawl jobs.

    Lifecycle: PENDING → RUNNING → COMPLETED/FAILED/PAUSED/CANCELLED,
    PAUSED → RUNNING (resume), FAILED → RUNNING (retry).
    """

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})
ACTIVE_STATUSES = frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED})

# target -> states it may be entered from
ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.RUNNING: frozenset({JobStatus.PENDING, JobStatus.PAUSED, JobStatus.FAILED}),
    JobStatus.PAUSED: frozenset({JobStatus.RUNNING}),
    JobStatus.COMPLETED: frozenset({JobStatus.RUNNING}),
    JobStatus.FAILED: frozenset({JobStatus.RUNNING}),
    JobStatus.CANCELLED: frozenset({JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PAUSED}),
    JobStatus.PENDING: frozenset(),
}


class DownloadMode(str, PyEnum):
    """Policy controlling which discovered children are processed."""

    FULL = "full"
    UPDATE = "update"
    PARTIAL = "partial"
    NONE = "none"


class QueueStatus(str, PyEnum):
    """Status of a queue entry waiting to become a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"
    SKIPPED = "skipped"


class ComicStatus(str, PyEnum):
    """Catalog record state after duplicate screening."""

    ACTIVE = "active"
    DUPLICATE_DETECTED = "duplicate_detected"
    MERGED = "merged"


class CrawlJob(Base):
    """
    ORM model for crawl jobs.

    Counters obey ``completed + failed + skipped <= total`` once total is
    known, with equality in any terminal state. ``content_id`` stays -1
    until the matching catalog record exists.
    """

    __tablename__ = "crawl_jobs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    # Tree position
    level: Mapped[JobLevel] = mapped_column(
        Enum(JobLevel, native_enum=False, length=20),
        nullable=False,
        comment="Hierarchy level of this job",
    )
    parent_id: Mapped[int | None] = mapped_column(
        ForeignKey("crawl_jobs.id", ondelete="CASCADE"),
        nullable=True,
        comment="Job that discovered this one",
    )
    root_id: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Top-most ancestor (NULL for root jobs)",
    )
    depth: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    item_index: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=0,
        comment="0-based position among the parent's discovered children",
    )

    # Target
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_url: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Lowercased URL without scheme/www/query"
    )
    target_slug: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    target_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    content_id: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        default=-1,
        comment="Catalog record id (-1 until linked)",
    )
    created_by: Mapped[str] = mapped_column(String(100), nullable=False, default="system")

    # State
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, native_enum=False, length=20),
        nullable=False,
        default=JobStatus.PENDING,
    )
    download_mode: Mapped[DownloadMode] = mapped_column(
        Enum(DownloadMode, native_enum=False, length=20),
        nullable=False,
        default=DownloadMode.FULL,
    )
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    parent_notified: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=False,
        comment="Terminal outcome already applied to the parent's counters",
    )

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_crawl_jobs_status", "status"),
        Index("ix_crawl_jobs_parent", "parent_id", "item_index"),
        Index("ix_crawl_jobs_root", "root_id"),
        Index("ix_crawl_jobs_normalized_url", "normalized_url"),
        Index("ix_crawl_jobs_operator_status", "created_by", "status"),
    )

    @property
    def is_terminal(self) -> bool:
        return JobStatus(self.status).is_terminal

    def __repr__(self) -> str:
        return f"CrawlJob(id={self.id!r}, level={self.level!r}, status={self.status!r})"


class CrawlQueueEntry(Base):
    """ORM model for a discovered child waiting to be materialized as a job."""

    __tablename__ = "crawl_queue"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[int] = mapped_column(
        ForeignKey("crawl_jobs.id", ondelete="CASCADE"),
        nullable=False,
        comment="Owning (parent) job",
    )
    level: Mapped[JobLevel] = mapped_column(
        Enum(JobLevel, native_enum=False, length=20), nullable=False
    )
    target_url: Mapped[str] = mapped_column(Text, nullable=False)
    target_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[QueueStatus] = mapped_column(
        Enum(QueueStatus, native_enum=False, length=20),
        nullable=False,
        default=QueueStatus.PENDING,
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    deleted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("job_id", "position", name="uq_crawl_queue_job_position"),
        Index("ix_crawl_queue_ready", "status", "priority", "created_at"),
        Index("ix_crawl_queue_next_retry", "next_retry_at"),
    )

    def __repr__(self) -> str:
        return (
            f"CrawlQueueEntry(id={self.id!r}, job_id={self.job_id!r}, "
            f"position={self.position!r}, status={self.status!r})"
        )


class CrawlCheckpoint(Base):
    """
    Resumable cursor for a job (shares the job's primary key).

    ``failed_nested`` maps a child index (as a string key, JSON objects
    only have string keys) to the grandchild indices that failed under it.
    """

    __tablename__ = "crawl_checkpoints"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("crawl_jobs.id", ondelete="CASCADE"), primary_key=True
    )
    last_item_index: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    failed_indices: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    failed_nested: Mapped[dict[str, list[int]]] = mapped_column(
        JSON, nullable=False, default=dict
    )
    resume_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paused_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resumed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    state: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Typed state snapshot (see models.schemas.CheckpointState)"
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"CrawlCheckpoint(job_id={self.job_id!r}, last_item_index={self.last_item_index!r})"


class CrawlProgress(Base):
    """Live counters and message history for a job (shares the job's primary key)."""

    __tablename__ = "crawl_progress"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("crawl_jobs.id", ondelete="CASCADE"), primary_key=True
    )
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    completed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    current_index: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    current_item_name: Mapped[str | None] = mapped_column(String(500), nullable=True)
    current_item_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    bytes_downloaded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    percent: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    messages: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    estimated_remaining_seconds: Mapped[float | None] = mapped_column(Float, nullable=True)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    def __repr__(self) -> str:
        return f"CrawlProgress(job_id={self.job_id!r}, percent={self.percent!r})"


class CrawlSettings(Base):
    """
    Per-job crawl configuration (shares the job's primary key).

    Item lists and range bounds are 1-based; -1 means unbounded.
    """

    __tablename__ = "crawl_settings"

    job_id: Mapped[int] = mapped_column(
        ForeignKey("crawl_jobs.id", ondelete="CASCADE"), primary_key=True
    )
    parallel_limit: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    image_quality: Mapped[int] = mapped_column(Integer, nullable=False, default=85)
    timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=30)
    skip_items: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    redownload_items: Mapped[list[int]] = mapped_column(JSON, nullable=False, default=list)
    range_start: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    range_end: Mapped[int] = mapped_column(Integer, nullable=False, default=-1)
    per_item_settings: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list
    )
    custom_headers: Mapped[dict[str, str]] = mapped_column(JSON, nullable=False, default=dict)

    def __repr__(self) -> str:
        return f"CrawlSettings(job_id={self.job_id!r})"


class Comic(Base):
    """Catalog record for a comic discovered by a COMIC job."""

    __tablename__ = "comics"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(500), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    origin_name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    author: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    alternative_names: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    thumbnail_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    cover_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_source: Mapped[str] = mapped_column(Text, nullable=False)
    progress_status: Mapped[str] = mapped_column(String(20), nullable=False, default="ongoing")
    status: Mapped[ComicStatus] = mapped_column(
        Enum(ComicStatus, native_enum=False, length=30),
        nullable=False,
        default=ComicStatus.ACTIVE,
    )
    merged_into_id: Mapped[int | None] = mapped_column(
        ForeignKey("comics.id", ondelete="SET NULL"), nullable=True
    )
    views: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    likes: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    follows: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_comics_normalized_source", "normalized_source"),
        Index("ix_comics_slug", "slug"),
        Index("ix_comics_cover_hash", "cover_hash"),
        Index("ix_comics_status", "status"),
    )

    def __repr__(self) -> str:
        return f"Comic(id={self.id!r}, name={self.name!r}, status={self.status!r})"


class Chapter(Base):
    """Catalog record for a chapter of a comic."""

    __tablename__ = "chapters"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    comic_id: Mapped[int] = mapped_column(
        ForeignKey("comics.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_url: Mapped[str] = mapped_column(Text, nullable=False)
    normalized_source: Mapped[str] = mapped_column(Text, nullable=False)
    image_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_chapters_comic", "comic_id", "position"),
        Index("ix_chapters_normalized_source", "normalized_source"),
    )

    def __repr__(self) -> str:
        return f"Chapter(id={self.id!r}, comic_id={self.comic_id!r}, name={self.name!r})"
