"""
Custom exceptions for the crawl orchestration core.

Provides granular exception types for the failure classes a crawl can
hit (transient fetch, structural parse, bad transition, store failure),
plus the pause/cancel control unwind which is deliberately not an error.
"""

from typing import Any


class CrawlError(Exception):
    """
    Base exception for all crawler errors.

    Attributes:
        message: Human-readable error description
        details: Additional context for debugging
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


# ===================
# Control Flow
# ===================


class CrawlInterrupted(Exception):
    """
    Unwinds a running handler after a pause or cancel request.

    Carries the index of the last item that was fully processed so the
    executor can persist it as the checkpoint cursor. Never logged as a
    failure.
    """

    def __init__(self, job_id: int, last_index: int, *, cancelled: bool = False) -> None:
        self.job_id = job_id
        self.last_index = last_index
        self.cancelled = cancelled
        kind = "cancelled" if cancelled else "paused"
        super().__init__(f"Job {job_id} {kind} after item {last_index}")


# ===================
# Extraction & Fetch Errors
# ===================


class ExtractionError(CrawlError):
    """
    Raised when an extractor cannot find the content it expects.

    Structural failure: retrying will not help until the source site or
    the selectors change.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        extractor: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if url:
            details["url"] = url
        if extractor:
            details["extractor"] = extractor
        super().__init__(message, details)


class FetchError(CrawlError):
    """
    Raised when a page or image could not be fetched.

    Common causes:
    - Timeout or connection reset
    - Rate limiting (429) or anti-bot blocking (403/503)
    - Empty response body
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if url:
            details["url"] = url
        if status_code:
            details["status_code"] = status_code
        self.status_code = status_code
        super().__init__(message, details)


# ===================
# Job Control Errors
# ===================


class InvalidTransitionError(CrawlError):
    """Raised when a job is asked to move to a state its current state forbids."""

    def __init__(self, job_id: int, current: str, target: str) -> None:
        super().__init__(
            message=f"Job {job_id} cannot move from {current} to {target}",
            details={"job_id": job_id, "current": current, "target": target},
        )


class ConcurrencyLimitError(CrawlError):
    """Raised when starting a job would exceed a running-job ceiling."""

    def __init__(self, message: str, operator: str | None = None, limit: int | None = None) -> None:
        details: dict[str, Any] = {}
        if operator:
            details["operator"] = operator
        if limit:
            details["limit"] = limit
        super().__init__(message, details)


class DuplicateCrawlError(CrawlError):
    """Raised when a crawl of the same URL is already pending, running or paused."""

    def __init__(self, url: str, existing_job_id: int) -> None:
        super().__init__(
            message=f"Job {existing_job_id} is already crawling {url}",
            details={"url": url, "existing_job_id": existing_job_id},
        )
        self.existing_job_id = existing_job_id


class MergeConflictError(CrawlError):
    """Raised when two catalog records cannot be merged (same record, or one already merged)."""

    def __init__(self, primary_id: int, secondary_id: int, reason: str) -> None:
        super().__init__(
            message=f"Cannot merge comic {secondary_id} into {primary_id}: {reason}",
            details={"primary_id": primary_id, "secondary_id": secondary_id},
        )


# ===================
# Database Errors
# ===================


class DatabaseError(CrawlError):
    """
    Raised when database operations fail.

    Wraps SQLAlchemy exceptions with additional context.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        table: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if operation:
            details["operation"] = operation
        if table:
            details["table"] = table
        super().__init__(message, details)


class JobNotFoundError(DatabaseError):
    """Raised when a job ID is not found in the database."""

    def __init__(self, job_id: int) -> None:
        super().__init__(
            message=f"Job not found: {job_id}",
            operation="select",
            table="crawl_jobs",
            details={"job_id": job_id},
        )


class QueueEntryNotFoundError(DatabaseError):
    """Raised when a queue entry ID is not found in the database."""

    def __init__(self, entry_id: int) -> None:
        super().__init__(
            message=f"Queue entry not found: {entry_id}",
            operation="select",
            table="crawl_queue",
            details={"entry_id": entry_id},
        )


class ContentNotFoundError(DatabaseError):
    """Raised when a catalog comic is not found."""

    def __init__(self, comic_id: int) -> None:
        super().__init__(
            message=f"Comic not found: {comic_id}",
            operation="select",
            table="comics",
            details={"comic_id": comic_id},
        )


# ===================
# Storage & Event Errors
# ===================


class StorageError(CrawlError):
    """Raised when storing a downloaded object fails."""

    def __init__(
        self,
        message: str,
        file_path: str | None = None,
        operation: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if file_path:
            details["file_path"] = file_path
        if operation:
            details["operation"] = operation
        super().__init__(message, details)


class EventDeliveryError(CrawlError):
    """
    Raised when the event webhook rejects or drops a notification.

    Never escapes publish_safely: events are best effort.
    """

    def __init__(
        self,
        message: str,
        url: str | None = None,
        status_code: int | None = None,
        attempt: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        details = details or {}
        if url:
            details["url"] = url
        if status_code:
            details["status_code"] = status_code
        if attempt:
            details["attempt"] = attempt
        super().__init__(message, details)
