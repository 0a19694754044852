"""
Job control API routes.

Provides endpoints for:
- POST /jobs - Create (and by default start) a root crawl job
- GET /jobs, /jobs/{job_id}, /jobs/{job_id}/children, /jobs/{job_id}/progress
- POST /jobs/{job_id}/start|pause|resume|retry|retry-failed|cancel|restore|items
- GET/PUT /jobs/{job_id}/settings
- DELETE /jobs/{job_id} (soft delete), DELETE /jobs/{job_id}/purge
- POST /duplicates/check, POST /comics/merge
- POST /queue/drain, GET /stats
"""

from typing import Annotated

from fastapi import APIRouter, BackgroundTasks, Query, status

from api.dependencies import ApiKeyDep, JobServiceDep, OperatorDep, ProcessorDep
from comicrawl.database.models import CrawlJob, JobLevel, JobStatus
from comicrawl.models.jobs import (
    ActionResponse,
    ComicResponse,
    CreateJobRequest,
    DuplicateCheckRequest,
    DuplicateCheckResponse,
    EnqueueItemsRequest,
    JobListResponse,
    JobResponse,
    MergeRequest,
    ProgressResponse,
    RetryItemsRequest,
    StatsResponse,
)
from comicrawl.models.schemas import CrawlSettingsData
from comicrawl.services.queue_processor import QueueProcessor, execute_crawl_job
from comicrawl.utils.exceptions import ConcurrencyLimitError
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter(tags=["Jobs"])


def _schedule(background_tasks: BackgroundTasks, processor: QueueProcessor, job: CrawlJob) -> None:
    """Roots run as a background task; children wait for the drain loop."""
    if job.parent_id is None and job.status is JobStatus.RUNNING:
        background_tasks.add_task(execute_crawl_job, processor, job.id)
    else:
        processor.request_drain()


# ============================================================
# Creation & queries
# ============================================================


@router.post(
    "/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Create crawl job",
    description="Create a root CATEGORY or COMIC job and start it when capacity allows.",
)
async def create_job(
    request: CreateJobRequest,
    background_tasks: BackgroundTasks,
    service: JobServiceDep,
    processor: ProcessorDep,
    operator: OperatorDep,
    _api_key: ApiKeyDep,
) -> JobResponse:
    """
    Create a crawl job.

    A job that cannot start because a running-job ceiling is reached
    stays PENDING; the recurring drain admits it later.
    """
    logger.info("Creating crawl job", url=request.url, level=request.level.value, operator=operator)

    job = await service.create(
        request.url,
        level=request.level,
        operator=operator,
        name=request.name,
        download_mode=request.download_mode,
        settings=request.settings,
    )

    if request.start:
        try:
            job = await service.start(job.id)
        except ConcurrencyLimitError as e:
            logger.info("Job left pending", job_id=job.id, reason=e.message)
        else:
            _schedule(background_tasks, processor, job)

    return JobResponse.model_validate(job)


@router.get(
    "/jobs",
    response_model=JobListResponse,
    summary="List jobs",
    description="List root jobs (or all jobs) with optional status and level filters.",
)
async def list_jobs(
    service: JobServiceDep,
    _api_key: ApiKeyDep,
    status_filter: Annotated[
        JobStatus | None,
        Query(alias="status", description="Filter by job status"),
    ] = None,
    level: Annotated[JobLevel | None, Query(description="Filter by level")] = None,
    roots_only: Annotated[bool, Query(description="Only jobs without a parent")] = True,
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> JobListResponse:
    jobs = await service.list_jobs(
        status=status_filter, level=level, roots_only=roots_only, limit=limit, offset=offset
    )
    return JobListResponse(
        jobs=[JobResponse.model_validate(job) for job in jobs],
        limit=limit,
        offset=offset,
    )


@router.get("/jobs/{job_id}", response_model=JobResponse, summary="Get job")
async def get_job(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> JobResponse:
    return JobResponse.model_validate(await service.get_job(job_id))


@router.get("/jobs/{job_id}/children", response_model=JobListResponse, summary="List child jobs")
async def list_children(
    job_id: int,
    service: JobServiceDep,
    _api_key: ApiKeyDep,
    status_filter: Annotated[JobStatus | None, Query(alias="status")] = None,
    limit: Annotated[int, Query(ge=1, le=500)] = 100,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> JobListResponse:
    children = await service.list_children(job_id, status=status_filter, limit=limit, offset=offset)
    return JobListResponse(
        jobs=[JobResponse.model_validate(child) for child in children],
        limit=limit,
        offset=offset,
    )


@router.get("/jobs/{job_id}/progress", response_model=ProgressResponse, summary="Get job progress")
async def get_progress(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> ProgressResponse:
    job, progress, checkpoint = await service.get_progress(job_id)
    return ProgressResponse.from_rows(job, progress, checkpoint)


@router.get("/jobs/{job_id}/settings", response_model=CrawlSettingsData, summary="Get job settings")
async def get_settings(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> CrawlSettingsData:
    return await service.get_settings(job_id)


@router.put("/jobs/{job_id}/settings", response_model=CrawlSettingsData, summary="Replace job settings")
async def update_settings(
    job_id: int,
    settings: CrawlSettingsData,
    service: JobServiceDep,
    _api_key: ApiKeyDep,
) -> CrawlSettingsData:
    return await service.update_settings(job_id, settings)


# ============================================================
# State transitions
# ============================================================


@router.post("/jobs/{job_id}/start", response_model=JobResponse, summary="Start a pending job")
async def start_job(
    job_id: int,
    background_tasks: BackgroundTasks,
    service: JobServiceDep,
    processor: ProcessorDep,
    _api_key: ApiKeyDep,
) -> JobResponse:
    job = await service.start(job_id)
    _schedule(background_tasks, processor, job)
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/pause", response_model=ActionResponse, summary="Pause a running job")
async def pause_job(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> ActionResponse:
    paused = await service.pause(job_id)
    return ActionResponse(job_id=job_id, message="Pause requested", affected=paused, count=len(paused))


@router.post("/jobs/{job_id}/resume", response_model=JobResponse, summary="Resume a paused job")
async def resume_job(
    job_id: int,
    background_tasks: BackgroundTasks,
    service: JobServiceDep,
    processor: ProcessorDep,
    _api_key: ApiKeyDep,
) -> JobResponse:
    job = await service.resume(job_id)
    _schedule(background_tasks, processor, job)
    return JobResponse.model_validate(job)


@router.post("/jobs/{job_id}/retry", response_model=JobResponse, summary="Retry a failed job")
async def retry_job(
    job_id: int,
    background_tasks: BackgroundTasks,
    service: JobServiceDep,
    processor: ProcessorDep,
    _api_key: ApiKeyDep,
) -> JobResponse:
    job = await service.retry(job_id)
    _schedule(background_tasks, processor, job)
    return JobResponse.model_validate(job)


@router.post(
    "/jobs/{job_id}/retry-failed",
    response_model=ActionResponse,
    summary="Retry failed items",
    description="Reset failed children (all, or the given indices) so they run again.",
)
async def retry_failed_items(
    job_id: int,
    service: JobServiceDep,
    processor: ProcessorDep,
    _api_key: ApiKeyDep,
    request: RetryItemsRequest | None = None,
) -> ActionResponse:
    count = await service.retry_failed_items(job_id, request.indices if request else None)
    processor.request_drain()
    return ActionResponse(job_id=job_id, message=f"{count} failed items reset", count=count)


@router.post("/jobs/{job_id}/cancel", response_model=ActionResponse, summary="Cancel a job")
async def cancel_job(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> ActionResponse:
    cancelled = await service.cancel(job_id)
    return ActionResponse(
        job_id=job_id, message="Job cancelled", affected=cancelled, count=len(cancelled)
    )


@router.post(
    "/jobs/{job_id}/items",
    response_model=ActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Enqueue child URLs",
)
async def enqueue_items(
    job_id: int,
    request: EnqueueItemsRequest,
    processor: ProcessorDep,
    _api_key: ApiKeyDep,
) -> ActionResponse:
    entries = await processor.enqueue_items(job_id, request.urls, priority=request.priority)
    return ActionResponse(job_id=job_id, message="Items enqueued", count=len(entries))


# ============================================================
# Delete / restore
# ============================================================


@router.delete("/jobs/{job_id}", response_model=ActionResponse, summary="Soft-delete a job tree")
async def delete_job(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> ActionResponse:
    count = await service.soft_delete(job_id)
    return ActionResponse(job_id=job_id, message="Job deleted", count=count)


@router.post("/jobs/{job_id}/restore", response_model=ActionResponse, summary="Restore a deleted job tree")
async def restore_job(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> ActionResponse:
    count = await service.restore(job_id)
    return ActionResponse(job_id=job_id, message="Job restored", count=count)


@router.delete(
    "/jobs/{job_id}/purge",
    response_model=ActionResponse,
    summary="Permanently delete a soft-deleted job tree",
)
async def purge_job(job_id: int, service: JobServiceDep, _api_key: ApiKeyDep) -> ActionResponse:
    count = await service.purge(job_id)
    return ActionResponse(job_id=job_id, message="Job purged", count=count)


# ============================================================
# Duplicates, queue & stats
# ============================================================


@router.post(
    "/duplicates/check",
    response_model=DuplicateCheckResponse,
    summary="Check URLs for existing crawls",
)
async def check_duplicates(
    request: DuplicateCheckRequest,
    service: JobServiceDep,
    _api_key: ApiKeyDep,
) -> DuplicateCheckResponse:
    if request.include_content_hash:
        results = {
            url: await service.check_duplicate(url, include_content_hash=True) for url in request.urls
        }
        summary = service.services.detector.summarize(results)
    else:
        results, summary = await service.check_duplicates(request.urls)
    return DuplicateCheckResponse(
        results=list(results.values()),
        summary=summary,
        duplicate_percentage=summary.duplicate_percentage,
    )


@router.post("/comics/merge", response_model=ComicResponse, summary="Merge two catalog records")
async def merge_comics(request: MergeRequest, service: JobServiceDep, _api_key: ApiKeyDep) -> ComicResponse:
    comic = await service.merge(request.primary_id, request.secondary_id)
    return ComicResponse.model_validate(comic)


@router.post(
    "/queue/drain",
    response_model=ActionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Trigger a queue drain now",
)
async def trigger_drain(
    background_tasks: BackgroundTasks,
    processor: ProcessorDep,
    _api_key: ApiKeyDep,
) -> ActionResponse:
    background_tasks.add_task(processor.drain)
    return ActionResponse(job_id=0, message="Drain scheduled")


@router.get("/stats", response_model=StatsResponse, summary="Get job and queue statistics")
async def get_stats(processor: ProcessorDep, _api_key: ApiKeyDep) -> StatsResponse:
    return StatsResponse(**await processor.stats())
