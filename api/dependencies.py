"""
FastAPI dependencies for authentication and resource injection.

Provides:
- API Key authentication via X-API-Key header
- Operator identity via X-Operator header
- Job service and queue processor injection
"""

import secrets
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status

from comicrawl.core.config import Settings, get_settings
from comicrawl.core.runtime import CrawlRuntime
from comicrawl.services.job_service import JobService
from comicrawl.services.queue_processor import QueueProcessor
from comicrawl.utils.logging import get_logger

logger = get_logger(__name__)


async def verify_api_key(
    x_api_key: Annotated[str | None, Header()] = None,
    settings: Settings = Depends(get_settings),
) -> str:
    """
    Verify the API key from request header.

    Uses constant-time comparison to prevent timing attacks.

    Raises:
        HTTPException: 401 if key is missing or invalid
    """
    if x_api_key is None:
        logger.warning("Missing API key in request")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-API-Key header",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if not secrets.compare_digest(x_api_key, settings.api_key):
        logger.warning("Invalid API key attempt")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    return x_api_key


async def get_operator(x_operator: Annotated[str | None, Header()] = None) -> str:
    """Operator the running-job ceilings are counted against."""
    return (x_operator or "api").strip()[:100] or "api"


async def get_runtime(request: Request) -> CrawlRuntime:
    return request.app.state.runtime


async def get_job_service(request: Request) -> JobService:
    return request.app.state.runtime.jobs


async def get_processor(request: Request) -> QueueProcessor:
    return request.app.state.runtime.processor


# Type aliases for cleaner route signatures
ApiKeyDep = Annotated[str, Depends(verify_api_key)]
OperatorDep = Annotated[str, Depends(get_operator)]
RuntimeDep = Annotated[CrawlRuntime, Depends(get_runtime)]
JobServiceDep = Annotated[JobService, Depends(get_job_service)]
ProcessorDep = Annotated[QueueProcessor, Depends(get_processor)]
