"""
Crawl error classification and retry policy.

Transient fetch failures are retried at the queue-entry level with
exponential backoff; structural failures (parse errors, missing pages,
captcha or login walls) fail immediately because retrying cannot help.
"""

from dataclasses import dataclass
from enum import Enum

import httpx
from sqlalchemy.exc import SQLAlchemyError

from comicrawl.utils.exceptions import DatabaseError, ExtractionError, FetchError


class CrawlErrorType(str, Enum):
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    BLOCKED = "blocked"
    CAPTCHA_REQUIRED = "captcha_required"
    AUTH_REQUIRED = "auth_required"
    NOT_FOUND = "not_found"
    PARSE_ERROR = "parse_error"
    UNKNOWN = "unknown"


class ErrorAction(str, Enum):
    RETRY_IMMEDIATE = "retry_immediate"
    RETRY_DELAYED = "retry_delayed"
    SKIP_MARK_MANUAL = "skip_mark_manual"
    SKIP_NOTIFY_ADMIN = "skip_notify_admin"
    SKIP_PERMANENT = "skip_permanent"
    SKIP_LOG = "skip_log"


RETRYABLE_TYPES = frozenset(
    {
        CrawlErrorType.NETWORK_ERROR,
        CrawlErrorType.TIMEOUT,
        CrawlErrorType.RATE_LIMITED,
        CrawlErrorType.BLOCKED,
    }
)

_STATUS_TYPES = {
    401: CrawlErrorType.AUTH_REQUIRED,
    403: CrawlErrorType.BLOCKED,
    404: CrawlErrorType.NOT_FOUND,
    410: CrawlErrorType.NOT_FOUND,
    429: CrawlErrorType.RATE_LIMITED,
    503: CrawlErrorType.BLOCKED,
}

# Checked in order; first keyword hit wins
_MESSAGE_KEYWORDS: tuple[tuple[CrawlErrorType, tuple[str, ...]], ...] = (
    (CrawlErrorType.TIMEOUT, ("timeout", "timed out")),
    (CrawlErrorType.RATE_LIMITED, ("429", "rate limit", "too many requests")),
    (CrawlErrorType.CAPTCHA_REQUIRED, ("captcha", "verify you are human")),
    (CrawlErrorType.AUTH_REQUIRED, ("401", "login", "sign in", "authentication")),
    (CrawlErrorType.BLOCKED, ("403", "forbidden", "blocked", "cloudflare")),
    (CrawlErrorType.NOT_FOUND, ("404", "not found")),
    (CrawlErrorType.NETWORK_ERROR, ("connection", "network", "reset by peer", "dns")),
)


def classify_error(exc: BaseException) -> CrawlErrorType:
    """
    Map an exception raised while executing a job to a CrawlErrorType.

    Exception type and HTTP status decide first; the message keywords
    only break ties for generic exceptions.
    """
    if isinstance(exc, httpx.TimeoutException | TimeoutError):
        return CrawlErrorType.TIMEOUT
    if isinstance(exc, httpx.TransportError | ConnectionError):
        return CrawlErrorType.NETWORK_ERROR

    status_code = getattr(exc, "status_code", None)
    if isinstance(exc, httpx.HTTPStatusError):
        status_code = exc.response.status_code
    if status_code in _STATUS_TYPES:
        return _STATUS_TYPES[status_code]

    if isinstance(exc, ExtractionError):
        return CrawlErrorType.PARSE_ERROR
    if isinstance(exc, FetchError):
        # status-less: the transport failure it wraps is the cause
        if isinstance(exc.__cause__, httpx.TimeoutException | TimeoutError):
            return CrawlErrorType.TIMEOUT
        return CrawlErrorType.NETWORK_ERROR

    message = str(exc).lower()
    for error_type, keywords in _MESSAGE_KEYWORDS:
        if any(keyword in message for keyword in keywords):
            return error_type
    return CrawlErrorType.UNKNOWN


def is_store_failure(exc: BaseException) -> bool:
    """Store unavailable: abort the claim and leave the entry for a later cycle."""
    return isinstance(exc, DatabaseError | SQLAlchemyError)


@dataclass(frozen=True)
class RetryDecision:
    error_type: CrawlErrorType
    action: ErrorAction
    retry: bool
    delay_seconds: float = 0.0


class RetryPolicy:
    """
    Decides whether a failed queue entry is retried and after how long.

    Backoff is ``base * 2^(retry - 1)`` seconds capped at ``max_delay``;
    rate-limited sources wait twice as long.
    """

    def __init__(self, base_delay: float = 5.0, max_delay: float = 3600.0):
        self.base_delay = base_delay
        self.max_delay = max_delay

    def backoff(self, retry_number: int, error_type: CrawlErrorType | None = None) -> float:
        delay = self.base_delay * (2 ** max(retry_number - 1, 0))
        if error_type is CrawlErrorType.RATE_LIMITED:
            delay *= 2
        return min(delay, self.max_delay)

    def action_for(self, error_type: CrawlErrorType, retry_count: int, max_retries: int) -> ErrorAction:
        match error_type:
            case CrawlErrorType.NETWORK_ERROR | CrawlErrorType.TIMEOUT:
                return ErrorAction.RETRY_IMMEDIATE if retry_count == 0 else ErrorAction.RETRY_DELAYED
            case CrawlErrorType.RATE_LIMITED | CrawlErrorType.BLOCKED:
                return ErrorAction.RETRY_DELAYED
            case CrawlErrorType.CAPTCHA_REQUIRED:
                return ErrorAction.SKIP_MARK_MANUAL
            case CrawlErrorType.AUTH_REQUIRED:
                return ErrorAction.SKIP_NOTIFY_ADMIN
            case CrawlErrorType.NOT_FOUND:
                return ErrorAction.SKIP_PERMANENT
            case _:
                return ErrorAction.SKIP_LOG

    def decide(
        self,
        error_type: CrawlErrorType,
        retry_count: int,
        max_retries: int,
    ) -> RetryDecision:
        """
        Args:
            error_type: Classified failure
            retry_count: Retries already spent on the entry
            max_retries: Retry budget of the entry
        """
        action = self.action_for(error_type, retry_count, max_retries)
        if error_type not in RETRYABLE_TYPES or retry_count >= max_retries:
            return RetryDecision(error_type, action, retry=False)

        return RetryDecision(
            error_type,
            action,
            retry=True,
            delay_seconds=self.backoff(retry_count + 1, error_type),
        )
