"""
Tests for crawl error classification and the retry policy.
"""

import httpx
import pytest
from sqlalchemy.exc import OperationalError

from comicrawl.services.error_policy import (
    CrawlErrorType,
    ErrorAction,
    RetryPolicy,
    classify_error,
    is_store_failure,
)
from comicrawl.utils.exceptions import DatabaseError, ExtractionError, FetchError


class TestClassifyError:
    """Tests for classify_error()."""

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("status_code", "expected"),
        [
            (401, CrawlErrorType.AUTH_REQUIRED),
            (403, CrawlErrorType.BLOCKED),
            (404, CrawlErrorType.NOT_FOUND),
            (410, CrawlErrorType.NOT_FOUND),
            (429, CrawlErrorType.RATE_LIMITED),
            (503, CrawlErrorType.BLOCKED),
        ],
    )
    def test_status_codes(self, status_code: int, expected: CrawlErrorType) -> None:
        """Test the HTTP status decides the type."""
        error = FetchError(f"HTTP {status_code}", url="https://example.com", status_code=status_code)
        assert classify_error(error) is expected

    @pytest.mark.unit
    def test_httpx_timeout(self) -> None:
        """Test httpx timeouts classify as TIMEOUT."""
        assert classify_error(httpx.ReadTimeout("slow")) is CrawlErrorType.TIMEOUT

    @pytest.mark.unit
    def test_httpx_transport_error(self) -> None:
        """Test connection failures classify as NETWORK_ERROR."""
        assert classify_error(httpx.ConnectError("refused")) is CrawlErrorType.NETWORK_ERROR

    @pytest.mark.unit
    def test_message_keywords(self) -> None:
        """Test generic exceptions fall back to message keywords."""
        assert classify_error(RuntimeError("Please verify you are human")) is CrawlErrorType.CAPTCHA_REQUIRED
        assert classify_error(RuntimeError("Too many requests")) is CrawlErrorType.RATE_LIMITED
        assert classify_error(RuntimeError("Login required")) is CrawlErrorType.AUTH_REQUIRED

    @pytest.mark.unit
    def test_extraction_error_is_parse_error(self) -> None:
        """Test extraction failures without keywords are PARSE_ERROR."""
        assert classify_error(ExtractionError("No chapter images")) is CrawlErrorType.PARSE_ERROR

    @pytest.mark.unit
    def test_extraction_error_ignores_keywords(self) -> None:
        """Test the exception type wins over network-sounding words in the message."""
        assert classify_error(ExtractionError("connection element missing")) is CrawlErrorType.PARSE_ERROR
        assert classify_error(ExtractionError("Chapter list not found")) is CrawlErrorType.PARSE_ERROR

    @pytest.mark.unit
    def test_fetch_error_keeps_timeout_cause(self) -> None:
        """Test a fetch failure wrapping a timeout is a TIMEOUT."""
        wrapped = FetchError("Request failed", url="https://comics.test/x")
        wrapped.__cause__ = httpx.ReadTimeout("read timed out")

        assert classify_error(wrapped) is CrawlErrorType.TIMEOUT

    @pytest.mark.unit
    def test_fetch_error_without_status(self) -> None:
        """Test a status-less fetch failure is a NETWORK_ERROR."""
        assert classify_error(FetchError("Empty response body")) is CrawlErrorType.NETWORK_ERROR
        assert classify_error(FetchError("Request blocked, try again")) is CrawlErrorType.NETWORK_ERROR

    @pytest.mark.unit
    def test_unknown(self) -> None:
        """Test anything else is UNKNOWN."""
        assert classify_error(ValueError("weird")) is CrawlErrorType.UNKNOWN

    @pytest.mark.unit
    def test_store_failures(self) -> None:
        """Test database errors are recognised as store failures."""
        assert is_store_failure(DatabaseError("down"))
        assert is_store_failure(OperationalError("SELECT 1", {}, Exception("locked")))
        assert not is_store_failure(FetchError("HTTP 500", status_code=500))


class TestRetryPolicy:
    """Tests for RetryPolicy."""

    @pytest.fixture
    def policy(self) -> RetryPolicy:
        return RetryPolicy(base_delay=5.0, max_delay=60.0)

    @pytest.mark.unit
    def test_backoff_doubles(self, policy: RetryPolicy) -> None:
        """Test the delay doubles per retry."""
        assert [policy.backoff(n) for n in (1, 2, 3)] == [5.0, 10.0, 20.0]

    @pytest.mark.unit
    def test_backoff_is_capped(self, policy: RetryPolicy) -> None:
        """Test the delay never exceeds max_delay."""
        assert policy.backoff(10) == 60.0

    @pytest.mark.unit
    def test_rate_limited_waits_longer(self, policy: RetryPolicy) -> None:
        """Test rate-limited retries wait twice as long."""
        assert policy.backoff(1, CrawlErrorType.RATE_LIMITED) == 10.0

    @pytest.mark.unit
    def test_retryable_within_budget(self, policy: RetryPolicy) -> None:
        """Test a transient failure with budget left is retried."""
        decision = policy.decide(CrawlErrorType.NETWORK_ERROR, 0, 3)

        assert decision.retry
        assert decision.action is ErrorAction.RETRY_IMMEDIATE
        assert decision.delay_seconds == 5.0

    @pytest.mark.unit
    def test_budget_exhausted(self, policy: RetryPolicy) -> None:
        """Test no retry once retry_count reaches max_retries."""
        decision = policy.decide(CrawlErrorType.TIMEOUT, 3, 3)
        assert not decision.retry

    @pytest.mark.unit
    @pytest.mark.parametrize(
        ("error_type", "action"),
        [
            (CrawlErrorType.NOT_FOUND, ErrorAction.SKIP_PERMANENT),
            (CrawlErrorType.CAPTCHA_REQUIRED, ErrorAction.SKIP_MARK_MANUAL),
            (CrawlErrorType.AUTH_REQUIRED, ErrorAction.SKIP_NOTIFY_ADMIN),
            (CrawlErrorType.PARSE_ERROR, ErrorAction.SKIP_LOG),
        ],
    )
    def test_permanent_types_never_retry(
        self,
        policy: RetryPolicy,
        error_type: CrawlErrorType,
        action: ErrorAction,
    ) -> None:
        """Test structural failures fail immediately."""
        decision = policy.decide(error_type, 0, 3)

        assert not decision.retry
        assert decision.action is action
