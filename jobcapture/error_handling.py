"""Error taxonomy for job capture and classification of Playwright failures."""
import logging
from typing import Optional, Tuple
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

logger = logging.getLogger(__name__)

# Substrings of Playwright error messages worth one more navigation attempt.
TRANSIENT_ERROR_MARKERS = (
    "timeout",
    "navigation",
    "net::err_",
    "connection",
    "target closed",
)


class JobCaptureError(Exception):
    """Base class for job capture failures.

    Attributes:
        error_code: Stable machine-readable code surfaced to callers
        retryable: Whether the caller may retry the same request later
    """
    error_code = "job_capture_error"
    retryable = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class InvalidURLError(JobCaptureError):
    """The URL is malformed or outside the site profile's domains."""
    error_code = "invalid_url"


class RateLimitRejected(JobCaptureError):
    """The domain quota cannot be met within the configured wait bound."""
    error_code = "rate_limited"
    retryable = True

    def __init__(self, key: str, retry_after: float):
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"Rate limit for {key} exhausted, retry after {retry_after:.1f}s")


class LaunchError(JobCaptureError):
    """The browser could not be started."""
    error_code = "launch_failed"


class NavigationError(JobCaptureError):
    """A page could not be loaded."""
    error_code = "navigation_failed"

    def __init__(self, reason: str, transient: bool = False):
        self.reason = reason
        self.transient = transient
        self.retryable = transient
        super().__init__(f"Navigation failed: {reason}")


class ExtractionError(JobCaptureError):
    """A required job posting field was not found on the page."""
    error_code = "extraction_failed"

    def __init__(self, missing_field: str, detail: Optional[str] = None):
        self.missing_field = missing_field
        message = f"Required field '{missing_field}' not found on page"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class StorageError(JobCaptureError):
    """The job posting store could not be read or written."""
    error_code = "storage_failed"
    retryable = True


class SessionExpired(JobCaptureError):
    """The verification session passed its deadline and was closed."""
    error_code = "session_expired"
    retryable = True

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"Verification session {handle} has expired, start a new fetch")


class SessionNotFound(JobCaptureError):
    """No verification session is parked under the handle."""
    error_code = "session_not_found"

    def __init__(self, handle: str):
        self.handle = handle
        super().__init__(f"No verification session found for handle {handle}")


class VerificationAttemptsExhausted(JobCaptureError):
    """The challenge was still present after the maximum number of resumes."""
    error_code = "verification_failed"

    def __init__(self, handle: str, attempts: int):
        self.handle = handle
        self.attempts = attempts
        super().__init__(f"Verification for session {handle} still blocked after {attempts} attempts")


def classify_playwright_error(error: Exception) -> Tuple[str, bool]:
    """Describe a navigation error and decide whether it is transient.

    Timeouts and network-level failures are transient; any other Playwright
    error, or a non-Playwright exception, is not.

    Args:
        error: The exception raised while driving the page

    Returns:
        Tuple of (reason, transient)
    """
    message = str(error).strip().splitlines()[0] if str(error).strip() else type(error).__name__

    if isinstance(error, PlaywrightTimeoutError):
        logger.warning(f"Playwright timeout: {message}")
        return f"Timed out: {message}", True

    if isinstance(error, PlaywrightError):
        lowered = message.lower()
        if any(marker in lowered for marker in TRANSIENT_ERROR_MARKERS):
            logger.warning(f"Transient Playwright error: {message}")
            return message, True
        logger.error(f"Unhandled Playwright error: {message}")
        return message, False

    logger.error(f"Unhandled error: {type(error).__name__}: {message}")
    return f"{type(error).__name__}: {message}", False
