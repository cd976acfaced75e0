"""Data models for job capture."""
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Union
from datetime import datetime

from .error_handling import JobCaptureError

REQUIRED_FIELDS = ("title", "company", "raw_description")


@dataclass
class JobPosting:
    """A job posting extracted from a rendered page.

    Attributes:
        title: Job title
        company: Hiring company name
        raw_description: Full description text, newline separated
        source_url: URL the posting was requested from
        location: Work location (optional)
        salary_range: Salary text as displayed, e.g. "20-35K·14薪" (optional)
        experience_required: Experience requirement as displayed (optional)
        education_required: Education requirement as displayed (optional)
        id: Identifier assigned by the store
        created_at: When the store first saved the posting
    """
    title: str
    company: str
    raw_description: str
    source_url: str = ""
    location: Optional[str] = None
    salary_range: Optional[str] = None
    experience_required: Optional[str] = None
    education_required: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def __post_init__(self):
        """Validate required fields."""
        for name in REQUIRED_FIELDS:
            value = getattr(self, name)
            if not value or not isinstance(value, str) or not value.strip():
                raise ValueError(f"Job {name} is required and must be a non-empty string")

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-ready dictionary."""
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat() if self.created_at else None
        return data


@dataclass(frozen=True)
class PageSnapshot:
    """Rendered state of the page at one moment."""
    url: str
    html: str
    status: Optional[int] = None
    title: str = ""


@dataclass(frozen=True)
class Loaded:
    """The page rendered and shows no challenge."""
    snapshot: PageSnapshot


@dataclass(frozen=True)
class ChallengeDetected:
    """The page shows a login wall or human verification challenge."""
    snapshot: PageSnapshot
    marker: str


@dataclass(frozen=True)
class NavigationFailed:
    """The page could not be loaded, or loaded an error page."""
    reason: str
    transient: bool = False


PageOutcome = Union[Loaded, ChallengeDetected, NavigationFailed]


# HTTP status a caller should surface for each failure code.
FAILURE_STATUS_CODES = {
    "rate_limited": 429,
    "session_expired": 410,
    "session_not_found": 404,
    "timeout": 408,
    "launch_failed": 503,
    "storage_failed": 503,
}


@dataclass(frozen=True)
class Success:
    """A posting was extracted, or found already stored."""
    posting: JobPosting
    cached: bool = False

    @property
    def status_code(self) -> int:
        return 200

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": True,
            "needs_user_action": False,
            "cached": self.cached,
            "data": self.posting.to_dict(),
            "message": "Job already analyzed" if self.cached else "Job analysis complete",
        }


@dataclass(frozen=True)
class NeedsVerification:
    """A challenge blocks the page; a human must clear it before resuming."""
    handle: str
    message: str
    expires_at: datetime

    @property
    def status_code(self) -> int:
        return 202

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "needs_user_action": True,
            "handle": self.handle,
            "message": self.message,
            "expires_at": self.expires_at.isoformat(),
        }


@dataclass(frozen=True)
class StillBlocked:
    """The challenge was still present when resuming."""
    handle: str
    message: str
    attempts_left: int

    @property
    def status_code(self) -> int:
        return 202

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "needs_user_action": True,
            "handle": self.handle,
            "message": self.message,
            "attempts_left": self.attempts_left,
        }


@dataclass(frozen=True)
class Failure:
    """The fetch ended without a posting.

    Attributes:
        reason: Human-readable explanation
        error_code: Stable code, see ``FAILURE_STATUS_CODES``
        retryable: Whether repeating the request later may succeed
        retry_after: Seconds to wait before retrying, when known
    """
    reason: str
    error_code: str = "failed"
    retryable: bool = False
    retry_after: Optional[float] = None

    @classmethod
    def from_error(cls, error: JobCaptureError) -> "Failure":
        """Build a failure from a job capture exception."""
        return cls(
            reason=error.message,
            error_code=error.error_code,
            retryable=error.retryable,
            retry_after=getattr(error, "retry_after", None),
        )

    @property
    def status_code(self) -> int:
        return FAILURE_STATUS_CODES.get(self.error_code, 400)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": False,
            "needs_user_action": False,
            "error": self.reason,
            "error_code": self.error_code,
            "retryable": self.retryable,
        }
        if self.retry_after is not None:
            data["retry_after"] = round(self.retry_after, 3)
        return data


FetchResult = Union[Success, NeedsVerification, StillBlocked, Failure]
