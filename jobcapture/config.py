"""Configuration for rate limiting, browser sessions, verification and site profiles."""
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import List, Optional, Dict, Any
import yaml
import os
import logging
from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_LAUNCH_ARGS = [
    "--start-maximized",
    "--disable-blink-features=AutomationControlled",
]


@dataclass
class RateLimitConfig:
    """Sliding-window thresholds applied per registrable domain.

    Attributes:
        window_seconds: Length of the sliding window
        max_requests: Browser navigations admitted per window
        min_interval_seconds: Minimum spacing between two admissions
        max_wait_seconds: Longest delay worth waiting for; anything longer is
            rejected. ``None`` waits indefinitely.
    """
    window_seconds: float = 60.0
    max_requests: int = 2
    min_interval_seconds: float = 15.0
    max_wait_seconds: Optional[float] = 90.0

    def __post_init__(self):
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.min_interval_seconds < 0:
            raise ValueError("min_interval_seconds cannot be negative")
        if self.max_wait_seconds is not None and self.max_wait_seconds < 0:
            raise ValueError("max_wait_seconds cannot be negative")


@dataclass
class BrowserConfig:
    """Launch and navigation settings for a single browser session."""
    headless: bool = False
    navigation_timeout_seconds: float = 30.0
    settle_timeout_seconds: float = 10.0
    user_agent: str = DEFAULT_USER_AGENT
    slow_mo_ms: int = 0
    executable_path: Optional[str] = None
    locale: str = "zh-CN"
    viewport_width: int = 1920
    viewport_height: int = 1080
    launch_args: List[str] = field(default_factory=lambda: list(DEFAULT_LAUNCH_ARGS))

    def __post_init__(self):
        if self.navigation_timeout_seconds <= 0:
            raise ValueError("navigation_timeout_seconds must be positive")
        if self.settle_timeout_seconds < 0:
            raise ValueError("settle_timeout_seconds cannot be negative")
        if self.slow_mo_ms < 0:
            raise ValueError("slow_mo_ms cannot be negative")


@dataclass
class VerificationConfig:
    """Lifetime limits for sessions parked behind a human verification."""
    deadline_seconds: float = 300.0
    max_resume_attempts: int = 5
    reaper_interval_seconds: float = 30.0
    resume_wait_seconds: float = 5.0
    tombstone_seconds: float = 3600.0

    def __post_init__(self):
        if self.deadline_seconds <= 0:
            raise ValueError("deadline_seconds must be positive")
        if self.max_resume_attempts < 1:
            raise ValueError("max_resume_attempts must be at least 1")
        if self.reaper_interval_seconds <= 0:
            raise ValueError("reaper_interval_seconds must be positive")
        if self.resume_wait_seconds < 0:
            raise ValueError("resume_wait_seconds cannot be negative")
        if self.tombstone_seconds < 0:
            raise ValueError("tombstone_seconds cannot be negative")


@dataclass
class FetchConfig:
    """Per-request limits for the fetch workflow."""
    request_timeout_seconds: float = 180.0
    navigation_retries: int = 1
    debug_screenshot_dir: Optional[str] = None
    verification_message: str = (
        "Human verification required. Complete the login or security check "
        "in the opened browser window, then continue."
    )
    still_blocked_message: str = (
        "Verification is not complete yet. Finish it in the browser window and continue again."
    )

    def __post_init__(self):
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if self.navigation_retries < 0:
            raise ValueError("navigation_retries cannot be negative")


@dataclass
class SiteProfile:
    """Selectors and markers describing one target site family.

    Field selectors are tried in order and the first non-empty match wins.
    Challenge and not-found markers must be deterministic: selectors present
    in the DOM, URL substrings, titles, HTTP status codes.
    """
    name: str
    allowed_domains: List[str]
    field_selectors: Dict[str, List[str]]
    challenge_selectors: List[str] = field(default_factory=list)
    challenge_url_markers: List[str] = field(default_factory=list)
    challenge_status_codes: List[int] = field(default_factory=list)
    not_found_selectors: List[str] = field(default_factory=list)
    not_found_titles: List[str] = field(default_factory=list)
    not_found_texts: List[str] = field(default_factory=list)
    ready_selectors: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.name:
            raise ValueError("Site profile name is required")
        missing = [name for name in ("title", "company", "raw_description")
                   if not self.field_selectors.get(name)]
        if missing:
            raise ValueError(f"Site profile {self.name} has no selectors for: {', '.join(missing)}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["SiteProfile"] = None) -> "SiteProfile":
        """Build a profile from a mapping, overlaying it on ``base`` if given.

        Args:
            data: Profile values keyed by field name
            base: Profile providing values for keys missing from ``data``

        Returns:
            SiteProfile instance

        Raises:
            ValueError: If ``data`` contains unknown keys
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown site profile keys: {', '.join(unknown)}")

        values: Dict[str, Any] = {}
        if base is not None:
            values = {name: getattr(base, name) for name in known}
            values["field_selectors"] = dict(base.field_selectors)
        for key, value in data.items():
            if key == "field_selectors" and isinstance(value, dict):
                values.setdefault("field_selectors", {}).update(value)
            else:
                values[key] = value
        return cls(**values)


DEFAULT_SITE_PROFILE = SiteProfile(
    name="boss_zhipin",
    allowed_domains=["zhipin.com", "boss.com"],
    field_selectors={
        "title": [".job-title", ".position-head h1", ".job-name", 'h1[class*="job"]', "h1"],
        "company": [".company-name", ".company-info h3", ".name", '[class*="company"] a', ".company a"],
        "location": [".job-area", ".location", ".job-location", '[class*="location"]'],
        "salary_range": [".salary", ".job-salary", '[class*="salary"]', ".price"],
        "experience_required": [
            ".job-experience", '[class*="experience"]', ".job-require .experience", ".job-detail .experience",
        ],
        "education_required": [
            ".job-education", '[class*="education"]', ".job-require .education", ".job-detail .education",
        ],
        "raw_description": [
            ".job-sec", ".job-detail", ".job-description", ".detail-content", '[class*="job-detail"]', ".text",
        ],
    },
    challenge_selectors=[".login-dialog", ".verify-slider", ".captcha-container", 'iframe[src*="captcha"]'],
    challenge_url_markers=["login", "verify", "captcha"],
    challenge_status_codes=[],
    not_found_selectors=[".error-page", ".not-found", ".job-offline"],
    not_found_titles=["404", "页面不存在", "找不到", "错误", "失效"],
    not_found_texts=["页面不存在", "职位已下线", "职位已关闭", "该职位已失效"],
    ready_selectors=[".job-title", ".position-head h1", ".job-name", ".job-sec", ".job-detail"],
)


def load_site_profile(path: Path) -> SiteProfile:
    """Load a site profile from a YAML file.

    Keys missing from the file keep the built-in default values.

    Args:
        path: Path to the profile YAML

    Returns:
        SiteProfile instance

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file is not a mapping or has unknown keys
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Site profile not found: {path}")
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Site profile {path} must be a mapping")
    profile = SiteProfile.from_dict(data, base=DEFAULT_SITE_PROFILE)
    logger.info(f"Loaded site profile {profile.name} from {path}")
    return profile


class Config:
    """Configuration manager with environment variable and .env file support."""

    def __init__(self, env_file: Optional[str] = None):
        """Initialize configuration.

        Args:
            env_file: Optional path to .env file
        """
        if env_file and os.path.exists(env_file):
            load_dotenv(env_file)
            logger.info(f"Loaded configuration from {env_file}")
        elif os.path.exists(".env"):
            load_dotenv(".env")
            logger.info("Loaded configuration from .env file")
        else:
            logger.info("No .env file found, using environment variables only")

    def get(self, key: str, default: Any = None, required: bool = False) -> Any:
        """Get configuration value.

        Args:
            key: Configuration key
            default: Default value if key not found
            required: Whether the key is required

        Returns:
            Configuration value

        Raises:
            ValueError: If required key is missing
        """
        value = os.getenv(key, default)

        if required and value is None:
            raise ValueError(f"Required configuration key '{key}' is missing")

        return value

    def get_bool(self, key: str, default: bool = False) -> bool:
        """Get boolean configuration value."""
        value = self.get(key, str(default).lower())
        return str(value).lower() in ('true', '1', 'yes', 'on')

    def get_int(self, key: str, default: int = 0) -> int:
        """Get integer configuration value, falling back to ``default`` when invalid."""
        value = self.get(key, str(default))
        try:
            return int(value)
        except (ValueError, TypeError):
            logger.warning(f"Invalid integer value for {key}: {value}, using default {default}")
            return default

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Get float configuration value, falling back to ``default`` when invalid."""
        value = self.get(key, str(default))
        try:
            return float(value)
        except (ValueError, TypeError):
            logger.warning(f"Invalid float value for {key}: {value}, using default {default}")
            return default

    def get_list(self, key: str, default: Optional[list] = None, separator: str = ",") -> list:
        """Get list configuration value.

        Args:
            key: Configuration key
            default: Default list value
            separator: List item separator

        Returns:
            List value
        """
        if default is None:
            default = []

        value = self.get(key)
        if not value:
            return default

        return [item.strip() for item in str(value).split(separator) if item.strip()]

    def get_rate_limit_config(self) -> RateLimitConfig:
        """Get browser rate limit thresholds.

        A negative ``BROWSER_RATE_LIMIT_MAX_WAIT_SECONDS`` disables the wait bound.
        """
        max_wait = self.get_float('BROWSER_RATE_LIMIT_MAX_WAIT_SECONDS', 90.0)
        return RateLimitConfig(
            window_seconds=self.get_float('BROWSER_RATE_LIMIT_WINDOW_SECONDS', 60.0),
            max_requests=self.get_int('BROWSER_RATE_LIMIT_MAX_REQUESTS', 2),
            min_interval_seconds=self.get_float('BROWSER_RATE_LIMIT_MIN_INTERVAL_SECONDS', 15.0),
            max_wait_seconds=None if max_wait < 0 else max_wait,
        )

    def get_browser_config(self) -> BrowserConfig:
        """Get browser launch configuration."""
        return BrowserConfig(
            headless=self.get_bool('BROWSER_HEADLESS', False),
            navigation_timeout_seconds=self.get_float('BROWSER_NAVIGATION_TIMEOUT_SECONDS', 30.0),
            settle_timeout_seconds=self.get_float('BROWSER_SETTLE_TIMEOUT_SECONDS', 10.0),
            user_agent=self.get('BROWSER_USER_AGENT', DEFAULT_USER_AGENT),
            slow_mo_ms=self.get_int('BROWSER_SLOW_MO_MS', 0),
            executable_path=self.get('BROWSER_EXECUTABLE_PATH') or None,
            launch_args=self.get_list('BROWSER_LAUNCH_ARGS', list(DEFAULT_LAUNCH_ARGS)),
        )

    def get_verification_config(self) -> VerificationConfig:
        """Get human verification session limits."""
        return VerificationConfig(
            deadline_seconds=self.get_float('VERIFICATION_DEADLINE_SECONDS', 300.0),
            max_resume_attempts=self.get_int('VERIFICATION_MAX_RESUME_ATTEMPTS', 5),
            reaper_interval_seconds=self.get_float('VERIFICATION_REAPER_INTERVAL_SECONDS', 30.0),
            resume_wait_seconds=self.get_float('VERIFICATION_RESUME_WAIT_SECONDS', 5.0),
            tombstone_seconds=self.get_float('VERIFICATION_TOMBSTONE_SECONDS', 3600.0),
        )

    def get_fetch_config(self) -> FetchConfig:
        """Get fetch workflow limits."""
        return FetchConfig(
            request_timeout_seconds=self.get_float('FETCH_REQUEST_TIMEOUT_SECONDS', 180.0),
            navigation_retries=self.get_int('FETCH_NAVIGATION_RETRIES', 1),
            debug_screenshot_dir=self.get('FETCH_DEBUG_SCREENSHOT_DIR') or None,
        )

    def get_database_url(self) -> str:
        """Get the job posting store URL."""
        return self.get('DATABASE_URL', 'sqlite:///jobs.db')

    def get_site_profile(self) -> SiteProfile:
        """Get the site profile, from ``SITE_PROFILE_PATH`` when set."""
        path = self.get('SITE_PROFILE_PATH')
        if path:
            return load_site_profile(Path(path))
        return DEFAULT_SITE_PROFILE

    def get_all_config(self) -> Dict[str, Any]:
        """Get all configuration sections.

        Returns:
            Complete configuration dictionary
        """
        profile = self.get_site_profile()
        return {
            'rate_limit': vars(self.get_rate_limit_config()),
            'browser': vars(self.get_browser_config()),
            'verification': vars(self.get_verification_config()),
            'fetch': {
                key: value for key, value in vars(self.get_fetch_config()).items()
                if not key.endswith('message')
            },
            'database': {'url': self.get_database_url()},
            'site_profile': {
                'name': profile.name,
                'allowed_domains': profile.allowed_domains,
            },
            'log_level': self.get('LOG_LEVEL', 'INFO'),
        }
