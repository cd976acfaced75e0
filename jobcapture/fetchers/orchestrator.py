"""Fetch workflow for a single job page.

``FetchOrchestrator`` validates the URL, consults the store, waits for a
rate-limit slot, drives one browser session, and either extracts the
posting or parks the session for human verification. Browser sessions are
closed on every exit path except parking.
"""
import asyncio
import logging
from datetime import datetime
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional
from urllib.parse import urlparse

from sqlalchemy.exc import SQLAlchemyError

from ..config import Config, FetchConfig, SiteProfile
from ..database import JobRepository
from ..error_handling import (
    InvalidURLError,
    JobCaptureError,
    LaunchError,
    NavigationError,
    RateLimitRejected,
    StorageError,
    ExtractionError,
)
from ..models import (
    ChallengeDetected,
    Failure,
    FetchResult,
    NavigationFailed,
    NeedsVerification,
    PageOutcome,
    PageSnapshot,
    StillBlocked,
    Success,
)
from ..rate_limiter import RateLimiter, rate_limit_key
from ..verification import Blocked, VerificationCoordinator
from .browser_session import BrowserSession
from .challenge import MarkerChallengeDetector
from .parsers import ExtractionPipeline

logger = logging.getLogger(__name__)


class FetchOrchestrator:
    """Runs fetches and verification resumes against one site profile."""

    def __init__(self, rate_limiter: RateLimiter,
                 coordinator: VerificationCoordinator,
                 pipeline: ExtractionPipeline,
                 session_factory: Callable[[], Any],
                 repository: Optional[JobRepository] = None,
                 config: Optional[FetchConfig] = None,
                 profile: Optional[SiteProfile] = None):
        """Initialize the orchestrator.

        Args:
            rate_limiter: Shared per-domain rate limiter
            coordinator: Holder of sessions parked for verification
            pipeline: Field extraction for loaded pages
            session_factory: Returns a new, unopened ``BrowserSession``
            repository: Job posting store; nothing is cached or saved without one
            config: Timeouts, retries and caller-facing messages
            profile: Site profile whose domains may be fetched
        """
        self.rate_limiter = rate_limiter
        self.coordinator = coordinator
        self.pipeline = pipeline
        self.session_factory = session_factory
        self.repository = repository
        self.config = config or FetchConfig()
        self.profile = profile or pipeline.profile

    @classmethod
    def from_config(cls, config: Config, repository: Optional[JobRepository] = None) -> "FetchOrchestrator":
        """Build an orchestrator and its collaborators from configuration."""
        profile = config.get_site_profile()
        session_factory = partial(
            BrowserSession,
            config=config.get_browser_config(),
            detector=MarkerChallengeDetector.from_profile(profile),
            profile=profile,
        )
        return cls(
            rate_limiter=RateLimiter(config.get_rate_limit_config()),
            coordinator=VerificationCoordinator(config.get_verification_config()),
            pipeline=ExtractionPipeline(profile),
            session_factory=session_factory,
            repository=repository,
            config=config.get_fetch_config(),
            profile=profile,
        )

    async def start(self) -> None:
        """Start the verification reaper, which also prunes idle rate-limit keys."""
        self.coordinator.add_sweep_callback(self.rate_limiter.cleanup)
        self.coordinator.start_reaper()

    async def shutdown(self) -> None:
        """Stop the reaper and close every parked browser."""
        await self.coordinator.stop_reaper()
        await self.coordinator.close_all()

    async def __aenter__(self) -> "FetchOrchestrator":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    def validate_url(self, url: str) -> str:
        """Check that ``url`` is an http(s) URL on one of the profile's domains.

        Returns:
            The URL's host

        Raises:
            InvalidURLError: If the URL is not acceptable
        """
        parsed = urlparse(url or "")
        host = (parsed.hostname or "").lower()
        if parsed.scheme not in ("http", "https") or not host:
            raise InvalidURLError(f"Invalid job URL: {url!r}")
        allowed = self.profile.allowed_domains
        if allowed and not any(host == domain or host.endswith(f".{domain}") for domain in allowed):
            raise InvalidURLError(f"Only {', '.join(allowed)} job pages are supported, got {host}")
        return host

    async def fetch_job_page(self, url: str) -> FetchResult:
        """Fetch and extract one job page.

        Args:
            url: Job page URL

        Returns:
            Success, NeedsVerification with a handle for
            ``continue_after_verification``, or Failure
        """
        timeout = self.config.request_timeout_seconds
        try:
            return await asyncio.wait_for(self._fetch(url), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Fetching {url} timed out after {timeout:.0f}s")
            return Failure(f"Request timed out after {timeout:.0f}s", "timeout", retryable=True)

    async def _fetch(self, url: str) -> FetchResult:
        try:
            self.validate_url(url)
        except InvalidURLError as e:
            logger.warning(e.message)
            return Failure.from_error(e)

        if self.repository is not None:
            try:
                existing = await asyncio.to_thread(self.repository.find_by_url, url)
            except SQLAlchemyError as e:
                logger.error(f"Error looking up stored job for {url}: {e}")
                return Failure.from_error(StorageError(f"Job store lookup failed: {e}"))
            if existing is not None:
                logger.info(f"Job already stored for {url}, skipping browser")
                return Success(existing, cached=True)

        try:
            await self.rate_limiter.acquire(rate_limit_key(url))
        except RateLimitRejected as e:
            logger.warning(f"Rate limited: {e.message}")
            return Failure.from_error(e)

        session = self.session_factory()
        parked = False
        try:
            await session.open()
            outcome = await self._navigate(session, url)

            if isinstance(outcome, NavigationFailed):
                logger.error(f"Navigation to {url} failed: {outcome.reason}")
                return Failure.from_error(NavigationError(outcome.reason, outcome.transient))

            if isinstance(outcome, ChallengeDetected):
                entry = self.coordinator.park(session, url)
                parked = True
                return NeedsVerification(entry.handle, self.config.verification_message, entry.expires_at)

            return await self._complete(session, outcome.snapshot, url)
        except RateLimitRejected as e:
            logger.warning(f"Rate limited before retrying {url}: {e.message}")
            return Failure.from_error(e)
        except LaunchError as e:
            return Failure.from_error(e)
        finally:
            if not parked:
                await session.close()

    async def _navigate(self, session: Any, url: str) -> PageOutcome:
        """Navigate, retrying transient failures.

        Every retry is a new request to the domain and waits for its own
        rate-limit slot.

        Raises:
            RateLimitRejected: If a retry cannot get a slot in time
        """
        attempts = 1 + self.config.navigation_retries
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self.rate_limiter.acquire(rate_limit_key(url))
            outcome = await session.navigate(url)
            if not isinstance(outcome, NavigationFailed) or not outcome.transient or attempt == attempts:
                return outcome
            logger.warning(f"Transient navigation failure for {url} ({outcome.reason}), "
                           f"retrying ({attempt}/{attempts - 1})")
        return outcome

    async def _complete(self, session: Any, snapshot: PageSnapshot, url: str) -> FetchResult:
        try:
            posting = self.pipeline.extract(snapshot.html, source_url=url)
        except ExtractionError as e:
            await self._save_debug_screenshot(session, url)
            return Failure.from_error(e)

        if self.repository is not None:
            try:
                posting.id = await asyncio.to_thread(self.repository.save, posting)
            except SQLAlchemyError as e:
                logger.error(f"Error saving job posting for {url}: {e}")
                return Failure.from_error(StorageError(f"Job store write failed: {e}"))
            logger.info(f"Saved job posting {posting.id} for {url}")
        return Success(posting)

    async def _save_debug_screenshot(self, session: Any, url: str) -> None:
        directory = self.config.debug_screenshot_dir
        if not directory:
            return
        name = f"{datetime.now():%Y%m%d-%H%M%S}-{rate_limit_key(url)}.png"
        await session.screenshot(Path(directory) / name)

    async def continue_after_verification(self, handle: str) -> FetchResult:
        """Resume a fetch once a human has worked on the challenge.

        Safe to call repeatedly: until the challenge is gone it keeps
        returning StillBlocked.

        Args:
            handle: Handle from a NeedsVerification result

        Returns:
            Success, StillBlocked, or Failure
        """
        timeout = self.config.request_timeout_seconds
        try:
            return await asyncio.wait_for(self._continue(handle), timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Resuming session {handle} timed out after {timeout:.0f}s")
            return Failure(f"Request timed out after {timeout:.0f}s", "timeout", retryable=True)

    async def _continue(self, handle: str) -> FetchResult:
        try:
            outcome = await self.coordinator.resume(handle)
        except JobCaptureError as e:
            logger.warning(f"Cannot continue session {handle}: {e.message}")
            return Failure.from_error(e)

        if isinstance(outcome, Blocked):
            return StillBlocked(handle, self.config.still_blocked_message, outcome.attempts_left)

        try:
            return await self._complete(outcome.session, outcome.snapshot, outcome.url)
        finally:
            await outcome.session.close()
