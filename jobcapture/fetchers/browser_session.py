"""Browser session lifecycle for one logical fetch.

Each ``BrowserSession`` owns exactly one Chromium process started through
Playwright. Sessions are never pooled or shared between fetches. A session
blocked by a human challenge stays open while it is parked, so whoever holds
it must eventually call ``close()``.
"""
import logging
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from bs4 import BeautifulSoup
from playwright.async_api import async_playwright, Browser, BrowserContext, Page, Playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from ..config import BrowserConfig, SiteProfile, DEFAULT_SITE_PROFILE
from ..error_handling import LaunchError, classify_playwright_error
from ..models import PageSnapshot, PageOutcome, Loaded, ChallengeDetected, NavigationFailed
from .challenge import ChallengeDetector, MarkerChallengeDetector, detect_not_found, first_visible_match

logger = logging.getLogger(__name__)


class BrowserSession:
    """One browser process, one context and one page."""

    def __init__(self, config: Optional[BrowserConfig] = None,
                 detector: Optional[ChallengeDetector] = None,
                 profile: Optional[SiteProfile] = None,
                 playwright_factory: Callable[[], Any] = async_playwright):
        """Initialize the session without starting a browser.

        Args:
            config: Launch and navigation settings
            detector: Challenge detector, built from ``profile`` when omitted
            profile: Site profile for not-found markers and ready selectors
            playwright_factory: Returns an object whose ``start()`` coroutine
                yields a Playwright instance
        """
        self.config = config or BrowserConfig()
        self.profile = profile or DEFAULT_SITE_PROFILE
        self.detector = detector or MarkerChallengeDetector.from_profile(self.profile)
        self._playwright_factory = playwright_factory

        self.handle: Optional[str] = None
        self.playwright: Optional[Playwright] = None
        self.browser: Optional[Browser] = None
        self.context: Optional[BrowserContext] = None
        self.page: Optional[Page] = None
        self._last_status: Optional[int] = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return self.page is not None and not self._closed

    def _launch_options(self) -> Dict[str, Any]:
        options: Dict[str, Any] = {
            "headless": self.config.headless,
            "args": list(self.config.launch_args),
        }
        if self.config.slow_mo_ms:
            options["slow_mo"] = self.config.slow_mo_ms
        if self.config.executable_path:
            options["executable_path"] = self.config.executable_path
        return options

    async def open(self) -> str:
        """Start Playwright, launch the browser and open a page.

        Returns:
            Opaque handle identifying this session

        Raises:
            LaunchError: If any step fails; resources started so far are released
        """
        if self._closed:
            raise LaunchError("Browser session was already closed")
        if self.handle is not None:
            return self.handle

        logger.info(f"Launching browser (headless={self.config.headless})")
        try:
            self.playwright = await self._playwright_factory().start()
            self.browser = await self.playwright.chromium.launch(**self._launch_options())
            self.context = await self.browser.new_context(
                user_agent=self.config.user_agent,
                viewport={"width": self.config.viewport_width, "height": self.config.viewport_height},
                locale=self.config.locale,
            )
            self.page = await self.context.new_page()
            self.page.set_default_timeout(self.config.navigation_timeout_seconds * 1000)
        except Exception as e:
            logger.error(f"Failed to launch browser: {e}")
            await self._release()
            raise LaunchError(f"Browser launch failed: {e}") from e

        self.handle = uuid.uuid4().hex
        logger.info(f"Browser session {self.handle} opened")
        return self.handle

    def _require_page(self) -> Page:
        if not self.is_open:
            raise RuntimeError("Browser session is not open")
        return self.page

    async def navigate(self, url: str) -> PageOutcome:
        """Load ``url`` and classify the rendered page.

        Args:
            url: Page to load

        Returns:
            ChallengeDetected, Loaded, or NavigationFailed for timeouts,
            network errors, HTTP error statuses and not-found pages
        """
        page = self._require_page()
        logger.info(f"Navigating to {url}")
        try:
            response = await page.goto(
                url,
                wait_until="domcontentloaded",
                timeout=self.config.navigation_timeout_seconds * 1000,
            )
        except PlaywrightError as e:
            reason, transient = classify_playwright_error(e)
            return NavigationFailed(reason, transient)

        self._last_status = response.status if response is not None else None
        await self._settle(page)
        return await self._snapshot_and_classify(page)

    async def recheck(self, wait_seconds: float = 0) -> PageOutcome:
        """Classify the current page again without navigating.

        Used after a human worked on a challenge in the open window. A page
        without visible job content, such as the home page a login flow
        landed on, is still blocked.

        Args:
            wait_seconds: How long to wait for job content to appear first
        """
        page = self._require_page()
        # The response status belongs to the original navigation, not to
        # whatever page the human ended up on.
        self._last_status = None
        if wait_seconds > 0 and self.profile.ready_selectors:
            try:
                await page.wait_for_selector(
                    ", ".join(self.profile.ready_selectors),
                    timeout=wait_seconds * 1000,
                )
            except PlaywrightTimeoutError:
                logger.debug(f"Job content not visible after {wait_seconds:.0f}s")
            except PlaywrightError as e:
                reason, transient = classify_playwright_error(e)
                return NavigationFailed(reason, transient)
        outcome = await self._snapshot_and_classify(page)
        if isinstance(outcome, Loaded) and not self._has_job_content(outcome.snapshot):
            logger.info(f"No job content on {outcome.snapshot.url} yet, still waiting for verification")
            return ChallengeDetected(outcome.snapshot, "ready:no job content")
        return outcome

    def _has_job_content(self, snapshot: PageSnapshot) -> bool:
        if not self.profile.ready_selectors:
            return True
        soup = BeautifulSoup(snapshot.html or "", "html.parser")
        return first_visible_match(soup, self.profile.ready_selectors) is not None

    async def _settle(self, page: Page) -> None:
        if not self.config.settle_timeout_seconds:
            return
        try:
            await page.wait_for_load_state("networkidle", timeout=self.config.settle_timeout_seconds * 1000)
        except PlaywrightTimeoutError:
            logger.debug("Network did not go idle, continuing with current content")

    async def _snapshot_and_classify(self, page: Page) -> PageOutcome:
        try:
            snapshot = await self.snapshot()
        except PlaywrightError as e:
            if "execution context was destroyed" not in str(e).lower():
                reason, transient = classify_playwright_error(e)
                return NavigationFailed(reason, transient)
            # A client-side redirect, typically to a verification page.
            logger.info("Page navigated while reading content, reading again")
            try:
                await page.wait_for_load_state("domcontentloaded")
                snapshot = await self.snapshot()
            except PlaywrightError as retry_error:
                reason, transient = classify_playwright_error(retry_error)
                return NavigationFailed(reason, transient)
        return self.classify(snapshot)

    def classify(self, snapshot: PageSnapshot) -> PageOutcome:
        """Classify a snapshot as challenge, error page or loaded job page."""
        marker = self.detector.match(snapshot)
        if marker:
            logger.warning(f"Verification challenge detected on {snapshot.url} ({marker})")
            return ChallengeDetected(snapshot, marker)

        if snapshot.status is not None and snapshot.status >= 400:
            logger.warning(f"HTTP {snapshot.status} for {snapshot.url}")
            return NavigationFailed(f"HTTP {snapshot.status}", transient=snapshot.status >= 500)

        not_found = detect_not_found(snapshot, self.profile)
        if not_found:
            logger.warning(f"Job page not found at {snapshot.url} ({not_found})")
            return NavigationFailed(f"Page not found ({not_found})", transient=False)

        return Loaded(snapshot)

    async def snapshot(self) -> PageSnapshot:
        """Capture URL, HTML, title and last response status of the page."""
        page = self._require_page()
        html = await page.content()
        title = await page.title()
        return PageSnapshot(url=page.url, html=html, status=self._last_status, title=title)

    async def screenshot(self, path: Union[str, Path]) -> Optional[bytes]:
        """Save a full-page screenshot, returning None if it cannot be taken."""
        if not self.is_open:
            return None
        try:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
            data = await self.page.screenshot(path=str(path), full_page=True)
            logger.info(f"Saved screenshot to {path}")
            return data
        except PlaywrightError as e:
            logger.error(f"Failed to save screenshot to {path}: {e}")
            return None

    async def close(self) -> None:
        """Close page, context, browser and Playwright.

        Safe to call more than once and after a failed ``open()``. Errors
        are logged, never raised.
        """
        if self._closed:
            return
        self._closed = True
        await self._release()
        logger.info(f"Browser session {self.handle or '(not opened)'} closed")

    async def _release(self) -> None:
        for name in ("page", "context", "browser"):
            resource = getattr(self, name)
            if resource is None:
                continue
            try:
                await resource.close()
            except Exception as e:
                logger.warning(f"Error closing {name}: {e}")
            finally:
                setattr(self, name, None)

        if self.playwright is not None:
            try:
                await self.playwright.stop()
            except Exception as e:
                logger.warning(f"Error stopping playwright: {e}")
            finally:
                self.playwright = None

    async def __aenter__(self) -> "BrowserSession":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()
