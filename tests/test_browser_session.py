"""Tests for browser session lifecycle and page classification, with Playwright mocked."""
import pytest
from unittest.mock import MagicMock
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from conftest import CHALLENGE_PAGE_HTML, JOB_URL
from jobcapture.config import BrowserConfig
from jobcapture.error_handling import LaunchError
from jobcapture.fetchers.browser_session import BrowserSession
from jobcapture.models import ChallengeDetected, Loaded, NavigationFailed


@pytest.fixture
def session(fake_playwright):
    return BrowserSession(BrowserConfig(settle_timeout_seconds=1), playwright_factory=fake_playwright.factory)


class TestOpenAndClose:
    """Launch and release of browser resources."""

    @pytest.mark.asyncio
    async def test_open_launches_headed_browser(self, session, fake_playwright):
        handle = await session.open()

        assert handle and session.handle == handle
        assert session.is_open
        launch_kwargs = fake_playwright.playwright.chromium.launch.await_args.kwargs
        assert launch_kwargs['headless'] is False
        assert "--disable-blink-features=AutomationControlled" in launch_kwargs['args']
        context_kwargs = fake_playwright.browser.new_context.await_args.kwargs
        assert "Chrome/120" in context_kwargs['user_agent']
        fake_playwright.page.set_default_timeout.assert_called_once_with(30000)

    @pytest.mark.asyncio
    async def test_open_twice_returns_same_handle(self, session, fake_playwright):
        first = await session.open()
        second = await session.open()
        assert first == second
        assert fake_playwright.playwright.chromium.launch.await_count == 1

    @pytest.mark.asyncio
    async def test_launch_failure_releases_started_resources(self, session, fake_playwright):
        fake_playwright.playwright.chromium.launch.side_effect = PlaywrightError("Executable doesn't exist")

        with pytest.raises(LaunchError) as excinfo:
            await session.open()

        assert "Executable doesn't exist" in str(excinfo.value)
        fake_playwright.playwright.stop.assert_awaited_once()
        assert session.playwright is None
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_context_failure_closes_browser(self, session, fake_playwright):
        fake_playwright.browser.new_context.side_effect = RuntimeError("context refused")

        with pytest.raises(LaunchError):
            await session.open()

        fake_playwright.browser.close.assert_awaited_once()
        fake_playwright.playwright.stop.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self, session, fake_playwright):
        await session.open()

        await session.close()
        await session.close()

        fake_playwright.page.close.assert_awaited_once()
        fake_playwright.context.close.assert_awaited_once()
        fake_playwright.browser.close.assert_awaited_once()
        fake_playwright.playwright.stop.assert_awaited_once()
        assert not session.is_open

    @pytest.mark.asyncio
    async def test_close_errors_are_logged_not_raised(self, session, fake_playwright, caplog):
        await session.open()
        fake_playwright.page.close.side_effect = PlaywrightError("Target closed")

        await session.close()

        fake_playwright.browser.close.assert_awaited_once()
        fake_playwright.playwright.stop.assert_awaited_once()
        assert "Error closing page" in caplog.text

    @pytest.mark.asyncio
    async def test_close_without_open(self, session, fake_playwright):
        await session.close()
        fake_playwright.factory.assert_not_called()

    @pytest.mark.asyncio
    async def test_reopen_after_close_fails(self, session):
        await session.open()
        await session.close()
        with pytest.raises(LaunchError):
            await session.open()

    @pytest.mark.asyncio
    async def test_context_manager_closes_on_error(self, fake_playwright):
        with pytest.raises(ValueError):
            async with BrowserSession(playwright_factory=fake_playwright.factory) as session:
                assert session.is_open
                raise ValueError("boom")
        fake_playwright.browser.close.assert_awaited_once()
        fake_playwright.playwright.stop.assert_awaited_once()


navigation_scenarios = [
    {
        'name': "loaded_job_page",
        'status': 200,
        'html': None,
        'url': JOB_URL,
        'title': "Senior Python Engineer - BOSS直聘",
        'expected': Loaded,
        'transient': None,
    },
    {
        'name': "challenge_overlay",
        'status': 200,
        'html': CHALLENGE_PAGE_HTML,
        'url': JOB_URL,
        'title': "BOSS直聘",
        'expected': ChallengeDetected,
        'transient': None,
    },
    {
        'name': "redirected_to_login",
        'status': 200,
        'html': "<html><body></body></html>",
        'url': "https://www.zhipin.com/web/user/?ka=header-login",
        'title': "BOSS直聘",
        'expected': ChallengeDetected,
        'transient': None,
    },
    {
        'name': "http_404",
        'status': 404,
        'html': "<html><body>Not here</body></html>",
        'url': JOB_URL,
        'title': "BOSS直聘",
        'expected': NavigationFailed,
        'transient': False,
    },
    {
        'name': "http_502",
        'status': 502,
        'html': "<html><body>Bad gateway</body></html>",
        'url': JOB_URL,
        'title': "BOSS直聘",
        'expected': NavigationFailed,
        'transient': True,
    },
    {
        'name': "job_offline_page",
        'status': 200,
        'html': "<html><body><p>职位已下线</p></body></html>",
        'url': JOB_URL,
        'title': "BOSS直聘",
        'expected': NavigationFailed,
        'transient': False,
    },
]


@pytest.mark.asyncio
@pytest.mark.parametrize("test_case", navigation_scenarios, ids=[c['name'] for c in navigation_scenarios])
async def test_navigate_classifies_page(session, fake_playwright, test_case):
    page = fake_playwright.page
    page.goto.return_value = MagicMock(status=test_case['status'])
    page.url = test_case['url']
    page.title.return_value = test_case['title']
    if test_case['html'] is not None:
        page.content.return_value = test_case['html']
    await session.open()

    outcome = await session.navigate(JOB_URL)

    assert isinstance(outcome, test_case['expected'])
    if test_case['transient'] is not None:
        assert outcome.transient is test_case['transient']
    page.goto.assert_awaited_once_with(JOB_URL, wait_until="domcontentloaded", timeout=30000)


error_scenarios = [
    (PlaywrightTimeoutError("Timeout 30000ms exceeded."), True),
    (PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://www.zhipin.com/"), True),
    (PlaywrightError("net::ERR_CONNECTION_RESET"), True),
    (PlaywrightError("Navigation failed because page was closed!"), True),
    (PlaywrightError("Protocol error (Page.navigate): Cannot navigate to invalid URL"), False),
]


@pytest.mark.asyncio
@pytest.mark.parametrize("error, transient", error_scenarios)
async def test_navigation_errors_become_outcomes(session, fake_playwright, error, transient):
    fake_playwright.page.goto.side_effect = error
    await session.open()

    outcome = await session.navigate(JOB_URL)

    assert isinstance(outcome, NavigationFailed)
    assert outcome.transient is transient


@pytest.mark.asyncio
async def test_networkidle_timeout_is_not_an_error(session, fake_playwright):
    fake_playwright.page.wait_for_load_state.side_effect = PlaywrightTimeoutError("Timeout 1000ms exceeded.")
    await session.open()

    outcome = await session.navigate(JOB_URL)

    assert isinstance(outcome, Loaded)
    fake_playwright.page.wait_for_load_state.assert_awaited_once_with("networkidle", timeout=1000)


@pytest.mark.asyncio
async def test_destroyed_context_is_read_again(session, fake_playwright):
    page = fake_playwright.page
    page.content.side_effect = [
        PlaywrightError("Execution context was destroyed, most likely because of a navigation"),
        CHALLENGE_PAGE_HTML,
    ]
    await session.open()

    outcome = await session.navigate(JOB_URL)

    assert isinstance(outcome, ChallengeDetected)
    assert page.content.await_count == 2


@pytest.mark.asyncio
async def test_navigate_requires_open_session(session):
    with pytest.raises(RuntimeError):
        await session.navigate(JOB_URL)


class TestRecheck:
    """Re-reading the page after a human worked on a challenge."""

    @pytest.mark.asyncio
    async def test_recheck_waits_for_job_content(self, session, fake_playwright):
        await session.open()

        outcome = await session.recheck(wait_seconds=5)

        assert isinstance(outcome, Loaded)
        selector = fake_playwright.page.wait_for_selector.await_args.args[0]
        assert ".job-title" in selector
        assert fake_playwright.page.wait_for_selector.await_args.kwargs['timeout'] == 5000
        fake_playwright.page.goto.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_recheck_still_blocked(self, session, fake_playwright):
        fake_playwright.page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 5000ms exceeded.")
        fake_playwright.page.content.return_value = CHALLENGE_PAGE_HTML
        await session.open()

        outcome = await session.recheck(wait_seconds=5)

        assert isinstance(outcome, ChallengeDetected)
        assert outcome.marker == "selector:.verify-slider"

    @pytest.mark.asyncio
    async def test_recheck_without_job_content_is_still_blocked(self, session, fake_playwright):
        fake_playwright.page.wait_for_selector.side_effect = PlaywrightTimeoutError("Timeout 5000ms exceeded.")
        fake_playwright.page.url = "https://www.zhipin.com/web/geek/recommend"
        fake_playwright.page.content.return_value = (
            '<html><body><h1 class="name">推荐职位</h1><div class="text">热门</div></body></html>')
        await session.open()

        outcome = await session.recheck(wait_seconds=5)

        assert isinstance(outcome, ChallengeDetected)
        assert outcome.marker == "ready:no job content"

    @pytest.mark.asyncio
    async def test_recheck_ignores_stale_status(self, session, fake_playwright):
        fake_playwright.page.goto.return_value = MagicMock(status=503)
        await session.open()
        assert isinstance(await session.navigate(JOB_URL), NavigationFailed)

        outcome = await session.recheck()

        assert isinstance(outcome, Loaded)
        assert outcome.snapshot.status is None


@pytest.mark.asyncio
async def test_screenshot(session, fake_playwright, tmp_path):
    await session.open()
    path = tmp_path / "debug" / "page.png"

    assert await session.screenshot(path) == b"png"
    fake_playwright.page.screenshot.assert_awaited_once_with(path=str(path), full_page=True)

    fake_playwright.page.screenshot.side_effect = PlaywrightError("Target closed")
    assert await session.screenshot(path) is None


@pytest.mark.asyncio
async def test_custom_detector_is_used(fake_playwright):
    detector = MagicMock()
    detector.match.return_value = "custom"
    session = BrowserSession(detector=detector, playwright_factory=fake_playwright.factory)
    await session.open()

    outcome = await session.navigate(JOB_URL)

    assert isinstance(outcome, ChallengeDetected)
    assert outcome.marker == "custom"
    await session.close()
