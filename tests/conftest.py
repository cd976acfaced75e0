"""Shared fixtures: fake clock, sample pages and browser doubles."""
from types import SimpleNamespace
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from jobcapture.error_handling import LaunchError
from jobcapture.models import PageSnapshot

JOB_URL = "https://www.zhipin.com/job_detail/8f3c2a1b0d9e.html"

JOB_PAGE_HTML = """
<html>
  <head><title>Senior Python Engineer - Example Technology - BOSS直聘</title></head>
  <body>
    <div class="job-banner">
      <h1 class="job-title">Senior   Python Engineer</h1>
      <span class="salary">30-45K·14薪</span>
      <p>
        <span class="job-area">上海·浦东新区</span>
        <span class="job-experience">3-5年</span>
        <span class="job-education">本科</span>
      </p>
    </div>
    <div class="company-info"><h3 class="company-name">Example Technology</h3></div>
    <div class="job-sec">
      <h3>职位描述</h3>
      <div class="text">
        Build and run crawlers.
        Maintain   data pipelines.
      </div>
    </div>
  </body>
</html>
"""

CHALLENGE_PAGE_HTML = """
<html>
  <head><title>BOSS直聘</title></head>
  <body>
    <div class="verify-slider"><span>请按住滑块，拖动到最右边</span></div>
  </body>
</html>
"""


class FakeClock:
    """Manually advanced clock returning epoch seconds."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSession:
    """Stand-in for ``BrowserSession`` that replays scripted outcomes."""

    _counter = 0

    def __init__(self, outcomes: Optional[List] = None, recheck_outcomes: Optional[List] = None,
                 fail_open: bool = False):
        self.outcomes = list(outcomes or [])
        self.recheck_outcomes = list(recheck_outcomes or [])
        self.fail_open = fail_open
        self.handle = None
        self.open_calls = 0
        self.close_calls = 0
        self.navigations: List[str] = []
        self.screenshots: List = []

    async def open(self) -> str:
        self.open_calls += 1
        if self.fail_open:
            raise LaunchError("Browser launch failed: executable not found")
        FakeSession._counter += 1
        self.handle = f"session-{FakeSession._counter}"
        return self.handle

    async def navigate(self, url: str):
        self.navigations.append(url)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        if callable(outcome):
            return await outcome()
        return outcome

    async def recheck(self, wait_seconds: float = 0):
        outcome = self.recheck_outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def screenshot(self, path):
        self.screenshots.append(path)
        return b""

    async def close(self) -> None:
        self.close_calls += 1


class InMemoryRepository:
    """Dictionary-backed ``JobRepository``."""

    def __init__(self):
        self.postings = {}

    def find_by_url(self, url):
        return self.postings.get(url)

    def save(self, posting):
        existing = self.postings.get(posting.source_url)
        if existing is not None:
            return existing.id
        posting.id = f"job-{len(self.postings) + 1}"
        self.postings[posting.source_url] = posting
        return posting.id


def make_snapshot(html: str = JOB_PAGE_HTML, url: str = JOB_URL,
                  status: Optional[int] = 200, title: str = "") -> PageSnapshot:
    return PageSnapshot(url=url, html=html, status=status, title=title)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_playwright():
    """Mocked ``async_playwright`` factory with page, context, browser and playwright."""
    page = MagicMock()
    page.url = JOB_URL
    page.goto = AsyncMock(return_value=MagicMock(status=200))
    page.wait_for_load_state = AsyncMock()
    page.wait_for_selector = AsyncMock()
    page.content = AsyncMock(return_value=JOB_PAGE_HTML)
    page.title = AsyncMock(return_value="Senior Python Engineer - BOSS直聘")
    page.screenshot = AsyncMock(return_value=b"png")
    page.close = AsyncMock()

    context = MagicMock()
    context.new_page = AsyncMock(return_value=page)
    context.close = AsyncMock()

    browser = MagicMock()
    browser.new_context = AsyncMock(return_value=context)
    browser.close = AsyncMock()

    playwright = MagicMock()
    playwright.chromium.launch = AsyncMock(return_value=browser)
    playwright.stop = AsyncMock()

    manager = MagicMock()
    manager.start = AsyncMock(return_value=playwright)
    factory = MagicMock(return_value=manager)

    return SimpleNamespace(factory=factory, playwright=playwright, browser=browser,
                           context=context, page=page)
