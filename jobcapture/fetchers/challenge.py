"""Detection of login walls, verification challenges and not-found pages."""
import logging
import re
from typing import Callable, Iterable, List, Optional, Protocol
from urllib.parse import urlparse

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from ..config import SiteProfile
from ..models import PageSnapshot

logger = logging.getLogger(__name__)


class ChallengeDetector(Protocol):
    """Decides whether a rendered page is blocked by a human challenge."""

    def match(self, snapshot: PageSnapshot) -> Optional[str]:
        """Return the marker that identified a challenge, or None."""
        ...

    def is_challenge_page(self, snapshot: PageSnapshot) -> bool:
        ...


_HIDDEN_STYLE = re.compile(r"display\s*:\s*none|visibility\s*:\s*hidden", re.IGNORECASE)


def is_hidden(element: Tag) -> bool:
    """Whether the element or one of its ancestors is hidden by markup.

    Pages ship login dialogs and error panels as hidden templates, so only
    markers a human could actually see count.
    """
    for node in [element, *element.parents]:
        attrs = getattr(node, "attrs", None) or {}
        if "hidden" in attrs or _HIDDEN_STYLE.search(attrs.get("style", "")):
            return True
    return False


def first_visible_match(soup: BeautifulSoup, selectors: Iterable[str]) -> Optional[str]:
    """Return the first selector matching a visible element, or None."""
    for selector in selectors:
        try:
            if any(not is_hidden(element) for element in soup.select(selector)):
                return selector
        except SelectorSyntaxError as e:
            logger.warning(f"Skipping invalid selector {selector!r}: {e}")
    return None


class MarkerChallengeDetector:
    """Challenge detector driven by deterministic page markers.

    A page is a challenge when its HTTP status is one of ``status_codes``,
    its URL path or query contains one of ``url_markers``, or it shows
    a visible element matching one of ``selectors``.
    """

    def __init__(self, selectors: Optional[List[str]] = None,
                 url_markers: Optional[List[str]] = None,
                 status_codes: Optional[List[int]] = None):
        self.selectors = list(selectors or [])
        self.url_markers = [marker.lower() for marker in (url_markers or [])]
        self.status_codes = set(status_codes or [])

    @classmethod
    def from_profile(cls, profile: SiteProfile) -> "MarkerChallengeDetector":
        return cls(
            selectors=profile.challenge_selectors,
            url_markers=profile.challenge_url_markers,
            status_codes=profile.challenge_status_codes,
        )

    def match(self, snapshot: PageSnapshot) -> Optional[str]:
        """Find the first challenge marker on the page.

        Args:
            snapshot: Rendered page

        Returns:
            Description of the matching marker, or None for a clean page
        """
        if snapshot.status is not None and snapshot.status in self.status_codes:
            return f"status:{snapshot.status}"

        parsed = urlparse(snapshot.url or "")
        location = f"{parsed.path}?{parsed.query}".lower()
        for marker in self.url_markers:
            if marker in location:
                return f"url:{marker}"

        if self.selectors and snapshot.html:
            soup = BeautifulSoup(snapshot.html, "html.parser")
            selector = first_visible_match(soup, self.selectors)
            if selector:
                return f"selector:{selector}"
        return None

    def is_challenge_page(self, snapshot: PageSnapshot) -> bool:
        return self.match(snapshot) is not None


class CallableChallengeDetector:
    """Adapts a plain ``snapshot -> bool`` predicate to ``ChallengeDetector``."""

    def __init__(self, predicate: Callable[[PageSnapshot], bool], name: str = "predicate"):
        self.predicate = predicate
        self.name = name

    def match(self, snapshot: PageSnapshot) -> Optional[str]:
        return self.name if self.predicate(snapshot) else None

    def is_challenge_page(self, snapshot: PageSnapshot) -> bool:
        return bool(self.predicate(snapshot))


def detect_not_found(snapshot: PageSnapshot, profile: SiteProfile) -> Optional[str]:
    """Check whether the page is the site's "job not found" page.

    Args:
        snapshot: Rendered page
        profile: Site profile carrying not-found markers

    Returns:
        Description of the matching marker, or None
    """
    title = (snapshot.title or "").strip()
    for marker in profile.not_found_titles:
        if marker in title:
            return f"title:{marker}"

    if not snapshot.html:
        return None
    soup = BeautifulSoup(snapshot.html, "html.parser")
    selector = first_visible_match(soup, profile.not_found_selectors)
    if selector:
        return f"selector:{selector}"

    if profile.not_found_texts:
        body = soup.body or soup
        text = body.get_text(" ", strip=True)
        for marker in profile.not_found_texts:
            if marker in text:
                return f"text:{marker}"
    return None
