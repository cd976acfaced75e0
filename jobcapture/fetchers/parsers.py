"""Field extraction for rendered job pages.

Every field of a ``JobPosting`` is located through an ordered list of CSS
selectors from the site profile. The first selector yielding non-empty text
wins, so the lists go from most to least specific.
"""

from typing import List, Optional, Dict
import logging
import re
from bs4 import BeautifulSoup
from soupsieve import SelectorSyntaxError

from ..config import SiteProfile, DEFAULT_SITE_PROFILE
from ..error_handling import ExtractionError
from ..models import JobPosting, PageSnapshot, REQUIRED_FIELDS

logger = logging.getLogger(__name__)

FIELD_ORDER = (
    "title",
    "company",
    "location",
    "salary_range",
    "experience_required",
    "education_required",
    "raw_description",
)

# Fields made of several elements, joined line by line.
MULTI_ELEMENT_FIELDS = {"raw_description"}

_SPACES = re.compile(r"[ \t\u00a0\u3000]+")


def normalize_text(text: str) -> str:
    """Collapse runs of spaces inside lines and drop blank lines."""
    lines = (_SPACES.sub(" ", line).strip() for line in text.splitlines())
    return "\n".join(line for line in lines if line)


class ExtractionPipeline:
    """Turns job page HTML into a ``JobPosting``."""

    def __init__(self, profile: Optional[SiteProfile] = None):
        self.profile = profile or DEFAULT_SITE_PROFILE

    def extract(self, html: str, source_url: str = "") -> JobPosting:
        """Extract a job posting from page HTML.

        Args:
            html: Rendered page HTML
            source_url: URL the page was requested from

        Returns:
            JobPosting with optional fields set to None when absent

        Raises:
            ExtractionError: If title, company or description is missing
        """
        soup = BeautifulSoup(html or "", "html.parser")
        values: Dict[str, Optional[str]] = {}
        for field_name in FIELD_ORDER:
            selectors = self.profile.field_selectors.get(field_name, [])
            values[field_name] = self._extract_field(soup, field_name, selectors)

        for field_name in REQUIRED_FIELDS:
            if not values[field_name]:
                logger.error(f"Extraction failed for {source_url or 'page'}: no {field_name} found")
                raise ExtractionError(field_name)

        posting = JobPosting(source_url=source_url, **values)
        logger.info(f"Extracted job posting: {posting.title} at {posting.company}")
        return posting

    def extract_snapshot(self, snapshot: PageSnapshot, source_url: Optional[str] = None) -> JobPosting:
        """Extract from a page snapshot, keyed by ``source_url`` or the page URL."""
        return self.extract(snapshot.html, source_url or snapshot.url)

    def _extract_field(self, soup: BeautifulSoup, field_name: str, selectors: List[str]) -> Optional[str]:
        for selector in selectors:
            try:
                elements = soup.select(selector)
            except SelectorSyntaxError as e:
                logger.warning(f"Skipping invalid selector {selector!r} for {field_name}: {e}")
                continue

            if field_name in MULTI_ELEMENT_FIELDS:
                text = normalize_text("\n".join(el.get_text("\n", strip=True) for el in elements))
            else:
                text = next((value for value in (normalize_text(el.get_text(" ", strip=True)) for el in elements)
                             if value), "")
            if text:
                logger.debug(f"Found {field_name} with selector {selector!r}")
                return text
        return None
