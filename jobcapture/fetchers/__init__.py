"""Browser-driven job page fetching.

The module is organized into:
- browser_session: One Playwright browser per logical fetch
- challenge: Login wall, verification and not-found page detection
- parsers: Field extraction from rendered job pages
- orchestrator: Rate-limited fetch workflow with human verification
"""

from .browser_session import BrowserSession
from .challenge import ChallengeDetector, MarkerChallengeDetector, CallableChallengeDetector
from .parsers import ExtractionPipeline
from .orchestrator import FetchOrchestrator

__all__ = [
    'BrowserSession',
    'ChallengeDetector',
    'MarkerChallengeDetector',
    'CallableChallengeDetector',
    'ExtractionPipeline',
    'FetchOrchestrator',
]
