"""Parking and resuming browser sessions blocked by human verification.

When a page shows a login wall or a challenge that only a human can clear,
the fetch returns a handle instead of a result and the browser window stays
open. The caller resumes with that handle once the human is done. Sessions
that are never resumed are closed by a background reaper after their
deadline.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

from .config import VerificationConfig
from .error_handling import (
    NavigationError,
    SessionExpired,
    SessionNotFound,
    VerificationAttemptsExhausted,
)
from .models import ChallengeDetected, NavigationFailed, PageSnapshot

logger = logging.getLogger(__name__)


class VerificationState(Enum):
    """Lifecycle of a parked session. CREATED is the only non-terminal state."""
    CREATED = "created"
    RESUMED = "resumed"
    EXPIRED = "expired"


@dataclass
class VerificationSession:
    """A browser session waiting for a human to clear a challenge.

    Attributes:
        handle: Opaque handle given to the caller
        url: Job page URL the session was navigating to
        session: The open ``BrowserSession``
        created_at: Park time, in clock seconds
        deadline: Time after which the session is expired
        attempts: Resume attempts that found the challenge still present
        state: Current lifecycle state
    """
    handle: str
    url: str
    session: Any
    created_at: float
    deadline: float
    attempts: int = 0
    state: VerificationState = VerificationState.CREATED
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def is_expired(self, now: float) -> bool:
        return now >= self.deadline

    @property
    def expires_at(self) -> datetime:
        return datetime.fromtimestamp(self.deadline)


@dataclass(frozen=True)
class Cleared:
    """The challenge is gone; ownership of the session passes to the caller."""
    handle: str
    url: str
    session: Any
    snapshot: PageSnapshot


@dataclass(frozen=True)
class Blocked:
    """The challenge is still on the page."""
    handle: str
    attempts: int
    attempts_left: int
    marker: str


ResumeOutcome = Union[Cleared, Blocked]


class VerificationCoordinator:
    """Owns parked sessions and every transition of their state."""

    def __init__(self, config: Optional[VerificationConfig] = None,
                 clock: Optional[Callable[[], float]] = None):
        """Initialize the coordinator.

        Args:
            config: Deadlines and attempt limits
            clock: Returns the current time in seconds, defaults to ``time.time``
        """
        self.config = config or VerificationConfig()
        self._clock = clock
        self._sessions: Dict[str, VerificationSession] = {}
        self._expired: Dict[str, float] = {}
        self._sweep_callbacks: List[Callable[[], Any]] = []
        self._reaper_task: Optional[asyncio.Task] = None

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    def park(self, session: Any, url: str) -> VerificationSession:
        """Keep an open session until a human clears its challenge.

        Args:
            session: Open ``BrowserSession`` showing the challenge
            url: Job page URL being fetched

        Returns:
            The new VerificationSession in state CREATED

        Raises:
            ValueError: If the session was never opened or is already parked
        """
        handle = getattr(session, "handle", None)
        if not handle:
            raise ValueError("Cannot park a browser session that was never opened")
        if handle in self._sessions:
            raise ValueError(f"Browser session {handle} is already parked")

        now = self._now()
        entry = VerificationSession(
            handle=handle,
            url=url,
            session=session,
            created_at=now,
            deadline=now + self.config.deadline_seconds,
        )
        self._sessions[handle] = entry
        logger.info(f"Parked session {handle} for {url}, waiting up to "
                    f"{self.config.deadline_seconds:.0f}s for verification")
        return entry

    def get(self, handle: str) -> Optional[VerificationSession]:
        return self._sessions.get(handle)

    def pending(self) -> int:
        """Number of sessions waiting for verification."""
        return len(self._sessions)

    async def resume(self, handle: str) -> ResumeOutcome:
        """Check whether the human has cleared the challenge.

        Args:
            handle: Handle returned when the session was parked

        Returns:
            Cleared when the challenge is gone, Blocked when it is still present

        Raises:
            SessionNotFound: If the handle is unknown or already resumed
            SessionExpired: If the deadline passed; the browser is closed
            VerificationAttemptsExhausted: If the challenge was still present
                on the last allowed attempt; the browser is closed
            NavigationError: If the page broke while rechecking; the browser
                is closed
        """
        entry = self._sessions.get(handle)
        if entry is None:
            if handle in self._expired:
                raise SessionExpired(handle)
            raise SessionNotFound(handle)

        async with entry.lock:
            if self._sessions.get(handle) is not entry:
                # Another resume or the reaper finished this entry while we waited.
                if entry.state is VerificationState.EXPIRED:
                    raise SessionExpired(handle)
                raise SessionNotFound(handle)

            if entry.is_expired(self._now()):
                await self._expire(entry, "deadline passed before resume")
                raise SessionExpired(handle)

            outcome = await entry.session.recheck(self.config.resume_wait_seconds)

            if isinstance(outcome, NavigationFailed):
                entry.state = VerificationState.EXPIRED
                del self._sessions[handle]
                logger.error(f"Session {handle} failed while rechecking: {outcome.reason}")
                await entry.session.close()
                raise NavigationError(outcome.reason, outcome.transient)

            if isinstance(outcome, ChallengeDetected):
                entry.attempts += 1
                attempts_left = self.config.max_resume_attempts - entry.attempts
                if attempts_left <= 0:
                    await self._expire(entry, f"challenge still present after {entry.attempts} attempts")
                    raise VerificationAttemptsExhausted(handle, entry.attempts)
                logger.info(f"Session {handle} still blocked ({outcome.marker}), {attempts_left} attempts left")
                return Blocked(handle, entry.attempts, attempts_left, outcome.marker)

            entry.state = VerificationState.RESUMED
            del self._sessions[handle]
            logger.info(f"Verification cleared for session {handle}")
            return Cleared(handle, entry.url, entry.session, outcome.snapshot)

    async def _expire(self, entry: VerificationSession, reason: str) -> None:
        entry.state = VerificationState.EXPIRED
        self._sessions.pop(entry.handle, None)
        self._expired[entry.handle] = self._now()
        logger.warning(f"Expiring verification session {entry.handle}: {reason}")
        await entry.session.close()

    async def sweep(self) -> int:
        """Expire every session past its deadline.

        Sessions with a resume in progress are left to that resume.

        Returns:
            Number of sessions expired
        """
        now = self._now()
        reaped = 0
        for entry in [e for e in self._sessions.values() if e.is_expired(now)]:
            if entry.lock.locked():
                continue
            async with entry.lock:
                if self._sessions.get(entry.handle) is entry:
                    await self._expire(entry, "deadline passed without resume")
                    reaped += 1

        cutoff = now - self.config.tombstone_seconds
        for handle, expired_at in list(self._expired.items()):
            if expired_at < cutoff:
                del self._expired[handle]

        for callback in self._sweep_callbacks:
            try:
                callback()
            except Exception as e:
                logger.error(f"Sweep callback {callback!r} failed: {e}")

        if reaped:
            logger.info(f"Reaped {reaped} abandoned verification sessions")
        return reaped

    def add_sweep_callback(self, callback: Callable[[], Any]) -> None:
        """Run ``callback`` at the end of every sweep."""
        if callback not in self._sweep_callbacks:
            self._sweep_callbacks.append(callback)

    def start_reaper(self, interval: Optional[float] = None) -> asyncio.Task:
        """Start the background task that sweeps expired sessions.

        Must be called from a running event loop.
        """
        if self._reaper_task is not None and not self._reaper_task.done():
            return self._reaper_task
        interval = interval or self.config.reaper_interval_seconds
        self._reaper_task = asyncio.get_running_loop().create_task(self._reap(interval))
        logger.info(f"Verification reaper started, interval {interval:.0f}s")
        return self._reaper_task

    async def _reap(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Verification reaper sweep failed: {e}")

    async def stop_reaper(self) -> None:
        task = self._reaper_task
        self._reaper_task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Verification reaper stopped")

    async def close_all(self) -> None:
        """Close every parked session, e.g. at shutdown."""
        for entry in list(self._sessions.values()):
            async with entry.lock:
                if self._sessions.get(entry.handle) is entry:
                    await self._expire(entry, "coordinator shutting down")
