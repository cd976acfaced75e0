"""Sliding-window rate limiting for browser navigations, keyed by domain."""
import asyncio
import ipaddress
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, Optional
from urllib.parse import urlparse

from .config import RateLimitConfig
from .error_handling import RateLimitRejected

logger = logging.getLogger(__name__)

# Public suffixes that are registered one label deeper, e.g. example.com.cn.
SECOND_LEVEL_SUFFIXES = {
    "com.cn", "net.cn", "org.cn", "gov.cn", "edu.cn",
    "com.hk", "com.tw", "com.sg", "com.au", "com.br",
    "co.uk", "org.uk", "ac.uk", "co.jp", "co.kr", "co.in",
}


def rate_limit_key(url: str) -> str:
    """Get the registrable domain of a URL.

    ``https://www.zhipin.com/job_detail/x.html`` and ``https://m.zhipin.com/``
    share the key ``zhipin.com``.

    Args:
        url: Absolute URL

    Returns:
        Lowercase registrable domain, or the host itself for IPs and
        single-label hosts

    Raises:
        ValueError: If the URL has no host
    """
    host = (urlparse(url).hostname or "").lower().rstrip(".")
    if not host:
        raise ValueError(f"URL has no host: {url!r}")
    try:
        ipaddress.ip_address(host)
        return host
    except ValueError:
        pass
    labels = host.split(".")
    if len(labels) <= 2:
        return host
    if ".".join(labels[-2:]) in SECOND_LEVEL_SUFFIXES:
        return ".".join(labels[-3:])
    return ".".join(labels[-2:])


class AdmissionAction(Enum):
    """What a caller may do with a navigation request."""
    ADMIT = "admit"
    ADMIT_AFTER_DELAY = "admit_after_delay"
    REJECT = "reject"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check."""
    action: AdmissionAction
    delay: float = 0.0
    reason: str = ""

    @classmethod
    def admit(cls) -> "RateLimitDecision":
        return cls(AdmissionAction.ADMIT)

    @classmethod
    def admit_after_delay(cls, delay: float, reason: str = "") -> "RateLimitDecision":
        return cls(AdmissionAction.ADMIT_AFTER_DELAY, delay, reason)

    @classmethod
    def reject(cls, retry_after: float, reason: str = "") -> "RateLimitDecision":
        return cls(AdmissionAction.REJECT, retry_after, reason)

    @property
    def admitted(self) -> bool:
        return self.action is AdmissionAction.ADMIT


@dataclass(frozen=True)
class RequestRecord:
    """An admitted navigation."""
    key: str
    timestamp: float


class _KeyState:
    """Request history of one key, guarded by its own lock."""

    __slots__ = ("records", "lock", "retired")

    def __init__(self):
        self.records: Deque[RequestRecord] = deque()
        self.lock = threading.Lock()
        self.retired = False


class RateLimiter:
    """Admits browser navigations per domain within a sliding window.

    A request is admitted when fewer than ``max_requests`` were admitted for
    the same key during the last ``window_seconds`` and the newest of them is
    at least ``min_interval_seconds`` old. Checking and recording happen in
    one critical section per key, so concurrent callers can never overshoot
    the quota. Different keys never contend for the same lock.
    """

    def __init__(self, config: Optional[RateLimitConfig] = None,
                 clock: Optional[Callable[[], float]] = None,
                 sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep):
        """Initialize the rate limiter.

        Args:
            config: Window thresholds, defaults to ``RateLimitConfig()``
            clock: Returns the current time in seconds, defaults to ``time.time``
            sleep: Coroutine used to wait out delays in ``acquire``
        """
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._sleep = sleep
        self._keys: Dict[str, _KeyState] = {}
        self._registry_lock = threading.Lock()

    def _now(self) -> float:
        return self._clock() if self._clock else time.time()

    def _state(self, key: str) -> _KeyState:
        with self._registry_lock:
            state = self._keys.get(key)
            if state is None:
                state = _KeyState()
                self._keys[key] = state
            return state

    def _prune(self, records: Deque[RequestRecord], now: float) -> None:
        window = self.config.window_seconds
        while records and now - records[0].timestamp >= window:
            records.popleft()

    def admit(self, key: str) -> RateLimitDecision:
        """Check whether a navigation for ``key`` may start now, recording it if so.

        Args:
            key: Rate limit key, see ``rate_limit_key``

        Returns:
            ADMIT (recorded), ADMIT_AFTER_DELAY with the time to wait before
            asking again, or REJECT when that time exceeds ``max_wait_seconds``
        """
        while True:
            state = self._state(key)
            with state.lock:
                if state.retired:
                    # cleanup() dropped this state after we looked it up
                    continue
                return self._admit_locked(key, state)

    def _admit_locked(self, key: str, state: _KeyState) -> RateLimitDecision:
        now = self._now()
        records = state.records
        self._prune(records, now)

        if len(records) >= self.config.max_requests:
            delay = self.config.window_seconds - (now - records[0].timestamp)
            reason = f"{len(records)}/{self.config.max_requests} requests in {self.config.window_seconds:.0f}s window"
            return self._delay_or_reject(key, delay, reason)

        if records:
            elapsed = now - records[-1].timestamp
            if elapsed < self.config.min_interval_seconds:
                delay = self.config.min_interval_seconds - elapsed
                reason = f"minimum interval {self.config.min_interval_seconds:.0f}s"
                return self._delay_or_reject(key, delay, reason)

        records.append(RequestRecord(key, now))
        logger.debug(f"Admitted request for {key} ({len(records)}/{self.config.max_requests} in window)")
        return RateLimitDecision.admit()

    def _delay_or_reject(self, key: str, delay: float, reason: str) -> RateLimitDecision:
        max_wait = self.config.max_wait_seconds
        if max_wait is not None and delay > max_wait:
            logger.warning(f"Rejecting request for {key}: {reason}, next slot in {delay:.1f}s")
            return RateLimitDecision.reject(delay, reason)
        return RateLimitDecision.admit_after_delay(delay, reason)

    async def acquire(self, key: str) -> RateLimitDecision:
        """Wait until a navigation for ``key`` is admitted.

        Only the calling task sleeps. The decision is re-evaluated after
        every sleep, so waiters are not served in FIFO order.

        Args:
            key: Rate limit key

        Returns:
            The final ADMIT decision

        Raises:
            RateLimitRejected: If the request is rejected, or waiting longer
                would exceed ``max_wait_seconds`` in total
        """
        waited = 0.0
        max_wait = self.config.max_wait_seconds
        while True:
            decision = self.admit(key)
            if decision.action is AdmissionAction.ADMIT:
                if waited:
                    logger.info(f"Admitted request for {key} after waiting {waited:.1f}s")
                return decision
            if decision.action is AdmissionAction.REJECT:
                raise RateLimitRejected(key, decision.delay)
            if max_wait is not None and waited + decision.delay > max_wait:
                logger.warning(f"Giving up on {key} after waiting {waited:.1f}s")
                raise RateLimitRejected(key, decision.delay)
            logger.info(f"Rate limiting {key}: {decision.reason}, waiting {decision.delay:.1f}s")
            await self._sleep(decision.delay)
            waited += decision.delay

    def status(self, key: str) -> Dict[str, Any]:
        """Get the current window usage for ``key``.

        Returns:
            Dictionary with ``requests_in_window``, ``max_requests`` and
            ``next_allowed_at`` (epoch seconds, ``None`` when admissible now)
        """
        with self._registry_lock:
            state = self._keys.get(key)
        if state is None:
            return {'requests_in_window': 0, 'max_requests': self.config.max_requests, 'next_allowed_at': None}

        with state.lock:
            now = self._now()
            self._prune(state.records, now)
            records = state.records
            next_allowed_at = None
            if len(records) >= self.config.max_requests:
                next_allowed_at = records[0].timestamp + self.config.window_seconds
            elif records and now - records[-1].timestamp < self.config.min_interval_seconds:
                next_allowed_at = records[-1].timestamp + self.config.min_interval_seconds
            return {
                'requests_in_window': len(records),
                'max_requests': self.config.max_requests,
                'next_allowed_at': next_allowed_at,
            }

    def cleanup(self) -> int:
        """Drop keys whose records have all left the window.

        Returns:
            Number of keys removed
        """
        removed = 0
        with self._registry_lock:
            for key, state in list(self._keys.items()):
                with state.lock:
                    self._prune(state.records, self._now())
                    if not state.records:
                        state.retired = True
                        del self._keys[key]
                        removed += 1
        if removed:
            logger.debug(f"Rate limiter cleanup removed {removed} idle keys")
        return removed

    def reset(self, key: Optional[str] = None) -> None:
        """Forget recorded requests for ``key``, or for every key."""
        with self._registry_lock:
            targets = [key] if key is not None else list(self._keys)
            for name in targets:
                state = self._keys.pop(name, None)
                if state is not None:
                    with state.lock:
                        state.retired = True
                        state.records.clear()
        logger.info(f"Rate limiter reset for {key if key is not None else 'all keys'}")

    def stats(self) -> Dict[str, int]:
        """Get key and record counts across all keys."""
        with self._registry_lock:
            states = list(self._keys.values())
        total_requests = 0
        for state in states:
            with state.lock:
                total_requests += len(state.records)
        return {'total_keys': len(states), 'total_requests': total_requests}
