"""
Rate Limiter - Fixed-window request counting keyed by arbitrary strings.

Advisory abuse prevention only: windows live in the backend (process memory by
default), are not persisted and may be approximate under concurrency. A
backend outage fails open.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Protocol

from structlog import get_logger

from metering.config import settings
from metering.models.domain import RateLimitDecision
from metering.observability.metrics import metrics

logger = get_logger(__name__)

Clock = Callable[[], datetime]


def _utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


def rate_limit_key(workspace_id: str, user_id: str, action: str) -> str:
    """Build the limiter key for one member performing one action."""
    return f"{workspace_id}:{user_id}:{action}"


@dataclass
class RateWindow:
    """Mutable counter for one key inside the current window."""

    count: int
    reset_at: datetime


class RateLimitBackend(Protocol):
    """Storage for rate windows."""

    async def hit(self, key: str, window_ms: int, now: datetime) -> RateWindow:
        """Count one request for `key` and return the window after the increment."""
        ...


class InMemoryRateLimitBackend:
    """
    Process-local window store.

    Expired windows are swept from inside the hit path every `sweep_interval`
    hits, so the map holds at most the live keys plus one interval of stale ones.
    """

    def __init__(self, sweep_interval: int = 1000) -> None:
        self._windows: dict[str, RateWindow] = {}
        self._sweep_interval = max(1, sweep_interval)
        self._hits_since_sweep = 0

    async def hit(self, key: str, window_ms: int, now: datetime) -> RateWindow:
        self._hits_since_sweep += 1
        if self._hits_since_sweep >= self._sweep_interval:
            self._hits_since_sweep = 0
            removed = self.purge_expired(now)
            if removed:
                logger.debug("rate_limiter_windows_swept", removed=removed)

        window = self._windows.get(key)
        if window is None or now >= window.reset_at:
            window = RateWindow(count=1, reset_at=now + timedelta(milliseconds=window_ms))
            self._windows[key] = window
        else:
            window.count += 1
        return RateWindow(count=window.count, reset_at=window.reset_at)

    def purge_expired(self, now: datetime) -> int:
        """Drop windows whose reset time has passed. Returns number removed."""
        expired = [key for key, window in self._windows.items() if now >= window.reset_at]
        for key in expired:
            del self._windows[key]
        return len(expired)

    def __len__(self) -> int:
        return len(self._windows)


class RateLimiter:
    """
    Fixed-window rate limiter.

    The first call for a key (or the first after its window elapsed) opens a
    new window with count=1. A call is rejected once the post-increment count
    exceeds the quota; the decision carries the window reset time so callers
    can surface a retry-after hint.
    """

    def __init__(
        self,
        backend: RateLimitBackend | None = None,
        clock: Clock | None = None,
        window_ms: int | None = None,
        max_requests: int | None = None,
    ) -> None:
        self.backend = backend or InMemoryRateLimitBackend()
        self.clock = clock or _utc_now
        self.window_ms = settings.rate_limit_window_ms if window_ms is None else window_ms
        self.max_requests = settings.rate_limit_max if max_requests is None else max_requests

    async def allow(
        self,
        key: str,
        window_ms: int | None = None,
        max_requests: int | None = None,
    ) -> RateLimitDecision:
        """Count a request for `key` and decide whether it is within quota."""
        if window_ms is None:
            window_ms = self.window_ms
        limit = self.max_requests if max_requests is None else max_requests
        now = self.clock()

        try:
            window = await self.backend.hit(key, window_ms, now)
        except Exception as exc:
            # Fail open: throttling is best effort, never a reason to block traffic
            logger.warning("rate_limiter_backend_failed", key=key, error=str(exc))
            metrics.record_error(type(exc).__name__, "rate_limit")
            metrics.record_rate_limit(allowed=True)
            return RateLimitDecision(
                ok=True,
                reset_at=now + timedelta(milliseconds=window_ms),
                count=0,
                limit=limit,
            )

        ok = window.count <= limit
        metrics.record_rate_limit(allowed=ok)
        if not ok:
            logger.info(
                "rate_limited",
                key=key,
                count=window.count,
                limit=limit,
                reset_at=window.reset_at.isoformat(),
            )

        return RateLimitDecision(ok=ok, reset_at=window.reset_at, count=window.count, limit=limit)


# Process-wide limiter shared by request handlers
rate_limiter = RateLimiter()
