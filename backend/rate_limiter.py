import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Protocol

logger = logging.getLogger(__name__)


class RateLimiter(Protocol):
    async def allow(self, identity: str) -> bool:
        ...


@dataclass
class RateWindow:
    account_id: str
    count: int
    window_reset_at: float


class FixedWindowRateLimiter:
    """Per-process fixed-window counter keyed by account.

    State lives in this instance only: it is not shared between workers and
    is lost on restart. Windows are reset lazily on the first request after
    they expire.
    """

    def __init__(
        self,
        max_requests: int = 5,
        window_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._windows: Dict[str, RateWindow] = {}
        self._lock = asyncio.Lock()

    async def allow(self, identity: str) -> bool:
        now = self._clock()
        async with self._lock:
            window = self._windows.get(identity)
            if window is None or now >= window.window_reset_at:
                self._windows[identity] = RateWindow(
                    account_id=identity,
                    count=1,
                    window_reset_at=now + self.window_seconds,
                )
                return True
            if window.count >= self.max_requests:
                logger.info(
                    "rate_limit_denied identity=%s count=%s reset_in=%.1fs",
                    identity,
                    window.count,
                    window.window_reset_at - now,
                )
                return False
            window.count += 1
            return True

    def window_for(self, identity: str) -> Optional[RateWindow]:
        return self._windows.get(identity)
