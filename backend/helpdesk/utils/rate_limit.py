import math
import threading
import time
from typing import Callable, Dict, Tuple

from fastapi import Request

from helpdesk.errors import RateLimitedError
from helpdesk.utils.logger import logger

RATE_LIMIT_MESSAGE = "Too many requests. Please try again later."


class RateLimiter:
    """Fixed-window request counter keyed by client address."""

    def __init__(self, max_requests: int, window_seconds: int, clock: Callable[[], float] = time.monotonic):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self._clock = clock
        self._hits: Dict[str, Tuple[float, int]] = {}
        self._last_sweep = clock()
        self._lock = threading.Lock()

    def _sweep(self, now: float) -> None:
        expired = [key for key, (start, _) in self._hits.items() if now - start >= self.window_seconds]
        for key in expired:
            del self._hits[key]
        self._last_sweep = now

    def hit(self, key: str) -> None:
        now = self._clock()
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(now)
            window_start, count = self._hits.get(key, (now, 0))
            if now - window_start >= self.window_seconds:
                window_start, count = now, 0
            count += 1
            self._hits[key] = (window_start, count)

        if count > self.max_requests:
            retry_after = max(1, math.ceil(self.window_seconds - (now - window_start)))
            logger.warning("Rate limit exceeded key=%s count=%s", key, count)
            raise RateLimitedError(RATE_LIMIT_MESSAGE, headers={"Retry-After": str(retry_after)})

    def __len__(self) -> int:
        return len(self._hits)


def _client_key(request: Request, trust_proxy: bool = False) -> str:
    # X-Forwarded-For is client-controlled unless a proxy we run overwrites it.
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-For")
        if forwarded:
            return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def rate_limit(name: str):
    """Dependency that counts the call against ``app.state.rate_limiters[name]``."""

    def dependency(request: Request) -> None:
        limiter = request.app.state.rate_limiters.get(name)
        if limiter is not None:
            trust_proxy = getattr(request.app.state.settings, "TRUST_PROXY", False)
            limiter.hit(f"{name}:{_client_key(request, trust_proxy)}")

    return dependency
