"""Fixed-window per-client rate limiting for the credential endpoints."""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Iterable

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

logger = logging.getLogger("recordbase.auth")

RATE_LIMIT_MESSAGE = "Too many login attempts, please try again after 15 minutes"


@dataclass
class _WindowCounter:
    count: int = 0
    window_start: float = field(default_factory=time.monotonic)


class AuthRateLimitMiddleware(BaseHTTPMiddleware):
    """Limit each client IP to ``max_requests`` per window on ``paths``."""

    def __init__(
        self,
        app: object,
        paths: Iterable[str] = ("/register", "/login"),
        enabled: bool = True,
        trust_proxy: bool = False,
        max_requests: int = 5,
        window_s: float = 900.0,
        message: str = RATE_LIMIT_MESSAGE,
    ) -> None:
        super().__init__(app)  # type: ignore[arg-type]
        self._paths = frozenset(paths)
        self._enabled = enabled
        self._trust_proxy = trust_proxy
        self._max = max_requests
        self._window_s = window_s
        self._message = message
        self._counters: dict[str, _WindowCounter] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def _client_ip(self, request: Request) -> str:
        if self._trust_proxy:
            forwarded = request.headers.get("X-Forwarded-For")
            if forwarded:
                return forwarded.split(",")[0].strip()
        return request.client.host if request.client else "unknown"

    def _sweep(self, now: float) -> None:
        """Drop counters whose window has closed; caller holds the lock."""
        if now - self._last_sweep < min(self._window_s, 60.0):
            return
        self._last_sweep = now
        expired = [ip for ip, c in self._counters.items() if now - c.window_start >= self._window_s]
        for ip in expired:
            del self._counters[ip]

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if not self._enabled or request.url.path not in self._paths:
            return await call_next(request)

        ip = self._client_ip(request)
        now = time.monotonic()
        with self._lock:
            self._sweep(now)
            counter = self._counters.setdefault(ip, _WindowCounter(window_start=now))
            if now - counter.window_start >= self._window_s:
                counter.count = 0
                counter.window_start = now
            counter.count += 1
            count = counter.count
            reset_s = int(self._window_s - (now - counter.window_start)) + 1

        headers = {
            "RateLimit-Limit": str(self._max),
            "RateLimit-Remaining": str(max(0, self._max - count)),
            "RateLimit-Reset": str(reset_s),
        }
        if count > self._max:
            logger.warning("auth_rate_limited ip=%s path=%s count=%s", ip, request.url.path, count)
            headers["Retry-After"] = str(reset_s)
            return JSONResponse({"message": self._message}, status_code=429, headers=headers)

        response = await call_next(request)
        for key, value in headers.items():
            response.headers[key] = value
        return response
