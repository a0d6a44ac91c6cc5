import ipaddress
import logging
import threading
import time
from collections import defaultdict, deque
from typing import Deque, Dict, Iterable, Optional

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse
import redis

logger = logging.getLogger("phoneverify.ratelimit")

DEFAULT_EXCLUDES = ("/health", "/metrics")


def _as_ip(value: str) -> Optional[str]:
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def client_ip(request: Request, trust_proxy: bool = False) -> str:
    """Socket peer address, or the proxy-reported client when ``trust_proxy``.

    Forwarding headers are client-controlled unless a proxy in front of the
    service overwrites them, so they are ignored by default. Entries that do
    not parse as an IP address are skipped.
    """
    if trust_proxy:
        for entry in request.headers.get("x-forwarded-for", "").split(","):
            ip = _as_ip(entry)
            if ip:
                return ip
        ip = _as_ip(request.headers.get("x-real-ip", ""))
        if ip:
            return ip
    return request.client.host if request.client else "unknown"


def _too_many(retry_after: int, limit: int) -> JSONResponse:
    return JSONResponse(
        status_code=429,
        content={"error": "Too many requests", "retryAfter": retry_after},
        headers={
            "Retry-After": str(retry_after),
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": "0",
        },
    )


class _BaseLimiter(BaseHTTPMiddleware):
    window_seconds = 60

    def __init__(
        self,
        app,
        limit_per_minute: int = 60,
        exclude_paths: Optional[Iterable[str]] = None,
        trust_proxy_headers: bool = False,
    ):
        super().__init__(app)
        self.limit_per_minute = limit_per_minute
        self.exclude_paths = tuple(exclude_paths or DEFAULT_EXCLUDES)
        self.trust_proxy_headers = trust_proxy_headers

    def _client_key(self, request: Request) -> str:
        return f"ip:{client_ip(request, self.trust_proxy_headers)}"

    def _excluded(self, path: str) -> bool:
        return any(path == p or path.startswith(p.rstrip("/") + "/") for p in self.exclude_paths)


class SlidingWindowLimiter(_BaseLimiter):
    """Per-client request limiter kept in process memory."""

    def __init__(self, app, **kwargs):
        super().__init__(app, **kwargs)
        self.store: Dict[str, Deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    async def dispatch(self, request: Request, call_next):
        if self._excluded(request.url.path):
            return await call_next(request)
        now = time.time()
        key = self._client_key(request)
        with self._lock:
            dq = self.store[key]
            while dq and now - dq[0] > self.window_seconds:
                dq.popleft()
            if len(dq) >= self.limit_per_minute:
                retry_after = max(1, int(self.window_seconds - (now - dq[0])))
                return _too_many(retry_after, self.limit_per_minute)
            dq.append(now)
        return await call_next(request)


class RedisRateLimiter(_BaseLimiter):
    """Fixed one-minute buckets in redis; shared across worker processes."""

    def __init__(
        self,
        app,
        redis_url: str = "",
        limit_per_minute: int = 60,
        prefix: str = "rl",
        exclude_paths: Optional[Iterable[str]] = None,
        client=None,
        trust_proxy_headers: bool = False,
    ):
        super().__init__(
            app,
            limit_per_minute=limit_per_minute,
            exclude_paths=exclude_paths,
            trust_proxy_headers=trust_proxy_headers,
        )
        self.redis = client if client is not None else self._connect(redis_url)
        self.prefix = prefix

    @staticmethod
    def _connect(url: str):
        if not url:
            return None
        try:
            return redis.from_url(url, decode_responses=True)
        except (ValueError, redis.RedisError) as exc:
            logger.warning("Redis rate limiter disabled: %s", exc)
            return None

    async def dispatch(self, request: Request, call_next):
        if self._excluded(request.url.path) or self.redis is None:
            return await call_next(request)
        now = int(time.time())
        key = f"{self.prefix}:{self._client_key(request)}:{now // 60}"
        try:
            count = self.redis.incr(key)
            if count == 1:
                self.redis.expire(key, 70)
        except redis.RedisError as exc:
            # fail open
            logger.warning("Redis rate limiter unavailable, allowing request: %s", exc)
            return await call_next(request)
        if count > self.limit_per_minute:
            return _too_many(60 - (now % 60), self.limit_per_minute)
        return await call_next(request)
