"""Redis-backed sliding window rate limiting for the write-heavy endpoints.

Each request is recorded as a member of a sorted set scored by its arrival
time; members older than the window are trimmed before counting.  Redis
errors fail open so an outage never blocks traffic.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from imagegen.errors import AuthenticationError
from imagegen.services.auth_service import verify_access_token

log = structlog.get_logger()


@dataclass(frozen=True)
class RateLimitRule:
    path: str
    limit: int
    window: int
    key: str = "user"
    method: str | None = None

    def matches(self, path: str, method: str) -> bool:
        if not path.startswith(self.path):
            return False
        return self.method is None or self.method.upper() == method.upper()


# Rules are matched top-to-bottom; the first matching rule wins.
DEFAULT_RULES: tuple[RateLimitRule, ...] = (
    RateLimitRule("/api/v1/generations", limit=10, window=3600, method="POST"),
    RateLimitRule("/api/v1/credits/check-in", limit=5, window=3600, method="POST"),
    RateLimitRule("/api/v1/credits/social-share", limit=5, window=3600, method="POST"),
    RateLimitRule("/api/v1/credits/tutorial", limit=10, window=3600, method="POST"),
    RateLimitRule("/api/v1/referrals/link", limit=5, window=3600, method="POST"),
    RateLimitRule("/api/v1/referrals/validate", limit=30, window=60, key="ip"),
    RateLimitRule("/api/v1/kie/manual-poll", limit=30, window=60, method="POST"),
    RateLimitRule("/api/v1/subscriptions/checkout", limit=10, window=3600, method="POST"),
)

SKIP_PATHS = {"/health", "/docs", "/openapi.json", "/redoc", "/api/v1/kie/callback"}


@dataclass
class RateLimitResult:
    """Holds the outcome of a sliding-window rate limit check."""

    current_count: int
    limit: int
    window: int
    reset_at: int

    @property
    def remaining(self) -> int:
        return max(0, self.limit - self.current_count)

    @property
    def exceeded(self) -> bool:
        return self.current_count > self.limit


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For when present."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def _resolve_identifier(request: Request, rule: RateLimitRule) -> str:
    """User id from a valid bearer token, else the client IP."""
    if rule.key == "user":
        auth = request.headers.get("authorization", "")
        if auth.lower().startswith("bearer "):
            try:
                return f"user:{verify_access_token(auth[7:].strip())}"
            except AuthenticationError:
                pass
    return f"ip:{_get_client_ip(request)}"


class SlidingWindowLimiter:
    def __init__(self, redis) -> None:
        self._redis = redis

    async def hit(self, redis_key: str, rule: RateLimitRule) -> RateLimitResult:
        """Record one request and return the count inside the window."""
        now = time.time()
        pipe = self._redis.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - rule.window)
        pipe.zadd(redis_key, {uuid.uuid4().hex: now})
        pipe.zcard(redis_key)
        pipe.expire(redis_key, rule.window)
        results = await pipe.execute()

        return RateLimitResult(
            current_count=results[2],
            limit=rule.limit,
            window=rule.window,
            reset_at=int(now) + rule.window,
        )


def _add_rate_limit_headers(response: Response, result: RateLimitResult) -> None:
    """Attach X-RateLimit-* headers to a response."""
    response.headers["X-RateLimit-Limit"] = str(result.limit)
    response.headers["X-RateLimit-Remaining"] = str(result.remaining)
    response.headers["X-RateLimit-Reset"] = str(result.reset_at)


def _build_429_response(result: RateLimitResult) -> JSONResponse:
    response = JSONResponse(
        status_code=429,
        content={"error": "rate_limited", "detail": "Too many requests. Please try again later."},
    )
    _add_rate_limit_headers(response, result)
    response.headers["Retry-After"] = str(result.window)
    return response


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Applies the first matching ``RateLimitRule`` using ``app.state.redis``."""

    def __init__(self, app: ASGIApp, rules: tuple[RateLimitRule, ...] = DEFAULT_RULES) -> None:
        super().__init__(app)
        self.rules = rules

    def _match(self, path: str, method: str) -> RateLimitRule | None:
        for rule in self.rules:
            if rule.matches(path, method):
                return rule
        return None

    async def dispatch(self, request: Request, call_next):
        if request.url.path in SKIP_PATHS:
            return await call_next(request)

        rule = self._match(request.url.path, request.method)
        if rule is None:
            return await call_next(request)

        identifier = _resolve_identifier(request, rule)
        redis_key = f"ratelimit:{rule.path}:{identifier}"

        try:
            limiter = SlidingWindowLimiter(request.app.state.redis)
            result = await limiter.hit(redis_key, rule)
        except Exception as exc:
            log.warning("rate_limit_redis_error", error=str(exc), path=request.url.path)
            return await call_next(request)

        if result.exceeded:
            log.warning(
                "rate_limit_exceeded",
                path=request.url.path,
                identifier=identifier,
                limit=result.limit,
                count=result.current_count,
            )
            return _build_429_response(result)

        response = await call_next(request)
        _add_rate_limit_headers(response, result)
        return response
