"""Sliding-window rate limiting backed by Redis sorted sets.

Guest booking, quoting and public tracking are reachable without an
account, so they get tighter per-caller budgets than the rest of the API.
A caller is the JWT subject when a valid bearer token is sent, else the
client IP (first X-Forwarded-For hop behind the load balancer).

Redis outages never block traffic: the check fails open and logs.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware

from app.auth.jwt import decode_token
from app.config import settings
from app.middleware.exceptions import create_error_response
from app.utils.redis_client import get_redis

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LimitRule:
    bucket: str
    limit: int
    window: int  # seconds


# Matched by path prefix, first hit wins
PUBLIC_RULES = (
    ("/api/shipments/guest", LimitRule("booking", 10, 300)),
    ("/api/shipments/public", LimitRule("booking", 10, 300)),
    ("/api/shipments/quote", LimitRule("quote", 30, 60)),
    ("/api/shipments/track/", LimitRule("track", 60, 60)),
)


def caller_key(request: Request) -> str:
    auth = request.headers.get("authorization", "")
    if auth.startswith("Bearer "):
        sub = decode_token(auth[7:]).get("sub")
        if sub:
            return f"user:{sub}"

    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return "ip:" + forwarded.split(",")[0].strip()
    return "ip:" + (request.client.host if request.client else "unknown")


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(
        self,
        app,
        default_limit: int = 100,
        default_window: int = 60,
        exempt_paths: Optional[list[str]] = None,
    ):
        super().__init__(app)
        self.default_rule = LimitRule("default", default_limit, default_window)
        self.exempt_paths = tuple(exempt_paths or ("/health", "/docs", "/openapi.json"))

    def rule_for(self, path: str) -> LimitRule:
        for prefix, rule in PUBLIC_RULES:
            if path.startswith(prefix):
                return rule
        return self.default_rule

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        path = request.url.path
        if not settings.rate_limit_enabled or path.startswith(self.exempt_paths):
            return await call_next(request)

        rule = self.rule_for(path)
        allowed, remaining, reset_at = await self.consume(
            f"ratelimit:{rule.bucket}:{caller_key(request)}", rule
        )
        headers = {
            "X-RateLimit-Limit": str(rule.limit),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(reset_at)),
        }

        if not allowed:
            retry_after = max(1, int(reset_at - time.time()))
            # Exception handlers do not run for errors raised in BaseHTTPMiddleware
            return create_error_response(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                message=f"Rate limit exceeded. Try again in {retry_after} seconds.",
                error_code="RATE_LIMITED",
                headers={**headers, "Retry-After": str(retry_after)},
            )

        response = await call_next(request)
        response.headers.update(headers)
        return response

    async def consume(self, redis_key: str, rule: LimitRule) -> tuple[bool, int, float]:
        """Record one hit against ``redis_key``.

        Returns ``(allowed, remaining, reset_at)``; a refused hit is not
        recorded.
        """
        now = time.time()
        try:
            redis = await get_redis()
            await redis.zremrangebyscore(redis_key, 0, now - rule.window)
            used = await redis.zcard(redis_key)

            if used >= rule.limit:
                oldest = await redis.zrange(redis_key, 0, 0, withscores=True)
                reset_at = (oldest[0][1] if oldest else now) + rule.window
                return False, 0, reset_at

            await redis.zadd(redis_key, {str(now): now})
            await redis.expire(redis_key, rule.window)
            return True, rule.limit - used - 1, now + rule.window
        except Exception as exc:
            logger.error("Rate limit check failed for %s: %s", redis_key, exc)
            return True, rule.limit, now + rule.window
