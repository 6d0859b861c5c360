"""
Rate Limiting Middleware

Fixed windows aligned to wall-clock multiples of the window length, counted
in Redis so every API instance shares them. Key:
``rate_limit:<caller>:<path>:<window start>``.

The ingestion and subscriber-management routes get tighter limits than the
read routes. Without Redis the middleware lets everything through.
"""
import logging
import time
from dataclasses import dataclass
from typing import Optional

from fastapi import Request, status
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware

from core.cache import cache_key, get_redis_client
from core.config import settings
from core.security import get_user_id_from_token, hash_token

logger = logging.getLogger(__name__)

ROUTE_LIMITS = (
    ("/api/webhook", 30),
    ("/v1/workouts/sync", 30),
    ("/v1/webhooks", 30),
)

EXEMPT_PATHS = frozenset({
    "/health", "/health/ready", "/health/live", "/ping",
    "/docs", "/openapi.json", "/redoc",
})


@dataclass
class WindowState:
    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    def headers(self) -> dict:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


def limit_for_path(path: str, default: int) -> int:
    for prefix, limit in ROUTE_LIMITS:
        if path == prefix or path.startswith(prefix + "/"):
            return limit
    return default


def caller_identity(request: Request) -> str:
    """JWT subject, else a hash prefix of the webhook token, else client IP."""
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        user_id = get_user_id_from_token(auth[len("Bearer "):])
        if user_id:
            return f"user:{user_id}"

    token = request.query_params.get("token") or request.headers.get("X-Webhook-Token")
    if token:
        return f"hook:{hash_token(token)[:16]}"

    return f"ip:{request.client.host if request.client else 'unknown'}"


def consume(caller: str, path: str, limit: int, window: int, now: Optional[float] = None) -> WindowState:
    """Count one request in the caller's current window."""
    now_s = int(time.time() if now is None else now)
    window_start = now_s - now_s % window
    reset_at = window_start + window

    client = get_redis_client()
    if client is None:
        return WindowState(allowed=True, limit=limit, remaining=limit, reset_at=reset_at)

    key = cache_key("rate_limit", caller, path, window_start)
    try:
        pipe = client.pipeline()
        pipe.incr(key)
        pipe.expire(key, window)
        count, _ = pipe.execute()
    except RedisError as e:
        logger.error(f"Rate limit check failed, allowing request: {e}")
        return WindowState(allowed=True, limit=limit, remaining=limit, reset_at=reset_at)

    return WindowState(
        allowed=count <= limit,
        limit=limit,
        remaining=max(0, limit - count),
        reset_at=reset_at,
    )


class RateLimitMiddleware(BaseHTTPMiddleware):
    def __init__(self, app, default_limit: int = 60, window: int = 60):
        super().__init__(app)
        self.default_limit = default_limit
        self.window = window

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if not settings.RATE_LIMIT_ENABLED or path in EXEMPT_PATHS:
            return await call_next(request)

        caller = caller_identity(request)
        state = consume(caller, path, limit_for_path(path, self.default_limit), self.window)

        if not state.allowed:
            logger.info(
                "Rate limit exceeded",
                extra={"extra_fields": {"caller": caller, "path": path, "limit": state.limit}},
            )
            return JSONResponse(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                content={
                    "detail": "Rate limit exceeded",
                    "error_code": "RATE_LIMITED",
                    "limit": state.limit,
                    "window": self.window,
                    "reset_at": state.reset_at,
                },
                headers={**state.headers(), "Retry-After": str(max(0, state.reset_at - int(time.time())))},
            )

        response = await call_next(request)
        response.headers.update(state.headers())
        return response
