"""
Redis-backed fixed window rate limiter middleware.

Runs as a no-op when Redis is not configured or errors; the slowapi limit on
the submit route still applies in that case.
"""
import time

from redis.exceptions import RedisError
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from reeru.utils.logger import get_logger

logger = get_logger("rate_limit")

# Requests per window
AUTHENTICATED_LIMIT = 120
ANONYMOUS_LIMIT = 60
WINDOW_SECONDS = 60

KEY_PREFIX = "reeru:rl"

# Health probes and the queue-delivered worker route are never limited
EXEMPT_PATHS = frozenset({"/health", "/metrics", "/", "/api/klap/worker"})


def rate_limit_key(request: Request) -> tuple:
    """(redis key, limit) for the caller of this request."""
    user_id = request.headers.get("x-user-id")
    if user_id:
        return f"{KEY_PREFIX}:user:{user_id}", AUTHENTICATED_LIMIT
    chat_id = request.headers.get("x-telegram-chat-id")
    if chat_id:
        return f"{KEY_PREFIX}:chat:{chat_id}", AUTHENTICATED_LIMIT
    client_ip = request.client.host if request.client else "unknown"
    return f"{KEY_PREFIX}:ip:{client_ip}", ANONYMOUS_LIMIT


class RedisRateLimitMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        if request.url.path in EXEMPT_PATHS or request.method == "OPTIONS":
            return await call_next(request)

        handle = getattr(request.app.state, "redis", None)
        r = handle.client if handle is not None else None
        if r is None:
            return await call_next(request)

        key, limit = rate_limit_key(request)
        now = int(time.time())
        window = now // WINDOW_SECONDS
        window_key = f"{key}:{window}"

        try:
            pipe = r.pipeline(transaction=True)
            pipe.incr(window_key)
            pipe.expire(window_key, WINDOW_SECONDS + 1)
            current_count = (await pipe.execute())[0]
        except (RedisError, OSError) as exc:
            logger.debug("rate_limit.redis_error", extra={"error": str(exc)[:200]})
            return await call_next(request)

        reset_at = str((window + 1) * WINDOW_SECONDS)
        if current_count > limit:
            logger.warning("rate_limit.exceeded", extra={"path": request.url.path})
            return JSONResponse(
                status_code=429,
                content={"error": "Rate limit exceeded. Try again shortly.", "code": "rate_limited"},
                headers={
                    "X-RateLimit-Limit": str(limit),
                    "X-RateLimit-Remaining": "0",
                    "X-RateLimit-Reset": reset_at,
                    "Retry-After": str(WINDOW_SECONDS),
                },
            )

        response = await call_next(request)
        response.headers["X-RateLimit-Limit"] = str(limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, limit - current_count))
        response.headers["X-RateLimit-Reset"] = reset_at
        return response
