import time
from dataclasses import dataclass
from typing import Optional, Callable

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from promo_engine.core.errors import RateLimitError, app_error_handler
from promo_engine.core.metrics import ratelimit_block_total, normalize_path
from promo_engine.core.logging import get_request_id
from promo_engine.core.ratelimit import InMemoryRateLimiter, RateLimitConfig, build_rate_limit_config


@dataclass
class RoutePolicy:
    per_minute: int
    burst: int


# Probes and scrapes are never limited
_EXEMPT_PATHS = {"/healthz", "/readyz", "/metrics"}


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Token-bucket rate limiting middleware (opt-in via settings)."""

    def __init__(self, app, *, config: Optional[RateLimitConfig] = None, time_fn: Optional[Callable[[], float]] = None):
        super().__init__(app)
        self.config = config or build_rate_limit_config()
        self.limiter = InMemoryRateLimiter(self.config, time_fn=time_fn or time.monotonic)

    def _policy_for_request(self, request: Request) -> Optional[RoutePolicy]:
        path = request.url.path
        if path in _EXEMPT_PATHS:
            return None

        # Stricter for purchases
        if path.startswith("/subscriptions") and request.method.upper() == "POST":
            per_minute = max(1, int(self.config.per_minute_default * 0.5))
            burst = max(1, int(self.config.burst_default * 0.5))
            return RoutePolicy(per_minute=per_minute, burst=burst)

        return RoutePolicy(per_minute=self.config.per_minute_default, burst=self.config.burst_default)

    def _client_key(self, request: Request, category: str) -> str:
        user_id = request.headers.get("X-User-Id")
        if user_id:
            return f"user:{user_id}:{category}"

        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}:{category}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled:
            return await call_next(request)

        policy = self._policy_for_request(request)
        if not policy:
            return await call_next(request)

        category = "mutation" if request.method.upper() in {"POST", "PUT", "PATCH", "DELETE"} else "read"
        key = self._client_key(request, category)

        if self.limiter.allow(key, per_minute=policy.per_minute, burst=policy.burst):
            return await call_next(request)

        rid = getattr(request.state, "request_id", None) or get_request_id()
        ratelimit_block_total.inc(labels={"scope": normalize_path(request.url.path)})

        response = await app_error_handler(
            request,
            RateLimitError("Rate limit exceeded for this endpoint", request_id=rid),
        )
        response.headers["Retry-After"] = str(max(1, int(60 / max(1, policy.per_minute))))
        response.headers["X-RateLimit-Limit"] = str(policy.per_minute)
        response.headers["X-RateLimit-Remaining"] = "0"
        return response
