import os
import time
from typing import Callable, Optional

from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from mintrelay.core.errors import RateLimitError, app_error_handler
from mintrelay.core.metrics import ratelimit_block_total, normalize_path
from mintrelay.core.logging import get_request_id
from mintrelay.core.ratelimit import (
    RateLimitConfig,
    RateLimiter,
    build_rate_limit_config_from_env,
    build_rate_limiter,
)


# Endpoints that consume the relayer
RELAY_PREFIXES = ("/subscribe", "/collections", "/nfts", "/claims/")


class RelayRateLimitMiddleware(BaseHTTPMiddleware):
    """Sliding-window admission gate keyed by wallet address."""

    def __init__(
        self,
        app,
        *,
        config: Optional[RateLimitConfig] = None,
        limiter: Optional[RateLimiter] = None,
        env: Optional[dict] = None,
        time_fn: Optional[Callable[[], float]] = None,
    ):
        super().__init__(app)
        self.config = config or build_rate_limit_config_from_env(env or os.environ)
        self.limiter = limiter or build_rate_limiter(self.config, time_fn=time_fn or time.time)
        if hasattr(app, "state"):
            setattr(app.state, "rate_limiter", self.limiter)

    def _is_limited(self, request: Request) -> bool:
        if request.method.upper() != "POST":
            return False
        path = request.url.path
        return any(path.startswith(prefix) for prefix in RELAY_PREFIXES)

    def _client_key(self, request: Request) -> str:
        wallet = (request.headers.get("X-Wallet-Address") or "").strip().lower()
        if wallet:
            return f"wallet:{wallet}"
        ip = request.headers.get("x-forwarded-for") or (request.client.host if request.client else "unknown")
        return f"ip:{ip}"

    async def dispatch(self, request: Request, call_next):
        if not self.config.enabled or not self._is_limited(request):
            return await call_next(request)

        decision = await run_in_threadpool(self.limiter.hit, self._client_key(request))
        request.state.rate_limit = decision

        if not decision.allowed:
            rid = getattr(request.state, "request_id", None) or get_request_id()
            ratelimit_block_total.inc(labels={"scope": normalize_path(request.url.path)})
            response = await app_error_handler(
                request,
                RateLimitError(
                    "Rate limit exceeded. Please try again later.",
                    request_id=rid,
                    details={"retry_after": decision.retry_after},
                ),
            )
            response.headers["Retry-After"] = str(decision.retry_after)
        else:
            response = await call_next(request)

        for name, value in decision.headers().items():
            response.headers[name] = value
        return response
