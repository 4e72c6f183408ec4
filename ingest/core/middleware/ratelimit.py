import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ingest.core.config import get_rate_limit
from ingest.core.errors import RateLimitError, app_error_handler
from ingest.core.logging import get_request_id
from ingest.core.privacy import request_hashes
from ingest.core.ratelimit import BucketKey

logger = logging.getLogger("ingest.ratelimit")

EVENTS_BUCKET = "eventsPerIpPerMin"


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Per-IP sliding-window limit on /ingest/* (fails open on internal errors).

    The limiter lives on ``app.state.container`` so tests and the app share
    one explicitly constructed store.
    """

    def __init__(self, app, *, prefix: str = "/ingest", bucket: str = EVENTS_BUCKET):
        super().__init__(app)
        self.prefix = prefix
        self.bucket = bucket

    def _applies(self, request: Request) -> bool:
        return request.url.path.startswith(self.prefix) and request.method.upper() != "OPTIONS"

    async def dispatch(self, request: Request, call_next):
        container = getattr(request.app.state, "container", None)
        if container is None or not container.settings.RATE_LIMIT_ENABLED or not self._applies(request):
            return await call_next(request)

        outcome = None
        rule = None
        try:
            rule = get_rate_limit(self.bucket, container.settings)
            ip_hash, ua_hash = request_hashes(request.headers, container.settings)
            outcome = container.limiter.limit(BucketKey(bucket=self.bucket, ip_hash=ip_hash, ua_hash=ua_hash), rule)
        except Exception as exc:
            logger.error("ratelimit.middleware_fail_open", extra={"error": repr(exc), "bucket": self.bucket})

        if outcome is None:
            return await call_next(request)

        if outcome.ok:
            response = await call_next(request)
            response.headers["X-RateLimit-Limit"] = str(rule.limit)
            response.headers["X-RateLimit-Remaining"] = str(outcome.remaining)
            response.headers["X-RateLimit-Reset"] = str(_ceil_seconds(outcome.reset_ms))
            return response

        rid: Optional[str] = getattr(request.state, "request_id", None) or get_request_id()
        response = await app_error_handler(
            request,
            RateLimitError("Rate limit exceeded", retry_after_ms=outcome.retry_after_ms, request_id=rid),
        )
        response.headers["X-RateLimit-Limit"] = str(rule.limit)
        response.headers["X-RateLimit-Remaining"] = "0"
        response.headers["X-RateLimit-Reset"] = str(_ceil_seconds(outcome.reset_ms))
        return response


def _ceil_seconds(ms: int) -> int:
    return max(0, -(-ms // 1000))
