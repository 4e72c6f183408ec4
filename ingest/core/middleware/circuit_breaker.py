import logging
from typing import Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from ingest.core.circuit_breaker import CircuitDecision
from ingest.core.errors import RateLimitError, app_error_handler
from ingest.core.logging import get_request_id, short_hash
from ingest.core.metrics import circuit_breaker_block_total
from ingest.core.privacy import request_hashes

logger = logging.getLogger("ingest.circuit_breaker")


class CircuitBreakerMiddleware(BaseHTTPMiddleware):
    """Reject /ingest/* traffic from banned IPs before any rate limiting.

    Runs outside RateLimitMiddleware. Breaker errors fail open.
    """

    def __init__(self, app, *, prefix: str = "/ingest"):
        super().__init__(app)
        self.prefix = prefix

    def _applies(self, request: Request) -> bool:
        return request.url.path.startswith(self.prefix) and request.method.upper() != "OPTIONS"

    async def dispatch(self, request: Request, call_next):
        container = getattr(request.app.state, "container", None)
        if container is None or not container.settings.CIRCUIT_BREAKER_ENABLED or not self._applies(request):
            return await call_next(request)

        breaker = container.breaker
        ip_hash = None
        decision: Optional[CircuitDecision] = None
        try:
            ip_hash, _ = request_hashes(request.headers, container.settings)
            if breaker.is_open(ip_hash):
                decision = CircuitDecision(allowed=False, retry_after_s=breaker.retry_after_s(ip_hash))
                code, message = "circuit_open", "Too many requests. Circuit breaker is open."
            else:
                decision = breaker.record_request(ip_hash)
                code, message = "circuit_opened", "Request rate too high. Circuit breaker opened."
        except Exception as exc:
            logger.error("circuit_breaker.fail_open", extra={"error": repr(exc)})
            return await call_next(request)

        if not decision.allowed:
            circuit_breaker_block_total.inc()
            logger.warning(
                "circuit_breaker.blocked",
                extra={"ip_hash": short_hash(ip_hash), "path": request.url.path, "method": request.method},
            )
            rid = getattr(request.state, "request_id", None) or get_request_id()
            return await app_error_handler(
                request,
                RateLimitError(message, code=code, retry_after_ms=decision.retry_after_s * 1000, request_id=rid),
            )

        try:
            response = await call_next(request)
        except Exception:
            breaker.record_failure(ip_hash)
            raise
        if response.status_code < 400:
            breaker.record_success(ip_hash)
        elif response.status_code >= 500:
            breaker.record_failure(ip_hash)
        return response
