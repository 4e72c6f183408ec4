import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from starlette.exceptions import HTTPException

if "PYTEST_CURRENT_TEST" not in os.environ:
    load_dotenv()

from ingest.api import admin_abuse, cron, events, health
from ingest.core.config import settings, validate_config
from ingest.core.errors import (
    AppError,
    app_error_handler,
    http_error_handler,
    request_validation_handler,
    unhandled_exception_handler,
)
from ingest.core.logging import configure_logging
from ingest.core.middleware.circuit_breaker import CircuitBreakerMiddleware
from ingest.core.middleware.ratelimit import RateLimitMiddleware
from ingest.core.middleware.request_id import RequestIdMiddleware
from ingest.deps import IngestContainer, build_container


def create_app(container: Optional[IngestContainer] = None, *, start_background: bool = True) -> FastAPI:
    """Build the ingest app around an explicitly constructed container."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger = logging.getLogger("ingest")
        logger.info("Starting ingest service...")
        if app.state.container is None:
            app.state.container = build_container(settings)
        if start_background:
            app.state.container.start()
        try:
            yield
        finally:
            app.state.container.shutdown()
            logger.info("Stopping ingest service...")

    app = FastAPI(title="Rules ingest service", lifespan=lifespan)
    app.state.container = container

    # last added runs first: request id, circuit breaker, rate limit
    app.add_middleware(RateLimitMiddleware)
    app.add_middleware(CircuitBreakerMiddleware)
    app.add_middleware(RequestIdMiddleware)

    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(HTTPException, http_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)

    app.include_router(health.router)
    app.include_router(events.router)
    app.include_router(cron.router)
    app.include_router(admin_abuse.router)

    @app.get("/")
    def root():
        return {
            "service": "ingest",
            "endpoints": [
                "GET /health",
                "GET /metrics",
                "POST /ingest/events",
                "POST /cron/rollup",
                "GET /admin/abuse/stats",
                "POST /admin/abuse/clear-rate-limits",
                "GET /admin/abuse/banned-ips",
                "POST /admin/abuse/unban-ip",
                "GET /admin/abuse/anomalies",
                "POST /admin/abuse/config",
                "GET /admin/abuse/health",
            ],
        }

    return app


configure_logging(settings.ENV, settings.LOG_LEVEL)
validate_config(strict=getattr(settings, "CONFIG_STRICT", False))

app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("ingest.main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8787")), reload=False)
