"""
Shared-secret authentication for server-to-server callers.

- require_app_token: x-app-token == INGEST_APP_TOKEN, or x-cron-secret == CRON_SECRET
- require_cron_secret: x-cron-secret == CRON_SECRET

An unset secret never matches. Header values are never logged.
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Request

from ingest.core.errors import UnauthorizedError
from ingest.deps import IngestContainer, get_container

logger = logging.getLogger("ingest.auth")


def _matches(provided: Optional[str], expected: Optional[str]) -> bool:
    if not provided or not expected:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))


def _reject(request: Request, reason: str) -> UnauthorizedError:
    logger.warning(
        "auth.rejected",
        extra={
            "path": request.url.path,
            "method": request.method,
            "reason": reason,
            "has_app_token": bool(request.headers.get("x-app-token")),
            "has_cron_secret": bool(request.headers.get("x-cron-secret")),
        },
    )
    return UnauthorizedError("unauthorized")


def require_app_token(request: Request, container: IngestContainer = Depends(get_container)) -> str:
    cfg = container.settings
    if _matches(request.headers.get("x-app-token"), cfg.INGEST_APP_TOKEN):
        return "app"
    if _matches(request.headers.get("x-cron-secret"), cfg.CRON_SECRET):
        return "cron"
    raise _reject(request, "invalid app token")


def require_cron_secret(request: Request, container: IngestContainer = Depends(get_container)) -> str:
    if _matches(request.headers.get("x-cron-secret"), container.settings.CRON_SECRET):
        return "cron"
    raise _reject(request, "invalid cron secret")
