from datetime import datetime, timezone

from fastapi import APIRouter, Response

from ingest.core.metrics import METRICS

router = APIRouter(tags=["health"])


@router.get("/health")
def health():
    """Liveness check (no dependencies)."""
    return {"status": "ok", "time": datetime.now(timezone.utc).isoformat()}


@router.get("/metrics")
def metrics_endpoint():
    return Response(content=METRICS.export_prometheus(), media_type="text/plain")
