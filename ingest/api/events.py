"""
POST /ingest/events

Accepts a batch of 1-100 behavioral events from trusted server-side callers
and runs them through the ingestion pipeline. Responds 202 with the
accepted/deduped/blocked/anomalies counts.
"""

import logging
import time

from fastapi import APIRouter, Depends, Request

from ingest.core.auth import require_app_token
from ingest.core.errors import StorageError
from ingest.core.logging import get_request_id, short_hash
from ingest.core.privacy import request_hashes
from ingest.deps import IngestContainer, get_container
from ingest.features.events.models import EventBatch, IngestResult

logger = logging.getLogger("ingest")

router = APIRouter(prefix="/ingest", tags=["ingest"])


@router.post("/events", status_code=202, response_model=IngestResult)
async def ingest_events(
    batch: EventBatch,
    request: Request,
    caller: str = Depends(require_app_token),
    container: IngestContainer = Depends(get_container),
):
    headers = dict(request.headers)
    try:
        result = await container.pipeline.record_events(batch.events, headers)
    except Exception as exc:
        raise StorageError("Failed to record events", request_id=get_request_id()) from exc

    ip_hash, _ = request_hashes(headers, container.settings)
    container.audit.record(
        "ingest.events",
        actor=caller,
        payload={
            "target_id": f"batch-{int(time.time() * 1000)}",
            "count": len(batch.events),
            "accepted": result.accepted,
            "deduped": result.deduped,
            "blocked": result.blocked,
            "anomalies": result.anomalies,
            "sample_types": sorted({event.type.value for event in batch.events}),
            "ip_hash": short_hash(ip_hash),
        },
    )
    return result
