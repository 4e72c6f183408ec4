"""
POST /cron/rollup

Runs the metrics rollup for a day (default: today UTC). Protected by
x-cron-secret. Body is optional: {"date"?, "dryRun"?, "daysBack"? (1..30)}.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional, Union

from fastapi import APIRouter, Body, Depends
from pydantic import BaseModel, ConfigDict, Field

from ingest.core.auth import require_cron_secret
from ingest.deps import IngestContainer, get_container

logger = logging.getLogger("ingest")

router = APIRouter(prefix="/cron", tags=["cron"])


class RollupRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day: Optional[Union[datetime, date]] = Field(default=None, alias="date")
    dry_run: bool = Field(default=False, alias="dryRun")
    days_back: Optional[int] = Field(default=None, alias="daysBack", ge=1, le=30)

    def target_date(self) -> date:
        if self.day is None:
            return datetime.now(timezone.utc).date()
        if not isinstance(self.day, datetime):
            return self.day
        if self.day.tzinfo is None:
            return self.day.date()
        return self.day.astimezone(timezone.utc).date()


@router.post("/rollup")
async def cron_rollup(
    payload: Optional[RollupRequest] = Body(default=None),
    caller: str = Depends(require_cron_secret),
    container: IngestContainer = Depends(get_container),
):
    payload = payload or RollupRequest()
    target = payload.target_date()

    result = await container.rollup.perform_rollup(target, payload.dry_run, payload.days_back)
    response = result.to_response()

    container.audit.record(
        "cron.rollup",
        actor=caller,
        payload={
            "target_id": f"rollup-{target.isoformat()}",
            "date": target.isoformat(),
            "dry_run": result.dry_run,
            "rules_updated": result.rules_updated,
            "authors_updated": result.authors_updated,
            "snapshots": response["snapshots"],
            "took_ms": result.took_ms,
        },
    )
    return response
