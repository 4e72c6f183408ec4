"""
Scheduled rollup entry points.

- run_rollup_job: RQ job body; builds its own container and runs one rollup.
- enqueue_rollup: put a rollup job on the Redis queue.
- CLI: python -m ingest.workers.rollup_worker [--date YYYY-MM-DD] [--dry-run] [--days-back N]
"""

import argparse
import json
import logging
import os
import sys
from datetime import date
from typing import Optional

from redis import Redis
from rq import Queue

from ingest.core.config import settings
from ingest.core.errors import RollupError
from ingest.core.logging import configure_logging
from ingest.deps import build_container

logger = logging.getLogger("ingest")

QUEUE_NAME = "rollup"


def run_rollup_job(target_date: Optional[str] = None, dry_run: bool = False, days_back: Optional[int] = None) -> dict:
    container = build_container(settings)
    day = date.fromisoformat(target_date) if target_date else None
    try:
        result = container.rollup.perform_rollup_sync(day, dry_run, days_back)
    finally:
        container.audit.shutdown()
    logger.info("[rollup_worker] rollup finished", extra={"dry_run": dry_run, "took_ms": result.took_ms})
    return result.to_response()


def get_queue(redis_url: Optional[str] = None) -> Queue:
    redis_conn = Redis.from_url(redis_url or os.environ.get("REDIS_URL", settings.REDIS_URL))
    return Queue(QUEUE_NAME, connection=redis_conn)


def enqueue_rollup(
    target_date: Optional[str] = None,
    dry_run: bool = False,
    days_back: Optional[int] = None,
    queue: Optional[Queue] = None,
) -> str:
    """Enqueue a rollup job and return its id."""
    if queue is None:
        queue = get_queue()
    job = queue.enqueue(
        run_rollup_job,
        target_date,
        dry_run,
        days_back,
        job_timeout="30m",
        result_ttl=24 * 3600,
    )
    logger.info("[rollup_worker] enqueued rollup", extra={"job_id": job.id, "date": target_date})
    return job.id


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Run the metrics rollup once")
    parser.add_argument("--date", help="Target day (YYYY-MM-DD, default today UTC)")
    parser.add_argument("--dry-run", action="store_true")
    parser.add_argument("--days-back", type=int, default=None)
    parser.add_argument("--enqueue", action="store_true", help="Enqueue on Redis instead of running inline")
    args = parser.parse_args(argv)

    configure_logging(settings.ENV, settings.LOG_LEVEL)
    if args.days_back is not None and not 1 <= args.days_back <= 30:
        parser.error("--days-back must be between 1 and 30")

    if args.enqueue:
        print(enqueue_rollup(args.date, args.dry_run, args.days_back))
        return 0

    try:
        print(json.dumps(run_rollup_job(args.date, args.dry_run, args.days_back)))
    except RollupError as exc:
        logger.error("[rollup_worker] rollup failed: %s", exc.message)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
