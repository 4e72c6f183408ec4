"""
Fire-and-forget audit records.

AuditLogger owns a bounded queue and one daemon worker thread. Request
handlers call record() and return immediately; the worker writes through a
sink. Sink failures are logged on the worker and never reach the caller.
"""

import logging
import queue
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

from sqlalchemy import insert

from ingest.core.config import settings
from ingest.core.database import audit_log, get_db_session
from ingest.core.memory import MemoryDatabase

logger = logging.getLogger("ingest.audit")

AuditSink = Callable[[Dict[str, Any]], None]

_STOP = object()


def _safe_truncate(value: Any, limit: int = 500):
    if isinstance(value, (int, float, bool)) or value is None:
        return value
    if isinstance(value, dict):
        return {k: _safe_truncate(v, limit) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_safe_truncate(v, limit) for v in value]
    try:
        text = str(value)
    except Exception:
        return "<unserializable>"
    if len(text) <= limit:
        return text
    return text[:limit] + "...<truncated>"


def memory_sink(db: MemoryDatabase) -> AuditSink:
    def write(record: Dict[str, Any]) -> None:
        with db.lock:
            db.tables.audit_log.append(record)

    return write


def sql_sink(session_factory=None) -> AuditSink:
    def write(record: Dict[str, Any]) -> None:
        with get_db_session(session_factory) as session:
            session.execute(insert(audit_log).values(**record))

    return write


class AuditLogger:
    def __init__(self, sink: AuditSink, *, maxsize: int = 1000, enabled: Optional[bool] = None):
        self.sink = sink
        self.enabled = settings.AUDIT_ENABLED if enabled is None else enabled
        self._queue: "queue.Queue" = queue.Queue(maxsize=maxsize)
        self._thread: Optional[threading.Thread] = None
        self.dropped = 0
        self.failed = 0

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._worker, name="audit-writer", daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while True:
            record = self._queue.get()
            try:
                if record is _STOP:
                    return
                self.sink(record)
            except Exception as exc:
                self.failed += 1
                logger.error("audit.write_failed", extra={"action": record.get("action"), "error": repr(exc)})
            finally:
                self._queue.task_done()

    def record(self, action: str, *, actor: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Queue an audit record. Returns False when disabled or the queue is full."""
        if not self.enabled:
            return False
        if self._thread is None:
            self.start()
        entry = {
            "action": action,
            "actor": actor,
            "payload": {k: _safe_truncate(v) for k, v in (payload or {}).items()},
            "created_at": datetime.now(timezone.utc),
        }
        try:
            self._queue.put_nowait(entry)
        except queue.Full:
            self.dropped += 1
            logger.warning("audit.queue_full", extra={"action": action})
            return False
        return True

    def flush(self) -> None:
        """Block until every queued record has been handled."""
        if self._thread is not None:
            self._queue.join()

    def shutdown(self, timeout: float = 5.0) -> None:
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None
