import json
from datetime import datetime, timezone

import pytest

from ingest.conftest import make_settings
from ingest.core.errors import RollupError
from ingest.core.memory import MemoryDatabase
from ingest.deps import build_container
from ingest.workers import rollup_worker


@pytest.fixture
def memory_container(monkeypatch):
    db = MemoryDatabase()
    db.add_rule("rule-1", author_id="author-1")
    db.add_event("COPY", "rule-1", datetime(2026, 3, 4, 9, tzinfo=timezone.utc))
    built = build_container(make_settings(), memory_db=db)
    monkeypatch.setattr(rollup_worker, "build_container", lambda _settings: built)
    return built


class FakeJob:
    id = "job-1"


class FakeQueue:
    def __init__(self):
        self.calls = []

    def enqueue(self, func, *args, **kwargs):
        self.calls.append((func, args, kwargs))
        return FakeJob()


def test_run_rollup_job_returns_response(memory_container):
    response = rollup_worker.run_rollup_job("2026-03-04")
    assert response["rulesUpdated"] == 1
    assert response["dryRun"] is False
    assert memory_container.memory_db.tables.rule_metric_daily


def test_enqueue_passes_job_arguments():
    queue = FakeQueue()
    job_id = rollup_worker.enqueue_rollup("2026-03-04", True, 3, queue=queue)
    assert job_id == "job-1"
    func, args, kwargs = queue.calls[0]
    assert func is rollup_worker.run_rollup_job
    assert args == ("2026-03-04", True, 3)
    assert kwargs["job_timeout"] == "30m"


def test_cli_dry_run_prints_json(memory_container, capsys):
    assert rollup_worker.main(["--date", "2026-03-04", "--dry-run"]) == 0
    out = json.loads(capsys.readouterr().out.strip().splitlines()[-1])
    assert out["dryRun"] is True
    assert out["rulesUpdated"] == 1
    assert memory_container.memory_db.tables.rule_metric_daily == {}


def test_cli_enqueue(monkeypatch, capsys):
    queue = FakeQueue()
    monkeypatch.setattr(rollup_worker, "get_queue", lambda redis_url=None: queue)
    assert rollup_worker.main(["--enqueue", "--days-back", "2"]) == 0
    assert capsys.readouterr().out.strip().endswith("job-1")
    assert queue.calls[0][1] == (None, False, 2)


def test_cli_rejects_days_back_out_of_range():
    with pytest.raises(SystemExit):
        rollup_worker.main(["--days-back", "31"])


def test_cli_reports_failures(monkeypatch):
    def failing(*args, **kwargs):
        raise RollupError("Rollup for 2026-03-04 failed: boom")

    monkeypatch.setattr(rollup_worker, "run_rollup_job", failing)
    assert rollup_worker.main(["--date", "2026-03-04"]) == 1
