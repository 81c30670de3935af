"""
Tests for queue delivery semantics.
"""

import pytest

from leadflow.domain.imports import jobs
from leadflow.domain.imports.queue import ImportQueue


@pytest.fixture
def job(admin_user):
    return jobs.create_import_job(
        created_by=admin_user.id,
        file_name="leads.csv",
        file_type="csv",
        file_size=10,
        storage_path="imports/1/abc/leads.csv",
        file_hash="abc",
    )


def test_inline_delivery(job):
    queue = ImportQueue(mode="inline")
    seen = []
    queue.register("parse", seen.append)

    assert queue.enqueue(job["id"], "parse") is None
    assert seen == [job["id"]]
    assert jobs.get_import_job(job["id"])["delivery_count"] == 1


def test_failing_handler_is_redelivered(job):
    queue = ImportQueue(mode="inline", max_deliveries=3)
    attempts = []

    def flaky(job_id):
        attempts.append(job_id)
        if len(attempts) < 2:
            raise RuntimeError("worker died")

    queue.register("commit", flaky)
    queue.enqueue(job["id"], "commit")

    assert len(attempts) == 2
    assert jobs.get_import_job(job["id"])["delivery_count"] == 2


def test_gives_up_after_max_deliveries(job):
    queue = ImportQueue(mode="inline", max_deliveries=2)
    attempts = []

    def broken(job_id):
        attempts.append(job_id)
        raise RuntimeError("always fails")

    queue.register("parse", broken)
    queue.enqueue(job["id"], "parse")

    assert len(attempts) == 2


def test_thread_mode_returns_future(job):
    queue = ImportQueue(mode="thread", max_workers=1, retry_delay_seconds=0)
    seen = []
    queue.register("parse", seen.append)

    future = queue.enqueue(job["id"], "parse")
    future.result(timeout=10)
    queue.shutdown()

    assert seen == [job["id"]]


def test_unknown_phase_and_mode():
    queue = ImportQueue(mode="inline")
    with pytest.raises(ValueError, match="No handler registered"):
        queue.enqueue("job", "export")
    with pytest.raises(ValueError, match="Unknown queue mode"):
        ImportQueue(mode="celery")
