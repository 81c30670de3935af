"""
Tests for progress snapshots and the latest-value subscriptions.
"""

import threading

from leadflow.domain.imports.progress import ProgressChannel, build_snapshot


def _job(**values):
    job = {
        "id": "job-1",
        "status": "parsing",
        "phase": "parse",
        "total_rows": 200,
        "processed_rows": 50,
        "valid_rows": 0,
        "invalid_rows": 0,
        "imported_rows": 0,
        "skipped_rows": 0,
        "current_chunk": 1,
        "total_chunks": 4,
        "current_batch": 0,
        "error_message": None,
        "error_details": None,
        "updated_at": None,
    }
    job.update(values)
    return job


class TestSnapshot:
    def test_parse_percent(self):
        snapshot = build_snapshot(_job())

        assert snapshot["percent"] == 25.0
        assert snapshot["cursor"] == {"current_chunk": 1, "total_chunks": 4, "current_batch": 0}
        assert snapshot["error"] is None

    def test_commit_percent_uses_valid_rows(self):
        snapshot = build_snapshot(
            _job(status="importing", phase="commit", valid_rows=80, imported_rows=30, skipped_rows=10)
        )
        assert snapshot["percent"] == 50.0

    def test_completed_is_full(self):
        assert build_snapshot(_job(status="completed", total_rows=0, processed_rows=0))["percent"] == 100.0

    def test_empty_job(self):
        assert build_snapshot(_job(total_rows=0, processed_rows=0))["percent"] == 0.0

    def test_failure_details(self):
        snapshot = build_snapshot(
            _job(status="failed", error_message="boom", error_details={"phase": "parse", "chunk": 4})
        )
        assert snapshot["error"] == {"message": "boom", "details": {"phase": "parse", "chunk": 4}}


class TestChannel:
    def test_slow_subscriber_sees_latest_only(self):
        channel = ProgressChannel()
        subscription = channel.subscribe("job-1")

        for processed in (50, 100, 150):
            channel.publish(build_snapshot(_job(processed_rows=processed)))

        assert subscription.next(timeout=1)["totals"]["processed_rows"] == 150
        assert subscription.next(timeout=0.05) is None

    def test_latest_is_kept_for_late_readers(self):
        channel = ProgressChannel()
        channel.publish(build_snapshot(_job(processed_rows=100)))

        assert channel.latest("job-1")["totals"]["processed_rows"] == 100
        channel.forget("job-1")
        assert channel.latest("job-1") is None

    def test_terminal_snapshot_closes_subscription(self):
        channel = ProgressChannel()
        subscription = channel.subscribe("job-1")
        assert channel.subscriber_count("job-1") == 1

        channel.publish(build_snapshot(_job(status="completed")))

        assert subscription.next(timeout=1)["status"] == "completed"
        assert subscription.closed
        assert channel.subscriber_count("job-1") == 0
        assert subscription.next(timeout=0.05) is None

    def test_subscribers_are_independent(self):
        channel = ProgressChannel()
        first = channel.subscribe("job-1")
        second = channel.subscribe("job-1")
        other = channel.subscribe("job-2")

        channel.publish(build_snapshot(_job()))

        assert first.next(timeout=1)["job_id"] == "job-1"
        assert second.next(timeout=1)["job_id"] == "job-1"
        assert other.next(timeout=0.05) is None

    def test_wakes_waiting_subscriber(self):
        channel = ProgressChannel()
        subscription = channel.subscribe("job-1")
        received = []

        reader = threading.Thread(target=lambda: received.append(subscription.next(timeout=5)))
        reader.start()
        channel.publish(build_snapshot(_job(processed_rows=75)))
        reader.join(timeout=5)

        assert received[0]["totals"]["processed_rows"] == 75
