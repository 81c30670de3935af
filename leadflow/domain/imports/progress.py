"""
In-process progress channel for import jobs.

Workers publish a snapshot at every checkpoint and state transition.
Subscribers only ever see the most recent snapshot: a slow consumer skips
intermediate ones, nothing is replayed, and a subscription ends after the
first terminal snapshot it receives.
"""
from __future__ import annotations

import logging
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from leadflow.domain.imports.state import TERMINAL_STATUSES

logger = logging.getLogger(__name__)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def build_snapshot(job: Dict[str, Any]) -> Dict[str, Any]:
    """Progress snapshot for a job dict as stored by ``jobs``."""
    total = job.get("total_rows") or 0
    processed = job.get("processed_rows") or 0
    if job.get("phase") == "commit":
        valid = job.get("valid_rows") or 0
        done = (job.get("imported_rows") or 0) + (job.get("skipped_rows") or 0)
        percent = round(done * 100 / valid, 1) if valid else 0.0
    else:
        percent = round(processed * 100 / total, 1) if total else 0.0
    if job.get("status") == "completed":
        percent = 100.0

    return {
        "job_id": job["id"],
        "status": job["status"],
        "phase": job.get("phase"),
        "percent": min(percent, 100.0),
        "totals": {
            "total_rows": total,
            "processed_rows": processed,
            "valid_rows": job.get("valid_rows") or 0,
            "invalid_rows": job.get("invalid_rows") or 0,
            "imported_rows": job.get("imported_rows") or 0,
            "skipped_rows": job.get("skipped_rows") or 0,
            "file_duplicate_rows": job.get("file_duplicate_rows") or 0,
            "db_duplicate_rows": job.get("db_duplicate_rows") or 0,
        },
        "cursor": {
            "current_chunk": job.get("current_chunk") or 0,
            "total_chunks": job.get("total_chunks") or 0,
            "current_batch": job.get("current_batch") or 0,
        },
        "error": (
            {"message": job.get("error_message"), "details": job.get("error_details")}
            if job.get("error_message")
            else None
        ),
        "updated_at": _iso(job.get("updated_at")),
    }


def is_terminal_snapshot(snapshot: Dict[str, Any]) -> bool:
    return snapshot.get("status") in TERMINAL_STATUSES


class Subscription:
    """Latest-value mailbox for one subscriber."""

    def __init__(self, channel: "ProgressChannel", job_id: str):
        self._channel = channel
        self.job_id = job_id
        self._condition = threading.Condition()
        self._pending: Optional[Dict[str, Any]] = None
        self.closed = False

    def _offer(self, snapshot: Dict[str, Any]) -> None:
        with self._condition:
            if self.closed:
                return
            self._pending = snapshot
            self._condition.notify_all()

    def next(self, timeout: Optional[float] = None) -> Optional[Dict[str, Any]]:
        """
        Wait for the next snapshot.

        Returns None on timeout or once the subscription is closed.
        """
        with self._condition:
            if self._pending is None and not self.closed:
                self._condition.wait(timeout)
            snapshot, self._pending = self._pending, None
        if snapshot is not None and is_terminal_snapshot(snapshot):
            self.close()
        return snapshot

    def close(self) -> None:
        with self._condition:
            self.closed = True
            self._condition.notify_all()
        self._channel._remove(self)


class ProgressChannel:
    def __init__(self):
        self._lock = threading.Lock()
        self._latest: Dict[str, Dict[str, Any]] = {}
        self._subscribers: Dict[str, List[Subscription]] = {}

    def publish(self, snapshot: Dict[str, Any]) -> None:
        job_id = snapshot["job_id"]
        with self._lock:
            self._latest[job_id] = snapshot
            subscribers = list(self._subscribers.get(job_id, []))
        for subscription in subscribers:
            subscription._offer(snapshot)
        logger.debug("Published %s snapshot for job %s", snapshot["status"], job_id)

    def publish_job(self, job: Optional[Dict[str, Any]]) -> None:
        if job:
            self.publish(build_snapshot(job))

    def latest(self, job_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            return self._latest.get(job_id)

    def subscribe(self, job_id: str) -> Subscription:
        subscription = Subscription(self, job_id)
        with self._lock:
            self._subscribers.setdefault(job_id, []).append(subscription)
        return subscription

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, []))

    def forget(self, job_id: str) -> None:
        with self._lock:
            self._latest.pop(job_id, None)

    def _remove(self, subscription: Subscription) -> None:
        with self._lock:
            subscribers = self._subscribers.get(subscription.job_id, [])
            if subscription in subscribers:
                subscribers.remove(subscription)
            if not subscribers:
                self._subscribers.pop(subscription.job_id, None)


progress_channel = ProgressChannel()
