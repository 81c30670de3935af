"""
Work queue for parse and commit deliveries.

Delivery is at-least-once: a handler that raises is delivered again, up to
``import_queue_max_deliveries`` times. Handlers are therefore written to be
idempotent (they claim the job with a status compare-and-set and resume from
the persisted cursor).
"""
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Callable, Dict, Optional

from leadflow.core.config import settings
from leadflow.domain.imports import jobs
from leadflow.utils.locks import JobLockManager

logger = logging.getLogger(__name__)

Handler = Callable[[str], None]

QUEUE_MODES = ("thread", "inline")


class ImportQueue:
    def __init__(
        self,
        mode: Optional[str] = None,
        max_workers: Optional[int] = None,
        max_deliveries: Optional[int] = None,
        retry_delay_seconds: float = 1.0,
    ):
        self.mode = mode or settings.import_queue_mode
        if self.mode not in QUEUE_MODES:
            raise ValueError(f"Unknown queue mode '{self.mode}'")
        self.max_workers = max_workers or settings.import_queue_workers
        self.max_deliveries = max_deliveries or settings.import_queue_max_deliveries
        self.retry_delay_seconds = retry_delay_seconds
        self._handlers: Dict[str, Handler] = {}
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    def register(self, phase: str, handler: Handler) -> None:
        self._handlers[phase] = handler

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers, thread_name_prefix="import-worker"
                )
            return self._executor

    def enqueue(self, job_id: str, phase: str) -> Optional[Future]:
        """Schedule a delivery of ``phase`` for ``job_id``."""
        if phase not in self._handlers:
            raise ValueError(f"No handler registered for phase '{phase}'")
        logger.info("Enqueued %s for import job %s (%s mode)", phase, job_id, self.mode)
        if self.mode == "inline":
            self._deliver(job_id, phase, 1)
            return None
        return self._get_executor().submit(self._deliver, job_id, phase, 1)

    def _deliver(self, job_id: str, phase: str, attempt: int) -> None:
        handler = self._handlers[phase]
        while True:
            try:
                jobs.increment_delivery_count(job_id)
                with JobLockManager.acquire(job_id):
                    handler(job_id)
                return
            except Exception:
                if attempt >= self.max_deliveries:
                    logger.exception(
                        "Giving up on %s delivery for import job %s after %d attempts",
                        phase, job_id, attempt,
                    )
                    return
                logger.warning(
                    "Delivery %d of %s for import job %s raised; redelivering",
                    attempt, phase, job_id, exc_info=True,
                )
                attempt += 1
                if self.mode == "thread" and self.retry_delay_seconds:
                    time.sleep(self.retry_delay_seconds * attempt)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=wait)


import_queue = ImportQueue()
