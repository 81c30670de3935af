import threading
from typing import Dict
from contextlib import contextmanager
import logging

logger = logging.getLogger(__name__)


class JobLockManager:
    """
    Per-job locks so two deliveries of the same import job never run side by
    side in one process. Different jobs proceed in parallel.
    """
    _locks: Dict[str, threading.Lock] = {}
    _global_lock = threading.Lock()

    @classmethod
    def get_lock(cls, job_id: str) -> threading.Lock:
        with cls._global_lock:
            if job_id not in cls._locks:
                cls._locks[job_id] = threading.Lock()
            return cls._locks[job_id]

    @classmethod
    @contextmanager
    def acquire(cls, job_id: str):
        """Context manager to acquire and release the lock of ``job_id``."""
        lock = cls.get_lock(job_id)
        if not lock.acquire(blocking=False):
            logger.debug(f"Waiting for lock on import job '{job_id}'")
            lock.acquire()
        try:
            yield
        finally:
            lock.release()

    @classmethod
    def discard(cls, job_id: str) -> None:
        """Drop the lock of a deleted job."""
        with cls._global_lock:
            lock = cls._locks.get(job_id)
            if lock is not None and not lock.locked():
                del cls._locks[job_id]
