"""
Persistent tracking for import jobs.

Jobs are handled as plain dicts. Status changes are compare-and-set updates
(``UPDATE ... WHERE id = :id AND status IN (...)``) so concurrent workers and
API calls can never move a job out of a state they did not observe.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from leadflow.db.models import ImportJob, ImportRow
from leadflow.db.session import get_engine
from leadflow.domain.imports.errors import ImportJobNotFoundError
from leadflow.domain.imports.state import can_transition

logger = logging.getLogger(__name__)

jobs_table = ImportJob.__table__


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@contextmanager
def connection_scope(conn: Optional[Connection]) -> Iterator[Connection]:
    """Reuse the caller's transaction, or open and commit a new one."""
    if conn is not None:
        yield conn
        return
    with get_engine().begin() as new_conn:
        yield new_conn


def _row_to_job(row: Any) -> Dict[str, Any]:
    return {column.name: row[column.name] for column in jobs_table.columns}


def create_import_job(
    *,
    created_by: int,
    file_name: str,
    file_type: str,
    file_size: int,
    storage_path: str,
    file_hash: str,
    column_mapping: Optional[List[Dict[str, Any]]] = None,
    assignment_config: Optional[Dict[str, Any]] = None,
    duplicate_config: Optional[Dict[str, Any]] = None,
    conn: Optional[Connection] = None,
) -> Dict[str, Any]:
    """Create and persist a new ``pending`` import job."""
    now = utcnow()
    values = {
        "created_by": created_by,
        "file_name": file_name,
        "file_type": file_type,
        "file_size": file_size,
        "storage_path": storage_path,
        "file_hash": file_hash,
        "status": "pending",
        "column_mapping": column_mapping,
        "assignment_config": assignment_config,
        "duplicate_config": duplicate_config,
        "created_at": now,
        "updated_at": now,
    }
    with connection_scope(conn) as active:
        result = active.execute(insert(jobs_table).values(**values))
        job_id = result.inserted_primary_key[0]
        job = get_import_job(job_id, conn=active)
    if not job:
        raise RuntimeError("Failed to create import job")
    logger.info("Created import job %s for %s (%s)", job_id, file_name, file_type)
    return job


def get_or_create_import_job(**values: Any) -> Tuple[Dict[str, Any], bool]:
    """
    Create a job unless the owner already has one for the same file hash.

    ``(created_by, file_hash)`` is unique, so when two uploads of the same
    bytes race, the second insert fails and the first job is returned.

    Returns:
        ``(job, created)``.
    """
    try:
        return create_import_job(**values), True
    except IntegrityError:
        existing = find_job_by_hash(values["created_by"], values["file_hash"])
        if existing is None:
            raise
        logger.info(
            "Import job %s already exists for hash %s; reusing it",
            existing["id"], values["file_hash"],
        )
        return existing, False


def get_import_job(job_id: str, conn: Optional[Connection] = None) -> Optional[Dict[str, Any]]:
    """Fetch a single job by ID."""
    with connection_scope(conn) as active:
        row = active.execute(
            select(jobs_table).where(jobs_table.c.id == job_id)
        ).mappings().first()
    return _row_to_job(row) if row else None


def require_import_job(job_id: str, conn: Optional[Connection] = None) -> Dict[str, Any]:
    job = get_import_job(job_id, conn=conn)
    if job is None:
        raise ImportJobNotFoundError(job_id)
    return job


def get_job_status(job_id: str, conn: Optional[Connection] = None) -> Optional[str]:
    with connection_scope(conn) as active:
        return active.execute(
            select(jobs_table.c.status).where(jobs_table.c.id == job_id)
        ).scalar()


def find_job_by_hash(owner_id: int, file_hash: str) -> Optional[Dict[str, Any]]:
    """Most recent job of ``owner_id`` for the same file contents."""
    with connection_scope(None) as conn:
        row = conn.execute(
            select(jobs_table)
            .where(jobs_table.c.created_by == owner_id, jobs_table.c.file_hash == file_hash)
            .order_by(jobs_table.c.created_at.desc())
            .limit(1)
        ).mappings().first()
    return _row_to_job(row) if row else None


def list_import_jobs(
    *,
    owner_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    """List jobs newest first, optionally filtered by owner and status."""
    conditions = []
    if owner_id is not None:
        conditions.append(jobs_table.c.created_by == owner_id)
    if status is not None:
        conditions.append(jobs_table.c.status == status)

    with connection_scope(None) as conn:
        rows = conn.execute(
            select(jobs_table)
            .where(*conditions)
            .order_by(jobs_table.c.created_at.desc())
            .limit(limit)
            .offset(offset)
        ).mappings().all()
        total = conn.execute(
            select(func.count()).select_from(jobs_table).where(*conditions)
        ).scalar() or 0
    return [_row_to_job(row) for row in rows], total


def update_import_job(
    job_id: str,
    *,
    expected_statuses: Optional[Iterable[str]] = None,
    conn: Optional[Connection] = None,
    **values: Any,
) -> bool:
    """
    Update job columns, optionally guarded on the current status.

    Returns:
        True when the row was updated, False when the job does not exist or
        its status was not in ``expected_statuses``.
    """
    unknown = set(values) - set(jobs_table.c.keys())
    if unknown:
        raise ValueError(f"Unknown import job columns: {sorted(unknown)}")

    stmt = update(jobs_table).where(jobs_table.c.id == job_id)
    if expected_statuses is not None:
        stmt = stmt.where(jobs_table.c.status.in_(list(expected_statuses)))
    stmt = stmt.values(updated_at=utcnow(), **values)

    with connection_scope(conn) as active:
        result = active.execute(stmt)
    return result.rowcount == 1


def transition_job(
    job_id: str,
    from_statuses: Iterable[str],
    to_status: str,
    *,
    conn: Optional[Connection] = None,
    **values: Any,
) -> bool:
    """Compare-and-set the job status; see ``update_import_job``."""
    from_statuses = list(from_statuses)
    illegal = sorted(status for status in from_statuses if not can_transition(status, to_status))
    if illegal:
        raise ValueError(f"Illegal import job transition {illegal} -> {to_status}")
    changed = update_import_job(
        job_id, expected_statuses=from_statuses, conn=conn, status=to_status, **values
    )
    if changed:
        logger.info("Import job %s -> %s", job_id, to_status)
    else:
        logger.debug("Import job %s not moved to %s (expected one of %s)", job_id, to_status, from_statuses)
    return changed


def increment_delivery_count(job_id: str) -> None:
    with connection_scope(None) as conn:
        conn.execute(
            update(jobs_table)
            .where(jobs_table.c.id == job_id)
            .values(delivery_count=jobs_table.c.delivery_count + 1)
        )


def find_stalled_jobs(statuses: Iterable[str], updated_before: datetime) -> List[Dict[str, Any]]:
    """Jobs in ``statuses`` whose last update is older than ``updated_before``."""
    with connection_scope(None) as conn:
        rows = conn.execute(
            select(jobs_table)
            .where(
                jobs_table.c.status.in_(list(statuses)),
                jobs_table.c.updated_at < updated_before,
            )
            .order_by(jobs_table.c.updated_at)
        ).mappings().all()
    return [_row_to_job(row) for row in rows]


def delete_import_job_record(
    job_id: str,
    expected_statuses: Iterable[str],
) -> bool:
    """Delete the job and its rows, guarded on ``expected_statuses``."""
    rows_table = ImportRow.__table__
    with connection_scope(None) as conn:
        result = conn.execute(
            delete(jobs_table).where(
                jobs_table.c.id == job_id,
                jobs_table.c.status.in_(list(expected_statuses)),
            )
        )
        if result.rowcount != 1:
            return False
        # SQLite does not enforce ON DELETE CASCADE unless foreign keys are enabled.
        conn.execute(delete(rows_table).where(rows_table.c.import_job_id == job_id))
    return True
