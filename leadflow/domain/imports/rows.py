"""
Storage helpers for per-row import records.
"""
from __future__ import annotations

from typing import Any, Dict, Iterator, List, Optional, Sequence, Set, Tuple

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection

from leadflow.db.models import ImportRow
from leadflow.domain.imports.dedupe import DB_DUPLICATE, FILE_DUPLICATE
from leadflow.domain.imports.jobs import connection_scope, utcnow

rows_table = ImportRow.__table__

# Pseudo-filters accepted by ``fetch_rows`` next to the real row statuses.
DUPLICATE_FILTERS = {FILE_DUPLICATE, DB_DUPLICATE, "duplicate"}


def _row_to_dict(row: Any) -> Dict[str, Any]:
    return {column.name: row[column.name] for column in rows_table.columns}


def replace_chunk_rows(
    conn: Connection,
    job_id: str,
    chunk_number: int,
    rows: Sequence[Dict[str, Any]],
) -> int:
    """
    Write the rows of one chunk, replacing any earlier write of the same chunk.

    Must run inside the chunk's checkpoint transaction.
    """
    conn.execute(
        delete(rows_table).where(
            rows_table.c.import_job_id == job_id,
            rows_table.c.chunk_number == chunk_number,
        )
    )
    if not rows:
        return 0
    now = utcnow()
    payload = [
        {**row, "import_job_id": job_id, "chunk_number": chunk_number, "created_at": now}
        for row in rows
    ]
    conn.execute(insert(rows_table), payload)
    return len(payload)


def recorded_chunk_numbers(job_id: str, conn: Optional[Connection] = None) -> Set[int]:
    with connection_scope(conn) as active:
        result = active.execute(
            select(rows_table.c.chunk_number)
            .where(rows_table.c.import_job_id == job_id)
            .distinct()
        )
        return {value for (value,) in result}


def delete_job_rows(job_id: str, conn: Optional[Connection] = None) -> int:
    with connection_scope(conn) as active:
        result = active.execute(delete(rows_table).where(rows_table.c.import_job_id == job_id))
    return result.rowcount or 0


def count_rows(job_id: str, conn: Optional[Connection] = None) -> Dict[str, int]:
    """Row counts per status plus duplicate-kind totals."""
    with connection_scope(conn) as active:
        by_status = dict(
            active.execute(
                select(rows_table.c.status, func.count())
                .where(rows_table.c.import_job_id == job_id)
                .group_by(rows_table.c.status)
            ).all()
        )
        by_kind = dict(
            active.execute(
                select(rows_table.c.duplicate_kind, func.count())
                .where(
                    rows_table.c.import_job_id == job_id,
                    rows_table.c.duplicate_kind.is_not(None),
                )
                .group_by(rows_table.c.duplicate_kind)
            ).all()
        )
    counts = {status: int(by_status.get(status, 0)) for status in
              ("pending", "valid", "invalid", "imported", "skipped")}
    counts["total"] = sum(int(value) for value in by_status.values())
    counts[FILE_DUPLICATE] = int(by_kind.get(FILE_DUPLICATE, 0))
    counts[DB_DUPLICATE] = int(by_kind.get(DB_DUPLICATE, 0))
    return counts


def fetch_valid_rows_after(
    conn: Connection,
    job_id: str,
    after_row_number: int,
    limit: int,
) -> List[Dict[str, Any]]:
    """Keyset page of ``valid`` rows ordered by row number."""
    rows = conn.execute(
        select(rows_table)
        .where(
            rows_table.c.import_job_id == job_id,
            rows_table.c.status == "valid",
            rows_table.c.row_number > after_row_number,
        )
        .order_by(rows_table.c.row_number)
        .limit(limit)
    ).mappings().all()
    return [_row_to_dict(row) for row in rows]


def mark_row(
    conn: Connection,
    row_id: str,
    *,
    status: str,
    lead_id: Optional[str] = None,
    error_message: Optional[str] = None,
    duplicate_kind: Optional[str] = None,
) -> None:
    """Move a ``valid`` row to ``imported`` or ``skipped``."""
    values = {"status": status, "lead_id": lead_id, "error_message": error_message}
    if duplicate_kind is not None:
        values["duplicate_kind"] = duplicate_kind
    conn.execute(
        update(rows_table)
        .where(rows_table.c.id == row_id, rows_table.c.status == "valid")
        .values(**values)
    )


def get_row(conn: Connection, job_id: str, row_number: int) -> Optional[Dict[str, Any]]:
    row = conn.execute(
        select(rows_table).where(
            rows_table.c.import_job_id == job_id,
            rows_table.c.row_number == row_number,
        )
    ).mappings().first()
    return _row_to_dict(row) if row is not None else None


def update_row(conn: Connection, row_id: str, **values: Any) -> None:
    conn.execute(update(rows_table).where(rows_table.c.id == row_id).values(**values))


def set_decision(
    conn: Connection,
    job_id: str,
    decision: Optional[str],
    *,
    row_numbers: Optional[Sequence[int]] = None,
    status_filter: Optional[str] = None,
) -> int:
    """
    Record ``decision`` on the job's ``valid`` rows.

    Rows are narrowed by number and by filter when given; ``None`` clears.
    Returns the number of rows written.
    """
    conditions = [rows_table.c.import_job_id == job_id, rows_table.c.status == "valid"]
    if row_numbers is not None:
        conditions.append(rows_table.c.row_number.in_(list(row_numbers)))
    condition = _status_condition(status_filter)
    if condition is not None:
        conditions.append(condition)
    result = conn.execute(update(rows_table).where(*conditions).values(decision=decision))
    return result.rowcount or 0


def valid_row_numbers(conn: Connection, job_id: str, row_numbers: Sequence[int]) -> Set[int]:
    result = conn.execute(
        select(rows_table.c.row_number).where(
            rows_table.c.import_job_id == job_id,
            rows_table.c.status == "valid",
            rows_table.c.row_number.in_(list(row_numbers)),
        )
    )
    return {value for (value,) in result}


def set_duplicate_kind(
    conn: Connection,
    row_ids: Sequence[str],
    kind: Optional[str],
) -> None:
    if not row_ids:
        return
    conn.execute(
        update(rows_table).where(rows_table.c.id.in_(list(row_ids))).values(duplicate_kind=kind)
    )


def _status_condition(status_filter: Optional[str]):
    if not status_filter:
        return None
    if status_filter == "duplicate":
        return rows_table.c.duplicate_kind.is_not(None)
    if status_filter in (FILE_DUPLICATE, DB_DUPLICATE):
        return rows_table.c.duplicate_kind == status_filter
    return rows_table.c.status == status_filter


def fetch_rows(
    job_id: str,
    *,
    status_filter: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> Tuple[List[Dict[str, Any]], int]:
    """One page of rows ordered by row number, plus the filtered total."""
    conditions = [rows_table.c.import_job_id == job_id]
    condition = _status_condition(status_filter)
    if condition is not None:
        conditions.append(condition)

    offset = max(page - 1, 0) * page_size
    with connection_scope(None) as conn:
        rows = conn.execute(
            select(rows_table)
            .where(*conditions)
            .order_by(rows_table.c.row_number)
            .limit(page_size)
            .offset(offset)
        ).mappings().all()
        total = conn.execute(
            select(func.count()).select_from(rows_table).where(*conditions)
        ).scalar() or 0
    return [_row_to_dict(row) for row in rows], total


def iter_rows_by_status(
    job_id: str,
    status: str,
    page_size: int = 1000,
) -> Iterator[Dict[str, Any]]:
    """Stream rows with ``status`` in row-number order using keyset pages."""
    after = 0
    while True:
        with connection_scope(None) as conn:
            rows = conn.execute(
                select(rows_table)
                .where(
                    rows_table.c.import_job_id == job_id,
                    rows_table.c.status == status,
                    rows_table.c.row_number > after,
                )
                .order_by(rows_table.c.row_number)
                .limit(page_size)
            ).mappings().all()
        if not rows:
            return
        for row in rows:
            yield _row_to_dict(row)
        after = rows[-1]["row_number"]
        if len(rows) < page_size:
            return
