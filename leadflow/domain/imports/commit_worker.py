"""
Commit worker.

Walks the job's ``valid`` rows in row-number order, one batch per
transaction. Each batch writes its leads, audit events, row statuses and the
job checkpoint together, so a crash loses at most the batch in flight and a
resumed commit picks up with the rows still marked ``valid``.
"""
from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Optional

from sqlalchemy import insert, update
from sqlalchemy.engine import Connection

from leadflow.core.config import settings
from leadflow.core.security import load_owner_directory
from leadflow.db.models import Lead, LeadHistory
from leadflow.db.session import get_engine, get_session_local
from leadflow.domain.imports import jobs, rows
from leadflow.domain.imports.assignment import AssignmentEngine, normalize_assignment_config
from leadflow.domain.imports.auto_mapper import normalize_header
from leadflow.domain.imports.dedupe import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    DB_DUPLICATE,
    DECISION_SKIP,
    DECISION_UPDATE,
    FILE_DUPLICATE,
    DedupeKey,
    build_dedupe_index,
    decide_action,
    dedupe_key,
    normalize_duplicate_config,
)
from leadflow.domain.imports.errors import JobCancelled
from leadflow.domain.imports.fields import LEAD_STATUS_ALIASES, LEAD_STATUSES
from leadflow.domain.imports.progress import progress_channel
from leadflow.domain.imports.state import COMMIT_CLAIM_FROM, JobStatus, RowStatus

logger = logging.getLogger(__name__)

IMPORTING = JobStatus.IMPORTING.value

leads_table = Lead.__table__
history_table = LeadHistory.__table__

LEAD_COLUMNS = (
    "external_id",
    "first_name",
    "last_name",
    "email",
    "phone",
    "company",
    "job_title",
    "address",
    "city",
    "postal_code",
    "country",
    "source",
    "notes",
)

SKIP_REASONS = {
    FILE_DUPLICATE: "Duplicate of an earlier row in the file",
    DB_DUPLICATE: "Matches an existing lead",
    DECISION_SKIP: "Skipped during review",
}


def normalize_lead_status(value: Optional[str], fallback: str) -> str:
    """Map a free-text status onto a known lead status, else ``fallback``."""
    if not value:
        return fallback
    key = normalize_header(str(value).replace("-", " "))
    key = LEAD_STATUS_ALIASES.get(key, key)
    return key if key in LEAD_STATUSES else fallback


def build_lead_payload(
    data: Dict[str, Any],
    *,
    default_status: str,
    default_source: str,
) -> Dict[str, Any]:
    payload = {column: data.get(column) or None for column in LEAD_COLUMNS}
    payload["status"] = normalize_lead_status(data.get("status"), default_status)
    payload["source"] = payload["source"] or default_source
    return payload


def build_merge_payload(data: Dict[str, Any]) -> Dict[str, Any]:
    """Fields an update overwrites: only the non-empty incoming ones."""
    payload = {column: data[column] for column in LEAD_COLUMNS if data.get(column)}
    status = normalize_lead_status(data.get("status"), "")
    if status:
        payload["status"] = status
    return payload


def _publish(job_id: str) -> None:
    progress_channel.publish_job(jobs.get_import_job(job_id))


def _mark_failed(job_id: str, exc: Exception, batch_number: Optional[int]) -> None:
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    jobs.transition_job(
        job_id,
        [IMPORTING],
        JobStatus.FAILED.value,
        error_message=message,
        error_details={
            "phase": "commit",
            "batch": batch_number,
            "exception": exc.__class__.__name__,
        },
        completed_at=jobs.utcnow(),
    )
    _publish(job_id)


def run_commit_job(job_id: str) -> None:
    """Queue handler for the commit phase."""
    job = jobs.get_import_job(job_id)
    if job is None:
        logger.warning("Commit delivered for unknown import job %s", job_id)
        return

    claimed = jobs.transition_job(
        job_id,
        COMMIT_CLAIM_FROM,
        IMPORTING,
        phase="commit",
        started_at=job["started_at"] or jobs.utcnow(),
        completed_at=None,
        error_message=None,
        error_details=None,
    )
    if not claimed:
        logger.info("Skipping commit for import job %s in status '%s'", job_id, job["status"])
        return
    _publish(job_id)

    state: Dict[str, Any] = {"batch": None}
    try:
        _commit_job(job_id, state)
    except JobCancelled:
        logger.info("Commit of import job %s stopped after cancellation", job_id)
        _publish(job_id)
    except Exception as exc:
        logger.exception("Commit of import job %s failed in batch %s", job_id, state["batch"])
        _mark_failed(job_id, exc, state["batch"])


class _CommitContext:
    """Per-run state shared by the batches of one commit delivery."""

    def __init__(self, job: Dict[str, Any]):
        self.job = job
        self.job_id = job["id"]
        self.actor_id = job["created_by"]
        duplicate_config = normalize_duplicate_config(job["duplicate_config"])
        self.strategy = duplicate_config["strategy"]
        self.check_fields = duplicate_config["check_fields"]
        self.check_database = duplicate_config["check_database"]
        self.default_status = settings.default_lead_status
        self.default_source = f"Import {job['file_name']}"
        self.index: Dict[DedupeKey, str] = {}
        self.counters = {
            "imported_rows": job["imported_rows"] or 0,
            "skipped_rows": job["skipped_rows"] or 0,
            "db_duplicate_rows": job["db_duplicate_rows"] or 0,
        }
        self.assigner: Optional[AssignmentEngine] = None

    def lookup_existing(self, data: Dict[str, Any]) -> Optional[str]:
        if not self.check_database:
            return None
        key = dedupe_key(data, self.check_fields)
        return self.index.get(key) if key is not None else None

    def remember(self, data: Dict[str, Any], lead_id: str) -> None:
        if not self.check_database:
            return
        key = dedupe_key(data, self.check_fields)
        if key is not None:
            self.index.setdefault(key, lead_id)


def _load_assigner(job: Dict[str, Any]) -> AssignmentEngine:
    config = normalize_assignment_config(job["assignment_config"])
    directory = []
    if config["mode"] == "by_column":
        SessionLocal = get_session_local()
        with SessionLocal() as db:
            directory = load_owner_directory(db)
    return AssignmentEngine(config, directory, counter=job["assignment_counter"] or 0)


def _write_history(conn: Connection, ctx: _CommitContext, lead_id: str, event_type: str, after: Dict[str, Any]) -> None:
    conn.execute(
        insert(history_table).values(
            id=str(uuid.uuid4()),
            lead_id=lead_id,
            import_job_id=ctx.job_id,
            event_type=event_type,
            actor_id=ctx.actor_id,
            after_data=after,
            created_at=jobs.utcnow(),
        )
    )


def _commit_row(conn: Connection, ctx: _CommitContext, row: Dict[str, Any]) -> None:
    data = row["normalized_data"] or {}

    if row["lead_id"]:
        # Written by an earlier delivery whose row update was lost.
        rows.mark_row(conn, row["id"], status=RowStatus.IMPORTED.value, lead_id=row["lead_id"])
        ctx.counters["imported_rows"] += 1
        return

    kind = row["duplicate_kind"]
    decision = row["decision"]
    existing_id = None
    if kind != FILE_DUPLICATE or decision == DECISION_UPDATE:
        existing_id = ctx.lookup_existing(data)
        if existing_id or kind != FILE_DUPLICATE:
            kind = DB_DUPLICATE if existing_id else None
    if kind == DB_DUPLICATE:
        ctx.counters["db_duplicate_rows"] += 1

    action = decide_action(kind, ctx.strategy, decision)

    if action == ACTION_SKIP:
        rows.mark_row(
            conn,
            row["id"],
            status=RowStatus.SKIPPED.value,
            error_message=SKIP_REASONS.get(decision if decision == DECISION_SKIP else kind),
            duplicate_kind=kind,
        )
        ctx.counters["skipped_rows"] += 1
        return

    now = jobs.utcnow()
    if action == ACTION_UPDATE:
        payload = build_merge_payload(data)
        conn.execute(
            update(leads_table)
            .where(leads_table.c.id == existing_id)
            .values(updated_at=now, import_job_id=ctx.job_id, **payload)
        )
        _write_history(conn, ctx, existing_id, "updated", payload)
        rows.mark_row(
            conn, row["id"], status=RowStatus.IMPORTED.value, lead_id=existing_id, duplicate_kind=kind
        )
        ctx.counters["imported_rows"] += 1
        return

    if action == ACTION_CREATE:
        payload = build_lead_payload(
            data, default_status=ctx.default_status, default_source=ctx.default_source
        )
        payload["assigned_to"] = ctx.assigner.assign(row["raw_data"])
        lead_id = str(uuid.uuid4())
        conn.execute(
            insert(leads_table).values(
                id=lead_id,
                import_job_id=ctx.job_id,
                created_at=now,
                updated_at=now,
                **payload,
            )
        )
        _write_history(conn, ctx, lead_id, "imported", payload)
        rows.mark_row(
            conn, row["id"], status=RowStatus.IMPORTED.value, lead_id=lead_id, duplicate_kind=kind
        )
        ctx.remember(data, lead_id)
        ctx.counters["imported_rows"] += 1


def _commit_job(job_id: str, state: Dict[str, Any]) -> None:
    job = jobs.require_import_job(job_id)
    ctx = _CommitContext(job)
    engine = get_engine()
    batch_size = settings.import_commit_batch_size

    if ctx.check_database:
        with engine.connect() as conn:
            ctx.index = build_dedupe_index(conn, ctx.check_fields, settings.import_dedupe_page_size)
    ctx.assigner = _load_assigner(job)

    if not job["current_batch"]:
        # Fresh commit: precheck counts are replaced by what the commit sees.
        ctx.counters["db_duplicate_rows"] = 0

    batch_number = job["current_batch"] or 0
    last_row_number = 0

    while True:
        if jobs.get_job_status(job_id) != IMPORTING:
            raise JobCancelled(job_id)

        with engine.begin() as conn:
            batch = rows.fetch_valid_rows_after(conn, job_id, last_row_number, batch_size)
            if not batch:
                break
            batch_number += 1
            state["batch"] = batch_number

            for row in batch:
                _commit_row(conn, ctx, row)

            checkpoint = {
                "batch_number": batch_number,
                "row_number": batch[-1]["row_number"],
                **ctx.counters,
                "assignment_counter": ctx.assigner.counter,
                "timestamp": jobs.utcnow().isoformat(),
            }
            advanced = jobs.update_import_job(
                job_id,
                expected_statuses=[IMPORTING],
                conn=conn,
                current_batch=batch_number,
                assignment_counter=ctx.assigner.counter,
                last_checkpoint=checkpoint,
                **ctx.counters,
            )
            if not advanced:
                raise JobCancelled(job_id)

        last_row_number = batch[-1]["row_number"]
        logger.info(
            "Import job %s: batch %d committed (%d imported, %d skipped)",
            job_id, batch_number, ctx.counters["imported_rows"], ctx.counters["skipped_rows"],
        )
        _publish(job_id)

    if not jobs.transition_job(
        job_id,
        [IMPORTING],
        JobStatus.COMPLETED.value,
        completed_at=jobs.utcnow(),
        **ctx.counters,
    ):
        raise JobCancelled(job_id)
    logger.info(
        "Import job %s completed: %d imported, %d skipped, assignments %s",
        job_id, ctx.counters["imported_rows"], ctx.counters["skipped_rows"], ctx.assigner.summary(),
    )
    _publish(job_id)
