"""
Import pipeline operations.

This is the surface the API routers and the console call. Every mutating
operation validates the job's status against the state machine, applies its
change with a compare-and-set and only then schedules work on the queue.
"""
from __future__ import annotations

import hashlib
import logging
import os
import tempfile
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

from leadflow.core.config import settings
from leadflow.core.security import load_owner_directory
from leadflow.db.session import get_engine, get_session_local
from leadflow.domain.imports import jobs, parsers, rows
from leadflow.domain.imports.assignment import validate_assignment_config
from leadflow.domain.imports.auto_mapper import (
    auto_map_columns,
    check_required_mappings,
    get_mapping_summary,
    validate_mapping,
)
from leadflow.domain.imports.commit_worker import run_commit_job
from leadflow.domain.imports.dedupe import (
    ACTION_CREATE,
    ACTION_SKIP,
    ACTION_UPDATE,
    DB_DUPLICATE,
    DEFAULT_DUPLICATE_CONFIG,
    FILE_DUPLICATE,
    ROW_DECISIONS,
    STRATEGIES,
    FileDedupeTracker,
    build_dedupe_index,
    decide_action,
    dedupe_key,
    normalize_duplicate_config,
)
from leadflow.domain.imports.errors import (
    FileParseError,
    FileTooLargeError,
    InvalidConfigurationError,
    InvalidJobStateError,
    UnsupportedFileError,
)
from leadflow.domain.imports.fields import DEDUPE_FIELDS
from leadflow.domain.imports.parse_worker import run_parse_job
from leadflow.domain.imports.progress import Subscription, build_snapshot, progress_channel
from leadflow.domain.imports.queue import import_queue
from leadflow.domain.imports.state import (
    CANCELLABLE_STATUSES,
    COMMIT_ENQUEUE_FROM,
    CONFIGURABLE_STATUSES,
    DELETABLE_STATUSES,
    PARSE_ENQUEUE_FROM,
    RETRYABLE_STATUSES,
    RUNNING_STATUSES,
    JobPhase,
    JobStatus,
    RowStatus,
)
from leadflow.domain.imports.validators import NormalizationOptions, validate_row
from leadflow.integrations import storage
from leadflow.utils.locks import JobLockManager

logger = logging.getLogger(__name__)

import_queue.register(JobPhase.PARSE.value, run_parse_job)
import_queue.register(JobPhase.COMMIT.value, run_commit_job)

CONTENT_TYPES = {
    "csv": "text/csv",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
}

ROW_FILTERS = {status.value for status in RowStatus} | rows.DUPLICATE_FILTERS

# Counters and cursors cleared whenever parsed rows are thrown away.
_PARSE_RESET = {
    "total_rows": 0,
    "processed_rows": 0,
    "valid_rows": 0,
    "invalid_rows": 0,
    "imported_rows": 0,
    "skipped_rows": 0,
    "file_duplicate_rows": 0,
    "db_duplicate_rows": 0,
    "current_chunk": 0,
    "total_chunks": 0,
    "current_batch": 0,
    "assignment_counter": 0,
    "last_checkpoint": None,
    "validation_summary": None,
    "phase": None,
}


def _require_status(job: Dict[str, Any], allowed, operation: str) -> None:
    if job["status"] not in allowed:
        raise InvalidJobStateError(job["id"], job["status"], allowed, operation)


def _refresh_state_error(job_id: str, allowed, operation: str) -> InvalidJobStateError:
    """Error for a compare-and-set that lost a race; reports the status now stored."""
    return InvalidJobStateError(job_id, jobs.get_job_status(job_id), allowed, operation)


def _mapping_status(mapping: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return {**check_required_mappings(mapping), **get_mapping_summary(mapping)}


def _source_columns(job: Dict[str, Any]) -> List[str]:
    return [entry.get("source_column") for entry in job.get("column_mapping") or []]


def _known_user_ids() -> List[int]:
    SessionLocal = get_session_local()
    with SessionLocal() as db:
        return [user["id"] for user in load_owner_directory(db)]


# ---------------------------------------------------------------------------
# Upload and configuration
# ---------------------------------------------------------------------------

def create_import_job(
    owner_id: int,
    file_name: str,
    content: bytes,
    content_type: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Store an uploaded file and open a ``pending`` job with a suggested mapping.

    Uploading the same bytes twice as the same owner returns the existing job
    with ``deduplicated`` set instead of creating a second one.
    """
    file_type = parsers.detect_file_type(file_name)
    if file_type is None:
        raise UnsupportedFileError(f"{file_name}: only CSV and XLSX files are supported")

    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if len(content) > max_bytes:
        raise FileTooLargeError(
            f"{file_name} is too large. Maximum allowed upload size is "
            f"{settings.upload_max_file_size_mb}MB."
        )
    if not content:
        raise FileParseError(f"{file_name} is empty")

    file_hash = hashlib.sha256(content).hexdigest()
    existing = jobs.find_job_by_hash(owner_id, file_hash)
    if existing is not None:
        logger.info("Upload of %s matches import job %s", file_name, existing["id"])
        return _upload_result(existing, deduplicated=True)

    headers, samples = _preview(content, file_type)
    if not headers:
        raise FileParseError(f"{file_name} has no header row")
    mapping = auto_map_columns(headers, samples, threshold=settings.import_auto_map_threshold)

    storage_path = f"{settings.storage_folder}/{owner_id}/{file_hash}/{os.path.basename(file_name)}"
    storage.upload_file(content, storage_path, content_type or CONTENT_TYPES[file_type])

    job, created = jobs.get_or_create_import_job(
        created_by=owner_id,
        file_name=file_name,
        file_type=file_type,
        file_size=len(content),
        storage_path=storage_path,
        file_hash=file_hash,
        column_mapping=mapping,
        assignment_config={"mode": "none"},
        duplicate_config=dict(DEFAULT_DUPLICATE_CONFIG),
    )
    if created:
        progress_channel.publish_job(job)
    return _upload_result(job, deduplicated=not created)


def _upload_result(job: Dict[str, Any], deduplicated: bool) -> Dict[str, Any]:
    mapping = job["column_mapping"] or []
    return {
        "job_id": job["id"],
        "storage_locator": job["storage_path"],
        "column_mapping": mapping,
        "mapping_status": _mapping_status(mapping),
        "deduplicated": deduplicated,
    }


def _preview(content: bytes, file_type: str) -> Tuple[List[str], List[Dict[str, Any]]]:
    with tempfile.TemporaryDirectory(prefix="leadflow-upload-") as workdir:
        path = os.path.join(workdir, f"upload.{file_type}")
        with open(path, "wb") as handle:
            handle.write(content)
        return parsers.read_preview(path, file_type)


def _merge_mapping(
    current: Sequence[Dict[str, Any]],
    incoming: Sequence[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    Apply user edits to the stored mapping.

    Columns missing from ``incoming`` keep their current entry. A changed
    target marks the entry manual with full confidence.
    """
    edits: Dict[str, Dict[str, Any]] = {}
    for entry in incoming:
        column = entry.get("source_column")
        if not column:
            raise InvalidConfigurationError("Every mapping entry needs a source_column")
        edits[column] = entry

    known = {entry.get("source_column") for entry in current}
    unknown = sorted(set(edits) - known)
    if unknown:
        raise InvalidConfigurationError(f"Unknown source columns {unknown}")

    merged: List[Dict[str, Any]] = []
    for previous in current:
        entry = edits.get(previous.get("source_column"))
        if entry is None:
            merged.append(dict(previous))
            continue
        result = {**previous, **entry}
        changed = previous.get("target_field") != result.get("target_field")
        if changed or entry.get("is_manual"):
            result["is_manual"] = True
            result["confidence"] = 1.0 if result.get("target_field") else 0.0
        merged.append(result)
    return merged


def _invalidate_parse(job: Dict[str, Any], operation: str, **values: Any) -> bool:
    """Drop parsed rows and move a ``validating``/``ready`` job back to ``pending``."""
    with get_engine().begin() as conn:
        moved = jobs.transition_job(
            job["id"],
            [job["status"]],
            JobStatus.PENDING.value,
            conn=conn,
            **_PARSE_RESET,
            **values,
        )
        if not moved:
            return False
        deleted = rows.delete_job_rows(job["id"], conn=conn)
    logger.info("Import job %s: %s discarded %d parsed rows", job["id"], operation, deleted)
    return True


def set_column_mapping(job_id: str, mapping: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    job = jobs.require_import_job(job_id)
    _require_status(job, CONFIGURABLE_STATUSES, "change the mapping of")

    merged = _merge_mapping(job["column_mapping"] or [], mapping)
    validate_mapping(merged)

    if job["status"] == JobStatus.PENDING.value:
        applied = jobs.update_import_job(
            job_id, expected_statuses=[job["status"]], column_mapping=merged
        )
    else:
        applied = _invalidate_parse(job, "mapping change", column_mapping=merged)
    if not applied:
        raise _refresh_state_error(job_id, CONFIGURABLE_STATUSES, "change the mapping of")

    job = jobs.require_import_job(job_id)
    progress_channel.publish_job(job)
    return {"job": job, "mapping_status": _mapping_status(merged)}


def _validate_duplicate_config(
    config: Dict[str, Any],
    base: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    normalized = normalize_duplicate_config(config, base=base)
    if normalized["strategy"] not in STRATEGIES:
        raise InvalidConfigurationError(
            f"Unknown duplicate strategy '{normalized['strategy']}' (expected one of {', '.join(STRATEGIES)})"
        )
    unknown = [name for name in normalized["check_fields"] if name not in DEDUPE_FIELDS]
    if unknown:
        raise InvalidConfigurationError(f"Fields {unknown} cannot be used for duplicate detection")
    if not normalized["check_fields"] and (
        normalized["check_database"] or normalized["check_within_file"]
    ):
        raise InvalidConfigurationError("Duplicate detection needs at least one check field")
    return normalized


def _parse_inputs_changed(before: Dict[str, Any], after: Dict[str, Any]) -> bool:
    before = normalize_duplicate_config(before)
    return (
        before["check_fields"] != after["check_fields"]
        or bool(before["check_within_file"]) != bool(after["check_within_file"])
    )


def set_options(
    job_id: str,
    assignment_config: Optional[Dict[str, Any]] = None,
    duplicate_config: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    Store assignment and duplicate options.

    Changing the within-file duplicate settings of a parsed job discards its
    rows, since those flags are computed during parse.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, CONFIGURABLE_STATUSES, "change the options of")

    values: Dict[str, Any] = {}
    if assignment_config is not None:
        values["assignment_config"] = validate_assignment_config(
            assignment_config,
            known_user_ids=_known_user_ids(),
            source_columns=_source_columns(job),
        )
    reparse = False
    if duplicate_config is not None:
        normalized = _validate_duplicate_config(duplicate_config, base=job["duplicate_config"])
        reparse = job["status"] != JobStatus.PENDING.value and _parse_inputs_changed(
            job["duplicate_config"], normalized
        )
        values["duplicate_config"] = normalized

    if not values:
        return job

    if reparse:
        applied = _invalidate_parse(job, "duplicate option change", **values)
    else:
        applied = jobs.update_import_job(job_id, expected_statuses=[job["status"]], **values)
    if not applied:
        raise _refresh_state_error(job_id, CONFIGURABLE_STATUSES, "change the options of")

    job = jobs.require_import_job(job_id)
    progress_channel.publish_job(job)
    return job


# ---------------------------------------------------------------------------
# Phase control
# ---------------------------------------------------------------------------

def enqueue_parse(job_id: str) -> Dict[str, Any]:
    job = jobs.require_import_job(job_id)
    _require_status(job, PARSE_ENQUEUE_FROM, "parse")
    if job["status"] == JobStatus.FAILED.value and job["phase"] == JobPhase.COMMIT.value:
        raise InvalidConfigurationError(
            "The commit of this import failed; retry the commit instead of parsing again"
        )

    gate = check_required_mappings(job["column_mapping"] or [])
    if not gate["is_complete"]:
        raise InvalidConfigurationError(
            "Map at least one contact field (email, phone or external id) before parsing"
        )

    if not jobs.transition_job(
        job_id,
        [job["status"]],
        JobStatus.QUEUED.value,
        phase=JobPhase.PARSE.value,
        error_message=None,
        error_details=None,
    ):
        raise _refresh_state_error(job_id, PARSE_ENQUEUE_FROM, "parse")
    progress_channel.publish_job(jobs.get_import_job(job_id))

    import_queue.enqueue(job_id, JobPhase.PARSE.value)
    return jobs.require_import_job(job_id)


def enqueue_commit(job_id: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Queue the commit of a ``ready`` job.

    ``config`` may carry ``assignment_config``/``duplicate_config`` overrides,
    applied with ``set_options`` before the job is queued. Overrides cannot
    change the duplicate settings the parse used (``check_fields``,
    ``check_within_file``); those go through ``set_options`` and a new parse.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, COMMIT_ENQUEUE_FROM, "commit")

    if config:
        if config.get("duplicate_config") is not None:
            normalized = _validate_duplicate_config(
                config["duplicate_config"], base=job["duplicate_config"]
            )
            if _parse_inputs_changed(job["duplicate_config"], normalized):
                raise InvalidConfigurationError(
                    "check_fields and check_within_file cannot change at commit; "
                    "update the options and parse the file again"
                )
        job = set_options(
            job_id,
            assignment_config=config.get("assignment_config"),
            duplicate_config=config.get("duplicate_config"),
        )
        _require_status(job, COMMIT_ENQUEUE_FROM, "commit")

    if not jobs.transition_job(
        job_id,
        COMMIT_ENQUEUE_FROM,
        JobStatus.QUEUED.value,
        phase=JobPhase.COMMIT.value,
        current_batch=0,
        assignment_counter=0,
        imported_rows=0,
        skipped_rows=0,
        error_message=None,
        error_details=None,
    ):
        raise _refresh_state_error(job_id, COMMIT_ENQUEUE_FROM, "commit")
    progress_channel.publish_job(jobs.get_import_job(job_id))

    import_queue.enqueue(job_id, JobPhase.COMMIT.value)
    return jobs.require_import_job(job_id)


def cancel(job_id: str) -> Dict[str, Any]:
    """Cancel a job; running workers stop at their next checkpoint."""
    job = jobs.require_import_job(job_id)
    _require_status(job, CANCELLABLE_STATUSES, "cancel")
    if not jobs.transition_job(
        job_id,
        CANCELLABLE_STATUSES,
        JobStatus.CANCELLED.value,
        completed_at=jobs.utcnow(),
    ):
        raise _refresh_state_error(job_id, CANCELLABLE_STATUSES, "cancel")
    job = jobs.require_import_job(job_id)
    progress_channel.publish_job(job)
    return job


def retry(job_id: str, phase: Optional[str] = None) -> Dict[str, Any]:
    """
    Re-queue a failed job.

    The phase defaults to the one that failed. Parse resumes after its last
    recorded chunk, commit after its last committed batch.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, RETRYABLE_STATUSES, "retry")

    failed_phase = job["phase"] or JobPhase.PARSE.value
    phase = phase or failed_phase
    if phase not in (JobPhase.PARSE.value, JobPhase.COMMIT.value):
        raise InvalidConfigurationError(f"Unknown phase '{phase}'")
    if phase != failed_phase:
        raise InvalidConfigurationError(
            f"Import job {job_id} failed during {failed_phase}; it cannot be retried as {phase}"
        )
    if phase == JobPhase.PARSE.value:
        gate = check_required_mappings(job["column_mapping"] or [])
        if not gate["is_complete"]:
            raise InvalidConfigurationError("Map at least one contact field before parsing")

    if not jobs.transition_job(
        job_id,
        RETRYABLE_STATUSES,
        JobStatus.QUEUED.value,
        phase=phase,
        error_message=None,
        error_details=None,
        completed_at=None,
    ):
        raise _refresh_state_error(job_id, RETRYABLE_STATUSES, "retry")
    logger.info("Retrying %s of import job %s", phase, job_id)
    progress_channel.publish_job(jobs.get_import_job(job_id))

    import_queue.enqueue(job_id, phase)
    return jobs.require_import_job(job_id)


# ---------------------------------------------------------------------------
# Progress and review
# ---------------------------------------------------------------------------

def poll_status(job_id: str) -> Dict[str, Any]:
    return build_snapshot(jobs.require_import_job(job_id))


def subscribe_progress(job_id: str) -> Tuple[Dict[str, Any], Subscription]:
    """
    Open a progress subscription.

    Returns the current snapshot, read from the database, together with the
    subscription delivering the ones published after it.
    """
    jobs.require_import_job(job_id)
    subscription = progress_channel.subscribe(job_id)
    return build_snapshot(jobs.require_import_job(job_id)), subscription


def get_rows(
    job_id: str,
    status_filter: Optional[str] = None,
    page: int = 1,
    page_size: int = 50,
) -> Dict[str, Any]:
    jobs.require_import_job(job_id)
    if status_filter and status_filter not in ROW_FILTERS:
        raise InvalidConfigurationError(
            f"Unknown row filter '{status_filter}' (expected one of {', '.join(sorted(ROW_FILTERS))})"
        )
    if page < 1 or page_size < 1:
        raise InvalidConfigurationError("page and page_size must be positive")
    page_rows, total = rows.fetch_rows(
        job_id, status_filter=status_filter, page=page, page_size=page_size
    )
    return {"rows": page_rows, "total_count": total, "page": page, "page_size": page_size}


def _reflag_file_duplicates(conn, job_id: str, check_fields: Sequence[str]) -> None:
    """Recompute within-file duplicate flags over the job's valid rows."""
    tracker = FileDedupeTracker(check_fields)
    page_size = settings.import_dedupe_page_size
    after = 0
    while True:
        batch = rows.fetch_valid_rows_after(conn, job_id, after, page_size)
        for row in batch:
            duplicate_of = tracker.observe(row["row_number"], row["normalized_data"] or {})
            if duplicate_of:
                if row["duplicate_of_row"] != duplicate_of:
                    rows.update_row(
                        conn, row["id"], duplicate_kind=FILE_DUPLICATE, duplicate_of_row=duplicate_of
                    )
            elif row["duplicate_kind"] == FILE_DUPLICATE:
                rows.update_row(conn, row["id"], duplicate_kind=None, duplicate_of_row=None)
        if len(batch) < page_size:
            return
        after = batch[-1]["row_number"]


def edit_row(job_id: str, row_number: int, values: Dict[str, Any]) -> Dict[str, Any]:
    """
    Correct mapped values of one row of a ``ready`` job and validate it again.

    ``values`` is keyed by target field and written over the mapped source
    columns of the raw row. The row moves between ``valid`` and ``invalid``
    with the outcome; the job counters and the within-file duplicate flags
    are recomputed in the same transaction.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, [JobStatus.READY.value], "edit rows of")
    if not values:
        raise InvalidConfigurationError("No values to update")

    mapping = job["column_mapping"] or []
    columns = {
        entry["target_field"]: entry["source_column"]
        for entry in mapping
        if entry.get("target_field")
    }
    unmapped = sorted(set(values) - set(columns))
    if unmapped:
        raise InvalidConfigurationError(f"Fields {unmapped} are not mapped in this import")
    config = normalize_duplicate_config(job["duplicate_config"])
    edits = {name: None if value is None else str(value) for name, value in values.items()}

    with get_engine().begin() as conn:
        row = rows.get_row(conn, job_id, row_number)
        if row is None:
            raise InvalidConfigurationError(f"Row {row_number} does not exist in import {job_id}")

        raw_data = dict(row["raw_data"])
        for field_name, value in edits.items():
            raw_data[columns[field_name]] = value
        result = validate_row(raw_data, mapping, row_number, NormalizationOptions.from_settings())
        rows.update_row(
            conn,
            row["id"],
            status=RowStatus.VALID.value if result.is_valid else RowStatus.INVALID.value,
            raw_data=raw_data,
            normalized_data=result.normalized_data,
            validation_errors=result.errors or None,
            validation_warnings=result.warnings or None,
            duplicate_kind=None,
            duplicate_of_row=None,
            decision=row["decision"] if result.is_valid else None,
            edited_data={**(row["edited_data"] or {}), **edits},
        )
        if config["check_within_file"]:
            _reflag_file_duplicates(conn, job_id, config["check_fields"])

        counts = rows.count_rows(job_id, conn=conn)
        if not jobs.update_import_job(
            job_id,
            expected_statuses=[JobStatus.READY.value],
            conn=conn,
            valid_rows=counts["valid"],
            invalid_rows=counts["invalid"],
            file_duplicate_rows=counts[FILE_DUPLICATE],
            db_duplicate_rows=counts[DB_DUPLICATE],
        ):
            raise _refresh_state_error(job_id, [JobStatus.READY.value], "edit rows of")
        row = rows.get_row(conn, job_id, row_number)

    logger.info(
        "Import job %s: row %d edited (%s), now %s",
        job_id, row_number, ", ".join(sorted(edits)), row["status"],
    )
    progress_channel.publish_job(jobs.get_import_job(job_id))
    return row


def set_row_decisions(
    job_id: str,
    decision: Optional[str],
    row_numbers: Optional[Sequence[int]] = None,
    status_filter: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Record what the commit should do with valid rows of a ``ready`` job.

    ``decision`` is ``skip``, ``import`` or ``update``; None clears earlier
    decisions. Rows are picked by number, by filter (``db_duplicate`` after a
    precheck, ``file_duplicate``, ``duplicate``) or both; with neither, every
    valid row is covered.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, [JobStatus.READY.value], "review rows of")
    if decision is not None and decision not in ROW_DECISIONS:
        raise InvalidConfigurationError(
            f"Unknown row decision '{decision}' (expected one of {', '.join(ROW_DECISIONS)})"
        )
    if status_filter and status_filter not in ROW_FILTERS:
        raise InvalidConfigurationError(
            f"Unknown row filter '{status_filter}' (expected one of {', '.join(sorted(ROW_FILTERS))})"
        )

    with get_engine().begin() as conn:
        if row_numbers is not None:
            missing = sorted(set(row_numbers) - rows.valid_row_numbers(conn, job_id, row_numbers))
            if missing:
                raise InvalidConfigurationError(f"Rows {missing} are not valid rows of this import")
        updated = rows.set_decision(
            conn, job_id, decision, row_numbers=row_numbers, status_filter=status_filter
        )
        if not jobs.update_import_job(job_id, expected_statuses=[JobStatus.READY.value], conn=conn):
            raise _refresh_state_error(job_id, [JobStatus.READY.value], "review rows of")

    logger.info("Import job %s: decision %s recorded on %d rows", job_id, decision, updated)
    return {"decision": decision, "updated_rows": updated}


def precheck_duplicates(job_id: str) -> Dict[str, Any]:
    """
    Classify the valid rows of a ``ready`` job against existing leads.

    Matching rows are flagged ``db_duplicate`` and the job's counter is
    refreshed, so the review table shows what the commit is about to do. The
    commit classifies again against the store as it is then.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, [JobStatus.READY.value], "precheck")
    config = normalize_duplicate_config(job["duplicate_config"])
    strategy = config["strategy"]

    engine = get_engine()
    index = {}
    if config["check_database"]:
        with engine.connect() as conn:
            index = build_dedupe_index(conn, config["check_fields"], settings.import_dedupe_page_size)

    totals = {"valid_rows": 0, FILE_DUPLICATE: 0, DB_DUPLICATE: 0}
    actions = {ACTION_CREATE: 0, ACTION_UPDATE: 0, ACTION_SKIP: 0}
    after = 0
    while True:
        with engine.begin() as conn:
            batch = rows.fetch_valid_rows_after(conn, job_id, after, settings.import_dedupe_page_size)
            if not batch:
                break
            flagged, cleared = [], []
            for row in batch:
                totals["valid_rows"] += 1
                kind = row["duplicate_kind"]
                if kind != FILE_DUPLICATE:
                    key = dedupe_key(row["normalized_data"] or {}, config["check_fields"])
                    matched = key is not None and key in index
                    if matched:
                        flagged.append(row["id"])
                    elif kind == DB_DUPLICATE:
                        cleared.append(row["id"])
                    kind = DB_DUPLICATE if matched else None
                if kind:
                    totals[kind] += 1
                actions[decide_action(kind, strategy, row["decision"])] += 1
            rows.set_duplicate_kind(conn, flagged, DB_DUPLICATE)
            rows.set_duplicate_kind(conn, cleared, None)
        after = batch[-1]["row_number"]

    jobs.update_import_job(
        job_id,
        expected_statuses=[JobStatus.READY.value],
        db_duplicate_rows=totals[DB_DUPLICATE],
    )
    progress_channel.publish_job(jobs.get_import_job(job_id))
    return {
        "strategy": strategy,
        "valid_rows": totals["valid_rows"],
        "file_duplicates": totals[FILE_DUPLICATE],
        "db_duplicates": totals[DB_DUPLICATE],
        "will_create": actions[ACTION_CREATE],
        "will_update": actions[ACTION_UPDATE],
        "will_skip": actions[ACTION_SKIP],
        "commit_eligible": actions[ACTION_CREATE] + actions[ACTION_UPDATE],
    }


# ---------------------------------------------------------------------------
# Job records
# ---------------------------------------------------------------------------

def get_import_job(job_id: str) -> Dict[str, Any]:
    return jobs.require_import_job(job_id)


def list_import_jobs(
    owner_id: Optional[int] = None,
    status: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Dict[str, Any]], int]:
    return jobs.list_import_jobs(owner_id=owner_id, status=status, limit=limit, offset=offset)


def update_ui_state(job_id: str, state: Dict[str, Any]) -> Dict[str, Any]:
    """Persist the import wizard's client state so a reload resumes the same step."""
    jobs.require_import_job(job_id)
    jobs.update_import_job(job_id, ui_state=state)
    return jobs.require_import_job(job_id)


def get_download_url(job_id: str) -> Dict[str, Any]:
    job = jobs.require_import_job(job_id)
    expires_in = settings.storage_signed_url_expiry_seconds
    url = storage.generate_presigned_download_url(
        job["storage_path"], expires_in=expires_in, filename=job["file_name"]
    )
    return {"url": url, "expires_in": expires_in, "file_name": job["file_name"]}


def delete_import_job(job_id: str) -> None:
    """
    Delete a finished job with its rows and stored file.

    Leads created by the job are kept.
    """
    job = jobs.require_import_job(job_id)
    _require_status(job, DELETABLE_STATUSES, "delete")
    if not jobs.delete_import_job_record(job_id, DELETABLE_STATUSES):
        raise _refresh_state_error(job_id, DELETABLE_STATUSES, "delete")

    if not storage.delete_file(job["storage_path"]):
        logger.warning("Stored file %s of deleted import job %s was not removed", job["storage_path"], job_id)
    progress_channel.forget(job_id)
    JobLockManager.discard(job_id)
    logger.info("Deleted import job %s", job_id)


# ---------------------------------------------------------------------------
# Recovery
# ---------------------------------------------------------------------------

def _phase_for(job: Dict[str, Any]) -> str:
    if job["status"] == JobStatus.IMPORTING.value:
        return JobPhase.COMMIT.value
    if job["status"] in (JobStatus.PARSING.value, JobStatus.VALIDATING.value):
        return JobPhase.PARSE.value
    return job["phase"] or JobPhase.PARSE.value


def recover_interrupted_jobs(stale_minutes: Optional[int] = None) -> List[str]:
    """
    Re-enqueue jobs left running by a process that went away.

    A job counts as interrupted when it is queued or running and has not been
    updated for ``stale_minutes`` (default ``import_stale_job_minutes``).
    """
    minutes = settings.import_stale_job_minutes if stale_minutes is None else stale_minutes
    cutoff = jobs.utcnow() - timedelta(minutes=minutes)
    recovered: List[str] = []
    for job in jobs.find_stalled_jobs(RUNNING_STATUSES, cutoff):
        phase = _phase_for(job)
        logger.warning(
            "Recovering import job %s (status '%s', last update %s) as %s",
            job["id"], job["status"], job["updated_at"], phase,
        )
        import_queue.enqueue(job["id"], phase)
        recovered.append(job["id"])
    return recovered
