"""
Chunked parse worker.

Streams the stored file in chunks of ``import_parse_chunk_size`` rows,
validates every row, flags within-file duplicates and persists each chunk
together with its checkpoint in a single transaction. A redelivered or
retried job resumes after the last recorded chunk; earlier chunks are only
re-read to rebuild the in-memory duplicate tracker.
"""
from __future__ import annotations

import logging
import math
import os
import tempfile
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence

from leadflow.core.config import settings
from leadflow.db.session import get_engine
from leadflow.domain.imports import jobs, parsers, rows
from leadflow.domain.imports.dedupe import FILE_DUPLICATE, FileDedupeTracker, normalize_duplicate_config
from leadflow.domain.imports.errors import JobCancelled
from leadflow.domain.imports.progress import progress_channel
from leadflow.domain.imports.state import JobStatus, PARSE_CLAIM_FROM, RowStatus
from leadflow.domain.imports.validators import NormalizationOptions, ValidationSummary, validate_row
from leadflow.integrations import storage

logger = logging.getLogger(__name__)

PARSING = JobStatus.PARSING.value
VALIDATING = JobStatus.VALIDATING.value


def _publish(job_id: str) -> None:
    progress_channel.publish_job(jobs.get_import_job(job_id))


def _raise_if_cancelled(job_id: str, expected: str = PARSING) -> None:
    if jobs.get_job_status(job_id) != expected:
        raise JobCancelled(job_id)


def build_row_records(
    chunk: Sequence[tuple],
    mapping: Sequence[Dict[str, Any]],
    tracker: Optional[FileDedupeTracker],
    options: NormalizationOptions,
) -> List[Dict[str, Any]]:
    """Validate a chunk and turn it into ``import_rows`` records."""
    records: List[Dict[str, Any]] = []
    for row_number, raw_row in chunk:
        result = validate_row(raw_row, mapping, row_number, options)
        duplicate_of = None
        if result.is_valid and tracker is not None:
            duplicate_of = tracker.observe(row_number, result.normalized_data)
        records.append(
            {
                "row_number": row_number,
                "status": RowStatus.VALID.value if result.is_valid else RowStatus.INVALID.value,
                "raw_data": raw_row,
                "normalized_data": result.normalized_data,
                "validation_errors": result.errors or None,
                "validation_warnings": result.warnings or None,
                "duplicate_kind": FILE_DUPLICATE if duplicate_of else None,
                "duplicate_of_row": duplicate_of,
            }
        )
    return records


def _persist_chunk(
    job_id: str,
    chunk_number: int,
    records: List[Dict[str, Any]],
    checkpoint: Dict[str, Any],
) -> None:
    """
    Write one chunk and advance the job cursor atomically.

    Raises ``JobCancelled`` (rolling the chunk back) when the job left
    ``parsing`` while the chunk was being prepared.
    """
    with get_engine().begin() as conn:
        rows.replace_chunk_rows(conn, job_id, chunk_number, records)
        advanced = jobs.update_import_job(
            job_id,
            expected_statuses=[PARSING],
            conn=conn,
            current_chunk=chunk_number,
            processed_rows=checkpoint["processed_rows"],
            valid_rows=checkpoint["valid_rows"],
            invalid_rows=checkpoint["invalid_rows"],
            file_duplicate_rows=checkpoint["file_duplicate_rows"],
            last_checkpoint=checkpoint,
        )
        if not advanced:
            raise JobCancelled(job_id)


def _mark_failed(job_id: str, exc: Exception, chunk_number: Optional[int]) -> None:
    message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
    jobs.transition_job(
        job_id,
        [PARSING, VALIDATING],
        JobStatus.FAILED.value,
        error_message=message,
        error_details={
            "phase": "parse",
            "chunk": chunk_number,
            "exception": exc.__class__.__name__,
        },
        completed_at=jobs.utcnow(),
    )
    _publish(job_id)


def run_parse_job(job_id: str) -> None:
    """Queue handler for the parse phase."""
    job = jobs.get_import_job(job_id)
    if job is None:
        logger.warning("Parse delivered for unknown import job %s", job_id)
        return

    claimed = jobs.transition_job(
        job_id,
        PARSE_CLAIM_FROM,
        PARSING,
        phase="parse",
        started_at=job["started_at"] or jobs.utcnow(),
        completed_at=None,
        error_message=None,
        error_details=None,
    )
    if not claimed:
        logger.info("Skipping parse for import job %s in status '%s'", job_id, job["status"])
        return
    _publish(job_id)

    state = {"chunk": None}
    try:
        _parse_job(job_id, state)
    except JobCancelled:
        logger.info("Parse of import job %s stopped after cancellation", job_id)
        _publish(job_id)
    except Exception as exc:
        logger.exception("Parse of import job %s failed at chunk %s", job_id, state["chunk"])
        _mark_failed(job_id, exc, state["chunk"])


def _parse_job(job_id: str, state: Dict[str, Any]) -> None:
    job = jobs.require_import_job(job_id)
    mapping = job["column_mapping"] or []
    duplicate_config = normalize_duplicate_config(job["duplicate_config"])
    options = NormalizationOptions.from_settings()
    chunk_size = settings.import_parse_chunk_size

    tracker = None
    if duplicate_config["check_within_file"]:
        tracker = FileDedupeTracker(duplicate_config["check_fields"])

    with tempfile.TemporaryDirectory(prefix="leadflow-import-") as workdir:
        local_path = os.path.join(workdir, f"source.{job['file_type']}")
        storage.download_file_to_path(job["storage_path"], local_path)

        total_rows = parsers.count_data_rows(local_path, job["file_type"])
        total_chunks = math.ceil(total_rows / chunk_size) if total_rows else 0
        if not jobs.update_import_job(
            job_id,
            expected_statuses=[PARSING],
            total_rows=total_rows,
            total_chunks=total_chunks,
        ):
            raise JobCancelled(job_id)

        recorded = rows.recorded_chunk_numbers(job_id)
        if recorded:
            logger.info(
                "Resuming parse of import job %s after chunk %d/%d",
                job_id, max(recorded), total_chunks,
            )

        counters: Counter = Counter()
        summary = ValidationSummary()

        for chunk_number, chunk in parsers.iter_chunks(local_path, job["file_type"], chunk_size):
            state["chunk"] = chunk_number
            records = build_row_records(chunk, mapping, tracker, options)

            for record in records:
                counters["processed_rows"] += 1
                counters["valid_rows" if record["status"] == "valid" else "invalid_rows"] += 1
                if record["duplicate_kind"] == FILE_DUPLICATE:
                    counters["file_duplicate_rows"] += 1
                summary.add(record["validation_errors"], record["validation_warnings"])

            if chunk_number in recorded:
                continue

            _raise_if_cancelled(job_id)
            checkpoint = {
                "chunk_number": chunk_number,
                "row_number": chunk[-1][0],
                "processed_rows": counters["processed_rows"],
                "valid_rows": counters["valid_rows"],
                "invalid_rows": counters["invalid_rows"],
                "file_duplicate_rows": counters["file_duplicate_rows"],
                "timestamp": jobs.utcnow().isoformat(),
            }
            _persist_chunk(job_id, chunk_number, records, checkpoint)
            logger.info(
                "Import job %s: chunk %d/%d persisted (%d rows processed)",
                job_id, chunk_number, total_chunks, counters["processed_rows"],
            )
            _publish(job_id)

    if not jobs.transition_job(job_id, [PARSING], VALIDATING, current_chunk=total_chunks):
        raise JobCancelled(job_id)
    _publish(job_id)

    # Persisted rows are the source of truth for the final counters.
    counts = rows.count_rows(job_id)
    if not jobs.transition_job(
        job_id,
        [VALIDATING],
        JobStatus.READY.value,
        processed_rows=counts["total"],
        valid_rows=counts["valid"],
        invalid_rows=counts["invalid"],
        file_duplicate_rows=counts[FILE_DUPLICATE],
        validation_summary=summary.to_dict(),
    ):
        raise JobCancelled(job_id)
    logger.info(
        "Import job %s parsed: %d rows, %d valid, %d invalid, %d file duplicates",
        job_id, counts["total"], counts["valid"], counts["invalid"], counts[FILE_DUPLICATE],
    )
    _publish(job_id)
