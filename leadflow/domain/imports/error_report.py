"""
CSV report of the rows an import rejected.
"""
import csv
from io import StringIO
from typing import Any, Dict, Iterator, List

from leadflow.domain.imports import jobs, rows
from leadflow.domain.imports.state import RowStatus

REPORT_COLUMNS = ["row_number", "field", "message"]


def _format_errors(errors: Dict[str, str]) -> List[List[str]]:
    return [[name, message] for name, message in sorted((errors or {}).items())]


def _source_columns(job: Dict[str, Any]) -> List[str]:
    return [
        entry["source_column"]
        for entry in job.get("column_mapping") or []
        if entry.get("source_column")
    ]


def build_error_report(job_id: str, page_size: int = 1000) -> Iterator[str]:
    """
    Stream the invalid rows of a job as CSV.

    One line per failed field, followed by the row's original values so the
    file can be corrected and uploaded again.
    """
    job = jobs.require_import_job(job_id)
    source_columns = _source_columns(job)

    buffer = StringIO()
    writer = csv.writer(buffer)

    writer.writerow(REPORT_COLUMNS + source_columns)
    yield buffer.getvalue()
    buffer.seek(0)
    buffer.truncate(0)

    for row in rows.iter_rows_by_status(job_id, RowStatus.INVALID.value, page_size=page_size):
        raw = row["raw_data"] or {}
        raw_values = [raw.get(column) or "" for column in source_columns]
        for field_name, message in _format_errors(row["validation_errors"]):
            writer.writerow([row["row_number"], field_name, message] + raw_values)
        yield buffer.getvalue()
        buffer.seek(0)
        buffer.truncate(0)


def error_report_filename(job: Dict[str, Any]) -> str:
    stem = (job.get("file_name") or "import").rsplit(".", 1)[0]
    return f"{stem}_errors.csv"
