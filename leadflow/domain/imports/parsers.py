"""
Streaming readers for uploaded CSV and XLSX files.

Both formats are exposed the same way: a header list, and data rows as
``(row_number, {header: value})`` pairs grouped into fixed-size chunks.
Row numbers are 1-based positions among non-blank data rows, so a re-read of
the same file always yields the same numbering.
"""
from __future__ import annotations

import codecs
import csv
import logging
import zipfile
from datetime import date, datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pandas as pd
from openpyxl import load_workbook
from openpyxl.utils.exceptions import InvalidFileException

from leadflow.domain.imports.errors import FileParseError

logger = logging.getLogger(__name__)

SUPPORTED_FILE_TYPES = ("csv", "xlsx")
CANDIDATE_DELIMITERS = ",;\t|"
_ENCODINGS = ("utf-8-sig", "cp1252", "latin-1")
_SNIFF_BYTES = 64 * 1024

RawRow = Dict[str, Optional[str]]
Chunk = List[Tuple[int, RawRow]]


def detect_file_type(file_name: str) -> Optional[str]:
    name = (file_name or "").lower()
    if name.endswith(".csv"):
        return "csv"
    if name.endswith(".xlsx"):
        return "xlsx"
    return None


def _cell_to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, float):
        if pd.isna(value):
            return None
        if value.is_integer():
            return str(int(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    text = str(value)
    return text if text.strip() else None


def _dedupe_headers(raw_headers: List[Any]) -> List[str]:
    """Stringify headers, name blanks by position and suffix repeats (``name``, ``name.1``)."""
    headers: List[str] = []
    seen: Dict[str, int] = {}
    for index, header in enumerate(raw_headers):
        name = _cell_to_text(header)
        name = name.strip() if name else f"column_{index + 1}"
        if name in seen:
            seen[name] += 1
            name = f"{name}.{seen[name]}"
        else:
            seen[name] = 0
        headers.append(name)
    return headers


# ---------------------------------------------------------------------------
# CSV
# ---------------------------------------------------------------------------

def _detect_encoding(path: str) -> str:
    """First candidate encoding that decodes the whole file, read block by block."""
    for encoding in _ENCODINGS:
        decoder = codecs.getincrementaldecoder(encoding)()
        try:
            with open(path, "rb") as handle:
                for block in iter(lambda: handle.read(_SNIFF_BYTES), b""):
                    decoder.decode(block)
                decoder.decode(b"", final=True)
        except UnicodeDecodeError:
            logger.debug("CSV file %s is not valid %s", path, encoding)
            continue
        return encoding
    raise FileParseError("Unable to decode CSV file")  # pragma: no cover - latin-1 decodes any byte


def _detect_csv_dialect(path: str) -> Tuple[str, str]:
    """Return ``(encoding, delimiter)`` for a CSV file."""
    encoding = _detect_encoding(path)
    with open(path, "rb") as handle:
        # The block may end inside a multi-byte character.
        sample = handle.read(_SNIFF_BYTES).decode(encoding, errors="ignore")

    first_line = sample.splitlines()[0] if sample else ""
    try:
        delimiter = csv.Sniffer().sniff(sample, delimiters=CANDIDATE_DELIMITERS).delimiter
    except csv.Error:
        counts = {d: first_line.count(d) for d in CANDIDATE_DELIMITERS}
        delimiter = max(counts, key=counts.get) if any(counts.values()) else ","
    return encoding, delimiter


def _csv_headers(path: str, dialect: Optional[Tuple[str, str]] = None) -> List[str]:
    encoding, delimiter = dialect or _detect_csv_dialect(path)
    frame = pd.read_csv(
        path,
        sep=delimiter,
        encoding=encoding,
        dtype=str,
        header=None,
        nrows=1,
        keep_default_na=False,
    )
    return _dedupe_headers(list(frame.iloc[0])) if len(frame) else []


def _iter_csv_rows(path: str, chunk_size: int) -> Iterator[RawRow]:
    encoding, delimiter = _detect_csv_dialect(path)
    headers = _csv_headers(path, (encoding, delimiter))
    reader = pd.read_csv(
        path,
        sep=delimiter,
        encoding=encoding,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
        chunksize=chunk_size,
    )
    with reader:
        for frame in reader:
            frame.columns = headers
            for record in frame.to_dict("records"):
                row = {key: _cell_to_text(value) for key, value in record.items()}
                if any(value is not None for value in row.values()):
                    yield row


# ---------------------------------------------------------------------------
# XLSX
# ---------------------------------------------------------------------------

def _iter_xlsx_sheet(path: str) -> Iterator[Tuple[Any, ...]]:
    workbook = load_workbook(path, read_only=True, data_only=True)
    try:
        sheet = workbook.worksheets[0]
        for values in sheet.iter_rows(values_only=True):
            yield values
    finally:
        workbook.close()


def _iter_xlsx_rows(path: str) -> Iterator[RawRow]:
    rows = _iter_xlsx_sheet(path)
    first = next(rows, None)
    if first is None:
        return
    headers = _dedupe_headers(list(first))
    for values in rows:
        row = {
            header: _cell_to_text(values[index]) if index < len(values) else None
            for index, header in enumerate(headers)
        }
        if any(value is not None for value in row.values()):
            yield row


def _xlsx_headers(path: str) -> List[str]:
    rows = _iter_xlsx_sheet(path)
    try:
        first = next(rows, None)
    finally:
        rows.close()
    return _dedupe_headers(list(first)) if first is not None else []


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def _guard(file_type: str, operation):
    if file_type not in SUPPORTED_FILE_TYPES:
        raise FileParseError(f"Unsupported file type '{file_type}'")
    try:
        return operation()
    except FileParseError:
        raise
    except (
        pd.errors.ParserError,
        pd.errors.EmptyDataError,
        UnicodeDecodeError,
        InvalidFileException,
        zipfile.BadZipFile,
        KeyError,
    ) as exc:
        raise FileParseError(f"Unable to read {file_type.upper()} file: {exc}") from exc


def read_headers(path: str, file_type: str) -> List[str]:
    if file_type == "csv":
        return _guard(file_type, lambda: _csv_headers(path))
    return _guard(file_type, lambda: _xlsx_headers(path))


def iter_rows(path: str, file_type: str, chunk_size: int = 500) -> Iterator[Tuple[int, RawRow]]:
    """Yield ``(row_number, row)`` for every non-blank data row."""
    if file_type not in SUPPORTED_FILE_TYPES:
        raise FileParseError(f"Unsupported file type '{file_type}'")
    source = _iter_csv_rows(path, chunk_size) if file_type == "csv" else _iter_xlsx_rows(path)
    iterator = enumerate(source, start=1)
    try:
        while True:
            item = _guard(file_type, lambda: next(iterator, None))
            if item is None:
                return
            yield item
    finally:
        source.close()


def iter_chunks(path: str, file_type: str, chunk_size: int) -> Iterator[Tuple[int, Chunk]]:
    """Yield ``(chunk_number, rows)`` with ``chunk_size`` rows per chunk (last may be short)."""
    chunk: Chunk = []
    chunk_number = 0
    for row_number, row in iter_rows(path, file_type, chunk_size):
        chunk.append((row_number, row))
        if len(chunk) >= chunk_size:
            chunk_number += 1
            yield chunk_number, chunk
            chunk = []
    if chunk:
        yield chunk_number + 1, chunk


def count_data_rows(path: str, file_type: str) -> int:
    """Streaming pre-pass counting non-blank data rows."""
    total = 0
    for _ in iter_rows(path, file_type, chunk_size=5000):
        total += 1
    return total


def read_preview(path: str, file_type: str, sample_size: int = 5) -> Tuple[List[str], List[RawRow]]:
    """Headers plus the first ``sample_size`` data rows, for auto-mapping at upload."""
    headers = read_headers(path, file_type)
    samples: List[RawRow] = []
    for _, row in iter_rows(path, file_type, chunk_size=max(sample_size, 1)):
        samples.append(row)
        if len(samples) >= sample_size:
            break
    logger.debug("Read preview of %s file: %d headers, %d sample rows", file_type, len(headers), len(samples))
    return headers, samples
