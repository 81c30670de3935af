"""
Duplicate detection for lead imports.

A row's dedupe key is the tuple of its normalized values over the configured
check fields. Rows whose check fields are all empty have no key and are never
treated as duplicates.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.engine import Connection

from leadflow.db.models import Lead
from leadflow.domain.imports.fields import DEDUPE_FIELDS
from leadflow.utils.phone import phone_digits

logger = logging.getLogger(__name__)

DedupeKey = Tuple[Tuple[str, str], ...]

FILE_DUPLICATE = "file_duplicate"
DB_DUPLICATE = "db_duplicate"

STRATEGIES = ("skip", "update", "create")
ACTION_CREATE = "create"
ACTION_UPDATE = "update"
ACTION_SKIP = "skip"

# Operator decisions recorded on a row during review.
DECISION_SKIP = "skip"
DECISION_IMPORT = "import"
DECISION_UPDATE = "update"
ROW_DECISIONS = (DECISION_SKIP, DECISION_IMPORT, DECISION_UPDATE)

DEFAULT_DUPLICATE_CONFIG: Dict[str, Any] = {
    "strategy": "skip",
    "check_fields": ["email"],
    "check_database": True,
    "check_within_file": True,
}


def _normalize_key_value(field_name: str, value: Any) -> str:
    if value is None:
        return ""
    if field_name == "phone":
        return phone_digits(value)
    return str(value).strip().lower()


def dedupe_key(data: Mapping[str, Any], check_fields: Sequence[str]) -> Optional[DedupeKey]:
    """
    Build the composite key for ``data``.

    >>> dedupe_key({"email": " A@x.io "}, ["email"])
    (('email', 'a@x.io'),)
    """
    if not check_fields:
        return None
    parts = tuple(
        (name, _normalize_key_value(name, data.get(name))) for name in check_fields
    )
    if not any(value for _, value in parts):
        return None
    return parts


class FileDedupeTracker:
    """Remembers the first row number seen for each key during one parse run."""

    def __init__(self, check_fields: Sequence[str]):
        self.check_fields = list(check_fields)
        self._first_seen: Dict[DedupeKey, int] = {}

    def observe(self, row_number: int, data: Mapping[str, Any]) -> Optional[int]:
        """
        Register a valid row.

        Returns the canonical row number when this row duplicates an earlier
        one, otherwise None.
        """
        key = dedupe_key(data, self.check_fields)
        if key is None:
            return None
        first = self._first_seen.get(key)
        if first is not None and first != row_number:
            return first
        self._first_seen.setdefault(key, row_number)
        return None

    def __len__(self) -> int:
        return len(self._first_seen)


def build_dedupe_index(
    conn: Connection,
    check_fields: Sequence[str],
    page_size: int = 1000,
) -> Dict[DedupeKey, str]:
    """
    Map dedupe keys of live leads to their ids.

    Leads are read in id order, ``page_size`` at a time, selecting only the id
    and the check-field columns. Soft-deleted leads are ignored. When two
    leads share a key the first one (lowest id) wins.
    """
    fields = [name for name in check_fields if name in DEDUPE_FIELDS]
    if not fields:
        return {}

    columns = [getattr(Lead, name) for name in fields]
    index: Dict[DedupeKey, str] = {}
    cursor: Optional[str] = None
    pages = 0

    while True:
        stmt = select(Lead.id, *columns).where(Lead.deleted_at.is_(None))
        if cursor is not None:
            stmt = stmt.where(Lead.id > cursor)
        stmt = stmt.order_by(Lead.id).limit(page_size)

        rows = conn.execute(stmt).mappings().all()
        if not rows:
            break
        pages += 1
        for row in rows:
            key = dedupe_key(row, fields)
            if key is not None:
                index.setdefault(key, row["id"])
        cursor = rows[-1]["id"]
        if len(rows) < page_size:
            break

    logger.info("Built dedupe index: %d keys from %d page(s)", len(index), pages)
    return index


def decide_action(
    duplicate_kind: Optional[str],
    strategy: str,
    decision: Optional[str] = None,
) -> str:
    """
    Decide what the commit does with a valid row.

    File duplicates are skipped under every strategy; only the first
    occurrence of a key within a file is ever committed.

    A ``decision`` recorded on the row wins over the strategy: ``skip``
    always skips, ``import`` always creates a lead and ``update`` merges into
    the matching lead, creating one when nothing matches.
    """
    if decision == DECISION_SKIP:
        return ACTION_SKIP
    if decision == DECISION_IMPORT:
        return ACTION_CREATE
    if decision == DECISION_UPDATE:
        return ACTION_UPDATE if duplicate_kind == DB_DUPLICATE else ACTION_CREATE
    if duplicate_kind == FILE_DUPLICATE:
        return ACTION_SKIP
    if duplicate_kind == DB_DUPLICATE:
        if strategy == "update":
            return ACTION_UPDATE
        if strategy == "create":
            return ACTION_CREATE
        return ACTION_SKIP
    return ACTION_CREATE


def normalize_duplicate_config(
    config: Optional[Mapping[str, Any]],
    base: Optional[Mapping[str, Any]] = None,
) -> Dict[str, Any]:
    """Fill ``config`` from ``base`` (a stored config), then from the defaults."""
    merged = dict(DEFAULT_DUPLICATE_CONFIG)
    for source in (base, config):
        if source:
            merged.update({k: v for k, v in source.items() if v is not None})
    merged["check_fields"] = list(merged.get("check_fields") or [])
    return merged
