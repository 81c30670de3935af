"""
ORM models for the lead import pipeline.

``import_jobs`` and ``import_rows`` are owned by the pipeline; ``leads`` and
``lead_history`` are the target entity and its append-only audit trail.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from leadflow.db.session import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class ImportJob(Base):
    __tablename__ = "import_jobs"
    __table_args__ = (
        UniqueConstraint("created_by", "file_hash", name="uq_import_jobs_owner_hash"),
        Index("idx_import_jobs_status", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    created_by = Column(Integer, ForeignKey("users.id"), nullable=False)

    file_name = Column(String(255), nullable=False)
    file_type = Column(String(10), nullable=False)
    file_size = Column(Integer, nullable=False, default=0)
    storage_path = Column(String(1024), nullable=False)
    file_hash = Column(String(64), nullable=False)

    status = Column(String(20), nullable=False, default="pending")
    phase = Column(String(10), nullable=True)

    column_mapping = Column(JSON, nullable=True)
    assignment_config = Column(JSON, nullable=True)
    duplicate_config = Column(JSON, nullable=True)

    total_rows = Column(Integer, nullable=False, default=0)
    processed_rows = Column(Integer, nullable=False, default=0)
    valid_rows = Column(Integer, nullable=False, default=0)
    invalid_rows = Column(Integer, nullable=False, default=0)
    imported_rows = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)
    file_duplicate_rows = Column(Integer, nullable=False, default=0)
    db_duplicate_rows = Column(Integer, nullable=False, default=0)

    current_chunk = Column(Integer, nullable=False, default=0)
    total_chunks = Column(Integer, nullable=False, default=0)
    current_batch = Column(Integer, nullable=False, default=0)
    assignment_counter = Column(Integer, nullable=False, default=0)
    last_checkpoint = Column(JSON, nullable=True)

    validation_summary = Column(JSON, nullable=True)
    ui_state = Column(JSON, nullable=True)
    delivery_count = Column(Integer, nullable=False, default=0)

    error_message = Column(Text, nullable=True)
    error_details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ImportRow(Base):
    __tablename__ = "import_rows"
    __table_args__ = (
        UniqueConstraint("import_job_id", "row_number", name="uq_import_rows_job_row"),
        Index("idx_import_rows_job_chunk", "import_job_id", "chunk_number"),
        Index("idx_import_rows_job_status", "import_job_id", "status"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    import_job_id = Column(
        String(36), ForeignKey("import_jobs.id", ondelete="CASCADE"), nullable=False
    )
    row_number = Column(Integer, nullable=False)
    chunk_number = Column(Integer, nullable=False)
    status = Column(String(20), nullable=False, default="pending")
    raw_data = Column(JSON, nullable=False)
    normalized_data = Column(JSON, nullable=True)
    validation_errors = Column(JSON, nullable=True)
    validation_warnings = Column(JSON, nullable=True)
    duplicate_kind = Column(String(20), nullable=True)
    duplicate_of_row = Column(Integer, nullable=True)
    decision = Column(String(10), nullable=True)
    edited_data = Column(JSON, nullable=True)
    lead_id = Column(String(36), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class Lead(Base):
    __tablename__ = "leads"
    __table_args__ = (
        Index("idx_leads_email", "email"),
        Index("idx_leads_phone", "phone"),
        Index("idx_leads_external_id", "external_id"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    external_id = Column(String(100), nullable=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)
    company = Column(String(200), nullable=True)
    job_title = Column(String(100), nullable=True)
    address = Column(String(500), nullable=True)
    city = Column(String(100), nullable=True)
    postal_code = Column(String(20), nullable=True)
    country = Column(String(100), nullable=True)
    status = Column(String(50), nullable=False, default="new")
    source = Column(String(255), nullable=True)
    notes = Column(Text, nullable=True)
    assigned_to = Column(Integer, ForeignKey("users.id"), nullable=True)
    import_job_id = Column(String(36), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    deleted_at = Column(DateTime(timezone=True), nullable=True)


class LeadHistory(Base):
    __tablename__ = "lead_history"

    id = Column(String(36), primary_key=True, default=_uuid)
    lead_id = Column(String(36), nullable=False, index=True)
    import_job_id = Column(String(36), nullable=True)
    event_type = Column(String(30), nullable=False)
    actor_id = Column(Integer, nullable=True)
    after_data = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=_utcnow)
