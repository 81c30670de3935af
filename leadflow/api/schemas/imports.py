"""
Pydantic schemas for the import pipeline endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class MappingAlternative(BaseModel):
    field: str
    confidence: float


class ColumnMappingEntry(BaseModel):
    """One source column and the lead field it feeds."""
    source_column: str
    source_index: Optional[int] = None
    target_field: Optional[str] = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    is_manual: bool = False
    sample_values: List[Any] = Field(default_factory=list)
    alternatives: List[MappingAlternative] = Field(default_factory=list)


class MappingStatus(BaseModel):
    is_complete: bool
    has_contact_field: bool
    missing_fields: List[str] = Field(default_factory=list)
    total_columns: int = 0
    mapped_columns: int = 0
    unmapped_columns: int = 0
    mapped_ratio: float = 0.0
    high_confidence: int = 0
    low_confidence: int = 0
    manual: int = 0


class AssignmentConfig(BaseModel):
    mode: Literal["none", "single", "round_robin", "by_column"] = "none"
    single_user_id: Optional[int] = None
    round_robin_user_ids: List[int] = Field(default_factory=list)
    assignment_column: Optional[str] = None


class DuplicateConfig(BaseModel):
    strategy: Literal["skip", "update", "create"] = "skip"
    check_fields: List[str] = Field(default_factory=lambda: ["email"])
    check_database: bool = True
    check_within_file: bool = True


class ImportJobInfo(BaseModel):
    """Stored state of an import job."""
    id: str
    created_by: int
    file_name: str
    file_type: str
    file_size: int
    status: str
    phase: Optional[str] = None
    column_mapping: Optional[List[ColumnMappingEntry]] = None
    assignment_config: Optional[Dict[str, Any]] = None
    duplicate_config: Optional[Dict[str, Any]] = None
    total_rows: int = 0
    processed_rows: int = 0
    valid_rows: int = 0
    invalid_rows: int = 0
    imported_rows: int = 0
    skipped_rows: int = 0
    file_duplicate_rows: int = 0
    db_duplicate_rows: int = 0
    current_chunk: int = 0
    total_chunks: int = 0
    current_batch: int = 0
    validation_summary: Optional[Dict[str, Any]] = None
    ui_state: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_details: Optional[Dict[str, Any]] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class ImportJobResponse(BaseModel):
    """Response wrapper for a single import job."""
    success: bool
    job: ImportJobInfo


class ImportJobListResponse(BaseModel):
    """Response wrapper for a list of import jobs."""
    success: bool
    jobs: List[ImportJobInfo]
    total_count: int
    limit: int
    offset: int


class CreateImportResponse(BaseModel):
    success: bool
    job_id: str
    storage_locator: str
    column_mapping: List[ColumnMappingEntry]
    mapping_status: MappingStatus
    deduplicated: bool


class UpdateMappingRequest(BaseModel):
    column_mapping: List[ColumnMappingEntry]


class UpdateMappingResponse(BaseModel):
    success: bool
    job: ImportJobInfo
    mapping_status: MappingStatus


class UpdateOptionsRequest(BaseModel):
    assignment_config: Optional[AssignmentConfig] = None
    duplicate_config: Optional[DuplicateConfig] = None


class CommitRequest(BaseModel):
    """Optional option overrides applied just before the commit is queued."""
    assignment_config: Optional[AssignmentConfig] = None
    duplicate_config: Optional[DuplicateConfig] = None


class RetryRequest(BaseModel):
    phase: Optional[Literal["parse", "commit"]] = None


class UiStateRequest(BaseModel):
    ui_state: Dict[str, Any]


class ProgressTotals(BaseModel):
    total_rows: int
    processed_rows: int
    valid_rows: int
    invalid_rows: int
    imported_rows: int
    skipped_rows: int
    file_duplicate_rows: int
    db_duplicate_rows: int


class ProgressCursor(BaseModel):
    current_chunk: int
    total_chunks: int
    current_batch: int


class ProgressSnapshot(BaseModel):
    job_id: str
    status: str
    phase: Optional[str] = None
    percent: float
    totals: ProgressTotals
    cursor: ProgressCursor
    error: Optional[Dict[str, Any]] = None
    updated_at: Optional[str] = None


class ImportRowInfo(BaseModel):
    id: str
    row_number: int
    chunk_number: int
    status: str
    raw_data: Dict[str, Any]
    normalized_data: Optional[Dict[str, Any]] = None
    validation_errors: Optional[Dict[str, str]] = None
    validation_warnings: Optional[Dict[str, str]] = None
    duplicate_kind: Optional[str] = None
    duplicate_of_row: Optional[int] = None
    decision: Optional[str] = None
    edited_data: Optional[Dict[str, Any]] = None
    lead_id: Optional[str] = None
    error_message: Optional[str] = None


class ImportRowsResponse(BaseModel):
    success: bool
    rows: List[ImportRowInfo]
    total_count: int
    page: int
    page_size: int


class PrecheckResponse(BaseModel):
    success: bool
    strategy: str
    valid_rows: int
    file_duplicates: int
    db_duplicates: int
    will_create: int
    will_update: int
    will_skip: int
    commit_eligible: int


class DownloadUrlResponse(BaseModel):
    success: bool
    url: str
    expires_in: int
    file_name: str


class DeleteImportResponse(BaseModel):
    success: bool
    message: str


class EditRowRequest(BaseModel):
    """Corrected values keyed by target field."""
    values: Dict[str, Optional[str]]


class ImportRowResponse(BaseModel):
    success: bool
    row: ImportRowInfo


class RowDecisionRequest(BaseModel):
    decision: Optional[Literal["skip", "import", "update"]] = None
    row_numbers: Optional[List[int]] = None
    status: Optional[str] = Field(default=None, description="Row filter, e.g. db_duplicate")


class RowDecisionResponse(BaseModel):
    success: bool
    decision: Optional[str] = None
    updated_rows: int
