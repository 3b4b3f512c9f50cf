from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


FileType = Literal["csv", "excel", "json"]


class CreateImportRequest(BaseModel):
    """Request to start a bulk job import from an uploaded file"""
    file_url: str = Field(min_length=1, max_length=1024)
    file_size: Optional[int] = Field(default=None, ge=0)
    file_type: FileType = "csv"
    import_name: Optional[str] = Field(default=None, max_length=255)
    mapping_config: Dict[str, str] = Field(default_factory=dict)  # file header -> job field
    validation_rules: Dict[str, Any] = Field(default_factory=dict)  # job field -> rule(s)
    default_values: Dict[str, Any] = Field(default_factory=dict)
    scheduled_at: Optional[datetime] = None

    @field_validator("file_url")
    @classmethod
    def _strip_url(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("file_url cannot be blank")
        return value


class CreateImportResponse(BaseModel):
    success: bool
    import_id: str
    status: str


class ImportJobInfo(BaseModel):
    """Status of a bulk job import."""
    id: str
    company_id: str
    created_by: str
    import_name: Optional[str] = None
    file_url: str
    file_size: Optional[int] = None
    file_type: str
    status: str
    progress: int = 0
    total_records: int = 0
    successful_imports: int = 0
    failed_imports: int = 0
    skipped_records: int = 0
    processed_records: int = 0
    last_error: Optional[str] = None
    retry_of: Optional[str] = None
    scheduled_at: Optional[datetime] = None
    cancel_requested_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    mapping_config: Dict[str, Any] = Field(default_factory=dict)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)
    default_values: Dict[str, Any] = Field(default_factory=dict)


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


class RowErrorDetail(BaseModel):
    field: str
    reason: str


class ImportRowErrorInfo(BaseModel):
    row_index: int  # 0-based data row, header excluded
    outcome: Literal["failed", "skipped"]
    errors: List[RowErrorDetail]


class ImportRowErrorListResponse(BaseModel):
    success: bool
    import_id: str
    errors: List[ImportRowErrorInfo]
    total_count: int
    limit: int
    offset: int


class PreviewMappingRequest(BaseModel):
    headers: List[str] = Field(min_length=1)
    mapping_config: Dict[str, str] = Field(default_factory=dict)
    validation_rules: Dict[str, Any] = Field(default_factory=dict)


class PreviewMappingResponse(BaseModel):
    success: bool
    mapping: Dict[str, str]  # header -> job field
    sources: Dict[str, str]  # header -> "config" | "alias"
    unmapped_headers: List[str]
    conflicting_headers: Dict[str, str]  # header -> field already claimed
    missing_required_fields: List[str]


class ValidationPresetsResponse(BaseModel):
    success: bool
    presets: Dict[str, str]  # preset name -> description


class CreatedJobInfo(BaseModel):
    id: str
    title: str
    location: str
    salary_min: Optional[float] = None
    salary_max: Optional[float] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)


class ImportCreatedJobListResponse(BaseModel):
    """Jobs created by one import."""
    success: bool
    import_id: str
    jobs: List[CreatedJobInfo]
    total_count: int
    limit: int
    offset: int
