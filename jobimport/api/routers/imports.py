"""
Endpoints for starting, tracking and cancelling bulk job imports.
"""
import logging
from datetime import datetime, timezone
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Response

from jobimport.api.dependencies import Caller, get_caller, get_import_pool
from jobimport.api.schemas.imports import (
    CreateImportRequest,
    CreateImportResponse,
    ImportCreatedJobListResponse,
    ImportJobListResponse,
    ImportJobResponse,
    ImportRowErrorListResponse,
    PreviewMappingRequest,
    PreviewMappingResponse,
    ValidationPresetsResponse,
)
from jobimport.core.config import settings
from jobimport.domain.imports.config_model import build_configuration
from jobimport.domain.imports.errors import (
    ConfigurationError,
    ImportInProgressError,
    ImportJobNotFoundError,
    ImportPipelineError,
    InvalidStateTransitionError,
)
from jobimport.domain.imports.job_writer import count_jobs_for_import, jobs_for_import
from jobimport.domain.imports.jobs import (
    create_import_job,
    list_import_jobs,
    list_row_errors,
    request_cancel,
    require_import_job,
    retry_import_job,
)
from jobimport.domain.imports.mapper import suggest_mapping
from jobimport.domain.imports.templates import build_template
from jobimport.domain.imports.validators import list_available_presets
from jobimport.domain.imports.workers import ImportWorkerPool

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/bulk-imports", tags=["bulk-imports"])


def _http_error(exc: ImportPipelineError) -> HTTPException:
    if isinstance(exc, ImportJobNotFoundError):
        return HTTPException(status_code=404, detail="Import not found")
    if isinstance(exc, ImportInProgressError):
        return HTTPException(
            status_code=409,
            detail={"message": exc.message, "active_import_id": exc.active_import_id},
        )
    if isinstance(exc, InvalidStateTransitionError):
        return HTTPException(status_code=409, detail=exc.message)
    if isinstance(exc, ConfigurationError):
        return HTTPException(status_code=422, detail={"message": "Invalid import configuration", "problems": exc.problems})
    logger.error("Unhandled import error: %s", exc.summary())
    return HTTPException(status_code=500, detail=exc.message)


def _dispatch(pool: Optional[ImportWorkerPool], job: dict) -> None:
    scheduled_at = job.get("scheduled_at")
    if scheduled_at is not None:
        if scheduled_at.tzinfo is None:
            scheduled_at = scheduled_at.replace(tzinfo=timezone.utc)
        if scheduled_at > datetime.now(timezone.utc):
            return
    if pool is not None:
        pool.submit(job["id"])


@router.post("", response_model=CreateImportResponse, status_code=201)
async def create_import_endpoint(
    request: CreateImportRequest,
    caller: Caller = Depends(get_caller),
    pool: Optional[ImportWorkerPool] = Depends(get_import_pool),
):
    """
    Queue a bulk import of job postings.

    The file must already be uploaded; ``file_url`` points at it. The import
    starts right away unless ``scheduled_at`` is in the future.
    """
    max_bytes = settings.upload_max_file_size_mb * 1024 * 1024
    if request.file_size is not None and request.file_size > max_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File exceeds the {settings.upload_max_file_size_mb} MB upload limit",
        )
    try:
        job = create_import_job(
            company_id=caller.company_id,
            created_by=caller.user_id,
            file_url=request.file_url,
            file_size=request.file_size,
            file_type=request.file_type,
            import_name=request.import_name,
            mapping_config=request.mapping_config,
            validation_rules=request.validation_rules,
            default_values=request.default_values,
            scheduled_at=request.scheduled_at,
        )
    except ImportPipelineError as exc:
        raise _http_error(exc)

    _dispatch(pool, job)
    return CreateImportResponse(success=True, import_id=job["id"], status=job["status"])


@router.get("", response_model=ImportJobListResponse)
async def list_imports_endpoint(
    status: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
):
    jobs, total = list_import_jobs(company_id=caller.company_id, status=status, limit=limit, offset=offset)
    return ImportJobListResponse(success=True, jobs=jobs, total_count=total, limit=limit, offset=offset)


@router.post("/preview-mapping", response_model=PreviewMappingResponse)
async def preview_mapping_endpoint(request: PreviewMappingRequest, caller: Caller = Depends(get_caller)):
    """Suggest how a header row would be mapped, before uploading the file."""
    try:
        configuration = build_configuration(request.mapping_config, request.validation_rules)
    except ConfigurationError as exc:
        raise _http_error(exc)

    resolution = suggest_mapping(request.headers, configuration)
    return PreviewMappingResponse(
        success=True,
        mapping=resolution.header_to_field,
        sources=resolution.sources,
        unmapped_headers=resolution.unmapped_headers,
        conflicting_headers=resolution.conflicting_headers,
        missing_required_fields=resolution.missing_required,
    )


@router.get("/template/{file_type}")
async def download_template_endpoint(file_type: Literal["csv", "excel"]):
    content, media_type, filename = build_template(file_type)
    return Response(
        content=content,
        media_type=media_type,
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.get("/validation-presets", response_model=ValidationPresetsResponse)
async def list_validation_presets_endpoint():
    """Named patterns a ``regex`` rule can reference through ``preset``."""
    return ValidationPresetsResponse(success=True, presets=list_available_presets())


@router.get("/{import_id}", response_model=ImportJobResponse)
async def get_import_endpoint(import_id: str, caller: Caller = Depends(get_caller)):
    try:
        job = require_import_job(import_id, caller.company_id)
    except ImportPipelineError as exc:
        raise _http_error(exc)
    return ImportJobResponse(success=True, job=job)


@router.get("/{import_id}/errors", response_model=ImportRowErrorListResponse)
async def list_import_errors_endpoint(
    import_id: str,
    outcome: Optional[Literal["failed", "skipped"]] = None,
    limit: int = Query(default=50, ge=1),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
):
    try:
        require_import_job(import_id, caller.company_id)
    except ImportPipelineError as exc:
        raise _http_error(exc)
    limit = min(limit, settings.import_error_preview_limit)
    errors, total = list_row_errors(import_id, outcome=outcome, limit=limit, offset=offset)
    return ImportRowErrorListResponse(
        success=True,
        import_id=import_id,
        errors=errors,
        total_count=total,
        limit=limit,
        offset=offset,
    )


@router.get("/{import_id}/jobs", response_model=ImportCreatedJobListResponse)
async def list_created_jobs_endpoint(
    import_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    caller: Caller = Depends(get_caller),
):
    """Job postings this import has created so far."""
    try:
        require_import_job(import_id, caller.company_id)
    except ImportPipelineError as exc:
        raise _http_error(exc)
    return ImportCreatedJobListResponse(
        success=True,
        import_id=import_id,
        jobs=jobs_for_import(import_id, limit=limit, offset=offset),
        total_count=count_jobs_for_import(import_id),
        limit=limit,
        offset=offset,
    )


@router.post("/{import_id}/cancel", response_model=ImportJobResponse)
async def cancel_import_endpoint(
    import_id: str,
    caller: Caller = Depends(get_caller),
    pool: Optional[ImportWorkerPool] = Depends(get_import_pool),
):
    """Cancel an import. Rows already committed stay; finished imports are returned unchanged."""
    try:
        job = request_cancel(import_id, caller.company_id)
    except ImportPipelineError as exc:
        raise _http_error(exc)
    if pool is not None:
        pool.cancel(import_id)
    return ImportJobResponse(success=True, job=job)


@router.post("/{import_id}/retry", response_model=CreateImportResponse, status_code=201)
async def retry_import_endpoint(
    import_id: str,
    caller: Caller = Depends(get_caller),
    pool: Optional[ImportWorkerPool] = Depends(get_import_pool),
):
    """Start a new import from the file and configuration of a failed one."""
    try:
        job = retry_import_job(import_id, caller.company_id, caller.user_id)
    except ImportPipelineError as exc:
        raise _http_error(exc)
    _dispatch(pool, job)
    return CreateImportResponse(success=True, import_id=job["id"], status=job["status"])
