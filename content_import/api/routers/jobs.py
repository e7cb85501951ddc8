"""
Endpoints for tracking and controlling import jobs.
"""
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse

from content_import.api.dependencies import get_processor
from content_import.api.schemas.shared import (
    ImportReport,
    JobListResponse,
    JobResponse,
    RollbackCheck,
    RollbackRequest,
    RollbackResult,
)
from content_import.domain.imports.batch import BatchProcessor
from content_import.domain.imports.exceptions import InvalidJobTransitionError, JobNotFoundError
from content_import.domain.imports.reports import REPORT_FORMATS

router = APIRouter(tags=["import-jobs"])


def _job_error(exc: Exception) -> HTTPException:
    if isinstance(exc, JobNotFoundError):
        return HTTPException(status_code=404, detail="Job not found")
    return HTTPException(status_code=409, detail=str(exc))


@router.get("/import-jobs", response_model=JobListResponse)
async def list_import_jobs_endpoint(
    user_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    processor: BatchProcessor = Depends(get_processor),
):
    jobs, total = processor.list_jobs(user_id=user_id, limit=limit, offset=offset)
    return JobListResponse(success=True, jobs=jobs, total_count=total)


@router.get("/import-jobs/{job_id}", response_model=JobResponse)
async def get_import_job_endpoint(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    job = processor.get_job_status(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return JobResponse(success=True, job=job)


@router.post("/import-jobs/{job_id}/pause", response_model=JobResponse)
async def pause_import_job_endpoint(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    try:
        return JobResponse(success=True, job=processor.pause_job(job_id))
    except (JobNotFoundError, InvalidJobTransitionError) as exc:
        raise _job_error(exc)


@router.post("/import-jobs/{job_id}/resume", response_model=JobResponse)
async def resume_import_job_endpoint(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    try:
        return JobResponse(success=True, job=processor.resume_job(job_id))
    except (JobNotFoundError, InvalidJobTransitionError) as exc:
        raise _job_error(exc)


@router.post("/import-jobs/{job_id}/cancel", response_model=JobResponse)
async def cancel_import_job_endpoint(
    job_id: str,
    reason: Optional[str] = None,
    processor: BatchProcessor = Depends(get_processor),
):
    try:
        return JobResponse(success=True, job=processor.cancel_job(job_id, reason))
    except (JobNotFoundError, InvalidJobTransitionError) as exc:
        raise _job_error(exc)


@router.get("/import-jobs/{job_id}/report", response_model=ImportReport)
async def import_job_report_endpoint(
    job_id: str,
    format: str = "json",
    processor: BatchProcessor = Depends(get_processor),
):
    """
    Report for a job.

    Parameters:
    - format: ``json`` returns the report model, ``csv`` a downloadable file
    """
    if format not in REPORT_FORMATS:
        raise HTTPException(status_code=400, detail=f"Unsupported report format: {format}")
    try:
        if format == "json":
            return processor.generate_report(job_id)
        content = processor.export_report(job_id, "csv")
    except JobNotFoundError as exc:
        raise _job_error(exc)
    return PlainTextResponse(
        content,
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="import-report-{job_id}.csv"'},
    )


@router.get("/import-jobs/{job_id}/rollback-check", response_model=RollbackCheck)
async def rollback_check_endpoint(job_id: str, processor: BatchProcessor = Depends(get_processor)):
    try:
        return processor.check_rollback(job_id)
    except JobNotFoundError as exc:
        raise _job_error(exc)


@router.post("/import-jobs/{job_id}/rollback", response_model=RollbackResult)
async def rollback_import_job_endpoint(
    job_id: str,
    request: RollbackRequest,
    processor: BatchProcessor = Depends(get_processor),
):
    try:
        return await processor.rollback_job(
            job_id,
            request.user_id,
            reason=request.reason,
            dry_run=request.dry_run,
        )
    except (JobNotFoundError, InvalidJobTransitionError) as exc:
        raise _job_error(exc)
