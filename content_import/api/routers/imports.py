"""
Import endpoints: validation, preview and job submission.
"""
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile
from fastapi.responses import PlainTextResponse
from pydantic import ValidationError

from content_import.api.dependencies import (
    ImportServices,
    detect_file_type,
    get_services,
    get_validator,
)
from content_import.api.schemas.shared import (
    BatchOptions,
    ImportFormat,
    ImportPreview,
    ImportValidationFailedResponse,
    PreviewRequest,
    StartImportRequest,
    StartImportResponse,
    UploadImportResponse,
    ValidateDocumentRequest,
    ValidationIssue,
    ValidationResult,
)
from content_import.domain.imports.batch import BatchProcessor
from content_import.domain.imports.exceptions import CSVConversionError, ImportValidationError
from content_import.domain.imports.preview import build_import_preview
from content_import.domain.imports.processors.csv_processor import (
    convert_csv_to_document,
    generate_csv_template,
)
from content_import.domain.imports.processors.json_processor import parse_import_payload
from content_import.domain.imports.validators import ValidationEngine

router = APIRouter(tags=["imports"])

logger = logging.getLogger(__name__)


def _validation_failed(error: ImportValidationError) -> HTTPException:
    body = ImportValidationFailedResponse(message=str(error), validation=error.validation)
    return HTTPException(status_code=422, detail=body.model_dump(mode="json"))


async def _read_upload(file: UploadFile, services: ImportServices) -> bytes:
    file_content = await file.read()
    if len(file_content) > services.max_upload_size_mb * 1024 * 1024:
        raise HTTPException(
            status_code=413,
            detail=f"File too large (maximum {services.max_upload_size_mb} MB)",
        )
    return file_content


def _document_from_upload(
    file_content: bytes,
    file_format: ImportFormat,
    services: ImportServices,
) -> Tuple[Optional[Dict[str, Any]], Optional[ValidationResult], List[ValidationIssue]]:
    """
    Turn an uploaded file into an import document.

    Returns:
    - The document, or None when the file cannot be parsed
    - The parse failure for malformed JSON
    - Row-level issues reported by the CSV converter
    """
    if file_format == ImportFormat.CSV:
        try:
            conversion = convert_csv_to_document(
                file_content,
                max_rows=services.max_upload_rows,
                max_file_size_mb=services.max_upload_size_mb,
                default_category=services.default_category_name,
            )
        except CSVConversionError as exc:
            raise HTTPException(status_code=400, detail=str(exc))
        return conversion.document, None, conversion.issues

    document, failure = parse_import_payload(file_content)
    return document, failure, []


@router.post("/imports/validate", response_model=ValidationResult)
async def validate_document_endpoint(
    request: ValidateDocumentRequest,
    validator: ValidationEngine = Depends(get_validator),
):
    """
    Validate an import document without importing it.

    Returns the errors, warnings and summary. A document with only mapping
    issues (unknown or missing categories) is still valid.
    """
    return validator.validate(request.document, known_categories=request.known_categories)


@router.post("/imports/validate/upload", response_model=ValidationResult)
async def validate_upload_endpoint(
    file: UploadFile = File(...),
    services: ImportServices = Depends(get_services),
):
    file_format = detect_file_type(file.filename)
    file_content = await _read_upload(file, services)
    document, failure, row_issues = _document_from_upload(file_content, file_format, services)
    if failure is not None:
        return failure

    validation = services.validator.validate(document)
    if row_issues:
        validation.errors = row_issues + validation.errors
        validation.is_valid = False
    return validation


@router.post("/imports/preview", response_model=ImportPreview)
async def preview_import_endpoint(
    request: PreviewRequest,
    services: ImportServices = Depends(get_services),
):
    return build_import_preview(request.document, request.user_id, services.validator, services.matcher)


@router.post("/imports", response_model=StartImportResponse)
async def start_import_endpoint(
    request: StartImportRequest,
    services: ImportServices = Depends(get_services),
):
    """
    Start an import job from a JSON document.

    The job runs in the background; poll ``/import-jobs/{job_id}`` for progress.
    Critical validation issues are rejected with 422 and the full validation result.
    """
    processor: BatchProcessor = services.processor
    options = request.options if "options" in request.model_fields_set else None
    try:
        job_id = await processor.start_batch_processing(
            request.document,
            request.user_id,
            file_name=request.file_name,
            format=request.format,
            options=options,
        )
    except ImportValidationError as exc:
        raise _validation_failed(exc)

    job = processor.get_job_status(job_id)
    return StartImportResponse(
        success=True,
        job_id=job_id,
        total_items=job.progress.total,
        total_chunks=job.progress.total_chunks,
    )


@router.post("/imports/upload", response_model=UploadImportResponse)
async def upload_import_endpoint(
    file: UploadFile = File(...),
    user_id: str = Form(...),
    options_json: Optional[str] = Form(None),
    services: ImportServices = Depends(get_services),
):
    """
    Start an import job from an uploaded JSON or CSV file.

    Parameters:
    - file: The file to import (.json or .csv)
    - user_id: Owner of the job
    - options_json: Optional JSON string with batch options
    """
    if not user_id.strip():
        raise HTTPException(status_code=400, detail="user_id must not be empty")

    options = None
    if options_json:
        try:
            options = BatchOptions(**json.loads(options_json))
        except (json.JSONDecodeError, TypeError, ValidationError) as exc:
            raise HTTPException(status_code=400, detail=f"Invalid options: {exc}")

    file_format = detect_file_type(file.filename)
    file_content = await _read_upload(file, services)
    logger.info("Received upload '%s' (%s, %d bytes) from %s", file.filename, file_format.value, len(file_content), user_id)

    document, failure, row_issues = _document_from_upload(file_content, file_format, services)
    if failure is not None:
        raise _validation_failed(ImportValidationError(failure))

    processor = services.processor
    try:
        job_id = await processor.start_batch_processing(
            document,
            user_id.strip(),
            file_name=file.filename,
            format=file_format,
            options=options,
        )
    except ImportValidationError as exc:
        if row_issues:
            exc.validation.errors = row_issues + exc.validation.errors
        raise _validation_failed(exc)

    job = processor.get_job_status(job_id)
    return UploadImportResponse(
        success=True,
        job_id=job_id,
        total_items=job.progress.total,
        total_chunks=job.progress.total_chunks,
        format=file_format,
        warnings=row_issues,
    )


@router.get("/imports/csv-template", response_class=PlainTextResponse)
async def csv_template_endpoint():
    return PlainTextResponse(
        generate_csv_template(),
        media_type="text/csv",
        headers={"Content-Disposition": 'attachment; filename="questions-template.csv"'},
    )
