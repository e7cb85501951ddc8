"""
Shared services and helpers for the API.

The application builds one ``ImportServices`` container at startup and keeps
it on ``app.state.services``; routers fetch collaborators through the
``get_*`` dependencies below.
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import HTTPException, Request

from content_import.api.schemas.shared import BatchOptions, ErrorRecoveryOptions, ImportFormat
from content_import.core.config import Settings
from content_import.db.session import get_engine
from content_import.db.storage import InMemoryStorage, SqlStorage, Storage
from content_import.domain.categories.matcher import CategoryMatcher
from content_import.domain.imports.batch import BatchProcessor
from content_import.domain.imports.committer import StorageItemCommitter
from content_import.domain.imports.error_policy import ThresholdErrorPolicy
from content_import.domain.imports.history import StorageAuditSink
from content_import.domain.imports.jobs import InMemoryJobStore, JobStore, SqlJobStore
from content_import.domain.imports.rollback import InMemoryBackupStore
from content_import.domain.imports.validators import ValidationEngine


@dataclass
class ImportServices:
    storage: Storage
    validator: ValidationEngine
    matcher: CategoryMatcher
    audit_sink: StorageAuditSink
    backup_store: InMemoryBackupStore
    job_store: JobStore
    processor: BatchProcessor
    max_upload_size_mb: int = 10
    max_upload_rows: int = 1000
    default_category_name: str = "Général"


def build_services(config: Settings, storage: Optional[Storage] = None) -> ImportServices:
    """Wire every collaborator of the import pipeline from settings."""
    engine = None
    if config.storage_backend == "sql" or config.job_store_backend == "sql":
        engine = get_engine(config.database_url)

    if storage is None:
        storage = SqlStorage(engine) if config.storage_backend == "sql" else InMemoryStorage()
    job_store: JobStore = SqlJobStore(engine) if config.job_store_backend == "sql" else InMemoryJobStore()

    validator = ValidationEngine()
    matcher = CategoryMatcher(storage, cache_ttl_seconds=config.category_cache_ttl_seconds)
    audit_sink = StorageAuditSink(storage)
    backup_store = InMemoryBackupStore(storage)
    committer = StorageItemCommitter(
        storage,
        backup_sink=backup_store,
        default_category_name=config.default_category_name,
    )
    processor = BatchProcessor(
        validator,
        committer,
        job_store,
        error_policy=ThresholdErrorPolicy(),
        audit_sink=audit_sink,
        backup_sink=backup_store,
        default_options=BatchOptions(
            chunk_size=config.batch_chunk_size,
            max_concurrency=config.batch_max_concurrency,
            error_recovery=ErrorRecoveryOptions(
                max_errors_before_stop=config.batch_max_errors_before_stop,
            ),
        ),
        inter_chunk_delay_seconds=config.batch_inter_chunk_delay_seconds,
        chunk_timeout_seconds=config.chunk_timeout_seconds,
        job_retention_hours=config.job_retention_hours,
    )
    return ImportServices(
        storage=storage,
        validator=validator,
        matcher=matcher,
        audit_sink=audit_sink,
        backup_store=backup_store,
        job_store=job_store,
        processor=processor,
        max_upload_size_mb=config.upload_max_file_size_mb,
        max_upload_rows=config.upload_max_rows,
        default_category_name=config.default_category_name,
    )


def get_services(request: Request) -> ImportServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Import services are not initialized")
    return services


def get_processor(request: Request) -> BatchProcessor:
    return get_services(request).processor


def get_validator(request: Request) -> ValidationEngine:
    return get_services(request).validator


def get_matcher(request: Request) -> CategoryMatcher:
    return get_services(request).matcher


def detect_file_type(filename: str) -> ImportFormat:
    """
    Detect the upload format from its extension.

    Raises:
    - HTTPException: If the extension is neither .json nor .csv
    """
    lowered = (filename or "").lower()
    if lowered.endswith(".csv"):
        return ImportFormat.CSV
    if lowered.endswith(".json"):
        return ImportFormat.JSON
    raise HTTPException(status_code=400, detail="Unsupported file type")
