"""
Audit trail for import jobs.

Each lifecycle transition of a job is written as one ``audit_logs`` document
(action, user, job, summary, timestamp). Audit storage is best effort: a
failing write is logged and never interrupts the import.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from content_import.api.schemas.shared import (
    BatchJob,
    ImportType,
    RollbackResult,
    ValidationResult,
)
from content_import.db.storage import Storage
from content_import.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)

AUDIT_COLLECTION = "audit_logs"
MAX_AUDITED_ERRORS = 20


class AuditSink(Protocol):
    def log_import_started(self, job: BatchJob) -> None: ...

    def log_import_completed(self, job: BatchJob) -> None: ...

    def log_import_failed(self, job: BatchJob, reason: str) -> None: ...

    def log_import_cancelled(self, job: BatchJob, reason: Optional[str] = None) -> None: ...

    def log_rollback_executed(
        self, job_id: str, user_id: str, result: RollbackResult, reason: str
    ) -> None: ...

    def log_validation_performed(
        self,
        user_id: str,
        file_name: str,
        import_type: Optional[ImportType],
        validation: ValidationResult,
    ) -> None: ...


def _job_summary(job: BatchJob) -> Dict[str, Any]:
    duration = None
    if job.started_at and job.completed_at:
        duration = (job.completed_at - job.started_at).total_seconds()
    return {
        "file_name": job.file_name,
        "format": job.format.value,
        "import_type": job.import_type.value,
        "total_items": job.progress.total,
        "processed_items": job.progress.processed,
        "successful_items": job.progress.successful,
        "failed_items": job.progress.failed,
        "skipped_items": job.progress.skipped,
        "duration_seconds": duration,
        "options": job.options.model_dump(mode="json"),
    }


class StorageAuditSink:
    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def _write(self, action: str, user_id: str, document_id: Optional[str], diff: Dict[str, Any]) -> None:
        try:
            self._storage.create(
                AUDIT_COLLECTION,
                {
                    "user": user_id,
                    "action": action,
                    "collection": "json-imports",
                    "document_id": document_id,
                    "diff": _make_json_safe(diff),
                    "timestamp": datetime.now(timezone.utc).isoformat(),
                },
            )
        except Exception as exc:
            logger.warning("Audit write failed (%s, document=%s): %s", action, document_id, exc)

    def log_import_started(self, job: BatchJob) -> None:
        self._write("import_started", job.user_id, job.id, {"import_summary": _job_summary(job)})
        logger.info("Audit: import started - job %s by user %s", job.id, job.user_id)

    def log_import_completed(self, job: BatchJob) -> None:
        summary = _job_summary(job)
        summary["created_entities"] = [entity.model_dump() for entity in job.created_ids]
        self._write("import_completed", job.user_id, job.id, {"import_summary": summary})
        logger.info(
            "Audit: import completed - job %s, %d/%d items created",
            job.id,
            job.progress.successful,
            job.progress.total,
        )

    def log_import_failed(self, job: BatchJob, reason: str) -> None:
        summary = _job_summary(job)
        summary["errors"] = [
            {"type": e.type.value, "message": e.message, "item_index": e.item_index}
            for e in job.errors[:MAX_AUDITED_ERRORS]
        ]
        self._write("import_failed", job.user_id, job.id, {"import_summary": summary, "reason": reason})
        logger.info("Audit: import failed - job %s: %s", job.id, reason)

    def log_import_cancelled(self, job: BatchJob, reason: Optional[str] = None) -> None:
        self._write(
            "import_cancelled",
            job.user_id,
            job.id,
            {"import_summary": _job_summary(job), "reason": reason or "Annulé par l'utilisateur"},
        )

    def log_rollback_executed(
        self, job_id: str, user_id: str, result: RollbackResult, reason: str
    ) -> None:
        self._write(
            "rollback_executed",
            user_id,
            job_id,
            {"rollback": result.model_dump(mode="json"), "reason": reason},
        )

    def log_validation_performed(
        self,
        user_id: str,
        file_name: str,
        import_type: Optional[ImportType],
        validation: ValidationResult,
    ) -> None:
        self._write(
            "validation_performed",
            user_id,
            None,
            {
                "file_name": file_name,
                "import_type": import_type.value if import_type else None,
                "is_valid": validation.is_valid,
                "error_count": len(validation.errors),
                "warning_count": len(validation.warnings),
                "summary": validation.summary.model_dump(),
            },
        )

    def get_audit_trail(self, job_id: Optional[str] = None, user_id: Optional[str] = None) -> List[Dict[str, Any]]:
        query: Dict[str, Any] = {}
        if job_id:
            query["document_id"] = job_id
        if user_id:
            query["user"] = user_id
        entries = self._storage.find(AUDIT_COLLECTION, query or None)
        return sorted(entries, key=lambda entry: entry.get("timestamp", ""))
