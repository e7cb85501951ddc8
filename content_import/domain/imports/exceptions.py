"""
Exceptions raised by the import pipeline.

Data-shape problems never raise; they are returned as ``ValidationIssue``
records. These exceptions cover caller mistakes and unavailable resources.
"""
from typing import Optional

from content_import.api.schemas.shared import JobStatus, ValidationResult


class ImportPipelineError(Exception):
    """Base class for import pipeline failures."""


class ImportValidationError(ImportPipelineError):
    """Pre-flight validation found critical issues; no job was created."""

    def __init__(self, validation: ValidationResult, message: Optional[str] = None):
        self.validation = validation
        critical = sum(1 for issue in validation.errors if issue.severity.value == "critical")
        super().__init__(message or f"Validation failed with {critical} critical error(s)")


class JobNotFoundError(ImportPipelineError):
    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} not found")


class InvalidJobTransitionError(ImportPipelineError):
    def __init__(self, job_id: str, action: str, status: JobStatus):
        self.job_id = job_id
        self.action = action
        self.status = status
        super().__init__(f"Cannot {action} job {job_id} while it is {status.value}")


class CategoryNotFoundError(ImportPipelineError):
    def __init__(self, category_id: str):
        self.category_id = category_id
        super().__init__(f"Category {category_id} not found")


class BackupNotFoundError(ImportPipelineError):
    def __init__(self, backup_id: str):
        self.backup_id = backup_id
        super().__init__(f"Backup {backup_id} not found")


class CSVConversionError(ImportPipelineError):
    """The CSV upload cannot be turned into an import document at all."""
