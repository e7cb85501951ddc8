from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ImportType(str, Enum):
    QUESTIONS = "questions"
    FLASHCARDS = "flashcards"
    LEARNING_PATH = "learning-path"


class ImportFormat(str, Enum):
    JSON = "json"
    CSV = "csv"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ErrorType(str, Enum):
    VALIDATION = "validation"
    DATABASE = "database"
    MAPPING = "mapping"
    REFERENCE = "reference"
    SYSTEM = "system"


class ErrorSeverity(str, Enum):
    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"
    WARNING = "warning"


class ItemStatus(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


class MappingAction(str, Enum):
    MAP = "map"
    CREATE = "create"
    MERGE = "merge"


class HistoryAction(str, Enum):
    MAPPED = "mapped"
    CREATED = "created"
    MERGED = "merged"


class BackupOperation(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# ---------------------------------------------------------------------------
# Import document items
# ---------------------------------------------------------------------------

class OptionItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str
    is_correct: bool = Field(default=False, alias="isCorrect")


class QuestionItem(BaseModel):
    """One quiz question as it appears in an import document."""
    model_config = ConfigDict(populate_by_name=True)

    question_text: str = Field(alias="questionText")
    options: List[OptionItem] = Field(default_factory=list)
    explanation: Optional[str] = None
    category: Optional[str] = None
    difficulty: str = "medium"
    level: str = "both"
    tags: List[str] = Field(default_factory=list)


class FlashcardItem(BaseModel):
    front: str
    back: str
    category: Optional[str] = None
    difficulty: Optional[str] = None
    level: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    hints: List[str] = Field(default_factory=list)


class LearningStep(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    prerequisites: List[str] = Field(default_factory=list)
    questions: List[QuestionItem] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class ValidationIssue(BaseModel):
    """A single validation, commit, mapping, reference or system problem."""
    type: ErrorType
    severity: ErrorSeverity
    message: str
    item_index: Optional[int] = None
    field: Optional[str] = None
    suggestion: Optional[str] = None
    related_category: Optional[str] = None


class ValidationSummary(BaseModel):
    total_items: int = 0
    valid_items: int = 0
    invalid_items: int = 0
    duplicates: int = 0
    missing_categories: List[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    is_valid: bool
    errors: List[ValidationIssue] = Field(default_factory=list)
    warnings: List[ValidationIssue] = Field(default_factory=list)
    summary: ValidationSummary = Field(default_factory=ValidationSummary)

    @property
    def has_critical_errors(self) -> bool:
        return any(issue.severity == ErrorSeverity.CRITICAL for issue in self.errors)


# ---------------------------------------------------------------------------
# Category mapping
# ---------------------------------------------------------------------------

class CategorySuggestion(BaseModel):
    category_id: str
    category_name: str
    similarity: float = Field(ge=0.0, le=1.0)
    reason: str
    recommended: bool = False


class CategoryCluster(BaseModel):
    members: List[str]
    canonical_name: str


class CategoryAnalysis(BaseModel):
    original_name: str
    normalized_name: str
    suggestions: List[CategorySuggestion] = Field(default_factory=list)
    recommended_action: MappingAction
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: List[str] = Field(default_factory=list)
    cluster: Optional[CategoryCluster] = None


class CategoryMapping(BaseModel):
    original_name: str
    suggested_name: str
    confidence: float = Field(ge=0.0, le=1.0)
    action: MappingAction


class MappingHistoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    user_id: str
    original_name: str
    mapped_category_id: str
    mapped_category_name: str
    action: HistoryAction
    confidence: float
    import_session_id: Optional[str] = None
    manual_override: bool = False
    created_at: datetime = Field(default_factory=_utcnow)


class MappingStatistics(BaseModel):
    total_mappings: int = 0
    mapped: int = 0
    created: int = 0
    merged: int = 0
    unique_users: int = 0
    average_confidence: float = 0.0
    manual_override_rate: float = 0.0
    top_categories: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Batch jobs
# ---------------------------------------------------------------------------

class ErrorRecoveryOptions(BaseModel):
    rollback_on_critical_error: bool = False
    continue_on_non_critical_errors: bool = True
    max_errors_before_stop: int = Field(default=100, ge=1)


class BatchOptions(BaseModel):
    """Per-job knobs. ``None`` timings fall back to the processor defaults."""
    chunk_size: int = Field(default=50, ge=1)
    max_concurrency: int = Field(default=3, ge=1)
    pause_on_error: bool = False
    inter_chunk_delay_seconds: Optional[float] = Field(default=None, ge=0)
    chunk_timeout_seconds: Optional[float] = Field(default=None, ge=0)
    error_recovery: ErrorRecoveryOptions = Field(default_factory=ErrorRecoveryOptions)


class JobProgress(BaseModel):
    total: int = 0
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    current_chunk: int = 0
    total_chunks: int = 0
    estimated_time_remaining: Optional[float] = None


class ChunkRange(BaseModel):
    index: int
    start: int
    size: int

    @property
    def stop(self) -> int:
        return self.start + self.size


class ItemResult(BaseModel):
    item_index: int
    status: ItemStatus
    entity_id: Optional[str] = None
    collection: Optional[str] = None
    message: Optional[str] = None


class CreatedEntity(BaseModel):
    collection: str
    id: str


class BatchJob(BaseModel):
    id: str
    user_id: str
    file_name: str
    import_type: ImportType
    format: ImportFormat = ImportFormat.JSON
    status: JobStatus = JobStatus.QUEUED
    progress: JobProgress = Field(default_factory=JobProgress)
    options: BatchOptions = Field(default_factory=BatchOptions)
    chunks: List[ChunkRange] = Field(default_factory=list)
    current_chunk_index: int = 0
    results: List[ItemResult] = Field(default_factory=list)
    errors: List[ValidationIssue] = Field(default_factory=list)
    created_ids: List[CreatedEntity] = Field(default_factory=list)
    backup_id: Optional[str] = None
    created_at: datetime = Field(default_factory=_utcnow)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Backups and rollback
# ---------------------------------------------------------------------------

class BackupEntry(BaseModel):
    collection: str
    entity_id: str
    operation: BackupOperation
    current_data: Optional[Dict[str, Any]] = None
    original_data: Optional[Dict[str, Any]] = None
    recorded_at: datetime = Field(default_factory=_utcnow)
    rolled_back_at: Optional[datetime] = None


class BackupSnapshot(BaseModel):
    id: str
    job_id: str
    user_id: str
    import_type: ImportType
    file_name: str
    affected_collections: List[str] = Field(default_factory=list)
    entries: List[BackupEntry] = Field(default_factory=list)
    status: str = "active"
    created_at: datetime = Field(default_factory=_utcnow)


class RollbackOptions(BaseModel):
    reason: str = "manual"
    dry_run: bool = False
    created_entities: List[CreatedEntity] = Field(default_factory=list)


class RollbackResult(BaseModel):
    success: bool
    job_id: str
    backup_id: Optional[str] = None
    deleted: int = 0
    restored: int = 0
    recreated: int = 0
    skipped: int = 0
    dry_run: bool = False
    errors: List[str] = Field(default_factory=list)


class RollbackCheck(BaseModel):
    possible: bool
    reasons: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------

class ReportSummary(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    success_rate: float = 0.0


class ErrorBreakdown(BaseModel):
    critical: int = 0
    major: int = 0
    minor: int = 0
    warning: int = 0


class ImportReport(BaseModel):
    job_id: str
    file_name: str
    status: JobStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    summary: ReportSummary
    error_breakdown: ErrorBreakdown
    errors: List[ValidationIssue] = Field(default_factory=list)
    successful_items: List[ItemResult] = Field(default_factory=list)
    failed_items: List[ItemResult] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    processing_seconds: Optional[float] = None
    generated_at: datetime = Field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class ValidateDocumentRequest(BaseModel):
    document: Dict[str, Any]
    known_categories: Optional[List[str]] = None


class StartImportRequest(BaseModel):
    document: Dict[str, Any]
    user_id: str
    file_name: str = "import.json"
    format: ImportFormat = ImportFormat.JSON
    options: BatchOptions = Field(default_factory=BatchOptions)

    @field_validator("user_id")
    @classmethod
    def validate_user_id(cls, value: str) -> str:
        if not value or not value.strip():
            raise ValueError("user_id must not be empty")
        return value.strip()


class StartImportResponse(BaseModel):
    success: bool
    job_id: str
    total_items: int
    total_chunks: int


class ImportValidationFailedResponse(BaseModel):
    success: bool = False
    message: str
    validation: ValidationResult


class JobResponse(BaseModel):
    success: bool
    job: BatchJob


class JobListResponse(BaseModel):
    success: bool
    jobs: List[BatchJob]
    total_count: int


class RollbackRequest(BaseModel):
    user_id: str
    reason: str = "manual"
    dry_run: bool = False


class SampleItem(BaseModel):
    index: int
    item: Dict[str, Any]
    issues: List[ValidationIssue] = Field(default_factory=list)
    requires_attention: bool = False


class ImportPreview(BaseModel):
    validation: ValidationResult
    category_mappings: List[CategoryMapping] = Field(default_factory=list)
    category_analyses: List[CategoryAnalysis] = Field(default_factory=list)
    sample_items: List[SampleItem] = Field(default_factory=list)
    estimated_import_seconds: float = 0.0


class PreviewRequest(BaseModel):
    document: Dict[str, Any]
    user_id: str


class AnalyzeCategoriesRequest(BaseModel):
    document: Dict[str, Any]
    user_id: str


class ApplyMappingRequest(BaseModel):
    original_name: str
    target_category_id: str
    user_id: str
    import_session_id: Optional[str] = None
    manual_override: bool = False


class CreateCategoryRequest(BaseModel):
    name: str
    user_id: str
    level: str = "both"
    import_session_id: Optional[str] = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, value: str) -> str:
        if value not in {"PASS", "LAS", "both"}:
            raise ValueError("level must be one of PASS, LAS, both")
        return value


class MappingHistoryResponse(BaseModel):
    success: bool
    records: List[MappingHistoryRecord]


class UploadImportResponse(StartImportResponse):
    format: ImportFormat
    warnings: List[ValidationIssue] = Field(default_factory=list)


class CategoryAnalysisResponse(BaseModel):
    success: bool
    analyses: List[CategoryAnalysis]
    mappings: List[CategoryMapping]


class MergeCategoriesRequest(BaseModel):
    original_names: List[str] = Field(min_length=1)
    target_category_id: str
    user_id: str
    import_session_id: Optional[str] = None
