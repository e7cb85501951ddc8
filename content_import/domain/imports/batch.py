"""
Chunked, pausable execution of import jobs.

This module provides the ability to:
- Validate a document once and split its items into fixed-size chunks
- Commit chunks one after another on the event loop, with bounded
  concurrency inside a chunk
- Pause, resume and cancel a running job at chunk boundaries
- Apply the error policy after every chunk (continue, stop or roll back)
- Publish lifecycle events and audit entries, and build reports on demand

Live jobs are held by the processor; every state change is also written to
the job store, which serves listings and jobs from earlier runs.
"""
import asyncio
import logging
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from content_import.api.schemas.shared import (
    BatchJob,
    BatchOptions,
    ChunkRange,
    ErrorSeverity,
    ErrorType,
    ImportFormat,
    ImportReport,
    ItemResult,
    ItemStatus,
    JobProgress,
    JobStatus,
    RollbackCheck,
    RollbackOptions,
    RollbackResult,
    ValidationIssue,
)
from content_import.domain.imports import reports
from content_import.domain.imports.committer import ChunkCommitResult, ItemCommitter
from content_import.domain.imports.documents import (
    ITEM_COLLECTIONS,
    extract_items,
    resolve_import_type,
)
from content_import.domain.imports.error_policy import (
    ErrorDecision,
    ErrorPolicy,
    PolicyOutcome,
    ThresholdErrorPolicy,
)
from content_import.domain.imports.exceptions import (
    ImportValidationError,
    InvalidJobTransitionError,
    JobNotFoundError,
)
from content_import.domain.imports.history import AuditSink
from content_import.domain.imports.jobs import JobStore, is_active
from content_import.domain.imports.rollback import BackupSink
from content_import.domain.imports.validators import ValidationEngine

logger = logging.getLogger(__name__)

JobListener = Callable[[str, BatchJob], None]

JOB_EVENTS = (
    "job_started",
    "job_paused",
    "job_resumed",
    "job_cancelled",
    "job_completed",
    "job_failed",
    "chunk_processed",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobControl:
    """Pause/cancel token shared between the API calls and the processing loop."""

    def __init__(self) -> None:
        self._run_allowed = asyncio.Event()
        self._run_allowed.set()
        self.cancelled = False
        self.busy_seconds = 0.0

    @property
    def paused(self) -> bool:
        return not self._run_allowed.is_set()

    def pause(self) -> None:
        self._run_allowed.clear()

    def resume(self) -> None:
        self._run_allowed.set()

    def cancel(self) -> None:
        self.cancelled = True
        # Release a paused loop so it can observe the cancellation.
        self._run_allowed.set()

    async def wait_until_runnable(self) -> None:
        await self._run_allowed.wait()


def build_chunks(total: int, chunk_size: int) -> List[ChunkRange]:
    return [
        ChunkRange(index=index, start=start, size=min(chunk_size, total - start))
        for index, start in enumerate(range(0, total, chunk_size))
    ]


def recompute_progress(job: BatchJob) -> None:
    """Derive the counters from the recorded item results."""
    successful = failed = skipped = 0
    for result in job.results:
        if result.status == ItemStatus.ERROR:
            failed += 1
        else:
            successful += 1
            if result.status == ItemStatus.SKIPPED:
                skipped += 1
    job.progress.successful = successful
    job.progress.failed = failed
    job.progress.skipped = skipped
    job.progress.processed = successful + failed


class BatchProcessor:
    def __init__(
        self,
        validator: ValidationEngine,
        committer: ItemCommitter,
        job_store: JobStore,
        error_policy: Optional[ErrorPolicy] = None,
        audit_sink: Optional[AuditSink] = None,
        backup_sink: Optional[BackupSink] = None,
        *,
        default_options: Optional[BatchOptions] = None,
        inter_chunk_delay_seconds: float = 0.1,
        chunk_timeout_seconds: Optional[float] = 120,
        job_retention_hours: int = 24,
        now: Callable[[], datetime] = _utcnow,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._validator = validator
        self._committer = committer
        self._job_store = job_store
        self._error_policy = error_policy or ThresholdErrorPolicy()
        self._audit_sink = audit_sink
        self._backup_sink = backup_sink
        self._default_options = default_options or BatchOptions()
        self._inter_chunk_delay_seconds = inter_chunk_delay_seconds
        self._chunk_timeout_seconds = chunk_timeout_seconds
        self._job_retention_hours = job_retention_hours
        self._now = now
        self._clock = clock

        self._jobs: Dict[str, BatchJob] = {}
        self._items: Dict[str, List[Mapping[str, Any]]] = {}
        self._controls: Dict[str, JobControl] = {}
        self._tasks: Dict[str, "asyncio.Task[None]"] = {}
        self._listeners: List[JobListener] = []

    # ------------------------------------------------------------------
    # Listeners and collaborators
    # ------------------------------------------------------------------

    def add_listener(self, listener: JobListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: JobListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self, event: str, job: BatchJob) -> None:
        if not self._listeners:
            return
        snapshot = job.model_copy(deep=True)
        for listener in list(self._listeners):
            try:
                listener(event, snapshot)
            except Exception as exc:
                logger.warning("Listener failed on %s for job %s: %s", event, job.id, exc)

    def _audit(self, method: str, *args: Any) -> None:
        if self._audit_sink is None:
            return
        try:
            getattr(self._audit_sink, method)(*args)
        except Exception as exc:
            logger.warning("Audit call %s failed: %s", method, exc)

    def _persist(self, job: BatchJob) -> None:
        job.updated_at = self._now()
        try:
            self._job_store.save(job)
        except Exception as exc:
            logger.error("Failed to persist job %s: %s", job.id, exc)

    # ------------------------------------------------------------------
    # Start
    # ------------------------------------------------------------------

    async def start_batch_processing(
        self,
        document: Any,
        user_id: str,
        file_name: str = "import.json",
        format: ImportFormat = ImportFormat.JSON,
        options: Optional[BatchOptions] = None,
    ) -> str:
        """
        Validate a document and schedule its import.

        Args:
            document: Parsed import document.
            user_id: Owner of the job.
            file_name: Name shown in listings, reports and audit entries.
            format: Source format of the upload.
            options: Chunking and error-recovery options; processor defaults
                are used when omitted.

        Returns:
            The new job id. Processing continues in the background.

        Raises:
            ImportValidationError: When validation finds a critical issue. No
                job is created in that case.
        """
        validation = self._validator.validate(document)
        import_type = resolve_import_type(document)
        self._audit("log_validation_performed", user_id, file_name, import_type, validation)

        if validation.has_critical_errors or import_type is None:
            logger.info(
                "Rejected import %s for user %s: %d error(s)",
                file_name,
                user_id,
                len(validation.errors),
            )
            raise ImportValidationError(validation)

        options = (options or self._default_options).model_copy(deep=True)
        items = extract_items(document)
        chunks = build_chunks(len(items), options.chunk_size)
        job_id = f"batch_{uuid.uuid4().hex}"
        now = self._now()

        job = BatchJob(
            id=job_id,
            user_id=user_id,
            file_name=file_name,
            import_type=import_type,
            format=format,
            options=options,
            chunks=chunks,
            progress=JobProgress(total=len(items), total_chunks=len(chunks)),
            errors=list(validation.errors),
            created_at=now,
            updated_at=now,
        )
        self._persist(job)

        if options.error_recovery.rollback_on_critical_error and self._backup_sink is not None:
            try:
                job.backup_id = await asyncio.to_thread(
                    self._backup_sink.create_pre_import_backup,
                    job_id,
                    user_id,
                    import_type,
                    file_name,
                    sorted({ITEM_COLLECTIONS[import_type], "categories"}),
                )
            except Exception as exc:
                logger.warning("Backup creation failed for job %s, continuing without: %s", job_id, exc)

        self._jobs[job_id] = job
        self._items[job_id] = items
        self._controls[job_id] = JobControl()

        job.status = JobStatus.PROCESSING
        job.started_at = self._now()
        self._persist(job)
        self._audit("log_import_started", job)
        self._emit("job_started", job)
        logger.info(
            "Started job %s for user %s: %d items in %d chunks",
            job_id,
            user_id,
            len(items),
            len(chunks),
        )

        task = asyncio.create_task(self._run(job_id), name=f"import-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(job_id, None))
        return job_id

    # ------------------------------------------------------------------
    # Processing loop
    # ------------------------------------------------------------------

    async def _run(self, job_id: str) -> None:
        job = self._jobs[job_id]
        control = self._controls[job_id]
        try:
            while job.current_chunk_index < len(job.chunks):
                await control.wait_until_runnable()
                if control.cancelled:
                    return

                await self.process_chunk(job, job.current_chunk_index)
                if control.cancelled:
                    return

                outcome = self._error_policy.decide(job.errors, job.results, job.options.error_recovery)
                if outcome.decision == ErrorDecision.ROLLBACK:
                    await self._rollback_and_fail(job, outcome)
                    return
                if outcome.decision == ErrorDecision.STOP:
                    self._fail(job, "; ".join(outcome.actions) or "Import arrêté")
                    return

                delay = self._inter_chunk_delay(job)
                if delay > 0 and job.current_chunk_index < len(job.chunks):
                    await asyncio.sleep(delay)

            await control.wait_until_runnable()
            if control.cancelled or job.is_terminal:
                return
            job.status = JobStatus.COMPLETED
            job.completed_at = self._now()
            job.progress.estimated_time_remaining = 0
            self._persist(job)
            self._audit("log_import_completed", job)
            self._emit("job_completed", job)
            logger.info(
                "Job %s completed: %d/%d items imported, %d failed",
                job.id,
                job.progress.successful,
                job.progress.total,
                job.progress.failed,
            )
        except asyncio.CancelledError:
            if not job.is_terminal:
                self._fail(job, "Import interrompu", severity=ErrorSeverity.CRITICAL)
            raise
        except Exception as exc:
            logger.exception("Job %s crashed", job.id)
            self._fail(job, f"Erreur inattendue: {exc}", severity=ErrorSeverity.CRITICAL)
        finally:
            self._items.pop(job_id, None)

    def _inter_chunk_delay(self, job: BatchJob) -> float:
        if job.options.inter_chunk_delay_seconds is not None:
            return job.options.inter_chunk_delay_seconds
        return self._inter_chunk_delay_seconds

    def _chunk_timeout(self, job: BatchJob) -> Optional[float]:
        timeout = job.options.chunk_timeout_seconds
        if timeout is None:
            timeout = self._chunk_timeout_seconds
        return timeout or None

    async def process_chunk(self, job: BatchJob, index: int) -> ChunkCommitResult:
        """
        Commit one chunk and fold its outcome into the job.

        A committer failure or timeout does not raise: every item of the chunk
        is recorded as failed, and the job pauses when ``pause_on_error`` is set.
        """
        chunk = job.chunks[index]
        items = self._items.get(job.id, [])[chunk.start:chunk.stop]
        job.progress.current_chunk = index + 1
        control = self._controls.get(job.id)
        started = self._clock()

        commit = self._committer.commit_chunk(
            job.import_type,
            items,
            chunk.start,
            job.backup_id,
            job.options.max_concurrency,
            created_sink=job.created_ids,
        )
        timeout = self._chunk_timeout(job)
        try:
            if timeout:
                outcome = await asyncio.wait_for(commit, timeout)
            else:
                outcome = await commit
            chunk_failed = False
        except asyncio.TimeoutError:
            logger.error("Chunk %d of job %s timed out after %ss", index + 1, job.id, timeout)
            outcome = self._failed_chunk(chunk, f"Délai dépassé pour le lot {index + 1} ({timeout}s)")
            chunk_failed = True
        except Exception as exc:
            logger.error("Chunk %d of job %s failed: %s", index + 1, job.id, exc)
            outcome = self._failed_chunk(chunk, f"Échec du traitement du lot {index + 1}: {exc}")
            chunk_failed = True

        job.results.extend(outcome.results)
        job.errors.extend(outcome.errors)
        job.created_ids.extend(outcome.created)
        job.current_chunk_index = index + 1
        recompute_progress(job)

        if control is not None:
            control.busy_seconds += self._clock() - started
            processed = job.progress.processed
            if processed:
                remaining = job.progress.total - processed
                job.progress.estimated_time_remaining = round(
                    control.busy_seconds / processed * remaining, 2
                )

        logger.info(
            "Job %s chunk %d/%d: %d ok, %d failed",
            job.id,
            index + 1,
            len(job.chunks),
            sum(1 for r in outcome.results if r.status != ItemStatus.ERROR),
            sum(1 for r in outcome.results if r.status == ItemStatus.ERROR),
        )

        paused_on_error = False
        if chunk_failed and job.options.pause_on_error and job.status == JobStatus.PROCESSING:
            job.status = JobStatus.PAUSED
            if control is not None:
                control.pause()
            paused_on_error = True

        self._persist(job)
        self._emit("chunk_processed", job)
        if paused_on_error:
            logger.info("Job %s paused after a failed chunk", job.id)
            self._emit("job_paused", job)
        return outcome

    @staticmethod
    def _failed_chunk(chunk: ChunkRange, message: str) -> ChunkCommitResult:
        outcome = ChunkCommitResult()
        for item_index in range(chunk.start, chunk.stop):
            outcome.results.append(
                ItemResult(item_index=item_index, status=ItemStatus.ERROR, message=message)
            )
            outcome.errors.append(
                ValidationIssue(
                    type=ErrorType.SYSTEM,
                    severity=ErrorSeverity.MAJOR,
                    item_index=item_index,
                    message=message,
                )
            )
        return outcome

    def _fail(
        self,
        job: BatchJob,
        reason: str,
        severity: Optional[ErrorSeverity] = None,
    ) -> None:
        if severity is not None:
            job.errors.append(ValidationIssue(type=ErrorType.SYSTEM, severity=severity, message=reason))
        job.status = JobStatus.FAILED
        job.completed_at = self._now()
        self._persist(job)
        self._audit("log_import_failed", job, reason)
        self._emit("job_failed", job)
        logger.warning("Job %s failed: %s", job.id, reason)

    async def _rollback_and_fail(self, job: BatchJob, outcome: PolicyOutcome) -> None:
        reason = "; ".join(outcome.actions) or "Rollback automatique"
        if self._backup_sink is None:
            job.errors.append(
                ValidationIssue(
                    type=ErrorType.SYSTEM,
                    severity=ErrorSeverity.CRITICAL,
                    message="Rollback impossible: aucun gestionnaire de sauvegarde configuré",
                )
            )
        else:
            try:
                result = await asyncio.to_thread(
                    self._backup_sink.execute_rollback,
                    job.id,
                    job.user_id,
                    RollbackOptions(reason=reason, created_entities=list(job.created_ids)),
                )
                for message in result.errors:
                    job.errors.append(
                        ValidationIssue(
                            type=ErrorType.SYSTEM,
                            severity=ErrorSeverity.CRITICAL,
                            message=f"Échec du rollback: {message}",
                        )
                    )
                self._audit("log_rollback_executed", job.id, job.user_id, result, reason)
            except Exception as exc:
                logger.error("Rollback of job %s failed: %s", job.id, exc)
                job.errors.append(
                    ValidationIssue(
                        type=ErrorType.SYSTEM,
                        severity=ErrorSeverity.CRITICAL,
                        message=f"Échec du rollback: {exc}",
                    )
                )
        self._fail(job, reason)

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def _require_live(self, job_id: str, action: str) -> BatchJob:
        job = self._jobs.get(job_id)
        if job is not None:
            return job
        stored = self._job_store.get(job_id)
        if stored is None:
            raise JobNotFoundError(job_id)
        raise InvalidJobTransitionError(job_id, action, stored.status)

    def pause_job(self, job_id: str) -> BatchJob:
        job = self._require_live(job_id, "pause")
        if job.status != JobStatus.PROCESSING:
            raise InvalidJobTransitionError(job_id, "pause", job.status)
        job.status = JobStatus.PAUSED
        self._controls[job_id].pause()
        self._persist(job)
        self._emit("job_paused", job)
        logger.info("Job %s paused at chunk %d/%d", job_id, job.current_chunk_index, len(job.chunks))
        return job.model_copy(deep=True)

    def resume_job(self, job_id: str) -> BatchJob:
        job = self._require_live(job_id, "resume")
        if job.status != JobStatus.PAUSED:
            raise InvalidJobTransitionError(job_id, "resume", job.status)
        job.status = JobStatus.PROCESSING
        self._controls[job_id].resume()
        self._persist(job)
        self._emit("job_resumed", job)
        logger.info("Job %s resumed", job_id)
        return job.model_copy(deep=True)

    def cancel_job(self, job_id: str, reason: Optional[str] = None) -> BatchJob:
        job = self._require_live(job_id, "cancel")
        if job.is_terminal:
            raise InvalidJobTransitionError(job_id, "cancel", job.status)
        job.status = JobStatus.CANCELLED
        job.completed_at = self._now()
        self._controls[job_id].cancel()
        self._persist(job)
        self._audit("log_import_cancelled", job, reason)
        self._emit("job_cancelled", job)
        logger.info("Job %s cancelled", job_id)
        return job.model_copy(deep=True)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_job_status(self, job_id: str) -> Optional[BatchJob]:
        job = self._jobs.get(job_id)
        if job is not None:
            return job.model_copy(deep=True)
        return self._job_store.get(job_id)

    def _require_job(self, job_id: str) -> BatchJob:
        job = self.get_job_status(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    def list_jobs(
        self, user_id: Optional[str] = None, limit: int = 50, offset: int = 0
    ) -> Tuple[List[BatchJob], int]:
        return self._job_store.list(user_id=user_id, limit=limit, offset=offset)

    async def wait_for_job(self, job_id: str) -> BatchJob:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait({task})
        return self._require_job(job_id)

    def generate_report(self, job_id: str) -> ImportReport:
        return reports.build_report(self._require_job(job_id))

    def export_report(self, job_id: str, fmt: str = "json") -> str:
        return reports.export_report(self.generate_report(job_id), fmt)

    # ------------------------------------------------------------------
    # Rollback on demand
    # ------------------------------------------------------------------

    def check_rollback(self, job_id: str) -> RollbackCheck:
        job = self._require_job(job_id)
        if not job.is_terminal:
            return RollbackCheck(possible=False, reasons=["Le job est encore en cours"])
        if self._backup_sink is None:
            return RollbackCheck(possible=False, reasons=["Aucun gestionnaire de sauvegarde configuré"])
        check = self._backup_sink.validate_rollback_possible(job_id)
        if not check.possible and job.backup_id is None and job.created_ids:
            return RollbackCheck(
                possible=True,
                warnings=["Aucune sauvegarde: seules les entités créées seront supprimées"],
            )
        return check

    async def rollback_job(
        self,
        job_id: str,
        user_id: str,
        reason: str = "manual",
        dry_run: bool = False,
    ) -> RollbackResult:
        job = self._require_job(job_id)
        if not job.is_terminal:
            raise InvalidJobTransitionError(job_id, "rollback", job.status)
        if self._backup_sink is None:
            return RollbackResult(
                success=False,
                job_id=job_id,
                dry_run=dry_run,
                errors=["Aucun gestionnaire de sauvegarde configuré"],
            )
        result = await asyncio.to_thread(
            self._backup_sink.execute_rollback,
            job_id,
            user_id,
            RollbackOptions(reason=reason, dry_run=dry_run, created_entities=list(job.created_ids)),
        )
        if not dry_run:
            self._audit("log_rollback_executed", job_id, user_id, result, reason)
        return result

    # ------------------------------------------------------------------
    # Housekeeping
    # ------------------------------------------------------------------

    def cleanup_old_jobs(self, max_age_hours: Optional[int] = None) -> int:
        hours = self._job_retention_hours if max_age_hours is None else max_age_hours
        cutoff = self._now() - timedelta(hours=hours)
        for job_id, job in list(self._jobs.items()):
            if job.is_terminal and (job.completed_at or job.updated_at) < cutoff:
                del self._jobs[job_id]
                self._controls.pop(job_id, None)
        removed = self._job_store.purge_terminal_before(cutoff)
        if removed:
            logger.info("Removed %d jobs older than %d hours", removed, hours)
        return removed

    def recover_interrupted_jobs(self) -> int:
        """Fail stored jobs that were still running when the previous process stopped."""
        recovered = 0
        offset = 0
        while True:
            jobs, total = self._job_store.list(limit=100, offset=offset)
            for job in jobs:
                if job.id in self._jobs or not is_active(job):
                    continue
                job.errors.append(
                    ValidationIssue(
                        type=ErrorType.SYSTEM,
                        severity=ErrorSeverity.CRITICAL,
                        message="Import interrompu par un redémarrage du service",
                    )
                )
                job.status = JobStatus.FAILED
                job.completed_at = self._now()
                self._persist(job)
                recovered += 1
            offset += len(jobs)
            if not jobs or offset >= total:
                break
        if recovered:
            logger.warning("Marked %d interrupted jobs as failed", recovered)
        return recovered

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
