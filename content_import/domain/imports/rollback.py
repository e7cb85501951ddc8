"""
Backups and rollback of import jobs.

This module provides the ability to:
- Open a backup snapshot before a job writes anything
- Record every entity the job creates, updates or deletes
- Roll a job back by undoing those operations in reverse order
- Detect entities modified since the import before rolling back

Each entry is stamped ``rolled_back_at`` once undone, so running a rollback
twice never deletes anything a second time.
"""
import hashlib
import json
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

from content_import.api.schemas.shared import (
    BackupEntry,
    BackupOperation,
    BackupSnapshot,
    ImportType,
    RollbackCheck,
    RollbackOptions,
    RollbackResult,
)
from content_import.db.storage import EntityNotFoundError, Storage
from content_import.domain.imports.exceptions import BackupNotFoundError

logger = logging.getLogger(__name__)


class BackupSink(Protocol):
    def create_pre_import_backup(
        self,
        job_id: str,
        user_id: str,
        import_type: ImportType,
        file_name: str,
        affected_collections: Sequence[str],
    ) -> str: ...

    def backup_entity(
        self,
        backup_id: str,
        collection: str,
        entity_id: str,
        operation: BackupOperation,
        current_data: Optional[Dict[str, Any]] = None,
        original_data: Optional[Dict[str, Any]] = None,
    ) -> None: ...

    def execute_rollback(self, job_id: str, user_id: str, options: RollbackOptions) -> RollbackResult: ...

    def validate_rollback_possible(self, job_id: str) -> RollbackCheck: ...


def compute_document_hash(document: Optional[Dict[str, Any]]) -> Optional[str]:
    """SHA-256 over the sorted document, used to spot edits made after the import."""
    if document is None:
        return None
    json_str = json.dumps(sorted(document.items()), sort_keys=True, default=str)
    return hashlib.sha256(json_str.encode()).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryBackupStore:
    def __init__(self, storage: Storage, now: Callable[[], datetime] = _utcnow) -> None:
        self._storage = storage
        self._now = now
        self._snapshots: Dict[str, BackupSnapshot] = {}
        self._by_job: Dict[str, str] = {}
        # Entities deleted for a job without a snapshot entry.
        self._undone_refs: Dict[str, Set[Tuple[str, str]]] = {}
        self._lock = threading.RLock()

    def create_pre_import_backup(
        self,
        job_id: str,
        user_id: str,
        import_type: ImportType,
        file_name: str,
        affected_collections: Sequence[str],
    ) -> str:
        backup_id = f"backup_{job_id}_{int(self._now().timestamp() * 1000)}"
        snapshot = BackupSnapshot(
            id=backup_id,
            job_id=job_id,
            user_id=user_id,
            import_type=import_type,
            file_name=file_name,
            affected_collections=list(affected_collections),
            created_at=self._now(),
        )
        with self._lock:
            self._snapshots[backup_id] = snapshot
            self._by_job[job_id] = backup_id
        logger.info("Created backup %s for job %s (%s)", backup_id, job_id, ", ".join(affected_collections))
        return backup_id

    def backup_entity(
        self,
        backup_id: str,
        collection: str,
        entity_id: str,
        operation: BackupOperation,
        current_data: Optional[Dict[str, Any]] = None,
        original_data: Optional[Dict[str, Any]] = None,
    ) -> None:
        with self._lock:
            snapshot = self._snapshots.get(backup_id)
            if snapshot is None:
                raise BackupNotFoundError(backup_id)
            snapshot.entries.append(
                BackupEntry(
                    collection=collection,
                    entity_id=entity_id,
                    operation=BackupOperation(operation),
                    current_data=current_data,
                    original_data=original_data,
                    recorded_at=self._now(),
                )
            )

    def get_backup(self, backup_id: str) -> Optional[BackupSnapshot]:
        with self._lock:
            snapshot = self._snapshots.get(backup_id)
            return snapshot.model_copy(deep=True) if snapshot else None

    def get_backup_for_job(self, job_id: str) -> Optional[BackupSnapshot]:
        with self._lock:
            backup_id = self._by_job.get(job_id)
        return self.get_backup(backup_id) if backup_id else None

    def validate_rollback_possible(self, job_id: str) -> RollbackCheck:
        with self._lock:
            backup_id = self._by_job.get(job_id)
            snapshot = self._snapshots.get(backup_id) if backup_id else None
            entries = list(snapshot.entries) if snapshot else []
            status = snapshot.status if snapshot else None

        if snapshot is None:
            return RollbackCheck(possible=False, reasons=["Aucune sauvegarde trouvée pour ce job"])
        if status == "rolled_back":
            return RollbackCheck(possible=False, reasons=["Ce job a déjà été annulé"])

        warnings: List[str] = []
        for entry in entries:
            if entry.rolled_back_at is not None or entry.operation != BackupOperation.CREATE:
                continue
            current = self._storage.find_by_id(entry.collection, entry.entity_id)
            if current is None:
                warnings.append(f"{entry.collection}/{entry.entity_id} a déjà été supprimé")
            elif entry.current_data is not None and (
                compute_document_hash(current) != compute_document_hash(entry.current_data)
            ):
                warnings.append(f"{entry.collection}/{entry.entity_id} a été modifié depuis l'import")
        return RollbackCheck(possible=True, warnings=warnings)

    def execute_rollback(self, job_id: str, user_id: str, options: RollbackOptions) -> RollbackResult:
        """
        Undo every operation recorded for a job, newest first.

        Args:
            job_id: Job to roll back.
            user_id: User requesting the rollback (logged).
            options: Reason, dry-run flag, and created entities to delete when the
                snapshot does not already cover them.

        Returns:
            RollbackResult with per-operation counts. Failures are reported in
            ``errors`` rather than raised.
        """
        with self._lock:
            backup_id = self._by_job.get(job_id)
            snapshot = self._snapshots.get(backup_id) if backup_id else None
            entries = [e for e in snapshot.entries if e.rolled_back_at is None] if snapshot else []
            covered = {(e.collection, e.entity_id) for e in snapshot.entries} if snapshot else set()
            undone = self._undone_refs.setdefault(job_id, set())
            extras = [
                ref for ref in options.created_entities
                if (ref.collection, ref.id) not in covered and (ref.collection, ref.id) not in undone
            ]
            already_done = snapshot is not None and snapshot.status == "rolled_back"

        result = RollbackResult(success=True, job_id=job_id, backup_id=backup_id, dry_run=options.dry_run)
        if snapshot is None and not options.created_entities and not undone:
            result.success = False
            result.errors.append("Aucune sauvegarde trouvée pour ce job")
            return result
        if already_done and not extras:
            logger.info("Rollback of job %s skipped: already rolled back", job_id)
            return result

        for entry in reversed(entries):
            self._undo_entry(entry, result, options.dry_run)

        for ref in reversed(extras):
            if options.dry_run:
                result.deleted += 1
                continue
            try:
                if self._storage.delete(ref.collection, ref.id):
                    result.deleted += 1
                else:
                    result.skipped += 1
                with self._lock:
                    undone.add((ref.collection, ref.id))
            except Exception as exc:
                result.errors.append(f"Suppression de {ref.collection}/{ref.id} impossible: {exc}")

        result.success = not result.errors
        if not options.dry_run and snapshot is not None:
            with self._lock:
                if all(e.rolled_back_at is not None for e in snapshot.entries):
                    snapshot.status = "rolled_back"

        logger.info(
            "Rollback of job %s by %s (%s)%s: deleted=%d restored=%d recreated=%d skipped=%d errors=%d",
            job_id,
            user_id,
            options.reason,
            " [dry run]" if options.dry_run else "",
            result.deleted,
            result.restored,
            result.recreated,
            result.skipped,
            len(result.errors),
        )
        return result

    def _undo_entry(self, entry: BackupEntry, result: RollbackResult, dry_run: bool) -> None:
        ref = f"{entry.collection}/{entry.entity_id}"
        try:
            if entry.operation == BackupOperation.CREATE:
                if dry_run:
                    result.deleted += 1
                    return
                if self._storage.delete(entry.collection, entry.entity_id):
                    result.deleted += 1
                else:
                    result.skipped += 1
            elif entry.operation == BackupOperation.UPDATE:
                if entry.original_data is None:
                    result.errors.append(f"Données d'origine manquantes pour {ref}")
                    return
                if not dry_run:
                    self._storage.update(entry.collection, entry.entity_id, entry.original_data)
                result.restored += 1
            else:
                if entry.original_data is None:
                    result.errors.append(f"Données d'origine manquantes pour {ref}")
                    return
                if not dry_run:
                    self._storage.create(entry.collection, {**entry.original_data, "id": entry.entity_id})
                result.recreated += 1
        except EntityNotFoundError:
            result.skipped += 1
        except Exception as exc:
            result.errors.append(f"Échec de l'annulation de {ref}: {exc}")
            return

        if not dry_run:
            with self._lock:
                entry.rolled_back_at = self._now()

    def cleanup_old_backups(self, max_age_days: int = 7) -> int:
        cutoff = self._now() - timedelta(days=max_age_days)
        with self._lock:
            expired = [bid for bid, snap in self._snapshots.items() if snap.created_at < cutoff]
            for backup_id in expired:
                snapshot = self._snapshots.pop(backup_id)
                if self._by_job.get(snapshot.job_id) == backup_id:
                    del self._by_job[snapshot.job_id]
        if expired:
            logger.info("Removed %d backups older than %d days", len(expired), max_age_days)
        return len(expired)
