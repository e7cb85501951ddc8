"""
Tests for import backups and rollback.
"""
from datetime import datetime, timedelta, timezone

import pytest

from content_import.api.schemas.shared import (
    BackupOperation,
    CreatedEntity,
    ImportType,
    RollbackOptions,
)
from content_import.domain.imports.exceptions import BackupNotFoundError
from content_import.domain.imports.rollback import InMemoryBackupStore, compute_document_hash


def _open_backup(backup_store, job_id="job-1"):
    return backup_store.create_pre_import_backup(
        job_id, "user-1", ImportType.QUESTIONS, "questions.json", ["questions", "categories"]
    )


def _create_tracked(storage, backup_store, backup_id, collection, data):
    entity_id = storage.create(collection, data)
    backup_store.backup_entity(
        backup_id, collection, entity_id, BackupOperation.CREATE, {**data, "id": entity_id}
    )
    return entity_id


class TestExecuteRollback:
    def test_undoes_creates_updates_and_deletes(self, storage, backup_store):
        backup_id = _open_backup(backup_store)
        created = _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q1 ?"})

        updated = storage.create("categories", {"title": "Cardio"})
        original = storage.find_by_id("categories", updated)
        storage.update("categories", updated, {"title": "Cardiologie"})
        backup_store.backup_entity(
            backup_id, "categories", updated, BackupOperation.UPDATE, original_data=original
        )

        removed = storage.create("questions", {"questionText": "Ancienne question ?"})
        removed_data = storage.find_by_id("questions", removed)
        storage.delete("questions", removed)
        backup_store.backup_entity(
            backup_id, "questions", removed, BackupOperation.DELETE, original_data=removed_data
        )

        result = backup_store.execute_rollback("job-1", "admin", RollbackOptions(reason="test"))

        assert result.success is True
        assert (result.deleted, result.restored, result.recreated) == (1, 1, 1)
        assert storage.find_by_id("questions", created) is None
        assert storage.find_by_id("categories", updated)["title"] == "Cardio"
        assert storage.find_by_id("questions", removed)["questionText"] == "Ancienne question ?"
        assert backup_store.get_backup(backup_id).status == "rolled_back"

    def test_second_rollback_changes_nothing(self, storage, backup_store):
        backup_id = _open_backup(backup_store)
        _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q1 ?"})

        first = backup_store.execute_rollback("job-1", "admin", RollbackOptions())
        recreated_elsewhere = storage.create("questions", {"questionText": "Q1 ?"})
        second = backup_store.execute_rollback("job-1", "admin", RollbackOptions())

        assert first.deleted == 1
        assert second.deleted == 0
        assert storage.find_by_id("questions", recreated_elsewhere) is not None

    def test_dry_run_counts_without_touching_storage(self, storage, backup_store):
        backup_id = _open_backup(backup_store)
        entity_id = _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q1 ?"})

        result = backup_store.execute_rollback("job-1", "admin", RollbackOptions(dry_run=True))

        assert result.dry_run is True
        assert result.deleted == 1
        assert storage.find_by_id("questions", entity_id) is not None
        assert backup_store.get_backup(backup_id).status == "active"

    def test_created_entities_without_backup_are_deleted_once(self, storage, backup_store):
        entity_id = storage.create("questions", {"questionText": "Q1 ?"})
        options = RollbackOptions(created_entities=[CreatedEntity(collection="questions", id=entity_id)])

        first = backup_store.execute_rollback("job-2", "admin", options)
        second = backup_store.execute_rollback("job-2", "admin", options)

        assert first.deleted == 1
        assert second.deleted == 0
        assert second.success is True

    def test_unknown_job_reports_missing_backup(self, backup_store):
        result = backup_store.execute_rollback("missing", "admin", RollbackOptions())
        assert result.success is False
        assert result.errors

    def test_update_without_original_data_is_an_error(self, storage, backup_store):
        backup_id = _open_backup(backup_store)
        entity_id = storage.create("categories", {"title": "Cardio"})
        backup_store.backup_entity(backup_id, "categories", entity_id, BackupOperation.UPDATE)

        result = backup_store.execute_rollback("job-1", "admin", RollbackOptions())

        assert result.success is False
        assert backup_store.get_backup(backup_id).status == "active"


class TestValidateRollback:
    def test_no_backup(self, backup_store):
        check = backup_store.validate_rollback_possible("missing")
        assert check.possible is False

    def test_warns_about_modified_and_missing_entities(self, storage, backup_store):
        backup_id = _open_backup(backup_store)
        modified = _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q1 ?"})
        missing = _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q2 ?"})
        untouched = _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q3 ?"})
        storage.update("questions", modified, {"questionText": "Q1 modifiée ?"})
        storage.delete("questions", missing)

        check = backup_store.validate_rollback_possible("job-1")

        assert check.possible is True
        assert len(check.warnings) == 2
        assert any(modified in w and "modifié" in w for w in check.warnings)
        assert any(missing in w and "supprimé" in w for w in check.warnings)
        assert not any(untouched in w for w in check.warnings)

    def test_already_rolled_back(self, storage, backup_store):
        backup_id = _open_backup(backup_store)
        _create_tracked(storage, backup_store, backup_id, "questions", {"questionText": "Q1 ?"})
        backup_store.execute_rollback("job-1", "admin", RollbackOptions())

        assert backup_store.validate_rollback_possible("job-1").possible is False


def test_backup_entity_requires_an_open_backup(backup_store):
    with pytest.raises(BackupNotFoundError):
        backup_store.backup_entity("backup_missing", "questions", "q1", BackupOperation.CREATE)


def test_cleanup_old_backups(storage):
    now = [datetime(2026, 1, 1, tzinfo=timezone.utc)]
    backup_store = InMemoryBackupStore(storage, now=lambda: now[0])
    _open_backup(backup_store, "job-old")
    now[0] += timedelta(days=10)
    _open_backup(backup_store, "job-new")

    assert backup_store.cleanup_old_backups(max_age_days=7) == 1
    assert backup_store.get_backup_for_job("job-old") is None
    assert backup_store.get_backup_for_job("job-new") is not None


def test_document_hash_ignores_key_order():
    assert compute_document_hash({"a": 1, "b": 2}) == compute_document_hash({"b": 2, "a": 1})
    assert compute_document_hash(None) is None
