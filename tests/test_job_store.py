"""
Tests for job persistence and document storage backends.

SQL-backed classes run against in-memory SQLite, which shares a single
connection through StaticPool.
"""
from datetime import datetime, timedelta, timezone

import pytest

from content_import.api.schemas.shared import (
    BatchJob,
    ImportType,
    JobStatus,
)
from content_import.db.storage import EntityNotFoundError, InMemoryStorage, SqlStorage
from content_import.domain.imports.jobs import InMemoryJobStore, SqlJobStore, is_active

BASE_TIME = datetime(2026, 3, 1, tzinfo=timezone.utc)


def _job(job_id, user_id="user-1", status=JobStatus.PROCESSING, minutes=0):
    created = BASE_TIME + timedelta(minutes=minutes)
    job = BatchJob(
        id=job_id,
        user_id=user_id,
        file_name=f"{job_id}.json",
        import_type=ImportType.QUESTIONS,
        status=status,
        created_at=created,
        updated_at=created,
    )
    if job.is_terminal:
        job.completed_at = created
    return job


@pytest.fixture(params=["memory", "sql"])
def any_job_store(request, sqlite_engine):
    if request.param == "memory":
        return InMemoryJobStore()
    return SqlJobStore(sqlite_engine)


@pytest.fixture(params=["memory", "sql"])
def any_storage(request, sqlite_engine):
    if request.param == "memory":
        return InMemoryStorage()
    return SqlStorage(sqlite_engine)


class TestJobStores:
    def test_save_and_get_round_trip(self, any_job_store):
        job = _job("batch_1")
        job.progress.total = 12
        any_job_store.save(job)

        job.status = JobStatus.COMPLETED
        job.progress.processed = 12
        any_job_store.save(job)

        stored = any_job_store.get("batch_1")
        assert stored.status == JobStatus.COMPLETED
        assert stored.progress.processed == 12
        assert any_job_store.get("missing") is None

    def test_list_filters_and_pages_newest_first(self, any_job_store):
        for minutes, user in enumerate(["user-1", "user-2", "user-1", "user-1"]):
            any_job_store.save(_job(f"batch_{minutes}", user_id=user, minutes=minutes))

        jobs, total = any_job_store.list(user_id="user-1", limit=2)
        assert total == 3
        assert [j.id for j in jobs] == ["batch_3", "batch_2"]

        jobs, total = any_job_store.list(limit=10, offset=3)
        assert total == 4
        assert [j.id for j in jobs] == ["batch_0"]

    def test_purge_only_removes_old_terminal_jobs(self, any_job_store):
        any_job_store.save(_job("old_done", status=JobStatus.COMPLETED))
        any_job_store.save(_job("old_running", status=JobStatus.PROCESSING))
        any_job_store.save(_job("recent_done", status=JobStatus.FAILED, minutes=120))

        removed = any_job_store.purge_terminal_before(BASE_TIME + timedelta(minutes=60))

        assert removed == 1
        assert any_job_store.get("old_done") is None
        assert any_job_store.get("old_running") is not None
        assert any_job_store.get("recent_done") is not None

    def test_delete(self, any_job_store):
        any_job_store.save(_job("batch_1"))
        assert any_job_store.delete("batch_1") is True
        assert any_job_store.delete("batch_1") is False


def test_sql_job_store_recreates_a_dropped_table(sqlite_engine):
    from sqlalchemy import text

    store = SqlJobStore(sqlite_engine)
    store.save(_job("batch_1"))
    with sqlite_engine.begin() as conn:
        conn.execute(text("DROP TABLE import_batch_jobs"))

    store.save(_job("batch_2"))
    assert store.get("batch_2") is not None


@pytest.mark.parametrize(
    "status,active",
    [
        (JobStatus.QUEUED, True),
        (JobStatus.PROCESSING, True),
        (JobStatus.PAUSED, True),
        (JobStatus.COMPLETED, False),
        (JobStatus.CANCELLED, False),
    ],
)
def test_is_active(status, active):
    assert is_active(_job("batch_1", status=status)) is active


class TestStorage:
    def test_crud(self, any_storage):
        entity_id = any_storage.create("categories", {"title": "Cardiologie", "level": "PASS"})

        assert any_storage.find_by_id("categories", entity_id)["title"] == "Cardiologie"
        updated = any_storage.update("categories", entity_id, {"title": "Cardio"})
        assert updated == {"id": entity_id, "title": "Cardio", "level": "PASS"}
        assert any_storage.delete("categories", entity_id) is True
        assert any_storage.delete("categories", entity_id) is False
        assert any_storage.find_by_id("categories", entity_id) is None

    def test_find_by_query_and_limit(self, any_storage):
        for title in ("A", "B", "C"):
            any_storage.create("categories", {"title": title, "level": "PASS" if title != "B" else "LAS"})
        any_storage.create("questions", {"title": "A"})

        assert len(any_storage.find("categories", {"level": "PASS"})) == 2
        assert len(any_storage.find("categories", limit=1)) == 1
        assert len(any_storage.find("questions")) == 1

    def test_explicit_id_is_kept(self, any_storage):
        assert any_storage.create("questions", {"id": "q-1", "questionText": "Q ?"}) == "q-1"

    def test_update_missing_entity_raises(self, any_storage):
        with pytest.raises(EntityNotFoundError):
            any_storage.update("categories", "missing", {"title": "x"})

    def test_returned_documents_are_copies(self):
        storage = InMemoryStorage()
        entity_id = storage.create("categories", {"title": "Cardiologie", "tags": ["a"]})
        storage.find_by_id("categories", entity_id)["tags"].append("b")
        assert storage.find_by_id("categories", entity_id)["tags"] == ["a"]
