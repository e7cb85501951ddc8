"""
Pytest configuration and fixtures for the content import tests.

Every fixture builds in-memory collaborators, so the suite needs no database
server; SQL-backed stores are exercised against in-memory SQLite.
"""
import pytest
from fastapi.testclient import TestClient

from content_import.api.dependencies import build_services
from content_import.core.config import Settings
from content_import.db.session import build_engine
from content_import.db.storage import InMemoryStorage
from content_import.domain.categories.matcher import CategoryMatcher
from content_import.domain.imports.batch import BatchProcessor
from content_import.domain.imports.committer import StorageItemCommitter
from content_import.domain.imports.history import StorageAuditSink
from content_import.domain.imports.jobs import InMemoryJobStore
from content_import.domain.imports.rollback import InMemoryBackupStore
from content_import.domain.imports.validators import ValidationEngine


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def validator():
    return ValidationEngine()


@pytest.fixture
def backup_store(storage):
    return InMemoryBackupStore(storage)


@pytest.fixture
def audit_sink(storage):
    return StorageAuditSink(storage)


@pytest.fixture
def job_store():
    return InMemoryJobStore()


@pytest.fixture
def committer(storage, backup_store):
    return StorageItemCommitter(storage, backup_sink=backup_store)


@pytest.fixture
def processor(validator, committer, job_store, audit_sink, backup_store):
    """Processor with no inter-chunk delay and no chunk timeout."""
    return BatchProcessor(
        validator,
        committer,
        job_store,
        audit_sink=audit_sink,
        backup_sink=backup_store,
        inter_chunk_delay_seconds=0,
        chunk_timeout_seconds=None,
    )


@pytest.fixture
def matcher(storage):
    return CategoryMatcher(storage)


@pytest.fixture
def sqlite_engine():
    engine = build_engine("sqlite:///:memory:")
    yield engine
    engine.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        _env_file=None,
        storage_backend="memory",
        job_store_backend="memory",
        batch_inter_chunk_delay_seconds=0,
        chunk_timeout_seconds=None,
    )


@pytest.fixture
def services(test_settings):
    return build_services(test_settings)


@pytest.fixture
def client(services):
    from content_import.main import create_app

    with TestClient(create_app(services)) as test_client:
        yield test_client
