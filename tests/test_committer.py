import pytest

from content_import.api.schemas.shared import (
    BackupOperation,
    ErrorSeverity,
    ErrorType,
    ImportType,
    ItemStatus,
)
from content_import.db.storage import InMemoryStorage
from content_import.domain.imports.committer import StorageItemCommitter
from tests.utils.documents import make_question


class FlakyStorage(InMemoryStorage):
    """Rejects questions whose text contains 'boom'."""

    def create(self, collection, data):
        if collection == "questions" and "boom" in (data.get("questionText") or ""):
            raise RuntimeError("duplicate key")
        return super().create(collection, data)


@pytest.mark.asyncio
async def test_existing_category_is_reused_case_insensitively(storage, committer):
    category_id = storage.create("categories", {"title": "Cardiologie"})

    outcome = await committer.commit_chunk(
        ImportType.QUESTIONS,
        [make_question("Q1 ?", category="cardiologie"), make_question("Q2 ?", category=" CARDIOLOGIE ")],
        start_index=0,
    )

    assert len(storage.find("categories")) == 1
    assert {q["category"] for q in storage.find("questions")} == {category_id}
    assert [entity.collection for entity in outcome.created] == ["questions", "questions"]


@pytest.mark.asyncio
async def test_missing_categories_are_created_once_per_name(storage, committer):
    items = [make_question(f"Q{i} ?", category="Neurologie") for i in range(6)]
    items.append(make_question("Sans catégorie ?", category=None, level="LAS"))

    outcome = await committer.commit_chunk(ImportType.QUESTIONS, items, start_index=0, max_concurrency=4)

    categories = {c["title"]: c for c in storage.find("categories")}
    assert sorted(categories) == ["Général", "Neurologie"]
    assert categories["Neurologie"]["level"] == "PASS"
    assert categories["Général"]["level"] == "LAS"
    assert sum(1 for e in outcome.created if e.collection == "categories") == 2


@pytest.mark.asyncio
async def test_item_failures_become_database_issues():
    storage = FlakyStorage()
    committer = StorageItemCommitter(storage)
    items = [make_question("Q1 ?"), make_question("boom ?"), make_question("Q3 ?")]

    outcome = await committer.commit_chunk(ImportType.QUESTIONS, items, start_index=100)

    assert [r.item_index for r in outcome.results] == [100, 101, 102]
    assert [r.status for r in outcome.results] == [ItemStatus.SUCCESS, ItemStatus.ERROR, ItemStatus.SUCCESS]
    assert len(outcome.errors) == 1
    issue = outcome.errors[0]
    assert issue.type == ErrorType.DATABASE
    assert issue.severity == ErrorSeverity.MAJOR
    assert issue.message.startswith("Erreur lors de la création de l'élément 102")
    assert len(storage.find("questions")) == 2


@pytest.mark.asyncio
async def test_created_entities_are_recorded_in_the_backup(storage, backup_store):
    committer = StorageItemCommitter(storage, backup_sink=backup_store, default_category_name="Général")
    backup_id = backup_store.create_pre_import_backup(
        "job-1", "user-1", ImportType.FLASHCARDS, "cards.json", ["flashcards", "categories"]
    )

    outcome = await committer.commit_chunk(
        ImportType.FLASHCARDS,
        [{"front": "Aorte", "back": "Artère"}, {"front": "Veine", "back": "Vaisseau", "category": "Anatomie"}],
        start_index=0,
        backup_id=backup_id,
        max_concurrency=2,
    )

    assert [r.item_index for r in outcome.results] == [0, 1]
    assert sorted(c["title"] for c in storage.find("categories")) == ["Anatomie", "Général"]
    entries = backup_store.get_backup(backup_id).entries
    assert len(entries) == 4
    assert all(entry.operation == BackupOperation.CREATE for entry in entries)

    card = storage.find("flashcards", {"front": "Aorte"})[0]
    assert card["source"] == "json-import"
    assert card["difficulty"] == "medium"


@pytest.mark.asyncio
async def test_options_are_normalized(storage, committer):
    question = make_question("Q ?")
    question["options"].append("Réponse libre")

    await committer.commit_chunk(ImportType.QUESTIONS, [question], start_index=0)

    stored = storage.find("questions")[0]
    assert stored["options"][-1] == {"text": "Réponse libre", "isCorrect": False}
    assert stored["options"][0]["isCorrect"] is True
