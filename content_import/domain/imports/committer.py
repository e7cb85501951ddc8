"""
Writes the items of one chunk into storage.

Each item becomes a ``questions`` or ``flashcards`` document. Category names
are resolved to ids by title, creating the category when it does not exist
yet. Storage calls are synchronous, so they run in worker threads while the
event loop keeps at most ``max_concurrency`` of them in flight.

A write, its backup entry and its record in the created list happen in the
same worker thread. A write that outlives a cancelled chunk is therefore
still tracked and can be rolled back.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

from content_import.api.schemas.shared import (
    BackupOperation,
    CreatedEntity,
    ErrorSeverity,
    ErrorType,
    ImportType,
    ItemResult,
    ItemStatus,
    ValidationIssue,
)
from content_import.db.storage import Storage
from content_import.domain.imports.rollback import BackupSink

logger = logging.getLogger(__name__)

CATEGORY_COLLECTION = "categories"


@dataclass
class ChunkCommitResult:
    results: List[ItemResult] = field(default_factory=list)
    errors: List[ValidationIssue] = field(default_factory=list)
    created: List[CreatedEntity] = field(default_factory=list)


class ItemCommitter(Protocol):
    async def commit_chunk(
        self,
        import_type: ImportType,
        items: Sequence[Mapping[str, Any]],
        start_index: int,
        backup_id: Optional[str] = None,
        max_concurrency: int = 3,
        created_sink: Optional[List[CreatedEntity]] = None,
    ) -> ChunkCommitResult: ...


def _option_payload(option: Any) -> Dict[str, Any]:
    if isinstance(option, Mapping):
        return {"text": option.get("text"), "isCorrect": bool(option.get("isCorrect"))}
    return {"text": str(option), "isCorrect": False}


class StorageItemCommitter:
    def __init__(
        self,
        storage: Storage,
        backup_sink: Optional[BackupSink] = None,
        default_category_name: str = "Général",
    ) -> None:
        self._storage = storage
        self._backup_sink = backup_sink
        self._default_category_name = default_category_name

    async def commit_chunk(
        self,
        import_type: ImportType,
        items: Sequence[Mapping[str, Any]],
        start_index: int,
        backup_id: Optional[str] = None,
        max_concurrency: int = 3,
        created_sink: Optional[List[CreatedEntity]] = None,
    ) -> ChunkCommitResult:
        """
        Create every item of a chunk.

        Args:
            import_type: Type of the document the items come from.
            items: Raw items, in source order.
            start_index: Item index of ``items[0]`` within the whole import.
            backup_id: Backup snapshot that receives one entry per created entity.
            max_concurrency: Upper bound on simultaneous storage writes.
            created_sink: List that receives every created entity as soon as it
                is written. When omitted, ``outcome.created`` is used.

        Returns:
            ChunkCommitResult with one ItemResult per item, ordered by item index.
            Per-item failures are reported as ``database/major`` issues.
        """
        semaphore = asyncio.Semaphore(max(1, max_concurrency))
        category_ids: Dict[str, str] = {}
        category_lock = asyncio.Lock()
        outcome = ChunkCommitResult()
        created = outcome.created if created_sink is None else created_sink

        async def _commit(offset: int, item: Mapping[str, Any]) -> None:
            item_index = start_index + offset
            async with semaphore:
                try:
                    category_id = await self._resolve_category(
                        item, import_type, category_ids, category_lock, backup_id, created
                    )
                    collection, payload = self._build_payload(import_type, item, category_id)
                    entity_id = await asyncio.to_thread(
                        self._create_tracked, collection, payload, backup_id, created
                    )
                except Exception as exc:
                    logger.warning("Item %d failed to import: %s", item_index, exc)
                    outcome.results.append(
                        ItemResult(
                            item_index=item_index,
                            status=ItemStatus.ERROR,
                            message=f"Échec de création: {exc}",
                        )
                    )
                    outcome.errors.append(
                        ValidationIssue(
                            type=ErrorType.DATABASE,
                            severity=ErrorSeverity.MAJOR,
                            item_index=item_index,
                            message=f"Erreur lors de la création de l'élément {item_index + 1}: {exc}",
                            suggestion="Vérifiez les données de l'élément",
                        )
                    )
                    return

            outcome.results.append(
                ItemResult(
                    item_index=item_index,
                    status=ItemStatus.SUCCESS,
                    entity_id=entity_id,
                    collection=collection,
                )
            )

        await asyncio.gather(*(_commit(offset, item) for offset, item in enumerate(items)))

        outcome.results.sort(key=lambda r: r.item_index)
        outcome.errors.sort(key=lambda e: e.item_index if e.item_index is not None else -1)
        return outcome

    async def _resolve_category(
        self,
        item: Mapping[str, Any],
        import_type: ImportType,
        cache: Dict[str, str],
        lock: asyncio.Lock,
        backup_id: Optional[str],
        created: List[CreatedEntity],
    ) -> str:
        name = item.get("category") if isinstance(item, Mapping) else None
        if not isinstance(name, str) or not name.strip():
            name = self._default_category_name
        name = name.strip()
        key = name.lower()

        # Serialized so two items of the chunk never create the same category.
        async with lock:
            if key in cache:
                return cache[key]
            category_id = await asyncio.to_thread(self._find_category_id, name)
            if category_id is None:
                level = item.get("level") if import_type != ImportType.FLASHCARDS else None
                payload = {
                    "title": name,
                    "level": level if level in ("PASS", "LAS") else "both",
                    "adaptiveSettings": {"isActive": True, "minimumQuestions": 5, "weight": 1},
                }
                category_id = await asyncio.to_thread(
                    self._create_tracked, CATEGORY_COLLECTION, payload, backup_id, created
                )
                logger.info("Created category '%s' (%s) during import", name, category_id)
            cache[key] = category_id
            return category_id

    def _create_tracked(
        self,
        collection: str,
        payload: Dict[str, Any],
        backup_id: Optional[str],
        created: List[CreatedEntity],
    ) -> str:
        entity_id = self._storage.create(collection, payload)
        created.append(CreatedEntity(collection=collection, id=entity_id))
        if backup_id and self._backup_sink is not None:
            self._backup_sink.backup_entity(
                backup_id,
                collection,
                entity_id,
                BackupOperation.CREATE,
                {**payload, "id": entity_id},
            )
        return entity_id

    def _find_category_id(self, name: str) -> Optional[str]:
        wanted = name.lower()
        for category in self._storage.find(CATEGORY_COLLECTION):
            title = category.get("title") or category.get("name") or ""
            if str(title).strip().lower() == wanted:
                return str(category["id"])
        return None

    @staticmethod
    def _build_payload(
        import_type: ImportType, item: Mapping[str, Any], category_id: str
    ) -> Tuple[str, Dict[str, Any]]:
        if import_type == ImportType.FLASHCARDS:
            return "flashcards", {
                "front": item.get("front"),
                "back": item.get("back"),
                "category": category_id,
                "difficulty": item.get("difficulty") or "medium",
                "level": item.get("level") or "both",
                "tags": list(item.get("tags") or []),
                "hints": list(item.get("hints") or []),
                "source": "json-import",
            }

        payload: Dict[str, Any] = {
            "questionText": item.get("questionText"),
            "options": [_option_payload(option) for option in item.get("options") or []],
            "explanation": item.get("explanation") or "",
            "category": category_id,
            "difficulty": item.get("difficulty") or "medium",
            "level": item.get("level") or "both",
            "tags": list(item.get("tags") or []),
            "source": "json-import",
        }
        step = item.get("learningStep")
        if import_type == ImportType.LEARNING_PATH and isinstance(step, Mapping):
            payload["learning_step"] = {"id": step.get("id"), "title": step.get("title")}
        return "questions", payload
