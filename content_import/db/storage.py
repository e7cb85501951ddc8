"""
Document storage used by the importer.

The importer only needs a narrow CRUD contract over named collections
(``categories``, ``questions``, ``flashcards``, ``audit_logs``). Two
implementations are provided: an in-process store for tests and local runs,
and a SQL store keeping every document as JSON text in one table.
"""
from __future__ import annotations

import copy
import json
import logging
import threading
import uuid
from typing import Any, Dict, List, Mapping, Optional, Protocol

from sqlalchemy import text
from sqlalchemy.engine import Engine

from content_import.utils.serialization import _make_json_safe

logger = logging.getLogger(__name__)


class Storage(Protocol):
    def create(self, collection: str, data: Mapping[str, Any]) -> str: ...

    def update(self, collection: str, entity_id: str, data: Mapping[str, Any]) -> Dict[str, Any]: ...

    def delete(self, collection: str, entity_id: str) -> bool: ...

    def find(
        self,
        collection: str,
        query: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]: ...

    def find_by_id(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]: ...


class EntityNotFoundError(LookupError):
    def __init__(self, collection: str, entity_id: str):
        self.collection = collection
        self.entity_id = entity_id
        super().__init__(f"{collection}/{entity_id} not found")


def _matches(document: Mapping[str, Any], query: Optional[Mapping[str, Any]]) -> bool:
    if not query:
        return True
    return all(document.get(key) == value for key, value in query.items())


class InMemoryStorage:
    """Thread-safe dictionary store; documents are copied on the way in and out."""

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.Lock()

    def create(self, collection: str, data: Mapping[str, Any]) -> str:
        with self._lock:
            entity_id = str(data.get("id") or uuid.uuid4())
            document = copy.deepcopy(dict(data))
            document["id"] = entity_id
            self._collections.setdefault(collection, {})[entity_id] = document
            return entity_id

    def update(self, collection: str, entity_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        with self._lock:
            documents = self._collections.get(collection, {})
            if entity_id not in documents:
                raise EntityNotFoundError(collection, entity_id)
            documents[entity_id].update(copy.deepcopy(dict(data)))
            documents[entity_id]["id"] = entity_id
            return copy.deepcopy(documents[entity_id])

    def delete(self, collection: str, entity_id: str) -> bool:
        with self._lock:
            return self._collections.get(collection, {}).pop(entity_id, None) is not None

    def find(
        self,
        collection: str,
        query: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        with self._lock:
            matches = [
                copy.deepcopy(doc)
                for doc in self._collections.get(collection, {}).values()
                if _matches(doc, query)
            ]
        return matches[:limit] if limit is not None else matches

    def find_by_id(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._collections.get(collection, {}).get(entity_id)
            return copy.deepcopy(document) if document is not None else None


class SqlStorage:
    """Documents stored as JSON text in a single ``documents`` table."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine
        self._table_initialized = False
        self._table_init_lock = threading.Lock()

    def ensure_table(self) -> None:
        if self._table_initialized:
            return
        with self._table_init_lock:
            if self._table_initialized:
                return
            with self._engine.begin() as conn:
                conn.execute(text("""
                    CREATE TABLE IF NOT EXISTS documents (
                        collection VARCHAR(100) NOT NULL,
                        id VARCHAR(64) NOT NULL,
                        data TEXT NOT NULL,
                        created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                        PRIMARY KEY (collection, id)
                    )
                """))
            self._table_initialized = True

    def create(self, collection: str, data: Mapping[str, Any]) -> str:
        self.ensure_table()
        entity_id = str(data.get("id") or uuid.uuid4())
        document = _make_json_safe(dict(data))
        document["id"] = entity_id
        with self._engine.begin() as conn:
            conn.execute(
                text("INSERT INTO documents (collection, id, data) VALUES (:collection, :id, :data)"),
                {"collection": collection, "id": entity_id, "data": json.dumps(document)},
            )
        return entity_id

    def update(self, collection: str, entity_id: str, data: Mapping[str, Any]) -> Dict[str, Any]:
        current = self.find_by_id(collection, entity_id)
        if current is None:
            raise EntityNotFoundError(collection, entity_id)
        current.update(_make_json_safe(dict(data)))
        current["id"] = entity_id
        with self._engine.begin() as conn:
            conn.execute(
                text("UPDATE documents SET data = :data WHERE collection = :collection AND id = :id"),
                {"collection": collection, "id": entity_id, "data": json.dumps(current)},
            )
        return current

    def delete(self, collection: str, entity_id: str) -> bool:
        self.ensure_table()
        with self._engine.begin() as conn:
            result = conn.execute(
                text("DELETE FROM documents WHERE collection = :collection AND id = :id"),
                {"collection": collection, "id": entity_id},
            )
        return (result.rowcount or 0) > 0

    def find(
        self,
        collection: str,
        query: Optional[Mapping[str, Any]] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        self.ensure_table()
        with self._engine.connect() as conn:
            rows = conn.execute(
                text("SELECT data FROM documents WHERE collection = :collection ORDER BY created_at, id"),
                {"collection": collection},
            ).fetchall()
        documents = [json.loads(row[0]) for row in rows]
        matches = [doc for doc in documents if _matches(doc, query)]
        return matches[:limit] if limit is not None else matches

    def find_by_id(self, collection: str, entity_id: str) -> Optional[Dict[str, Any]]:
        self.ensure_table()
        with self._engine.connect() as conn:
            row = conn.execute(
                text("SELECT data FROM documents WHERE collection = :collection AND id = :id"),
                {"collection": collection, "id": entity_id},
            ).fetchone()
        return json.loads(row[0]) if row else None
