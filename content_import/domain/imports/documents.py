"""
Accessors over parsed import documents.

Documents stay plain mappings (``{version, type, metadata, questions | cards |
path}``); these helpers give every other module one flat view of the items.
Learning-path questions are flattened in step order, so the item index of a
step question is its position across the whole path.
"""
from typing import Any, Dict, List, Mapping, Optional

from content_import.api.schemas.shared import ImportType

ITEM_COLLECTIONS = {
    ImportType.QUESTIONS: "questions",
    ImportType.FLASHCARDS: "flashcards",
    ImportType.LEARNING_PATH: "questions",
}


def resolve_import_type(document: Any) -> Optional[ImportType]:
    if not isinstance(document, Mapping):
        return None
    try:
        return ImportType(document.get("type"))
    except ValueError:
        return None


def _path_steps(document: Mapping[str, Any]) -> List[Any]:
    path = document.get("path")
    if not isinstance(path, Mapping):
        return []
    steps = path.get("steps")
    return steps if isinstance(steps, list) else []


def extract_items(document: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """Return the ordered item list for the document's type."""
    import_type = resolve_import_type(document)
    if import_type == ImportType.QUESTIONS:
        items = document.get("questions")
        return list(items) if isinstance(items, list) else []
    if import_type == ImportType.FLASHCARDS:
        items = document.get("cards")
        return list(items) if isinstance(items, list) else []
    if import_type == ImportType.LEARNING_PATH:
        flattened: List[Dict[str, Any]] = []
        for step in _path_steps(document):
            if not isinstance(step, Mapping):
                continue
            questions = step.get("questions")
            if not isinstance(questions, list):
                continue
            for question in questions:
                if isinstance(question, Mapping):
                    entry = dict(question)
                    entry["learningStep"] = {"id": step.get("id"), "title": step.get("title")}
                    flattened.append(entry)
                else:
                    flattened.append(question)
        return flattened
    return []


def count_items(document: Mapping[str, Any]) -> int:
    return len(extract_items(document))


def iter_category_names(document: Mapping[str, Any]) -> List[str]:
    """Unique category names referenced by the document, in first-seen order."""
    names: List[str] = []
    seen = set()

    def _add(value: Any) -> None:
        if isinstance(value, str) and value.strip() and value not in seen:
            seen.add(value)
            names.append(value)

    if resolve_import_type(document) == ImportType.FLASHCARDS:
        metadata = document.get("metadata")
        if isinstance(metadata, Mapping):
            _add(metadata.get("category"))

    for item in extract_items(document):
        if isinstance(item, Mapping):
            _add(item.get("category"))
    return names
