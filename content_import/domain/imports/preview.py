"""
Pre-import preview: validation, category reconciliation and a sample of items.
"""
import logging
from typing import Any, Dict, List, Mapping

from content_import.api.schemas.shared import (
    ErrorSeverity,
    ImportPreview,
    SampleItem,
    ValidationResult,
)
from content_import.domain.categories.matcher import CategoryMatcher
from content_import.domain.imports.documents import extract_items
from content_import.domain.imports.validators import ValidationEngine

logger = logging.getLogger(__name__)

MAX_SAMPLE_ITEMS = 10
_ATTENTION_SEVERITIES = {ErrorSeverity.CRITICAL, ErrorSeverity.MAJOR}


def estimate_import_seconds(item_count: int) -> float:
    return max(30.0, item_count * 0.5 + 10)


def _sample_items(items: List[Any], validation: ValidationResult) -> List[SampleItem]:
    samples = []
    for index, item in enumerate(items[:MAX_SAMPLE_ITEMS]):
        issues = [
            issue
            for issue in validation.errors + validation.warnings
            if issue.item_index == index
        ]
        samples.append(
            SampleItem(
                index=index,
                item=dict(item) if isinstance(item, Mapping) else {"value": item},
                issues=issues,
                requires_attention=any(i.severity in _ATTENTION_SEVERITIES for i in issues),
            )
        )
    return samples


def build_import_preview(
    document: Dict[str, Any],
    user_id: str,
    validator: ValidationEngine,
    matcher: CategoryMatcher,
) -> ImportPreview:
    """
    Summarize what an import would do without writing anything.

    Category analysis is skipped when the document has critical issues, since
    its item list cannot be trusted.
    """
    validation = validator.validate(document)
    analyses = [] if validation.has_critical_errors else matcher.analyze(document, user_id)
    items = extract_items(document) if isinstance(document, Mapping) else []

    preview = ImportPreview(
        validation=validation,
        category_mappings=CategoryMatcher.to_category_mappings(analyses),
        category_analyses=analyses,
        sample_items=_sample_items(items, validation),
        estimated_import_seconds=estimate_import_seconds(len(items)),
    )
    logger.info(
        "Built preview for user %s: %d items, %d categories, valid=%s",
        user_id,
        len(items),
        len(analyses),
        validation.is_valid,
    )
    return preview
