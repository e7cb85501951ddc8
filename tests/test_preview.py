import pytest

from content_import.api.schemas.shared import MappingAction
from content_import.domain.imports.preview import (
    MAX_SAMPLE_ITEMS,
    build_import_preview,
    estimate_import_seconds,
)
from tests.utils.documents import make_question, make_questions_document


@pytest.mark.parametrize("count,expected", [(0, 30.0), (40, 30.0), (100, 60.0)])
def test_estimate_import_seconds(count, expected):
    assert estimate_import_seconds(count) == expected


def test_preview_samples_and_maps_categories(storage, validator, matcher):
    storage.create("categories", {"title": "Cardiologie"})
    document = make_questions_document(15)
    document["questions"][2] = make_question("Q ?", option_count=1)

    preview = build_import_preview(document, "user-1", validator, matcher)

    assert len(preview.sample_items) == MAX_SAMPLE_ITEMS
    flagged = [sample.index for sample in preview.sample_items if sample.requires_attention]
    assert flagged == [2]
    assert preview.category_mappings[0].original_name == "Cardiologie"
    assert preview.category_analyses[0].recommended_action == MappingAction.MAP
    assert preview.estimated_import_seconds == 30.0
    assert len(storage.find("questions")) == 0


def test_preview_skips_category_analysis_on_critical_errors(validator, matcher):
    document = {"version": "1.0", "type": "questions", "questions": []}
    preview = build_import_preview(document, "user-1", validator, matcher)

    assert preview.validation.has_critical_errors
    assert preview.category_analyses == []
    assert preview.sample_items == []
