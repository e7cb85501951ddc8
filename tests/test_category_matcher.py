"""
Tests for category analysis, clustering, mapping decisions and history.
"""
import pytest

from content_import.api.schemas.shared import HistoryAction, MappingAction
from content_import.domain.categories.matcher import CATEGORY_COLLECTION, CategoryMatcher
from content_import.domain.imports.exceptions import CategoryNotFoundError
from tests.utils.documents import make_question, make_questions_document


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def _seed(storage, *titles):
    return {title: storage.create(CATEGORY_COLLECTION, {"title": title}) for title in titles}


def _document(*categories):
    return {
        "version": "1.0",
        "type": "questions",
        "questions": [make_question(f"Question {i} ?", category=c) for i, c in enumerate(categories)],
    }


class TestAnalyzeCategory:
    def test_exact_match_maps_with_full_confidence(self, storage, matcher):
        ids = _seed(storage, "Cardiologie")
        analysis = matcher.analyze_category("  cardiologie ", "user-1")
        assert analysis.recommended_action == MappingAction.MAP
        assert analysis.confidence == 1.0
        assert analysis.suggestions[0].category_id == ids["Cardiologie"]
        assert analysis.suggestions[0].reason == "exact"

    def test_medical_domain_abbreviation_maps(self, storage, matcher):
        _seed(storage, "Cardiologie", "Neurologie")
        analysis = matcher.analyze_category("cardio", "user-1")

        assert analysis.recommended_action == MappingAction.MAP
        assert analysis.confidence == pytest.approx(6 / 11 + 0.3)
        best = analysis.suggestions[0]
        assert best.category_name == "Cardiologie"
        assert best.reason == "medical_domain"
        assert all(s.reason != "exact" for s in analysis.suggestions)

    def test_unrelated_name_recommends_create(self, storage, matcher):
        _seed(storage, "Cardiologie")
        analysis = matcher.analyze_category("Histoire de la médecine", "user-1")
        assert analysis.recommended_action == MappingAction.CREATE
        assert analysis.confidence == 0.5

    def test_suggestions_are_capped_and_sorted(self, storage, matcher):
        _seed(storage, *[f"Anatomie {suffix}" for suffix in "ABCDEFG"])
        analysis = matcher.analyze_category("Anatomie", "user-1")
        scores = [s.similarity for s in analysis.suggestions]
        assert len(scores) == 5
        assert scores == sorted(scores, reverse=True)
        assert len({s.category_name for s in analysis.suggestions}) == 5


class TestClusters:
    def test_near_duplicate_names_merge(self, matcher):
        analyses = matcher.analyze(_document("Cardiologie", "Cardiologies"), "user-1")

        assert [a.original_name for a in analyses] == ["Cardiologie", "Cardiologies"]
        assert all(a.recommended_action == MappingAction.MERGE for a in analyses)
        assert analyses[0].cluster.members == ["Cardiologie", "Cardiologies"]
        assert analyses[0].cluster.canonical_name == "Cardiologie"

        mappings = CategoryMatcher.to_category_mappings(analyses)
        assert {m.suggested_name for m in mappings} == {"Cardiologie"}

    def test_distinct_names_do_not_cluster(self, matcher):
        assert matcher.detect_clusters(["Cardiologie", "Pneumologie", "Anatomie"]) == []


class TestMappingHistory:
    def test_applied_mapping_is_suggested_first_next_time(self, storage, matcher):
        ids = _seed(storage, "Cardiologie", "Pneumologie")
        matcher.apply_mapping("Cardiologie", ids["Pneumologie"], "user-1", manual_override=True)

        analysis = matcher.analyze_category("cardiologie", "user-1")
        assert analysis.suggestions[0].category_id == ids["Pneumologie"]
        assert analysis.suggestions[0].reason == "history"

        other_user = matcher.analyze_category("cardiologie", "user-2")
        assert other_user.suggestions[0].category_id == ids["Cardiologie"]

    def test_confidence_follows_the_pinned_mapping_over_an_exact_match(self, storage, matcher):
        ids = _seed(storage, "Cardiologie", "Pneumologie")
        matcher.apply_mapping("Cardiologie", ids["Pneumologie"], "user-1")

        analysis = matcher.analyze_category("Cardiologie", "user-1")
        assert analysis.suggestions[0].category_id == ids["Pneumologie"]
        assert analysis.confidence == pytest.approx(0.8)

        mapping = CategoryMatcher.to_category_mappings([analysis])[0]
        assert mapping.suggested_name == "Pneumologie"
        assert mapping.confidence == pytest.approx(0.8)

    def test_most_recent_decision_wins(self, storage, matcher):
        ids = _seed(storage, "Cardiologie", "Neurologie")
        matcher.apply_mapping("cardio", ids["Cardiologie"], "user-1")
        matcher.apply_mapping("CARDIO", ids["Neurologie"], "user-1")
        assert matcher.find_historical_mapping("Cardio", "user-1").mapped_category_id == ids["Neurologie"]

    def test_apply_mapping_to_unknown_category_raises(self, matcher):
        with pytest.raises(CategoryNotFoundError):
            matcher.apply_mapping("cardio", "missing", "user-1")

    def test_create_new_category_invalidates_cache(self, storage):
        clock = FakeClock()
        matcher = CategoryMatcher(storage, cache_ttl_seconds=300, clock=clock)
        assert matcher.get_existing_categories() == []

        record = matcher.create_new_category("Immunologie", "user-1", level="LAS")

        assert record.action == HistoryAction.CREATED
        titles = [c["title"] for c in matcher.get_existing_categories()]
        assert titles == ["Immunologie"]
        assert storage.find_by_id(CATEGORY_COLLECTION, record.mapped_category_id)["level"] == "LAS"

    def test_cache_expires_after_ttl(self, storage):
        clock = FakeClock()
        matcher = CategoryMatcher(storage, cache_ttl_seconds=300, clock=clock)
        matcher.get_existing_categories()
        _seed(storage, "Anatomie")

        assert matcher.get_existing_categories() == []
        clock.now += 301
        assert len(matcher.get_existing_categories()) == 1

    def test_record_merge_and_statistics(self, storage, matcher):
        ids = _seed(storage, "Cardiologie")
        matcher.record_merge(["cardio", "Cardiologies"], ids["Cardiologie"], "user-1", import_session_id="job-1")
        matcher.apply_mapping("coeur", ids["Cardiologie"], "user-2")

        stats = matcher.get_mapping_statistics()
        assert stats.total_mappings == 3
        assert stats.merged == 2
        assert stats.mapped == 1
        assert stats.unique_users == 2
        assert stats.top_categories[0] == {"category": "Cardiologie", "count": 3}

        history = matcher.get_user_mapping_history("user-1", limit=1)
        assert len(history) == 1
        assert history[0].import_session_id == "job-1"


def test_analyze_reads_flashcard_metadata_category(matcher):
    document = {
        "type": "flashcards",
        "metadata": {"category": "Anatomie"},
        "cards": [{"front": "Aorte", "back": "Artère", "category": "Physiologie"}],
    }
    names = [a.original_name for a in matcher.analyze(document, "user-1")]
    assert names == ["Anatomie", "Physiologie"]


def test_analyze_uses_one_entry_per_name(matcher):
    analyses = matcher.analyze(make_questions_document(5, category="Neurologie"), "user-1")
    assert len(analyses) == 1
