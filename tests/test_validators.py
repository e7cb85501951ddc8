"""
Tests for the import document validation engine.

This module covers:
- Structural checks (version, type, empty item arrays)
- Question, flashcard and learning-path rules
- Duplicate detection and summary counters
- The is_valid rule for mapping issues versus other major/minor issues
"""
import pytest

from content_import.api.schemas.shared import ErrorSeverity, ErrorType
from content_import.domain.imports.validators import (
    MULTIPLE_CORRECT_MESSAGE,
    NO_CORRECT_MESSAGE,
    ValidationEngine,
    validate_import_document,
)
from tests.utils.documents import (
    make_flashcards_document,
    make_learning_path_document,
    make_question,
    make_questions_document,
    make_step,
)


@pytest.fixture
def engine():
    return ValidationEngine()


def _severities(result, issue_type=None):
    return [e.severity for e in result.errors if issue_type is None or e.type == issue_type]


class TestStructure:
    def test_valid_questions_document(self, engine):
        result = engine.validate(make_questions_document(3))
        assert result.is_valid is True
        assert result.errors == []
        assert result.summary.total_items == 3
        assert result.summary.valid_items == 3

    def test_missing_version_is_only_a_warning(self, engine):
        document = make_questions_document(1)
        del document["version"]
        result = engine.validate(document)
        assert result.is_valid is True
        assert any(w.field == "version" for w in result.warnings)

    @pytest.mark.parametrize("doc_type", [None, "quiz", 42])
    def test_unknown_type_is_critical(self, engine, doc_type):
        document = make_questions_document(1)
        document["type"] = doc_type
        result = engine.validate(document)
        assert result.is_valid is False
        assert result.has_critical_errors
        assert result.errors[0].field == "type"

    def test_non_mapping_document_is_critical(self, engine):
        result = engine.validate(["not", "a", "document"])
        assert result.is_valid is False
        assert _severities(result) == [ErrorSeverity.CRITICAL]

    @pytest.mark.parametrize(
        "document",
        [
            {"version": "1.0", "type": "questions", "questions": []},
            {"version": "1.0", "type": "flashcards", "cards": []},
            {"version": "1.0", "type": "learning-path", "path": {"steps": []}},
            make_learning_path_document([make_step("s1", questions=[])]),
        ],
    )
    def test_empty_item_set_is_critical(self, engine, document):
        result = engine.validate(document)
        assert result.is_valid is False
        assert result.has_critical_errors


class TestQuestions:
    def test_multiple_correct_answers_is_major_and_invalid(self, engine):
        question = make_question("Quelle est la bonne réponse ?")
        question["options"] = [{"text": "A", "isCorrect": True}, {"text": "B", "isCorrect": True}]
        result = engine.validate({"version": "1.0", "type": "questions", "questions": [question]})

        multiple = [e for e in result.errors if e.message == MULTIPLE_CORRECT_MESSAGE]
        assert len(multiple) == 1
        assert multiple[0].severity == ErrorSeverity.MAJOR
        assert result.is_valid is False
        assert not result.has_critical_errors

    def test_exactly_one_correct_answer_is_valid(self, engine):
        result = engine.validate({"type": "questions", "questions": [make_question("Q ?", correct=1)]})
        assert result.is_valid is True

    def test_no_correct_answer_is_critical(self, engine):
        question = make_question("Q ?")
        for option in question["options"]:
            option["isCorrect"] = False
        result = engine.validate({"type": "questions", "questions": [question]})
        assert any(e.message == NO_CORRECT_MESSAGE and e.severity == ErrorSeverity.CRITICAL for e in result.errors)
        assert result.is_valid is False

    def test_missing_question_text_is_critical(self, engine):
        question = make_question("")
        result = engine.validate({"type": "questions", "questions": [question]})
        assert result.has_critical_errors
        assert result.summary.invalid_items == 1

    def test_single_option_is_major(self, engine):
        question = make_question("Q ?", option_count=1)
        result = engine.validate({"type": "questions", "questions": [question]})
        assert ErrorSeverity.MAJOR in _severities(result)
        assert result.is_valid is False

    def test_missing_options_is_critical(self, engine):
        question = make_question("Q ?")
        del question["options"]
        result = engine.validate({"type": "questions", "questions": [question]})
        assert result.has_critical_errors

    def test_missing_category_does_not_invalidate(self, engine):
        question = make_question("Q ?", category=None)
        result = engine.validate({"type": "questions", "questions": [question]})
        assert result.is_valid is True
        assert _severities(result, ErrorType.MAPPING) == [ErrorSeverity.MAJOR]

    @pytest.mark.parametrize("field,value", [("difficulty", "extreme"), ("level", "PACES"), ("difficulty", ["hard"])])
    def test_invalid_enum_is_minor_and_invalid(self, engine, field, value):
        question = make_question("Q ?", **{field: value})
        result = engine.validate({"type": "questions", "questions": [question]})
        assert _severities(result) == [ErrorSeverity.MINOR]
        assert result.is_valid is False

    def test_duplicate_options_and_missing_explanation_are_warnings(self, engine):
        question = make_question("Q ?")
        question["options"][2]["text"] = " réponse a "
        del question["explanation"]
        result = engine.validate({"type": "questions", "questions": [question]})
        assert result.is_valid is True
        assert len(result.warnings) == 2

    def test_duplicate_questions_are_counted(self, engine):
        questions = [make_question("Même question ?"), make_question("  même QUESTION ? "), make_question("Autre ?")]
        result = engine.validate({"type": "questions", "questions": questions})
        duplicates = [w for w in result.warnings if w.message.startswith("Question dupliquée")]
        assert result.summary.duplicates == 1
        assert duplicates[0].item_index == 1
        assert "question 1" in duplicates[0].message

    def test_known_categories_report_missing_names(self, engine):
        document = make_questions_document(2, category="Neurologie")
        result = engine.validate(document, known_categories=["Cardiologie"])
        assert result.is_valid is True
        assert result.summary.missing_categories == ["Neurologie"]


class TestFlashcards:
    def test_missing_back_is_critical(self, engine):
        result = engine.validate(make_flashcards_document([{"front": "Aorte"}]))
        assert result.has_critical_errors
        assert result.errors[0].field == "cards[0].back"

    def test_identical_sides_warn(self, engine):
        result = engine.validate(make_flashcards_document([{"front": "Coeur", "back": "coeur"}]))
        assert result.is_valid is True
        assert len(result.warnings) == 1


class TestLearningPaths:
    def test_valid_path_flattens_item_indices(self, engine):
        document = make_learning_path_document([
            make_step("s1", questions=[make_question("Q1 ?"), make_question("Q2 ?")]),
            make_step("s2", prerequisites=["s1"], questions=[make_question("Q3 ?")]),
        ])
        result = engine.validate(document)
        assert result.is_valid is True
        assert result.summary.total_items == 3

    def test_unknown_prerequisite_is_critical_reference(self, engine):
        document = make_learning_path_document([make_step("s1", prerequisites=["s9"])])
        result = engine.validate(document)
        reference = [e for e in result.errors if e.type == ErrorType.REFERENCE]
        assert reference and reference[0].severity == ErrorSeverity.CRITICAL
        assert "s9" in reference[0].message

    def test_cycle_is_reported(self, engine):
        document = make_learning_path_document([
            make_step("a", prerequisites=["b"]),
            make_step("b", prerequisites=["a"]),
        ])
        result = engine.validate(document)
        assert any("Dépendance circulaire" in e.message for e in result.errors)
        assert result.is_valid is False

    def test_long_chain_listed_before_its_prerequisites(self, engine):
        steps = [
            make_step(f"s{i}", prerequisites=[f"s{i - 1}"] if i else None)
            for i in reversed(range(1000))
        ]
        result = engine.validate(make_learning_path_document(steps))
        assert not any("Dépendance circulaire" in e.message for e in result.errors)
        assert result.is_valid is True
        assert result.summary.total_items == 1000

    def test_cycle_at_the_end_of_a_long_chain(self, engine):
        steps = [
            make_step(f"s{i}", prerequisites=[f"s{i - 1}"] if i else ["s999"])
            for i in reversed(range(1000))
        ]
        result = engine.validate(make_learning_path_document(steps))
        cycles = [e for e in result.errors if "Dépendance circulaire" in e.message]
        assert len(cycles) == 1
        assert cycles[0].severity == ErrorSeverity.CRITICAL

    def test_missing_title_is_major(self, engine):
        step = make_step("s1")
        del step["title"]
        result = engine.validate(make_learning_path_document([step]))
        assert _severities(result) == [ErrorSeverity.MAJOR]

    def test_step_question_errors_use_flattened_index(self, engine):
        broken = make_question("")
        document = make_learning_path_document([
            make_step("s1", questions=[make_question("Q1 ?")]),
            make_step("s2", questions=[broken]),
        ])
        result = engine.validate(document)
        assert result.errors[0].item_index == 1


def test_module_shortcut_matches_engine():
    document = make_questions_document(2)
    assert validate_import_document(document) == ValidationEngine().validate(document)
