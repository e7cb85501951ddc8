"""
Validation rules for import documents.

The engine checks the document structure first, then applies the
per-type rules for questions, flashcards and learning paths. Every problem
is returned as a ``ValidationIssue``; nothing here raises for bad data and
nothing here touches storage.

Validity rule: a document is invalid when it carries a critical issue, or a
major/minor issue of any type other than ``mapping``. Mapping issues
(missing or unknown categories) are resolved later by the category matcher.
Batch start is blocked by critical issues only.
"""
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from content_import.api.schemas.shared import (
    ErrorSeverity,
    ErrorType,
    ImportType,
    ValidationIssue,
    ValidationResult,
    ValidationSummary,
)
from content_import.domain.imports.documents import (
    count_items,
    extract_items,
    resolve_import_type,
)

VALID_DIFFICULTIES = {"easy", "medium", "hard"}
VALID_LEVELS = {"PASS", "LAS", "both"}

MULTIPLE_CORRECT_MESSAGE = "Plusieurs bonnes réponses détectées"
NO_CORRECT_MESSAGE = "Aucune bonne réponse définie"

_INVALIDATING_SEVERITIES = {ErrorSeverity.MAJOR, ErrorSeverity.MINOR}


def _is_filled_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value.strip())


class _IssueCollector:
    """Routes issues into the error or warning list by severity."""

    def __init__(self) -> None:
        self.errors: List[ValidationIssue] = []
        self.warnings: List[ValidationIssue] = []

    def add(
        self,
        error_type: ErrorType,
        severity: ErrorSeverity,
        message: str,
        *,
        item_index: Optional[int] = None,
        field: Optional[str] = None,
        suggestion: Optional[str] = None,
        related_category: Optional[str] = None,
    ) -> None:
        issue = ValidationIssue(
            type=error_type,
            severity=severity,
            message=message,
            item_index=item_index,
            field=field,
            suggestion=suggestion,
            related_category=related_category,
        )
        if severity == ErrorSeverity.WARNING:
            self.warnings.append(issue)
        else:
            self.errors.append(issue)


def is_blocking_issue(issue: ValidationIssue) -> bool:
    """True when the issue makes the document invalid."""
    if issue.severity == ErrorSeverity.CRITICAL:
        return True
    return issue.severity in _INVALIDATING_SEVERITIES and issue.type != ErrorType.MAPPING


class ValidationEngine:
    """Stateless validator; one instance can be shared by every request."""

    def validate(
        self,
        document: Any,
        known_categories: Optional[Iterable[str]] = None,
    ) -> ValidationResult:
        """
        Validate a parsed import document.

        Args:
            document: Parsed JSON mapping.
            known_categories: Optional category names already in storage. When
                given, references to other names are reported as mapping warnings.

        Returns:
            ValidationResult with errors, warnings and the summary.
        """
        collector = _IssueCollector()

        if not isinstance(document, Mapping):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                "Le document d'import doit être un objet JSON",
                suggestion="Vérifiez que le fichier contient un objet à la racine",
            )
            return self._build_result(collector, total_items=0)

        if not _is_filled_string(document.get("version")):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.WARNING,
                "Version du format manquante",
                field="version",
                suggestion='Ajoutez "version": "1.0"',
            )

        import_type = resolve_import_type(document)
        if import_type is None:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                "Type d'import manquant ou invalide",
                field="type",
                suggestion="Utilisez questions, flashcards ou learning-path",
            )
            return self._build_result(collector, total_items=0)

        if import_type == ImportType.QUESTIONS:
            self._validate_questions(document, collector)
        elif import_type == ImportType.FLASHCARDS:
            self._validate_flashcards(document, collector)
        else:
            self._validate_learning_path(document, collector)

        duplicates = 0
        if import_type in (ImportType.QUESTIONS, ImportType.LEARNING_PATH):
            duplicates = self._detect_duplicates(extract_items(document), collector)

        if known_categories is not None:
            self._check_known_categories(document, known_categories, collector)

        return self._build_result(collector, total_items=count_items(document), duplicates=duplicates)

    # ------------------------------------------------------------------
    # Questions
    # ------------------------------------------------------------------

    def _validate_questions(self, document: Mapping[str, Any], collector: _IssueCollector) -> None:
        questions = document.get("questions")
        if not isinstance(questions, list) or not questions:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                "Aucune question à importer",
                field="questions",
                suggestion="Le tableau questions doit contenir au moins une question",
            )
            return

        for index, question in enumerate(questions):
            self._validate_question(question, index, f"questions[{index}]", collector)

    def _validate_question(
        self,
        question: Any,
        index: int,
        prefix: str,
        collector: _IssueCollector,
    ) -> None:
        if not isinstance(question, Mapping):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                f"La question {index + 1} n'est pas un objet valide",
                item_index=index,
                field=prefix,
            )
            return

        if not _is_filled_string(question.get("questionText")):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                f"Texte de la question {index + 1} manquant",
                item_index=index,
                field=f"{prefix}.questionText",
            )

        self._validate_options(question.get("options"), index, prefix, collector)

        if not _is_filled_string(question.get("explanation")):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.WARNING,
                f"Explication manquante pour la question {index + 1}",
                item_index=index,
                field=f"{prefix}.explanation",
                suggestion="Une explication aide les étudiants à comprendre la réponse",
            )

        if not _is_filled_string(question.get("category")):
            collector.add(
                ErrorType.MAPPING,
                ErrorSeverity.MAJOR,
                f"Catégorie manquante pour la question {index + 1}",
                item_index=index,
                field=f"{prefix}.category",
                suggestion="Ajoutez une catégorie ou utilisez le mapping automatique",
            )

        self._validate_enums(question, index, prefix, collector)

    def _validate_options(
        self,
        options: Any,
        index: int,
        prefix: str,
        collector: _IssueCollector,
    ) -> None:
        field = f"{prefix}.options"
        if not isinstance(options, list):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                f"Options manquantes pour la question {index + 1}",
                item_index=index,
                field=field,
            )
            return

        if len(options) < 2:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.MAJOR,
                f"La question {index + 1} doit avoir au moins 2 options",
                item_index=index,
                field=field,
            )

        correct = 0
        seen_texts: Set[str] = set()
        for option_index, option in enumerate(options):
            if not isinstance(option, Mapping) or not _is_filled_string(option.get("text")):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.MAJOR,
                    f"Option {option_index + 1} invalide pour la question {index + 1}",
                    item_index=index,
                    field=f"{field}[{option_index}].text",
                )
                continue
            if option.get("isCorrect") is True:
                correct += 1
            key = option["text"].strip().lower()
            if key in seen_texts:
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.WARNING,
                    f"Option en double dans la question {index + 1}: \"{option['text'].strip()}\"",
                    item_index=index,
                    field=f"{field}[{option_index}].text",
                )
            seen_texts.add(key)

        if correct == 0:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                NO_CORRECT_MESSAGE,
                item_index=index,
                field=field,
                suggestion="Marquez exactement une option avec isCorrect: true",
            )
        elif correct > 1:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.MAJOR,
                MULTIPLE_CORRECT_MESSAGE,
                item_index=index,
                field=field,
                suggestion="Une seule option doit être marquée comme correcte",
            )

    def _validate_enums(
        self,
        item: Mapping[str, Any],
        index: int,
        prefix: str,
        collector: _IssueCollector,
    ) -> None:
        difficulty = item.get("difficulty")
        if difficulty is not None and (
            not isinstance(difficulty, str) or difficulty not in VALID_DIFFICULTIES
        ):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.MINOR,
                f"Difficulté invalide: {difficulty}",
                item_index=index,
                field=f"{prefix}.difficulty",
                suggestion="Valeurs acceptées: easy, medium, hard",
            )

        level = item.get("level")
        if level is not None and (not isinstance(level, str) or level not in VALID_LEVELS):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.MINOR,
                f"Niveau invalide: {level}",
                item_index=index,
                field=f"{prefix}.level",
                suggestion="Valeurs acceptées: PASS, LAS, both",
            )

        tags = item.get("tags")
        if tags is not None and (
            not isinstance(tags, list) or not all(isinstance(tag, str) for tag in tags)
        ):
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.MINOR,
                "Les tags doivent être une liste de chaînes",
                item_index=index,
                field=f"{prefix}.tags",
            )

    # ------------------------------------------------------------------
    # Flashcards
    # ------------------------------------------------------------------

    def _validate_flashcards(self, document: Mapping[str, Any], collector: _IssueCollector) -> None:
        cards = document.get("cards")
        if not isinstance(cards, list) or not cards:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                "Aucune flashcard à importer",
                field="cards",
            )
            return

        for index, card in enumerate(cards):
            prefix = f"cards[{index}]"
            if not isinstance(card, Mapping):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.CRITICAL,
                    f"La flashcard {index + 1} n'est pas un objet valide",
                    item_index=index,
                    field=prefix,
                )
                continue

            for side, label in (("front", "Recto"), ("back", "Verso")):
                if not _is_filled_string(card.get(side)):
                    collector.add(
                        ErrorType.VALIDATION,
                        ErrorSeverity.CRITICAL,
                        f"{label} manquant pour la flashcard {index + 1}",
                        item_index=index,
                        field=f"{prefix}.{side}",
                    )

            front, back = card.get("front"), card.get("back")
            if _is_filled_string(front) and _is_filled_string(back):
                if front.strip().lower() == back.strip().lower():
                    collector.add(
                        ErrorType.VALIDATION,
                        ErrorSeverity.WARNING,
                        f"Recto et verso identiques pour la flashcard {index + 1}",
                        item_index=index,
                        field=prefix,
                    )

            self._validate_enums(card, index, prefix, collector)

    # ------------------------------------------------------------------
    # Learning paths
    # ------------------------------------------------------------------

    def _validate_learning_path(self, document: Mapping[str, Any], collector: _IssueCollector) -> None:
        path = document.get("path")
        steps = path.get("steps") if isinstance(path, Mapping) else None
        if not isinstance(steps, list) or not steps:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                "Le parcours doit contenir un tableau d'étapes",
                field="path.steps",
            )
            return

        step_ids: Set[str] = set()
        for step in steps:
            if isinstance(step, Mapping) and _is_filled_string(step.get("id")):
                step_ids.add(step["id"])

        seen_ids: Set[str] = set()
        prerequisites_by_step: Dict[str, List[str]] = {}
        item_index = 0
        for step_index, step in enumerate(steps):
            prefix = f"path.steps[{step_index}]"
            if not isinstance(step, Mapping):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.CRITICAL,
                    f"L'étape {step_index + 1} n'est pas un objet valide",
                    field=prefix,
                )
                continue

            step_id = step.get("id")
            if not _is_filled_string(step_id):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.CRITICAL,
                    f"Identifiant manquant pour l'étape {step_index + 1}",
                    field=f"{prefix}.id",
                )
                step_id = None
            elif step_id in seen_ids:
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.MAJOR,
                    f"Identifiant d'étape en double: {step_id}",
                    field=f"{prefix}.id",
                )
            else:
                seen_ids.add(step_id)

            if not _is_filled_string(step.get("title")):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.MAJOR,
                    f"Titre manquant pour l'étape {step_index + 1}",
                    field=f"{prefix}.title",
                )

            prerequisites = step.get("prerequisites") or []
            if not isinstance(prerequisites, list):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.MAJOR,
                    f"Les prérequis de l'étape {step_index + 1} doivent être une liste",
                    field=f"{prefix}.prerequisites",
                )
                prerequisites = []

            prerequisites = [p for p in prerequisites if p is not None]
            for prerequisite in prerequisites:
                if not isinstance(prerequisite, str):
                    collector.add(
                        ErrorType.REFERENCE,
                        ErrorSeverity.CRITICAL,
                        f"Prérequis invalide pour l'étape {step_index + 1}",
                        field=f"{prefix}.prerequisites",
                    )
                elif step_id is not None and prerequisite == step_id:
                    collector.add(
                        ErrorType.REFERENCE,
                        ErrorSeverity.CRITICAL,
                        f"L'étape {step_id} ne peut pas être son propre prérequis",
                        field=f"{prefix}.prerequisites",
                    )
                elif prerequisite not in step_ids:
                    collector.add(
                        ErrorType.REFERENCE,
                        ErrorSeverity.CRITICAL,
                        f"Prérequis introuvable: {prerequisite}",
                        field=f"{prefix}.prerequisites",
                        suggestion="Les prérequis doivent référencer l'id d'une autre étape du parcours",
                    )
            if step_id is not None:
                prerequisites_by_step.setdefault(step_id, []).extend(
                    p for p in prerequisites
                    if isinstance(p, str) and p in step_ids and p != step_id
                )

            questions = step.get("questions") or []
            if not isinstance(questions, list):
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.CRITICAL,
                    f"Les questions de l'étape {step_index + 1} doivent être une liste",
                    field=f"{prefix}.questions",
                )
                continue
            for question_index, question in enumerate(questions):
                self._validate_question(
                    question,
                    item_index,
                    f"{prefix}.questions[{question_index}]",
                    collector,
                )
                item_index += 1

        if item_index == 0:
            collector.add(
                ErrorType.VALIDATION,
                ErrorSeverity.CRITICAL,
                "Le parcours ne contient aucune question",
                field="path.steps",
            )

        for cycle in _find_cycles(prerequisites_by_step):
            collector.add(
                ErrorType.REFERENCE,
                ErrorSeverity.CRITICAL,
                f"Dépendance circulaire détectée: {' -> '.join(cycle)}",
                field="path.steps",
            )

    # ------------------------------------------------------------------
    # Cross-item checks
    # ------------------------------------------------------------------

    def _detect_duplicates(self, items: List[Any], collector: _IssueCollector) -> int:
        first_seen: Dict[str, int] = {}
        duplicates = 0
        for index, item in enumerate(items):
            if not isinstance(item, Mapping) or not _is_filled_string(item.get("questionText")):
                continue
            key = item["questionText"].strip().lower()
            if key in first_seen:
                duplicates += 1
                collector.add(
                    ErrorType.VALIDATION,
                    ErrorSeverity.WARNING,
                    f"Question dupliquée (identique à la question {first_seen[key] + 1})",
                    item_index=index,
                    field="questionText",
                )
            else:
                first_seen[key] = index
        return duplicates

    def _check_known_categories(
        self,
        document: Mapping[str, Any],
        known_categories: Iterable[str],
        collector: _IssueCollector,
    ) -> None:
        known = {name.strip().lower() for name in known_categories if isinstance(name, str)}
        for index, item in enumerate(extract_items(document)):
            if not isinstance(item, Mapping):
                continue
            category = item.get("category")
            if _is_filled_string(category) and category.strip().lower() not in known:
                collector.add(
                    ErrorType.MAPPING,
                    ErrorSeverity.WARNING,
                    f"Catégorie \"{category}\" inexistante",
                    item_index=index,
                    field="category",
                    suggestion="La catégorie sera créée ou associée lors du mapping",
                    related_category=category,
                )

    def _build_result(
        self,
        collector: _IssueCollector,
        total_items: int,
        duplicates: int = 0,
    ) -> ValidationResult:
        invalid_indices = {
            issue.item_index for issue in collector.errors if issue.item_index is not None
        }
        missing_categories: List[str] = []
        for issue in collector.errors + collector.warnings:
            if issue.related_category and issue.related_category not in missing_categories:
                missing_categories.append(issue.related_category)

        summary = ValidationSummary(
            total_items=total_items,
            valid_items=max(total_items - len(invalid_indices), 0),
            invalid_items=len(invalid_indices),
            duplicates=duplicates,
            missing_categories=missing_categories,
        )
        return ValidationResult(
            is_valid=not any(is_blocking_issue(issue) for issue in collector.errors),
            errors=collector.errors,
            warnings=collector.warnings,
            summary=summary,
        )


def _find_cycles(graph: Dict[str, List[str]]) -> List[List[str]]:
    """Return each prerequisite cycle once, as a closed path of step ids."""
    cycles: List[List[str]] = []
    reported: Set[frozenset] = set()
    done: Set[str] = set()

    # Iterative depth-first search: a chain of steps may be as deep as the
    # document is long.
    for root in graph:
        if root in done:
            continue
        path: List[str] = [root]
        on_path: Set[str] = {root}
        stack = [iter(graph.get(root, []))]
        while stack:
            neighbour = next(stack[-1], None)
            if neighbour is None:
                stack.pop()
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                continue
            if neighbour in done:
                continue
            if neighbour in on_path:
                cycle = path[path.index(neighbour):] + [neighbour]
                key = frozenset(cycle)
                if key not in reported:
                    reported.add(key)
                    cycles.append(cycle)
                continue
            path.append(neighbour)
            on_path.add(neighbour)
            stack.append(iter(graph.get(neighbour, [])))
    return cycles


def validate_import_document(
    document: Any,
    known_categories: Optional[Iterable[str]] = None,
) -> ValidationResult:
    """Module-level shortcut used by the processors and API."""
    return ValidationEngine().validate(document, known_categories)
