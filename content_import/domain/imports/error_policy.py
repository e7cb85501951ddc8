"""
Decides how a job reacts to the errors accumulated so far.

The policy runs at every chunk boundary and returns ``continue``, ``stop``
or ``rollback`` together with the human-readable actions that led there.
"""
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Protocol, Sequence

from content_import.api.schemas.shared import (
    ErrorRecoveryOptions,
    ErrorSeverity,
    ItemResult,
    ValidationIssue,
)


class ErrorDecision(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"
    ROLLBACK = "rollback"


@dataclass
class PolicyOutcome:
    decision: ErrorDecision
    actions: List[str] = field(default_factory=list)


class ErrorPolicy(Protocol):
    def decide(
        self,
        errors: Sequence[ValidationIssue],
        results: Sequence[ItemResult],
        recovery: ErrorRecoveryOptions,
    ) -> PolicyOutcome: ...


class ThresholdErrorPolicy:
    """Critical errors trigger rollback (when enabled); too many errors stop the job."""

    def decide(
        self,
        errors: Sequence[ValidationIssue],
        results: Sequence[ItemResult],
        recovery: ErrorRecoveryOptions,
    ) -> PolicyOutcome:
        actions: List[str] = []
        decision = ErrorDecision.CONTINUE

        critical = [e for e in errors if e.severity == ErrorSeverity.CRITICAL]
        if critical:
            actions.append(f"{len(critical)} erreur(s) critique(s) détectée(s)")
            if recovery.rollback_on_critical_error:
                actions.append("Rollback déclenché à cause d'erreurs critiques")
                return PolicyOutcome(ErrorDecision.ROLLBACK, actions + analyze_error_patterns(errors))
            if recovery.continue_on_non_critical_errors:
                actions.append("Continuation malgré les erreurs critiques (rollback désactivé)")
            else:
                decision = ErrorDecision.STOP

        if len(errors) >= recovery.max_errors_before_stop:
            decision = ErrorDecision.STOP
            actions.append(
                f"Seuil d'erreurs atteint ({len(errors)}/{recovery.max_errors_before_stop})"
            )

        return PolicyOutcome(decision, actions + analyze_error_patterns(errors))


def count_consecutive_failures(errors: Sequence[ValidationIssue]) -> int:
    """Longest run of errors on adjacent item indices."""
    indices = sorted({e.item_index for e in errors if e.item_index is not None})
    longest = current = 0
    previous = None
    for index in indices:
        current = current + 1 if previous is not None and index == previous + 1 else 1
        longest = max(longest, current)
        previous = index
    return longest


def analyze_error_patterns(errors: Sequence[ValidationIssue]) -> List[str]:
    if not errors:
        return []
    patterns: List[str] = []

    by_type = Counter(e.type.value for e in errors)
    dominant_type, dominant_count = by_type.most_common(1)[0]
    if dominant_count > len(errors) * 0.5:
        patterns.append(
            f"Pattern détecté: {dominant_count} erreurs de type \"{dominant_type}\" "
            f"({round(dominant_count / len(errors) * 100)}%)"
        )

    by_field = Counter(e.field for e in errors if e.field)
    if by_field:
        worst_field, field_count = by_field.most_common(1)[0]
        if field_count > 3:
            patterns.append(f"Champ problématique: \"{worst_field}\" ({field_count} erreurs)")

    consecutive = count_consecutive_failures(errors)
    if consecutive > 5:
        patterns.append(
            f"{consecutive} erreurs consécutives détectées - possible problème systémique"
        )
    return patterns
