"""
Reconciliation of free-text category names with the canonical taxonomy.

For every category referenced by an import the matcher collects candidate
targets from the user's mapping history, exact normalized matches, textual
similarity (Levenshtein / Jaccard) and the medical domain dictionary, then
recommends ``map``, ``create`` or ``merge``. Applied decisions are appended
to an in-process history ledger that feeds later analyses.
"""
import logging
import threading
import time
import uuid
from collections import Counter
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from content_import.api.schemas.shared import (
    CategoryAnalysis,
    CategoryCluster,
    CategoryMapping,
    CategorySuggestion,
    HistoryAction,
    MappingAction,
    MappingHistoryRecord,
    MappingStatistics,
)
from content_import.db.storage import Storage
from content_import.domain.categories.similarity import (
    contains_domain_keyword,
    identify_medical_domain,
    levenshtein_similarity,
    medical_domain_similarity,
    normalize_category_name,
    textual_similarity,
)
from content_import.domain.imports.documents import iter_category_names
from content_import.domain.imports.exceptions import CategoryNotFoundError

logger = logging.getLogger(__name__)

CATEGORY_COLLECTION = "categories"

TEXTUAL_THRESHOLD = 0.5
MEDICAL_THRESHOLD = 0.6
STRONG_MATCH_THRESHOLD = 0.8
MODERATE_MATCH_THRESHOLD = 0.6
CLUSTER_THRESHOLD = 0.7
CREATE_CONFIDENCE = 0.5
MAX_SUGGESTIONS = 5


def _category_title(category: Mapping[str, Any]) -> str:
    return str(category.get("title") or category.get("name") or "")


class CategoryMatcher:
    def __init__(
        self,
        storage: Storage,
        cache_ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._storage = storage
        self._cache_ttl_seconds = cache_ttl_seconds
        self._clock = clock
        self._category_cache: Optional[List[Dict[str, Any]]] = None
        self._cache_loaded_at = 0.0
        self._history: List[MappingHistoryRecord] = []
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Category cache
    # ------------------------------------------------------------------

    def get_existing_categories(self, force_refresh: bool = False) -> List[Dict[str, Any]]:
        with self._lock:
            expired = self._clock() - self._cache_loaded_at >= self._cache_ttl_seconds
            if force_refresh or self._category_cache is None or expired:
                self._category_cache = self._storage.find(CATEGORY_COLLECTION)
                self._cache_loaded_at = self._clock()
                logger.debug("Loaded %d categories into cache", len(self._category_cache))
            return list(self._category_cache)

    def invalidate_cache(self) -> None:
        with self._lock:
            self._category_cache = None
            self._cache_loaded_at = 0.0

    # ------------------------------------------------------------------
    # Analysis
    # ------------------------------------------------------------------

    def analyze(self, document: Mapping[str, Any], user_id: str) -> List[CategoryAnalysis]:
        """
        Analyze every category referenced by an import document.

        Args:
            document: Parsed import document.
            user_id: User whose mapping history is consulted.

        Returns:
            One CategoryAnalysis per unique referenced name, in first-seen order.
        """
        names = iter_category_names(document)
        categories = self.get_existing_categories()
        analyses = [self.analyze_category(name, user_id, categories) for name in names]

        by_name = {analysis.original_name: analysis for analysis in analyses}
        for cluster in self.detect_clusters(names):
            for member in cluster.members:
                analysis = by_name[member]
                analysis.recommended_action = MappingAction.MERGE
                analysis.cluster = cluster
                analysis.reasoning.append(
                    f"Fait partie d'un cluster de catégories similaires: {', '.join(cluster.members)}"
                )
                analysis.reasoning.append(f"Nom canonique suggéré: \"{cluster.canonical_name}\"")

        logger.info(
            "Analyzed %d categories for user %s (%d to create)",
            len(analyses),
            user_id,
            sum(1 for a in analyses if a.recommended_action == MappingAction.CREATE),
        )
        return analyses

    def analyze_category(
        self,
        name: str,
        user_id: str,
        categories: Optional[List[Dict[str, Any]]] = None,
    ) -> CategoryAnalysis:
        if categories is None:
            categories = self.get_existing_categories()

        normalized = normalize_category_name(name)
        reasoning: List[str] = []

        pinned: Optional[CategorySuggestion] = None
        historical = self.find_historical_mapping(name, user_id)
        if historical is not None:
            target = next(
                (c for c in categories if str(c.get("id")) == historical.mapped_category_id),
                None,
            )
            if target is not None:
                pinned = CategorySuggestion(
                    category_id=historical.mapped_category_id,
                    category_name=_category_title(target),
                    similarity=historical.confidence,
                    reason="history",
                    recommended=True,
                )
                reasoning.append("Mapping utilisé précédemment par cet utilisateur")

        exact = next(
            (c for c in categories if normalize_category_name(_category_title(c)) == normalized),
            None,
        )
        if exact is not None:
            reasoning.append("Correspondance exacte trouvée")
            suggestions = self._rank(
                [
                    CategorySuggestion(
                        category_id=str(exact.get("id")),
                        category_name=_category_title(exact),
                        similarity=1.0,
                        reason="exact",
                        recommended=True,
                    )
                ],
                pinned,
            )
            # A pinned historical mapping outranks the exact match.
            return CategoryAnalysis(
                original_name=name,
                normalized_name=normalized,
                suggestions=suggestions,
                recommended_action=MappingAction.MAP,
                confidence=suggestions[0].similarity,
                reasoning=reasoning,
            )

        candidates: List[CategorySuggestion] = []
        for category in categories:
            title = _category_title(category)
            score = textual_similarity(normalized, normalize_category_name(title))
            if score > TEXTUAL_THRESHOLD:
                candidates.append(
                    CategorySuggestion(
                        category_id=str(category.get("id")),
                        category_name=title,
                        similarity=score,
                        reason="textual",
                        recommended=score > 0.7,
                    )
                )

        domain = identify_medical_domain(normalized)
        if domain is not None:
            reasoning.append(f"Domaine médical identifié: {domain}")
            for category in categories:
                title = _category_title(category)
                score = medical_domain_similarity(normalized, normalize_category_name(title))
                if score > MEDICAL_THRESHOLD:
                    candidates.append(
                        CategorySuggestion(
                            category_id=str(category.get("id")),
                            category_name=title,
                            similarity=score,
                            reason="medical_domain",
                            recommended=score > STRONG_MATCH_THRESHOLD,
                        )
                    )

        suggestions = self._rank(candidates, pinned)
        best = suggestions[0] if suggestions else None

        if best is not None and best.similarity > STRONG_MATCH_THRESHOLD:
            action, confidence = MappingAction.MAP, best.similarity
            reasoning.append(
                f"Forte similarité avec \"{best.category_name}\" ({round(best.similarity * 100)}%)"
            )
        elif best is not None and best.similarity > MODERATE_MATCH_THRESHOLD:
            action, confidence = MappingAction.MAP, best.similarity
            reasoning.append(
                f"Similarité modérée avec \"{best.category_name}\" - vérification recommandée"
            )
        else:
            action, confidence = MappingAction.CREATE, CREATE_CONFIDENCE
            reasoning.append("Aucune catégorie similaire trouvée - création recommandée")

        return CategoryAnalysis(
            original_name=name,
            normalized_name=normalized,
            suggestions=suggestions,
            recommended_action=action,
            confidence=confidence,
            reasoning=reasoning,
        )

    @staticmethod
    def _rank(
        candidates: List[CategorySuggestion],
        pinned: Optional[CategorySuggestion],
    ) -> List[CategorySuggestion]:
        """Best score per target, highest first, history pinned on top."""
        best_by_name: Dict[str, CategorySuggestion] = {}
        for candidate in candidates:
            current = best_by_name.get(candidate.category_name)
            if current is None or candidate.similarity > current.similarity:
                best_by_name[candidate.category_name] = candidate

        ranked = sorted(best_by_name.values(), key=lambda s: s.similarity, reverse=True)
        if pinned is not None:
            ranked = [pinned] + [s for s in ranked if s.category_name != pinned.category_name]
        return ranked[:MAX_SUGGESTIONS]

    def detect_clusters(self, names: Iterable[str]) -> List[CategoryCluster]:
        """Group referenced names whose normalized Levenshtein similarity exceeds 0.7."""
        names = list(names)
        clusters: List[CategoryCluster] = []
        processed = set()

        for name in names:
            if name in processed:
                continue
            members = [name]
            processed.add(name)
            for other in names:
                if other in processed:
                    continue
                similarity = levenshtein_similarity(
                    normalize_category_name(name), normalize_category_name(other)
                )
                if similarity > CLUSTER_THRESHOLD:
                    members.append(other)
                    processed.add(other)
            if len(members) > 1:
                clusters.append(
                    CategoryCluster(members=members, canonical_name=_canonical_name(members))
                )
        return clusters

    @staticmethod
    def to_category_mappings(analyses: Iterable[CategoryAnalysis]) -> List[CategoryMapping]:
        mappings = []
        for analysis in analyses:
            if analysis.recommended_action == MappingAction.MERGE and analysis.cluster:
                suggested = analysis.cluster.canonical_name
            elif analysis.recommended_action == MappingAction.MAP and analysis.suggestions:
                suggested = analysis.suggestions[0].category_name
            else:
                suggested = analysis.original_name
            mappings.append(
                CategoryMapping(
                    original_name=analysis.original_name,
                    suggested_name=suggested,
                    confidence=analysis.confidence,
                    action=analysis.recommended_action,
                )
            )
        return mappings

    # ------------------------------------------------------------------
    # Mapping decisions
    # ------------------------------------------------------------------

    def _append(self, record: MappingHistoryRecord) -> MappingHistoryRecord:
        with self._lock:
            self._history.append(record)
        return record

    def _get_category(self, category_id: str) -> Dict[str, Any]:
        category = self._storage.find_by_id(CATEGORY_COLLECTION, category_id)
        if category is None:
            raise CategoryNotFoundError(category_id)
        return category

    def apply_mapping(
        self,
        original_name: str,
        target_category_id: str,
        user_id: str,
        import_session_id: Optional[str] = None,
        manual_override: bool = False,
    ) -> MappingHistoryRecord:
        target = self._get_category(target_category_id)
        record = self._append(
            MappingHistoryRecord(
                id=f"mapping_{uuid.uuid4().hex[:12]}",
                user_id=user_id,
                original_name=original_name,
                mapped_category_id=target_category_id,
                mapped_category_name=_category_title(target),
                action=HistoryAction.MAPPED,
                confidence=1.0 if manual_override else 0.8,
                import_session_id=import_session_id,
                manual_override=manual_override,
            )
        )
        logger.info(
            "Mapped category '%s' -> '%s' for user %s",
            original_name,
            record.mapped_category_name,
            user_id,
        )
        return record

    def create_new_category(
        self,
        name: str,
        user_id: str,
        level: str = "both",
        import_session_id: Optional[str] = None,
    ) -> MappingHistoryRecord:
        category_id = self._storage.create(
            CATEGORY_COLLECTION,
            {
                "title": name,
                "level": level,
                "adaptiveSettings": {"isActive": True, "minimumQuestions": 5, "weight": 1},
            },
        )
        self.invalidate_cache()
        logger.info("Created category '%s' (%s) for user %s", name, category_id, user_id)
        return self._append(
            MappingHistoryRecord(
                id=f"mapping_{uuid.uuid4().hex[:12]}",
                user_id=user_id,
                original_name=name,
                mapped_category_id=category_id,
                mapped_category_name=name,
                action=HistoryAction.CREATED,
                confidence=1.0,
                import_session_id=import_session_id,
            )
        )

    def record_merge(
        self,
        original_names: Iterable[str],
        target_category_id: str,
        user_id: str,
        import_session_id: Optional[str] = None,
    ) -> List[MappingHistoryRecord]:
        """Record that every name of a cluster now points at one category."""
        target = self._get_category(target_category_id)
        return [
            self._append(
                MappingHistoryRecord(
                    id=f"mapping_{uuid.uuid4().hex[:12]}",
                    user_id=user_id,
                    original_name=name,
                    mapped_category_id=target_category_id,
                    mapped_category_name=_category_title(target),
                    action=HistoryAction.MERGED,
                    confidence=1.0,
                    import_session_id=import_session_id,
                    manual_override=True,
                )
            )
            for name in original_names
        ]

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def find_historical_mapping(self, name: str, user_id: str) -> Optional[MappingHistoryRecord]:
        """Most recent decision this user took for the name, compared case-insensitively."""
        wanted = name.lower()
        with self._lock:
            for record in reversed(self._history):
                if record.user_id == user_id and record.original_name.lower() == wanted:
                    return record
        return None

    def get_user_mapping_history(self, user_id: str, limit: int = 50) -> List[MappingHistoryRecord]:
        with self._lock:
            records = [r for r in self._history if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    def get_mapping_statistics(self) -> MappingStatistics:
        with self._lock:
            records = list(self._history)
        if not records:
            return MappingStatistics()

        actions = Counter(record.action for record in records)
        targets = Counter(record.mapped_category_name for record in records)
        return MappingStatistics(
            total_mappings=len(records),
            mapped=actions.get(HistoryAction.MAPPED, 0),
            created=actions.get(HistoryAction.CREATED, 0),
            merged=actions.get(HistoryAction.MERGED, 0),
            unique_users=len({record.user_id for record in records}),
            average_confidence=round(sum(r.confidence for r in records) / len(records), 3),
            manual_override_rate=round(
                sum(1 for r in records if r.manual_override) / len(records), 3
            ),
            top_categories=[
                {"category": name, "count": count} for name, count in targets.most_common(5)
            ],
        )


def _canonical_name(members: List[str]) -> str:
    for member in members:
        if contains_domain_keyword(member):
            return member
    longest = members[0]
    for member in members[1:]:
        if len(member) > len(longest):
            longest = member
    return longest
