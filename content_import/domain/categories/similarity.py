"""
String similarity helpers for category reconciliation.

Names are compared after ``normalize_category_name``; scores are in [0, 1].
"""
import re
import unicodedata
from typing import Dict, List, Optional

MEDICAL_DOMAINS: Dict[str, List[str]] = {
    "cardiologie": ["cardio", "coeur", "heart", "cardiovasculaire", "cardiaque"],
    "neurologie": ["neuro", "cerveau", "brain", "neurologique", "neural"],
    "pneumologie": ["pneumo", "poumon", "lung", "respiratoire", "pulmonaire"],
    "gastroenterologie": ["gastro", "digestif", "intestin", "estomac", "foie"],
    "endocrinologie": ["endo", "hormone", "diabete", "thyroide", "metabolisme"],
    "anatomie": ["anat", "structure", "morphologie", "topographie"],
    "physiologie": ["physio", "fonction", "fonctionnement", "mecanisme"],
    "pathologie": ["patho", "maladie", "disease", "syndrome", "trouble"],
    "pharmacologie": ["pharma", "medicament", "drug", "traitement", "therapeutique"],
    "immunologie": ["immuno", "anticorps", "immune", "allergie", "vaccination"],
}

MEDICAL_DOMAIN_BONUS = 0.3

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_category_name(name: str) -> str:
    """Lowercase, strip accents and punctuation, collapse whitespace."""
    if not name:
        return ""
    decomposed = unicodedata.normalize("NFD", str(name).lower())
    without_accents = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    cleaned = _NON_ALNUM.sub("", without_accents)
    return _WHITESPACE.sub(" ", cleaned).strip()


def levenshtein_distance(first: str, second: str) -> int:
    if first == second:
        return 0
    if not first:
        return len(second)
    if not second:
        return len(first)

    previous = list(range(len(second) + 1))
    for i, char_a in enumerate(first, start=1):
        current = [i]
        for j, char_b in enumerate(second, start=1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def levenshtein_similarity(first: str, second: str) -> float:
    """``(max_len - distance) / max_len``; two empty strings are identical."""
    max_len = max(len(first), len(second))
    if max_len == 0:
        return 1.0
    return (max_len - levenshtein_distance(first, second)) / max_len


def jaccard_similarity(first: str, second: str) -> float:
    """Jaccard similarity over words longer than two characters."""
    words_a = {word for word in first.split() if len(word) > 2}
    words_b = {word for word in second.split() if len(word) > 2}
    union = words_a | words_b
    if not union:
        return 0.0
    return len(words_a & words_b) / len(union)


def textual_similarity(first: str, second: str) -> float:
    return max(levenshtein_similarity(first, second), jaccard_similarity(first, second))


def identify_medical_domain(normalized_name: str) -> Optional[str]:
    for domain, terms in MEDICAL_DOMAINS.items():
        if domain in normalized_name or any(term in normalized_name for term in terms):
            return domain
    return None


def medical_domain_similarity(first: str, second: str) -> float:
    """Levenshtein similarity plus the domain bonus when both names share a domain."""
    domain = identify_medical_domain(first)
    if domain is None or identify_medical_domain(second) != domain:
        return 0.0
    return min(1.0, levenshtein_similarity(first, second) + MEDICAL_DOMAIN_BONUS)


def contains_domain_keyword(name: str) -> bool:
    normalized = normalize_category_name(name)
    return any(domain in normalized for domain in MEDICAL_DOMAINS)
