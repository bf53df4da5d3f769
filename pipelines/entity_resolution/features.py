"""
Feature Extraction for Entity Resolution.

Responsibilities:
- Compute name similarity from four blended components
  (edit distance, Jaro-Winkler, phonetic code, token overlap).
- Rank candidate names against a target.
- Decide nickname / initials / containment equivalence.

Non-Responsibilities:
- No weighting of domain factors (see scoring).
- No threshold decisions beyond the caller-supplied ones.
- No persistence.

Invariant:
Every function here is pure and safe to call from many threads.
An empty or missing name never scores above 0.
"""

import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

import jellyfish
from rapidfuzz.distance import Jaro, Levenshtein

from seasonlink.normalize import letters_only, normalize_name, strip_suffixes

# Component weights of the blended similarity
LEVENSHTEIN_WEIGHT = 0.3
JARO_WINKLER_WEIGHT = 0.3
PHONETIC_WEIGHT = 0.2
TOKEN_WEIGHT = 0.2

PREFIX_SCALE = 0.1
MAX_PREFIX = 4
PHONETIC_MISMATCH_SCALE = 0.8
EQUIVALENCE_THRESHOLD = 0.9

_TOKEN = re.compile(r"[A-Za-z0-9_]+")
_NON_LETTER = re.compile(r"[^A-Za-z\s]")

NICKNAMES: Dict[str, Tuple[str, ...]] = {
    "robert": ("bob", "rob", "bobby", "robbie"),
    "william": ("bill", "will", "billy", "willie"),
    "richard": ("dick", "rick", "ricky", "richie"),
    "michael": ("mike", "mikey", "mick"),
    "james": ("jim", "jimmy", "jamie"),
    "jonathan": ("jon", "john", "johnny"),
    "joseph": ("joe", "joey"),
    "daniel": ("dan", "danny"),
    "thomas": ("tom", "tommy"),
    "charles": ("charlie", "chuck", "chas"),
    "christopher": ("chris", "kit"),
    "alexander": ("alex", "al"),
    "benjamin": ("ben", "benny", "benji"),
    "nicholas": ("nick", "nicky"),
    "matthew": ("matt", "matty"),
    "anthony": ("tony", "ant"),
    "patrick": ("pat", "paddy"),
    "edward": ("ed", "eddie", "ted"),
    "andrew": ("andy", "drew"),
    "david": ("dave", "davey"),
}

_NICKNAME_FAMILIES = [frozenset((full,) + nicks) for full, nicks in NICKNAMES.items()]


@dataclass(frozen=True)
class NameVariation:
    original: str
    normalized: str
    tokens: List[str]
    phonetic: Optional[str]


def levenshtein_similarity(a: str, b: str) -> float:
    """1 - edit distance / longer length; two empty strings are identical."""
    max_len = max(len(a), len(b))
    if max_len == 0:
        return 1.0
    return 1.0 - Levenshtein.distance(a, b) / max_len


def jaro_winkler(a: str, b: str) -> float:
    """
    Jaro similarity with the Winkler common-prefix bonus.

    The bonus is ``prefix * 0.1 * (1 - jaro)`` for a shared prefix of up to
    four characters.
    """
    if a == b:
        return 1.0
    if not a or not b:
        return 0.0

    jaro = Jaro.similarity(a, b)
    prefix = 0
    for x, y in zip(a[:MAX_PREFIX], b[:MAX_PREFIX]):
        if x != y:
            break
        prefix += 1
    return jaro + prefix * PREFIX_SCALE * (1.0 - jaro)


def phonetic_code(name: Optional[str]) -> str:
    if not name:
        return ""
    letters = _NON_LETTER.sub("", name).strip()
    if not letters:
        return ""
    return jellyfish.metaphone(letters)


def phonetic_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Metaphone code comparison: equal codes score 1.0, otherwise 0.8 * edit similarity."""
    code_a = phonetic_code(a)
    code_b = phonetic_code(b)
    if not code_a or not code_b:
        return 0.0
    if code_a == code_b:
        return 1.0
    return levenshtein_similarity(code_a, code_b) * PHONETIC_MISMATCH_SCALE


def tokenize(name: Optional[str]) -> List[str]:
    if not name:
        return []
    return _TOKEN.findall(name.lower())


def token_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Jaccard overlap of lower-cased word tokens."""
    tokens_a = set(tokenize(a))
    tokens_b = set(tokenize(b))
    if not tokens_a or not tokens_b:
        return 0.0
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """
    Blended name similarity in [0, 1].

    Args:
        a: First display name (may be empty or None)
        b: Second display name (may be empty or None)

    Returns:
        1.0 when the normalized names are equal, 0 when either is empty,
        otherwise the weighted blend of the four components.
    """
    if not a or not b:
        return 0.0

    norm_a = normalize_name(a)
    norm_b = normalize_name(b)
    if norm_a == norm_b:
        return 1.0

    score = (
        levenshtein_similarity(norm_a, norm_b) * LEVENSHTEIN_WEIGHT
        + jaro_winkler(norm_a, norm_b) * JARO_WINKLER_WEIGHT
        + phonetic_similarity(a, b) * PHONETIC_WEIGHT
        + token_similarity(a, b) * TOKEN_WEIGHT
    )
    return min(max(score, 0.0), 1.0)


def find_best_matches(
    target: Optional[str],
    candidates: Sequence[str],
    threshold: float = 0.7,
    max_results: int = 5,
) -> List[Tuple[str, float]]:
    """
    Score every candidate against target and keep the best ones.

    Returns (name, score) pairs with score >= threshold, highest first.
    Equal scores keep their input order.
    """
    if not target or not candidates:
        return []

    scored = [(candidate, similarity(target, candidate)) for candidate in candidates]
    kept = [pair for pair in scored if pair[1] >= threshold]
    kept.sort(key=lambda pair: pair[1], reverse=True)
    return kept[:max_results]


def same_nickname_family(a: str, b: str) -> bool:
    return any(a in family and b in family for family in _NICKNAME_FAMILIES)


def are_equivalent(a: Optional[str], b: Optional[str]) -> bool:
    """
    True when two names very likely denote the same person.

    Checks, in order: normalized equality, nickname family (Robert/Bob),
    containment ("Brady" in "Tom Brady"), identical short letter sequences
    ("T.J." and "TJ"), then similarity >= 0.9.
    """
    norm_a = normalize_name(a)
    norm_b = normalize_name(b)
    if not norm_a or not norm_b:
        return False
    if norm_a == norm_b:
        return True
    if same_nickname_family(norm_a, norm_b):
        return True
    if norm_a in norm_b or norm_b in norm_a:
        return True

    letters_a = letters_only(norm_a)
    if len(letters_a) <= 3 and letters_a and letters_a == letters_only(norm_b):
        return True

    return similarity(a, b) >= EQUIVALENCE_THRESHOLD


def name_variations(name: str) -> NameVariation:
    normalized = normalize_name(name)
    return NameVariation(
        original=name,
        normalized=normalized,
        tokens=tokenize(normalized),
        phonetic=phonetic_code(name) or None,
    )


class StringSimilarityEngine:
    """
    Thin object facade over the module functions.

    Resolvers take an engine so tests can substitute a stub; the engine
    itself holds no state.
    """

    normalize_name = staticmethod(normalize_name)
    strip_suffixes = staticmethod(strip_suffixes)
    jaro_winkler = staticmethod(jaro_winkler)
    name_variations = staticmethod(name_variations)

    def similarity(self, a: Optional[str], b: Optional[str]) -> float:
        return similarity(a, b)

    def find_best_matches(self, target, candidates, threshold=0.7, max_results=5):
        return find_best_matches(target, candidates, threshold, max_results)

    def are_equivalent(self, a: Optional[str], b: Optional[str]) -> bool:
        return are_equivalent(a, b)
