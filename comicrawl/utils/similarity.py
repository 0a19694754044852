"""
String similarity used by catalog duplicate detection.

Jaro-Winkler over lowercased, trimmed strings, and the averaged
record score over name, origin name, author and alternative names.
"""

from collections.abc import Sequence
from dataclasses import dataclass, field

PREFIX_SCALE = 0.1
MAX_PREFIX = 5


def _jaro(s1: str, s2: str) -> float:
    if s1 == s2:
        return 1.0
    len1, len2 = len(s1), len(s2)
    if len1 == 0 or len2 == 0:
        return 0.0

    match_distance = max(max(len1, len2) // 2 - 1, 0)
    s1_matches = [False] * len1
    s2_matches = [False] * len2

    matches = 0
    for i in range(len1):
        start = max(0, i - match_distance)
        end = min(i + match_distance + 1, len2)
        for j in range(start, end):
            if s2_matches[j] or s1[i] != s2[j]:
                continue
            s1_matches[i] = s2_matches[j] = True
            matches += 1
            break

    if matches == 0:
        return 0.0

    transpositions = 0
    k = 0
    for i in range(len1):
        if not s1_matches[i]:
            continue
        while not s2_matches[k]:
            k += 1
        if s1[i] != s2[k]:
            transpositions += 1
        k += 1
    transpositions /= 2

    return (matches / len1 + matches / len2 + (matches - transpositions) / matches) / 3.0


def jaro_winkler(a: str | None, b: str | None) -> float:
    """
    Jaro-Winkler similarity in [0, 1], case- and whitespace-insensitive.

    Symmetric: ``jaro_winkler(a, b) == jaro_winkler(b, a)``.
    """
    s1 = (a or "").strip().lower()
    s2 = (b or "").strip().lower()
    if s1 == s2:
        return 1.0 if s1 else 0.0
    if s1 > s2:
        s1, s2 = s2, s1

    jaro = _jaro(s1, s2)
    prefix = 0
    for c1, c2 in zip(s1, s2):
        if c1 != c2 or prefix == MAX_PREFIX:
            break
        prefix += 1
    return jaro + prefix * PREFIX_SCALE * (1.0 - jaro)


def best_pair_similarity(first: Sequence[str], second: Sequence[str]) -> float:
    """Highest similarity over every (first, second) name pair."""
    best = 0.0
    for a in first:
        for b in second:
            best = max(best, jaro_winkler(a, b))
            if best == 1.0:
                return best
    return best


@dataclass(frozen=True)
class NameRecord:
    """The fields of a catalog record that take part in similarity scoring."""

    name: str
    origin_name: str = ""
    author: str = ""
    alternative_names: Sequence[str] = field(default_factory=tuple)


def record_similarity(a: NameRecord, b: NameRecord) -> float:
    """
    Average similarity over the fields both records actually have.

    Blank fields on either side are left out of the average; records that
    share no populated field score 0.0.
    """
    scores: list[float] = []

    for left, right in (
        (a.name, b.name),
        (a.origin_name, b.origin_name),
        (a.author, b.author),
    ):
        if left and left.strip() and right and right.strip():
            scores.append(jaro_winkler(left, right))

    alt_a = [n for n in a.alternative_names if n and n.strip()]
    alt_b = [n for n in b.alternative_names if n and n.strip()]
    if alt_a and alt_b:
        scores.append(best_pair_similarity(alt_a, alt_b))

    if not scores:
        return 0.0
    return sum(scores) / len(scores)
