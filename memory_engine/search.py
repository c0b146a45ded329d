"""Multi-term fuzzy search over record filenames and bodies."""

import re
from typing import List, Optional, Sequence, TypeVar

from .config import MEMORY_CONFIG

_TERM_SPLIT_RE = re.compile(r"[\s\-_,;:]+")

T = TypeVar("T")


def tokenize(query: Optional[str]) -> List[str]:
    """Split a query on whitespace and ``-_,;:`` separators."""
    if not query:
        return []
    return [term for term in _TERM_SPLIT_RE.split(query.strip()) if term]


def max_errors_for(term: str, threshold: float) -> int:
    return int(len(term) * threshold)


def fuzzy_contains(pattern: str, text: str, max_errors: int) -> bool:
    """True when some substring of ``text`` is within ``max_errors`` edits of ``pattern``.

    Approximate substring matching (Sellers' dynamic program): the match may
    start anywhere in ``text``, so leading text costs nothing.
    """
    if pattern in text:
        return True
    if max_errors <= 0:
        return False

    m = len(pattern)
    if m <= max_errors:
        return True

    # column[i]: fewest edits turning pattern[:i] into a substring ending here
    column = list(range(m + 1))
    for ch in text:
        diagonal = column[0]
        for i in range(1, m + 1):
            cost = 0 if pattern[i - 1] == ch else 1
            best = min(column[i] + 1, column[i - 1] + 1, diagonal + cost)
            diagonal = column[i]
            column[i] = best
        if column[m] <= max_errors:
            return True
    return False


def term_matches(term: str, fields: Sequence[str], threshold: float) -> bool:
    pattern = term.lower()
    allowed = max_errors_for(pattern, threshold)
    return any(fuzzy_contains(pattern, field.lower(), allowed) for field in fields)


def exact_hits(terms: Sequence[str], fields: Sequence[str]) -> int:
    """Number of terms found verbatim (case-insensitive) in any field."""
    lowered = [field.lower() for field in fields]
    return sum(1 for term in terms if any(term.lower() in field for field in lowered))


def search_records(
    records: Sequence[T],
    query: Optional[str],
    threshold: Optional[float] = None,
) -> List[T]:
    """Filter ``records`` (anything with ``filename`` and ``body``) by ``query``.

    Every term must fuzzily match the filename or the body. Survivors are
    ordered by how many terms they contain verbatim; ties keep input order.
    An empty query returns all records unchanged.
    """
    terms = tokenize(query)
    if not terms:
        return list(records)

    if threshold is None:
        threshold = MEMORY_CONFIG["search"]["threshold"]

    matched = []
    for record in records:
        fields = (record.filename, record.body)
        if all(term_matches(term, fields, threshold) for term in terms):
            matched.append(record)

    return sorted(matched, key=lambda r: exact_hits(terms, (r.filename, r.body)), reverse=True)
