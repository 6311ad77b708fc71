"""Title normalization and fuzzy matching used by the title-search fallback."""

import math

# Editorial prefixes that wrap the title of the work actually being discussed
EDITORIAL_PREFIXES = (
    'Review of: ',
    'Commentary on: ',
    'Response to: ',
    'Letter to the editor: ',
    'Editorial: ',
    'Correction to: ',
    'Erratum to: ',
    'Retraction of: ',
)

# Share of the normalized query length that may differ from a candidate title
MATCH_THRESHOLD_RATIO = 0.05


def normalize_title(title: str) -> str:
    """Strip at most one editorial prefix (the first that matches) and trim."""
    normalized = title.strip()
    for prefix in EDITORIAL_PREFIXES:
        if normalized.startswith(prefix):
            normalized = normalized[len(prefix):]
            break
    return normalized.strip()


def title_cache_key(title: str) -> str:
    """Cache key under which a title mirrors the DOI it resolved to."""
    return "title:" + " ".join(normalize_title(title).lower().split())


def levenshtein_distance(s1: str, s2: str) -> int:
    """Classic edit distance, computed row by row in O(len(s1) * len(s2))."""
    if len(s1) < len(s2):
        s1, s2 = s2, s1
    if not s2:
        return len(s1)

    previous_row = list(range(len(s2) + 1))
    for i, c1 in enumerate(s1):
        current_row = [i + 1]
        for j, c2 in enumerate(s2):
            insertions = previous_row[j + 1] + 1
            deletions = current_row[j] + 1
            substitutions = previous_row[j] + (c1 != c2)
            current_row.append(min(insertions, deletions, substitutions))
        previous_row = current_row
    return previous_row[-1]


def match_threshold(normalized_query: str) -> int:
    return math.floor(len(normalized_query) * MATCH_THRESHOLD_RATIO)


def title_distance(query: str, candidate: str):
    """
    Compare a user query against a candidate title.

    Returns:
        Tuple of (distance, threshold); the candidate is acceptable when
        distance <= threshold.
    """
    normalized_query = normalize_title(query).lower()
    normalized_candidate = normalize_title(candidate).lower()
    return levenshtein_distance(normalized_query, normalized_candidate), match_threshold(normalized_query)


def is_close_match(query: str, candidate: str) -> bool:
    distance, threshold = title_distance(query, candidate)
    return distance <= threshold
