"""Title similarity scoring for candidate matching.

The score is a bounded token-overlap measure on normalized titles:

- 1.0 for identical normalized titles,
- 0.96 when one normalized title contains the other,
- otherwise ``0.55 * overlap_max + 0.45 * overlap_min`` over significant
  tokens, with a small bonus when the first or last tokens agree.

The thresholds below were chosen empirically and are overridable through
``LinkerConfig``.
"""

from __future__ import annotations

from arxiv_linker.utils import normalize_title, tokenize_title

__all__ = [
    "WEAK_ACCEPT_THRESHOLD",
    "STRONG_ACCEPT_THRESHOLD",
    "EARLY_EXIT_THRESHOLD",
    "SUBSTRING_SCORE",
    "title_similarity",
]

# Minimum score for a candidate to be considered at all
WEAK_ACCEPT_THRESHOLD = 0.72
# Accepted without cross-validation at or above this score
STRONG_ACCEPT_THRESHOLD = 0.82
# Secondary source stops issuing query variants once a candidate reaches this
EARLY_EXIT_THRESHOLD = 0.90

SUBSTRING_SCORE = 0.96
EDGE_TOKEN_BONUS = 0.03
MAX_OVERLAP_WEIGHT = 0.55
MIN_OVERLAP_WEIGHT = 0.45


def title_similarity(title_a: str | None, title_b: str | None) -> float:
    """Compute a symmetric similarity score in [0, 1] between two titles.

    Args:
        title_a: First title (raw)
        title_b: Second title (raw)

    Returns:
        Similarity score; 0.0 if either title is empty
    """
    norm_a = normalize_title(title_a).lower()
    norm_b = normalize_title(title_b).lower()
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    if norm_a in norm_b or norm_b in norm_a:
        return SUBSTRING_SCORE

    tokens_a = tokenize_title(title_a)
    tokens_b = tokenize_title(title_b)
    set_a, set_b = set(tokens_a), set(tokens_b)
    if not set_a or not set_b:
        return 0.0
    inter = len(set_a & set_b)
    if inter == 0:
        return 0.0

    overlap_max = inter / max(len(set_a), len(set_b))
    overlap_min = inter / min(len(set_a), len(set_b))
    score = MAX_OVERLAP_WEIGHT * overlap_max + MIN_OVERLAP_WEIGHT * overlap_min
    if tokens_a[0] == tokens_b[0]:
        score += EDGE_TOKEN_BONUS
    if tokens_a[-1] == tokens_b[-1]:
        score += EDGE_TOKEN_BONUS
    return min(score, 1.0)
