"""
Near-duplicate scoring for budget transactions.

Composite score in [0, 1]:
    0.4 * amount closeness + 0.4 * description similarity + 0.2 * vendor similarity

String similarity is edit-distance based: 1 - levenshtein / len(longer).
"""

from typing import Optional

from rapidfuzz.distance import Levenshtein

AMOUNT_WEIGHT = 0.4
DESCRIPTION_WEIGHT = 0.4
VENDOR_WEIGHT = 0.2


def levenshtein_distance(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""
    return int(Levenshtein.distance(a, b))


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Edit-distance similarity. Empty or missing on either side scores 0."""
    if not a or not b:
        return 0.0
    longer = max(len(a), len(b))
    return (longer - levenshtein_distance(a, b)) / longer


def amount_similarity(a: float, b: float) -> float:
    """1 - relative difference of the two amounts."""
    largest = max(a, b)
    if largest <= 0:
        return 0.0
    return 1 - abs(a - b) / largest


def transaction_similarity(
    amount_a: float,
    amount_b: float,
    description_a: Optional[str],
    description_b: Optional[str],
    vendor_a: Optional[str] = "",
    vendor_b: Optional[str] = "",
) -> float:
    """Weighted composite similarity of two transactions."""
    return (
        AMOUNT_WEIGHT * amount_similarity(amount_a, amount_b)
        + DESCRIPTION_WEIGHT * string_similarity(description_a, description_b)
        + VENDOR_WEIGHT * string_similarity(vendor_a, vendor_b)
    )
