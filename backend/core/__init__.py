"""
Core numeric, similarity and serialization helpers
"""
from .financial_precision import (
    to_decimal,
    round_financial,
    to_float,
    validate_positive,
    safe_divide,
    safe_subtract,
    safe_add,
    sum_amounts,
    calculate_balance,
    FinancialPrecisionError,
    NegativeValueError
)

from .similarity import (
    levenshtein_distance,
    string_similarity,
    amount_similarity,
    transaction_similarity
)

from .serialization import (
    serialize_doc,
    to_canonical,
    canonical_json,
    sha256_hex,
    parse_object_id
)

__all__ = [
    # Financial Precision
    'to_decimal',
    'round_financial',
    'to_float',
    'validate_positive',
    'safe_divide',
    'safe_subtract',
    'safe_add',
    'sum_amounts',
    'calculate_balance',
    'FinancialPrecisionError',
    'NegativeValueError',
    # Similarity
    'levenshtein_distance',
    'string_similarity',
    'amount_similarity',
    'transaction_similarity',
    # Serialization
    'serialize_doc',
    'to_canonical',
    'canonical_json',
    'sha256_hex',
    'parse_object_id',
]
