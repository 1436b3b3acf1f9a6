"""
Similarity scoring and financial precision helpers
"""
import pytest
from decimal import Decimal

from core.similarity import (
    levenshtein_distance, string_similarity, amount_similarity, transaction_similarity
)
from core.financial_precision import (
    round_financial, to_decimal, validate_positive, calculate_balance, sum_amounts,
    NegativeValueError
)


class TestLevenshtein:

    @pytest.mark.parametrize("a,b,expected", [
        ("kitten", "sitting", 3),
        ("", "abc", 3),
        ("abc", "", 3),
        ("same", "same", 0),
        ("flaw", "lawn", 2),
    ])
    def test_distance(self, a, b, expected):
        assert levenshtein_distance(a, b) == expected

    def test_symmetric(self):
        assert levenshtein_distance("office chairs", "office chair") == \
            levenshtein_distance("office chair", "office chairs")


class TestStringSimilarity:

    def test_identical_strings_score_one(self):
        assert string_similarity("Office supplies", "Office supplies") == 1.0

    def test_empty_side_scores_zero(self):
        assert string_similarity("", "") == 0.0
        assert string_similarity("abc", "") == 0.0
        assert string_similarity(None, "abc") == 0.0

    def test_partial(self):
        assert string_similarity("kitten", "sitting") == pytest.approx(4 / 7)


class TestTransactionSimilarity:

    def test_amount_similarity(self):
        assert amount_similarity(100, 100) == 1.0
        assert amount_similarity(100, 50) == 0.5
        assert amount_similarity(0, 0) == 0.0

    def test_identical_with_vendor_scores_one(self):
        score = transaction_similarity(250.0, 250.0, "Printer paper", "Printer paper", "Acme", "Acme")
        assert score == pytest.approx(1.0)

    def test_missing_vendor_caps_score(self):
        score = transaction_similarity(250.0, 250.0, "Printer paper", "Printer paper")
        assert score == pytest.approx(0.8)

    def test_score_in_unit_interval(self):
        score = transaction_similarity(10.0, 9000.0, "Fuel", "Consulting retainer", "A", "Zeta")
        assert 0.0 <= score <= 1.0


class TestFinancialPrecision:

    def test_round_half_up(self):
        assert round_financial(2.675) == Decimal("2.68")
        assert round_financial("0.005") == Decimal("0.01")

    def test_none_is_zero(self):
        assert to_decimal(None) == Decimal("0")

    def test_validate_positive_rejects_zero(self):
        with pytest.raises(NegativeValueError):
            validate_positive(0, "amount")

    def test_balance(self):
        balance = calculate_balance(1000, 250.5)
        assert balance["spent"] == 250.5
        assert balance["remaining"] == 749.5
        assert balance["utilisation_percentage"] == 25.05

    def test_balance_without_allocation(self):
        assert calculate_balance(0, 0)["utilisation_percentage"] == 0.0

    def test_sum_amounts_avoids_float_drift(self):
        docs = [{"amount": 0.1}, {"amount": 0.2}, {"amount": None}, {}]
        assert sum_amounts(docs) == Decimal("0.3")
