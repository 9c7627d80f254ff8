# ABOUTME: Tests for whole-unit amount rounding and payment sums
# ABOUTME: Covers half-up rounding, junk input, and duplicate payment ids

from decimal import Decimal

from ledgersync.amounts import round_amount, sum_unique_by_payment_id
from ledgersync.types import Payment


class TestRoundAmount:
    """Test the round_amount function."""

    def test_integers_pass_through(self):
        assert round_amount(500000) == 500000
        assert round_amount(0) == 0
        assert round_amount(-3) == -3

    def test_halves_round_up(self):
        assert round_amount(2.5) == 3
        assert round_amount(3.5) == 4
        assert round_amount(-2.5) == -2

    def test_rounds_to_nearest(self):
        assert round_amount(1234.4) == 1234
        assert round_amount(1234.6) == 1235

    def test_decimal_input(self):
        assert round_amount(Decimal("99.5")) == 100
        assert round_amount(Decimal("99.49")) == 99

    def test_numeric_strings(self):
        assert round_amount("150000") == 150000
        assert round_amount("10.5") == 11

    def test_non_numeric_becomes_zero(self):
        assert round_amount(None) == 0
        assert round_amount("abc") == 0
        assert round_amount(float("nan")) == 0
        assert round_amount(float("inf")) == 0
        assert round_amount(Decimal("NaN")) == 0


class TestSumUniqueByPaymentId:
    """Test de-duplicated payment sums."""

    def test_sums_distinct_payments(self):
        payments = [
            Payment(id="p1", obligation_id="c1", amount=100),
            Payment(id="p2", obligation_id="c1", amount=250),
        ]
        assert sum_unique_by_payment_id(payments) == 350

    def test_duplicate_id_counted_once(self):
        payments = [
            Payment(id="p1", obligation_id="c1", amount=100),
            Payment(id="p1", obligation_id="c1", amount=100),
        ]
        assert sum_unique_by_payment_id(payments) == 100

    def test_first_occurrence_wins(self):
        payments = [
            Payment(id="p1", obligation_id="c1", amount=100),
            Payment(id="p1", obligation_id="c1", amount=900),
        ]
        assert sum_unique_by_payment_id(payments) == 100

    def test_payments_without_id_are_skipped(self):
        payments = [
            Payment(id="", obligation_id="c1", amount=100),
            Payment(id="p2", obligation_id="c1", amount=40),
        ]
        assert sum_unique_by_payment_id(payments) == 40

    def test_empty(self):
        assert sum_unique_by_payment_id([]) == 0
