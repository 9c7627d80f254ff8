# ABOUTME: Tests for ledgersync type definitions
# ABOUTME: Validates Pydantic models, date windows, and payment method notes

from datetime import date, datetime, timedelta, timezone

import pytest

from ledgersync.ledger import make_scope
from ledgersync.types import (
    DateRange,
    LedgerScope,
    Obligation,
    ObligationKind,
    Payment,
    PaymentMethod,
    PaymentPatch,
    infer_method,
    method_note,
)


class TestObligation:
    """Test the Obligation model."""

    def test_creates_with_required_fields(self):
        obligation = Obligation(kind=ObligationKind.CREDIT, date=date(2024, 5, 1))
        assert obligation.id
        assert obligation.branch == ""
        assert obligation.face_amount == 0
        assert obligation.event_date is None

    def test_ids_are_unique(self):
        a = Obligation(kind=ObligationKind.CREDIT, date=date(2024, 5, 1))
        b = Obligation(kind=ObligationKind.CREDIT, date=date(2024, 5, 1))
        assert a.id != b.id

    def test_rounds_face_amount(self):
        obligation = Obligation(kind="deposit", date=date(2024, 5, 1), face_amount="1500.5")
        assert obligation.face_amount == 1501
        assert obligation.kind == ObligationKind.DEPOSIT

    def test_null_branch_becomes_empty(self):
        obligation = Obligation(kind="credit", date=date(2024, 5, 1), branch=None)
        assert obligation.branch == ""


class TestPayment:
    """Test the Payment and PaymentPatch models."""

    def test_naive_date_is_utc(self):
        payment = Payment(obligation_id="c1", amount=10, date=datetime(2024, 5, 1, 12, 0))
        assert payment.date.tzinfo == timezone.utc

    def test_defaults_date_to_now(self):
        before = datetime.now(timezone.utc) - timedelta(seconds=1)
        payment = Payment(obligation_id="c1", amount=10)
        assert payment.date >= before

    def test_patch_changes_only_set_fields(self):
        patch = PaymentPatch(amount=99.6)
        assert patch.changes() == {"amount": 100}

    def test_patch_can_clear_note(self):
        patch = PaymentPatch(note=None)
        assert patch.changes() == {"note": None}


class TestDateRange:
    """Test calendar windows."""

    def test_for_month(self):
        window = DateRange.for_month(2024, 5)
        assert window.start == date(2024, 5, 1)
        assert window.end == date(2024, 6, 1)

    def test_for_december_rolls_year(self):
        window = DateRange.for_month(2024, 12)
        assert window.end == date(2025, 1, 1)

    def test_around_spans_three_months(self):
        window = DateRange.around(date(2024, 1, 20))
        assert window.start == date(2023, 12, 1)
        assert window.end == date(2024, 3, 1)

    def test_half_open(self):
        window = DateRange.for_month(2024, 2)
        assert window.contains(date(2024, 2, 1))
        assert window.contains(date(2024, 2, 29))
        assert not window.contains(date(2024, 3, 1))
        assert not window.contains(date(2024, 1, 31))


class TestLedgerScope:
    """Test scope membership and month views."""

    def test_branch_filter(self):
        scope = LedgerScope(date_range=DateRange.for_month(2024, 5), branch="Main")
        inside = Obligation(kind="credit", date=date(2024, 5, 3), branch="Main")
        other_branch = Obligation(kind="credit", date=date(2024, 5, 3), branch="North")
        assert scope.contains(inside)
        assert not scope.contains(other_branch)

    def test_no_branch_means_every_branch(self):
        scope = LedgerScope(date_range=DateRange.for_month(2024, 5))
        assert scope.contains(Obligation(kind="credit", date=date(2024, 5, 3), branch="North"))

    def test_month_view_carries_over_deposits_only(self):
        assert make_scope(ObligationKind.DEPOSIT, 2024, 5).carry_over
        assert not make_scope(ObligationKind.CREDIT, 2024, 5).carry_over

    def test_default_view_has_no_carry_over(self):
        scope = make_scope(ObligationKind.DEPOSIT, today=date(2024, 5, 15))
        assert not scope.carry_over
        assert scope.date_range == DateRange.around(date(2024, 5, 15))

    def test_blank_branch_is_unscoped(self):
        assert make_scope(ObligationKind.CREDIT, branch="  ").branch is None

    def test_key_is_stable(self):
        scope = LedgerScope(date_range=DateRange.for_month(2024, 5), branch="Main")
        assert scope.key() == "2024-05-01_2024-06-01_Main"


class TestPaymentMethods:
    """Test payment method notes."""

    @pytest.mark.parametrize(
        "method,note",
        [
            (PaymentMethod.CASH, "Cash"),
            (PaymentMethod.CARD, "Card"),
            (PaymentMethod.BANK, "Bank Transfer / e-Wallet"),
        ],
    )
    def test_canonical_labels(self, method, note):
        assert method_note(method) == note
        assert infer_method(note) == (method, "")

    def test_other_uses_free_text(self):
        assert method_note(PaymentMethod.OTHER, " Voucher ") == "Voucher"
        assert method_note(PaymentMethod.OTHER) == "Other"
        assert infer_method("Voucher") == (PaymentMethod.OTHER, "Voucher")

    def test_empty_note_is_cash(self):
        assert infer_method(None) == (PaymentMethod.CASH, "")
        assert infer_method("  ") == (PaymentMethod.CASH, "")
