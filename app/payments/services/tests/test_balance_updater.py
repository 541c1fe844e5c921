"""
Tests for BalanceUpdater.

Tests cover:
- Exactly-once decrement keyed by attempt
- Clamping at zero with the overpayment recorded
- Non-completed attempts
- Recovery sweep for completed attempts that missed the update
"""

import uuid
from decimal import Decimal
from unittest.mock import patch

import pytest

from payments.exceptions import PaymentNotFoundError
from payments.models import PaymentAttempt
from payments.services import BalanceUpdater
from payments.tests.factories import PaymentAttemptFactory, StudentFactory
from students.models import StudentBalance


def _balance(student):
    return StudentBalance.objects.get(student=student).outstanding_balance


@pytest.fixture
def unapplied_completed_attempt(db, student):
    """COMPLETED attempt for KES 2,000 whose balance update never ran."""
    return PaymentAttemptFactory(student=student, completed=True, amount=Decimal("2000.00"))


# =============================================================================
# apply_completed_payment Tests
# =============================================================================


class TestApplyCompletedPayment:
    """Tests for BalanceUpdater.apply_completed_payment()."""

    def test_decrements_balance(self, db, unapplied_completed_attempt, student):
        result = BalanceUpdater.apply_completed_payment(unapplied_completed_attempt.id)

        assert result.applied is True
        assert result.previous_balance == Decimal("5000.00")
        assert result.new_balance == Decimal("3000.00")
        assert result.overpayment == Decimal("0.00")
        assert _balance(student) == Decimal("3000.00")

        attempt = PaymentAttempt.objects.get(id=unapplied_completed_attempt.id)
        assert attempt.balance_applied is True
        assert attempt.balance_applied_at is not None

    def test_second_call_is_noop(self, db, unapplied_completed_attempt, student):
        """The same attempt never decrements twice."""
        BalanceUpdater.apply_completed_payment(unapplied_completed_attempt.id)

        result = BalanceUpdater.apply_completed_payment(unapplied_completed_attempt.id)

        assert result.applied is False
        assert result.reason == "Balance already applied"
        assert _balance(student) == Decimal("3000.00")

    def test_overpayment_clamped_at_zero(self, db):
        """Paying more than is owed leaves a zero balance and records the excess."""
        student = StudentFactory(balance=Decimal("500.00"))
        attempt = PaymentAttemptFactory(student=student, completed=True, amount=Decimal("800.00"))

        result = BalanceUpdater.apply_completed_payment(attempt.id)

        assert result.applied is True
        assert result.new_balance == Decimal("0.00")
        assert result.overpayment == Decimal("300.00")
        assert _balance(student) == Decimal("0.00")
        assert PaymentAttempt.objects.get(id=attempt.id).get_meta("overpayment") == "300.00"

    def test_exact_payment_clears_balance(self, db):
        student = StudentFactory(balance=Decimal("2000.00"))
        attempt = PaymentAttemptFactory(student=student, completed=True, amount=Decimal("2000.00"))

        result = BalanceUpdater.apply_completed_payment(attempt.id)

        assert result.new_balance == Decimal("0.00")
        assert result.overpayment == Decimal("0.00")
        assert "overpayment" not in PaymentAttempt.objects.get(id=attempt.id).metadata

    def test_pending_attempt_not_applied(self, db, pending_attempt, student):
        result = BalanceUpdater.apply_completed_payment(pending_attempt.id)

        assert result.applied is False
        assert "pending" in result.reason
        assert _balance(student) == Decimal("5000.00")

    def test_failed_attempt_not_applied(self, db, failed_attempt, student):
        result = BalanceUpdater.apply_completed_payment(failed_attempt.id)

        assert result.applied is False
        assert _balance(student) == Decimal("5000.00")

    def test_missing_balance_row_created(self, db):
        """A student without a balance row ends at zero, all excess recorded."""
        student = StudentFactory()
        StudentBalance.objects.filter(student=student).delete()
        attempt = PaymentAttemptFactory(student=student, completed=True, amount=Decimal("100.00"))

        result = BalanceUpdater.apply_completed_payment(attempt.id)

        assert result.applied is True
        assert result.overpayment == Decimal("100.00")
        assert _balance(student) == Decimal("0.00")

    def test_unknown_attempt(self, db):
        with pytest.raises(PaymentNotFoundError):
            BalanceUpdater.apply_completed_payment(uuid.uuid4())


# =============================================================================
# reconcile_unapplied Tests
# =============================================================================


class TestReconcileUnapplied:
    """Tests for BalanceUpdater.reconcile_unapplied()."""

    def test_applies_missed_updates(self, db, unapplied_completed_attempt, completed_attempt, student):
        """Only COMPLETED attempts without the marker are applied."""
        result = BalanceUpdater.reconcile_unapplied()

        assert result.checked == 1
        assert result.applied == 1
        assert result.errors == []
        assert _balance(student) == Decimal("3000.00")

    def test_nothing_to_do(self, db, pending_attempt, completed_attempt):
        result = BalanceUpdater.reconcile_unapplied()

        assert result.checked == 0
        assert result.applied == 0

    def test_respects_limit(self, db, student):
        for _ in range(3):
            PaymentAttemptFactory(student=student, completed=True, amount=Decimal("100.00"))

        result = BalanceUpdater.reconcile_unapplied(limit=2)

        assert result.checked == 2
        assert _balance(student) == Decimal("4800.00")

    def test_errors_collected(self, db, unapplied_completed_attempt):
        with patch.object(
            BalanceUpdater, "apply_completed_payment", side_effect=RuntimeError("boom")
        ):
            result = BalanceUpdater.reconcile_unapplied()

        assert result.checked == 1
        assert result.applied == 0
        assert len(result.errors) == 1
        assert "boom" in result.errors[0]
