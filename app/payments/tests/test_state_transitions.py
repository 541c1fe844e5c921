"""
Tests for state machine transitions using django-fsm.

Tests valid and invalid PaymentAttempt transitions, and that the
status field cannot be assigned directly.
"""

import pytest
from django.utils import timezone
from django_fsm import TransitionNotAllowed

from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus, ResolutionSource


@pytest.fixture
def initiated_attempt(student):
    """Unsaved attempt as built before M-Pesa accepts the push."""
    return PaymentAttempt(
        student=student,
        amount="1000.00",
        phone_number="+254712345678",
        account_reference=student.admission_number,
        status=PaymentAttemptStatus.INITIATED,
    )


# =============================================================================
# PaymentAttempt State Transition Tests
# =============================================================================


class TestPaymentAttemptTransitions:
    """Tests for PaymentAttempt state machine transitions."""

    # -------------------------------------------------------------------------
    # Valid Transitions
    # -------------------------------------------------------------------------

    def test_initiated_to_pending(self, db, initiated_attempt):
        """Should record the correlation id when M-Pesa accepts."""
        initiated_attempt.mark_pending("ws_CO_191220191020363925", "29115-34620561-1")
        initiated_attempt.save()

        assert initiated_attempt.status == PaymentAttemptStatus.PENDING
        assert initiated_attempt.correlation_id == "ws_CO_191220191020363925"
        assert initiated_attempt.merchant_request_id == "29115-34620561-1"

    def test_pending_to_completed(self, db, pending_attempt):
        pending_attempt.complete(receipt_code="NLJ7RT61SV", source=ResolutionSource.CALLBACK)
        pending_attempt.save()

        assert pending_attempt.status == PaymentAttemptStatus.COMPLETED
        assert pending_attempt.receipt_code == "NLJ7RT61SV"
        assert pending_attempt.resolution_source == ResolutionSource.CALLBACK
        assert pending_attempt.resolved_at is not None

    def test_pending_to_failed(self, db, pending_attempt):
        pending_attempt.fail(reason="Request cancelled by user", source=ResolutionSource.CALLBACK)
        pending_attempt.save()

        assert pending_attempt.status == PaymentAttemptStatus.FAILED
        assert pending_attempt.failure_reason == "Request cancelled by user"
        assert pending_attempt.resolved_at is not None

    def test_pending_to_unknown(self, db, pending_attempt):
        pending_attempt.mark_unknown()
        pending_attempt.save()

        assert pending_attempt.status == PaymentAttemptStatus.UNKNOWN
        assert pending_attempt.resolved_at is None

    def test_unknown_to_completed(self, db, unknown_attempt):
        """Operator resolution completes an UNKNOWN attempt."""
        unknown_attempt.complete(receipt_code="NLJ7RT61SV", source=ResolutionSource.MANUAL)
        unknown_attempt.save()

        assert unknown_attempt.status == PaymentAttemptStatus.COMPLETED
        assert unknown_attempt.resolution_source == ResolutionSource.MANUAL

    def test_unknown_to_failed(self, db, unknown_attempt):
        unknown_attempt.fail(reason="Payer confirms no deduction", source=ResolutionSource.MANUAL)
        unknown_attempt.save()

        assert unknown_attempt.status == PaymentAttemptStatus.FAILED

    # -------------------------------------------------------------------------
    # Invalid Transitions
    # -------------------------------------------------------------------------

    def test_cannot_complete_twice(self, db, completed_attempt):
        with pytest.raises(TransitionNotAllowed):
            completed_attempt.complete(receipt_code="QXZ9Y8W7V6", source=ResolutionSource.CALLBACK)

    def test_cannot_fail_completed(self, db, completed_attempt):
        with pytest.raises(TransitionNotAllowed):
            completed_attempt.fail(reason="late failure", source=ResolutionSource.CALLBACK)

    def test_cannot_complete_failed(self, db, failed_attempt):
        with pytest.raises(TransitionNotAllowed):
            failed_attempt.complete(receipt_code="NLJ7RT61SV", source=ResolutionSource.VERIFICATION)

    def test_cannot_mark_unknown_from_unknown(self, db, unknown_attempt):
        with pytest.raises(TransitionNotAllowed):
            unknown_attempt.mark_unknown()

    def test_cannot_mark_resolved_unknown(self, db, completed_attempt):
        with pytest.raises(TransitionNotAllowed):
            completed_attempt.mark_unknown()

    def test_cannot_complete_initiated(self, db, initiated_attempt):
        """An attempt M-Pesa never accepted has nothing to complete."""
        with pytest.raises(TransitionNotAllowed):
            initiated_attempt.complete(receipt_code="NLJ7RT61SV", source=ResolutionSource.CALLBACK)

    def test_cannot_mark_pending_twice(self, db, pending_attempt):
        with pytest.raises(TransitionNotAllowed):
            pending_attempt.mark_pending("ws_CO_other")

    # -------------------------------------------------------------------------
    # Protected Field
    # -------------------------------------------------------------------------

    def test_direct_status_assignment_blocked(self, db, pending_attempt):
        """Status only changes through transitions."""
        with pytest.raises(AttributeError):
            pending_attempt.status = PaymentAttemptStatus.COMPLETED

    def test_failed_transition_leaves_state(self, db, completed_attempt):
        resolved_at = completed_attempt.resolved_at

        with pytest.raises(TransitionNotAllowed):
            completed_attempt.fail(reason="late", source=ResolutionSource.CALLBACK)

        assert completed_attempt.status == PaymentAttemptStatus.COMPLETED
        assert completed_attempt.resolved_at == resolved_at
        assert completed_attempt.resolved_at <= timezone.now()
