"""
PaymentAttempt model for the M-Pesa STK push lifecycle.

A PaymentAttempt is created only once M-Pesa has accepted the STK push,
and is resolved exactly once by whichever authoritative signal arrives
first: the provider callback, a status query, or an operator.

Usage:
    from payments.models import PaymentAttempt
    from payments.state_machines import PaymentAttemptStatus

    attempt = PaymentAttempt(
        student=student,
        amount=Decimal("2000.00"),
        phone_number="+254712345678",
        account_reference=student.admission_number,
    )
    attempt.mark_pending(correlation_id="ws_CO_...", merchant_request_id="29115-...")
    attempt.save()

    # Resolution always goes through payments.ledger.PaymentLedger
    PaymentLedger.apply_signal(attempt.id, signal)
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.db.models import Q
from django.utils import timezone

from django_fsm import ConcurrentTransitionMixin, FSMField, transition

from core.models import BaseModel
from core.model_mixins import MetadataMixin, UUIDPrimaryKeyMixin

from payments.exceptions import PaymentValidationError
from payments.state_machines import (
    PAYMENT_TERMINAL_STATUSES,
    PaymentAttemptStatus,
    ResolutionSource,
)


class PaymentAttempt(ConcurrentTransitionMixin, UUIDPrimaryKeyMixin, MetadataMixin, BaseModel):
    """
    One STK push sent to a payer's phone, and its outcome.

    Uses django-fsm for state machine management. ConcurrentTransitionMixin
    turns every save of a transition into `UPDATE ... WHERE status = <old>`,
    so two writers resolving the same attempt cannot both succeed: the
    loser gets ConcurrentTransition.

    State Flow:
        INITIATED -> PENDING -> COMPLETED
        INITIATED -> PENDING -> FAILED
        INITIATED -> PENDING -> UNKNOWN -> COMPLETED / FAILED (operator)

    Fields:
        student: Student whose fees are being paid
        amount: Amount transmitted to M-Pesa (whole shillings), immutable
        phone_number: Payer phone in E.164 form
        account_reference: Account reference shown to the payer
        description: Free-text description of the payment
        correlation_id: M-Pesa CheckoutRequestID
        merchant_request_id: M-Pesa MerchantRequestID (audit only)
        status: Current FSM state
        receipt_code: M-Pesa receipt number, set iff COMPLETED
        failure_reason: Provider result description, set iff FAILED
        resolution_source: Which signal resolved the attempt
        verification_attempts: Inconclusive status queries so far
        balance_applied: Whether the student balance has been decremented
        metadata: Provider detail (payer phone, provider timestamp, codes)

    Note:
        Never call refresh_from_db() on an instance whose status is loaded:
        the status field is protected. Re-fetch with objects.get() instead.
    """

    # ==========================================================================
    # Relationships
    # ==========================================================================

    student = models.ForeignKey(
        "students.Student",
        on_delete=models.PROTECT,
        related_name="payment_attempts",
        help_text="Student whose fees this payment settles",
    )

    # ==========================================================================
    # Request Details
    # ==========================================================================

    amount = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        help_text="Amount sent to M-Pesa after rounding (immutable)",
    )

    phone_number = models.CharField(
        max_length=16,
        help_text="Payer phone number in E.164 format (+2547XXXXXXXX)",
    )

    account_reference = models.CharField(
        max_length=64,
        help_text="Account reference (truncated to 12 characters on the wire)",
    )

    description = models.CharField(
        max_length=255,
        blank=True,
        default="",
        help_text="Payment description (truncated to 13 characters on the wire)",
    )

    # ==========================================================================
    # M-Pesa Integration
    # ==========================================================================

    correlation_id = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        unique=True,
        help_text="M-Pesa CheckoutRequestID - unique so a reused id can never resolve two attempts",
    )

    merchant_request_id = models.CharField(
        max_length=100,
        blank=True,
        default="",
        help_text="M-Pesa MerchantRequestID",
    )

    # ==========================================================================
    # State & Resolution
    # ==========================================================================

    status = FSMField(
        default=PaymentAttemptStatus.INITIATED,
        choices=PaymentAttemptStatus.choices,
        db_index=True,
        protected=True,  # Prevent direct assignment outside transitions
        help_text="Current state of the payment attempt (managed by FSM)",
    )

    receipt_code = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        unique=True,
        help_text="M-Pesa receipt number (e.g. NLJ7RT61SV)",
    )

    failure_reason = models.TextField(
        null=True,
        blank=True,
        help_text="Reason reported by M-Pesa or the operator if the payment failed",
    )

    resolution_source = models.CharField(
        max_length=20,
        choices=ResolutionSource.choices,
        null=True,
        blank=True,
        help_text="Signal that resolved this attempt",
    )

    resolved_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the attempt reached COMPLETED or FAILED",
    )

    # ==========================================================================
    # Verification Tracking
    # ==========================================================================

    verification_attempts = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of inconclusive status queries",
    )

    last_verified_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When M-Pesa was last queried for this attempt",
    )

    # ==========================================================================
    # Balance Application
    # ==========================================================================

    balance_applied = models.BooleanField(
        default=False,
        help_text="Whether the student balance has been decremented for this payment",
    )

    balance_applied_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When the student balance was decremented",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-created_at"]
        verbose_name = "Payment Attempt"
        verbose_name_plural = "Payment Attempts"
        indexes = [
            models.Index(fields=["status", "created_at"], name="payment_att_status_created_idx"),
            models.Index(fields=["status", "balance_applied"], name="payment_att_status_applied_idx"),
            models.Index(fields=["student", "created_at"], name="payment_att_student_crtd_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(amount__gt=0),
                name="payment_attempt_amount_positive",
            ),
            models.CheckConstraint(
                condition=(
                    Q(status=PaymentAttemptStatus.COMPLETED, receipt_code__isnull=False)
                    | (~Q(status=PaymentAttemptStatus.COMPLETED) & Q(receipt_code__isnull=True))
                ),
                name="payment_attempt_receipt_iff_completed",
            ),
            models.CheckConstraint(
                condition=~Q(status=PaymentAttemptStatus.FAILED) | Q(failure_reason__isnull=False),
                name="payment_attempt_failed_has_reason",
            ),
        ]

    _persisted_amount = None

    def __str__(self) -> str:
        """Return string representation with ID, status, and amount."""
        return f"PaymentAttempt({self.id}, {self.status}, KES {self.amount})"

    @classmethod
    def from_db(cls, db, field_names, values):
        instance = super().from_db(db, field_names, values)
        instance._persisted_amount = instance.__dict__.get("amount")
        return instance

    def save(self, *args, **kwargs):
        """
        Save, refusing to change the amount of an existing attempt.

        Raises:
            PaymentValidationError: If the amount differs from the stored one
        """
        if (
            not self._state.adding
            and self._persisted_amount is not None
            and self.amount != self._persisted_amount
        ):
            raise PaymentValidationError(
                "Payment amount cannot be changed once recorded",
                details={
                    "payment_attempt_id": str(self.pk),
                    "amount": str(self._persisted_amount),
                },
            )
        super().save(*args, **kwargs)
        self._persisted_amount = self.amount

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_resolved(self) -> bool:
        """COMPLETED or FAILED."""
        return self.status in PAYMENT_TERMINAL_STATUSES

    @property
    def needs_manual_resolution(self) -> bool:
        return self.status == PaymentAttemptStatus.UNKNOWN

    @property
    def student_visible_status(self) -> str:
        """
        Status as shown to the paying student.

        UNKNOWN is an operator concern; students keep seeing the payment
        as awaiting confirmation.
        """
        if self.status == PaymentAttemptStatus.UNKNOWN:
            return PaymentAttemptStatus.PENDING
        return self.status

    # ==========================================================================
    # State Transitions (django-fsm)
    # ==========================================================================

    @transition(
        field=status,
        source=PaymentAttemptStatus.INITIATED,
        target=PaymentAttemptStatus.PENDING,
    )
    def mark_pending(self, correlation_id: str, merchant_request_id: str = ""):
        """
        Record M-Pesa's acceptance of the STK push.

        Transition: INITIATED -> PENDING
        """
        self.correlation_id = correlation_id
        self.merchant_request_id = merchant_request_id or ""

    @transition(
        field=status,
        source=[PaymentAttemptStatus.PENDING, PaymentAttemptStatus.UNKNOWN],
        target=PaymentAttemptStatus.COMPLETED,
    )
    def complete(self, receipt_code: str, source: str):
        """
        Mark payment as completed.

        Transition: PENDING/UNKNOWN -> COMPLETED

        UNKNOWN is only a valid source for operator resolution; that rule
        lives in payments.ledger.decisions.
        """
        self.receipt_code = receipt_code
        self.resolution_source = source
        self.resolved_at = timezone.now()
        self.failure_reason = None

    @transition(
        field=status,
        source=[PaymentAttemptStatus.PENDING, PaymentAttemptStatus.UNKNOWN],
        target=PaymentAttemptStatus.FAILED,
    )
    def fail(self, reason: str, source: str):
        """
        Mark payment as failed.

        Transition: PENDING/UNKNOWN -> FAILED

        Args:
            reason: M-Pesa ResultDesc or operator reason
            source: ResolutionSource value
        """
        self.failure_reason = reason
        self.resolution_source = source
        self.resolved_at = timezone.now()

    @transition(
        field=status,
        source=PaymentAttemptStatus.PENDING,
        target=PaymentAttemptStatus.UNKNOWN,
    )
    def mark_unknown(self):
        """
        Give up on automatic verification.

        Transition: PENDING -> UNKNOWN

        The attempt is listed for operators and hidden from the student.
        """
        pass

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def record_verification(self, inconclusive: bool) -> None:
        """
        Note a status query against this attempt.

        Note: Does not save - caller must save after calling.
        """
        self.last_verified_at = timezone.now()
        if inconclusive:
            self.verification_attempts += 1

    def mark_balance_applied(self) -> None:
        """
        Set the applied marker.

        Note: Does not save - caller must save after calling.
        """
        self.balance_applied = True
        self.balance_applied_at = timezone.now()

    def is_stale(self, grace_seconds: int | None = None) -> bool:
        """Whether a PENDING attempt is past the verification grace period."""
        if self.status != PaymentAttemptStatus.PENDING:
            return False
        grace = grace_seconds
        if grace is None:
            grace = settings.PAYMENT_VERIFICATION_GRACE_SECONDS
        return (timezone.now() - self.created_at).total_seconds() >= grace
