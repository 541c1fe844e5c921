"""
CallbackRecord model for M-Pesa STK callback tracking.

Stores every callback body M-Pesa posts to us, whether or not it can be
processed, for audit and duplicate-delivery detection. A record is
written before any processing happens, so the provider is acknowledged
as soon as the body is durable.

Usage:
    from payments.models import CallbackRecord

    record = CallbackRecord.objects.create(
        payload=body,
        payload_hash=canonical_json_hash(body),
        correlation_id="ws_CO_191220191020363925",
    )
    process_callback_record.delay(str(record.id))
"""

from __future__ import annotations

from django.conf import settings
from django.db import models
from django.utils import timezone

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin

from payments.state_machines import CallbackOutcome


class CallbackRecord(UUIDPrimaryKeyMixin, BaseModel):
    """
    Audit record of one M-Pesa callback delivery.

    Processing Flow:
        1. Callback arrives, body stored with outcome RECEIVED
        2. Provider acknowledged with ResultCode 0
        3. Celery task parses the body and locates the attempt
        4. Outcome set to APPLIED, DUPLICATE, ORPHANED or MALFORMED
        5. On an unexpected error outcome is FAILED and the retry sweep
           picks it up later

    Fields:
        payload: Parsed JSON body (null when the body was not JSON)
        raw_body: Original body text, kept when it was not valid JSON
        payload_hash: sha256 of the canonical body, for duplicate detection
        received_at: When the delivery arrived
        correlation_id: CheckoutRequestID, once extracted
        payment_attempt: Matched attempt (null for orphaned/malformed)
        outcome: Processing outcome
        error_message: Why the record is malformed or failed
        processed_at: When processing finished
        retry_count: Number of processing attempts

    Note:
        payload_hash is indexed, not unique: M-Pesa redelivers identical
        bodies and every delivery is kept.
    """

    # ==========================================================================
    # Payload
    # ==========================================================================

    payload = models.JSONField(
        null=True,
        blank=True,
        help_text="Callback body as received from M-Pesa (JSON)",
    )

    raw_body = models.TextField(
        blank=True,
        default="",
        help_text="Raw body text when it could not be parsed as JSON",
    )

    payload_hash = models.CharField(
        max_length=64,
        db_index=True,
        help_text="SHA-256 of the canonical body",
    )

    received_at = models.DateTimeField(
        default=timezone.now,
        help_text="When the callback was delivered",
    )

    # ==========================================================================
    # Matching
    # ==========================================================================

    correlation_id = models.CharField(
        max_length=100,
        null=True,
        blank=True,
        db_index=True,
        help_text="M-Pesa CheckoutRequestID extracted from the body",
    )

    payment_attempt = models.ForeignKey(
        "payments.PaymentAttempt",
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="callback_records",
        help_text="Payment attempt this callback was matched to",
    )

    # ==========================================================================
    # Processing Status
    # ==========================================================================

    outcome = models.CharField(
        max_length=20,
        choices=CallbackOutcome.choices,
        default=CallbackOutcome.RECEIVED,
        db_index=True,
        help_text="Processing outcome",
    )

    processed_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="When processing finished",
    )

    # ==========================================================================
    # Error Handling
    # ==========================================================================

    error_message = models.TextField(
        null=True,
        blank=True,
        help_text="Error message if the body was malformed or processing failed",
    )

    retry_count = models.PositiveSmallIntegerField(
        default=0,
        help_text="Number of processing attempts",
    )

    # ==========================================================================
    # Meta & Methods
    # ==========================================================================

    class Meta:
        ordering = ["-received_at"]
        verbose_name = "Callback Record"
        verbose_name_plural = "Callback Records"
        indexes = [
            models.Index(fields=["outcome", "received_at"], name="callback_rec_outcome_recv_idx"),
            models.Index(fields=["outcome", "retry_count"], name="callback_rec_outcome_retry_idx"),
        ]

    def __str__(self) -> str:
        """Return string representation with correlation id and outcome."""
        return f"CallbackRecord({self.correlation_id or '-'}, {self.outcome})"

    # ==========================================================================
    # Properties
    # ==========================================================================

    @property
    def is_processed(self) -> bool:
        """Whether processing reached a final outcome."""
        return self.outcome not in (CallbackOutcome.RECEIVED, CallbackOutcome.FAILED)

    @property
    def can_retry(self) -> bool:
        """Check if the record can be retried (failed with retry count < max)."""
        return (
            self.outcome == CallbackOutcome.FAILED
            and self.retry_count < settings.PAYMENT_CALLBACK_MAX_RETRIES
        )

    # ==========================================================================
    # Helper Methods
    # ==========================================================================

    def mark_processing(self) -> None:
        """
        Count a processing attempt.

        Note: Does not save - caller must save after calling.
        """
        self.retry_count += 1

    def mark_outcome(
        self,
        outcome: str,
        payment_attempt=None,
        error_message: str | None = None,
    ) -> None:
        """
        Record a final processing outcome.

        Note: Does not save - caller must save after calling.
        """
        self.outcome = outcome
        self.processed_at = timezone.now()
        self.error_message = error_message
        if payment_attempt is not None:
            self.payment_attempt = payment_attempt

    def mark_failed(self, error_message: str) -> None:
        """
        Mark processing as failed so the retry sweep picks it up.

        Note: Does not save - caller must save after calling.
        """
        self.outcome = CallbackOutcome.FAILED
        self.error_message = error_message
