import uuid

import django.db.models.deletion
import django.utils.timezone
import django_fsm
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("students", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="PaymentAttempt",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "metadata",
                    models.JSONField(
                        blank=True,
                        default=dict,
                        help_text="Flexible key-value metadata storage",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Amount sent to M-Pesa after rounding (immutable)",
                        max_digits=12,
                    ),
                ),
                (
                    "phone_number",
                    models.CharField(
                        help_text="Payer phone number in E.164 format (+2547XXXXXXXX)",
                        max_length=16,
                    ),
                ),
                (
                    "account_reference",
                    models.CharField(
                        help_text="Account reference (truncated to 12 characters on the wire)",
                        max_length=64,
                    ),
                ),
                (
                    "description",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="Payment description (truncated to 13 characters on the wire)",
                        max_length=255,
                    ),
                ),
                (
                    "correlation_id",
                    models.CharField(
                        blank=True,
                        help_text="M-Pesa CheckoutRequestID - unique so a reused id can never resolve two attempts",
                        max_length=100,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "merchant_request_id",
                    models.CharField(
                        blank=True,
                        default="",
                        help_text="M-Pesa MerchantRequestID",
                        max_length=100,
                    ),
                ),
                (
                    "status",
                    django_fsm.FSMField(
                        choices=[
                            ("initiated", "Initiated"),
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("unknown", "Unknown"),
                        ],
                        db_index=True,
                        default="initiated",
                        help_text="Current state of the payment attempt (managed by FSM)",
                        max_length=50,
                        protected=True,
                    ),
                ),
                (
                    "receipt_code",
                    models.CharField(
                        blank=True,
                        help_text="M-Pesa receipt number (e.g. NLJ7RT61SV)",
                        max_length=32,
                        null=True,
                        unique=True,
                    ),
                ),
                (
                    "failure_reason",
                    models.TextField(
                        blank=True,
                        help_text="Reason reported by M-Pesa or the operator if the payment failed",
                        null=True,
                    ),
                ),
                (
                    "resolution_source",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("callback", "M-Pesa Callback"),
                            ("verification", "Status Query"),
                            ("manual", "Operator"),
                        ],
                        help_text="Signal that resolved this attempt",
                        max_length=20,
                        null=True,
                    ),
                ),
                (
                    "resolved_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the attempt reached COMPLETED or FAILED",
                        null=True,
                    ),
                ),
                (
                    "verification_attempts",
                    models.PositiveSmallIntegerField(
                        default=0,
                        help_text="Number of inconclusive status queries",
                    ),
                ),
                (
                    "last_verified_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When M-Pesa was last queried for this attempt",
                        null=True,
                    ),
                ),
                (
                    "balance_applied",
                    models.BooleanField(
                        default=False,
                        help_text="Whether the student balance has been decremented for this payment",
                    ),
                ),
                (
                    "balance_applied_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When the student balance was decremented",
                        null=True,
                    ),
                ),
                (
                    "student",
                    models.ForeignKey(
                        help_text="Student whose fees this payment settles",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_attempts",
                        to="students.student",
                    ),
                ),
            ],
            options={
                "verbose_name": "Payment Attempt",
                "verbose_name_plural": "Payment Attempts",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(
                        fields=["status", "created_at"],
                        name="payment_att_status_created_idx",
                    ),
                    models.Index(
                        fields=["status", "balance_applied"],
                        name="payment_att_status_applied_idx",
                    ),
                    models.Index(
                        fields=["student", "created_at"],
                        name="payment_att_student_crtd_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="payment_attempt_amount_positive",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("receipt_code__isnull", False), ("status", "completed")),
                            models.Q(
                                models.Q(("status", "completed"), _negated=True),
                                ("receipt_code__isnull", True),
                            ),
                            _connector="OR",
                        ),
                        name="payment_attempt_receipt_iff_completed",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "failed"), _negated=True),
                            ("failure_reason__isnull", False),
                            _connector="OR",
                        ),
                        name="payment_attempt_failed_has_reason",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="CallbackRecord",
            fields=[
                (
                    "created_at",
                    models.DateTimeField(
                        auto_now_add=True,
                        db_index=True,
                        help_text="Timestamp when this record was created",
                    ),
                ),
                (
                    "updated_at",
                    models.DateTimeField(
                        auto_now=True,
                        help_text="Timestamp when this record was last modified",
                    ),
                ),
                (
                    "id",
                    models.UUIDField(
                        default=uuid.uuid4,
                        editable=False,
                        help_text="Unique identifier for this record",
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                (
                    "payload",
                    models.JSONField(
                        blank=True,
                        help_text="Callback body as received from M-Pesa (JSON)",
                        null=True,
                    ),
                ),
                (
                    "raw_body",
                    models.TextField(
                        blank=True,
                        default="",
                        help_text="Raw body text when it could not be parsed as JSON",
                    ),
                ),
                (
                    "payload_hash",
                    models.CharField(
                        db_index=True,
                        help_text="SHA-256 of the canonical body",
                        max_length=64,
                    ),
                ),
                (
                    "received_at",
                    models.DateTimeField(
                        default=django.utils.timezone.now,
                        help_text="When the callback was delivered",
                    ),
                ),
                (
                    "correlation_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="M-Pesa CheckoutRequestID extracted from the body",
                        max_length=100,
                        null=True,
                    ),
                ),
                (
                    "outcome",
                    models.CharField(
                        choices=[
                            ("received", "Received"),
                            ("applied", "Applied"),
                            ("duplicate", "Duplicate"),
                            ("orphaned", "Orphaned"),
                            ("malformed", "Malformed"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="received",
                        help_text="Processing outcome",
                        max_length=20,
                    ),
                ),
                (
                    "processed_at",
                    models.DateTimeField(
                        blank=True,
                        help_text="When processing finished",
                        null=True,
                    ),
                ),
                (
                    "error_message",
                    models.TextField(
                        blank=True,
                        help_text="Error message if the body was malformed or processing failed",
                        null=True,
                    ),
                ),
                (
                    "retry_count",
                    models.PositiveSmallIntegerField(
                        default=0,
                        help_text="Number of processing attempts",
                    ),
                ),
                (
                    "payment_attempt",
                    models.ForeignKey(
                        blank=True,
                        help_text="Payment attempt this callback was matched to",
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="callback_records",
                        to="payments.paymentattempt",
                    ),
                ),
            ],
            options={
                "verbose_name": "Callback Record",
                "verbose_name_plural": "Callback Records",
                "ordering": ["-received_at"],
                "indexes": [
                    models.Index(
                        fields=["outcome", "received_at"],
                        name="callback_rec_outcome_recv_idx",
                    ),
                    models.Index(
                        fields=["outcome", "retry_count"],
                        name="callback_rec_outcome_retry_idx",
                    ),
                ],
            },
        ),
    ]
