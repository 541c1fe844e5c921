"""
DRF serializers for payments app.

This module provides serializers for:
- Payment initiation requests
- Payment status display (student and operator views)
- Operator manual resolution

Field names are camelCase on the wire and snake_case in validated_data.

Related files:
    - models/payment_attempt.py: PaymentAttempt
    - views.py: Payment API views

Usage:
    serializer = InitiatePaymentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    params = InitiatePaymentParams(**serializer.validated_data)
"""

from __future__ import annotations

from decimal import Decimal

from rest_framework import serializers

from payments.callbacks.parser import is_valid_receipt_code
from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus


class InitiatePaymentSerializer(serializers.Serializer):
    """
    Serializer for payment initiation.

    Fields:
        studentId: Student whose fees are being paid
        amount: Amount in KES; rounded half up to whole shillings
        phoneNumber: M-Pesa number (defaults to the student's phone)
        description: Optional note shown on the STK prompt
    """

    studentId = serializers.UUIDField(
        source="student_id",
        help_text="Student ID",
    )
    amount = serializers.DecimalField(
        max_digits=15,
        decimal_places=3,
        min_value=Decimal("0.01"),
        help_text="Amount in KES",
    )
    phoneNumber = serializers.CharField(
        source="phone_number",
        max_length=16,
        required=False,
        allow_blank=True,
        default="",
        help_text="M-Pesa phone number, e.g. 0712345678 or +254712345678",
    )
    description = serializers.CharField(
        max_length=255,
        required=False,
        allow_blank=True,
        default="",
        help_text="Payment description",
    )


class InitiatedPaymentSerializer(serializers.Serializer):
    """Response body for an accepted initiation."""

    paymentId = serializers.UUIDField(source="payment_attempt.id")
    correlationId = serializers.CharField(source="payment_attempt.correlation_id")
    status = serializers.CharField(source="payment_attempt.student_visible_status")
    customerMessage = serializers.CharField(source="customer_message")


class PaymentAttemptSerializer(serializers.ModelSerializer):
    """
    Payment status for API responses.

    Students see UNKNOWN reported as pending; pass
    context={"show_internal_status": True} for operators.
    """

    paymentId = serializers.UUIDField(source="id", read_only=True)
    studentId = serializers.UUIDField(source="student_id", read_only=True)
    phoneNumber = serializers.CharField(source="phone_number", read_only=True)
    correlationId = serializers.CharField(source="correlation_id", read_only=True)
    status = serializers.SerializerMethodField()
    receiptCode = serializers.CharField(source="receipt_code", read_only=True)
    failureReason = serializers.CharField(source="failure_reason", read_only=True)
    createdAt = serializers.DateTimeField(source="created_at", read_only=True)
    resolvedAt = serializers.DateTimeField(source="resolved_at", read_only=True)

    class Meta:
        model = PaymentAttempt
        fields = [
            "paymentId",
            "studentId",
            "amount",
            "phoneNumber",
            "description",
            "correlationId",
            "status",
            "receiptCode",
            "failureReason",
            "createdAt",
            "resolvedAt",
        ]
        read_only_fields = fields

    def get_status(self, obj: PaymentAttempt) -> str:
        if self.context.get("show_internal_status"):
            return obj.status
        return obj.student_visible_status


class OperatorPaymentAttemptSerializer(PaymentAttemptSerializer):
    """Payment details for operators, including reconciliation state."""

    resolutionSource = serializers.CharField(source="resolution_source", read_only=True)
    verificationAttempts = serializers.IntegerField(
        source="verification_attempts", read_only=True
    )
    lastVerifiedAt = serializers.DateTimeField(source="last_verified_at", read_only=True)
    balanceApplied = serializers.BooleanField(source="balance_applied", read_only=True)

    class Meta(PaymentAttemptSerializer.Meta):
        fields = PaymentAttemptSerializer.Meta.fields + [
            "resolutionSource",
            "verificationAttempts",
            "lastVerifiedAt",
            "balanceApplied",
        ]
        read_only_fields = fields

    def get_status(self, obj: PaymentAttempt) -> str:
        return obj.status


class PaymentHistoryFilterSerializer(serializers.Serializer):
    """Query parameters for the payment history list."""

    studentId = serializers.UUIDField(source="student_id", required=False)
    status = serializers.ChoiceField(
        choices=[
            PaymentAttemptStatus.PENDING,
            PaymentAttemptStatus.COMPLETED,
            PaymentAttemptStatus.FAILED,
            PaymentAttemptStatus.UNKNOWN,
        ],
        required=False,
    )


class ResolvePaymentSerializer(serializers.Serializer):
    """
    Serializer for operator manual resolution.

    Fields:
        status: "completed" or "failed"
        receiptCode: M-Pesa receipt (required when completed)
        reason: Failure reason (optional when failed)
    """

    status = serializers.ChoiceField(
        choices=[PaymentAttemptStatus.COMPLETED, PaymentAttemptStatus.FAILED],
    )
    receiptCode = serializers.CharField(
        source="receipt_code",
        max_length=32,
        required=False,
        allow_blank=True,
        default="",
    )
    reason = serializers.CharField(
        max_length=500,
        required=False,
        allow_blank=True,
        default="",
    )

    def validate(self, attrs):
        receipt_code = attrs.get("receipt_code", "").strip().upper()
        if attrs["status"] == PaymentAttemptStatus.COMPLETED:
            if not is_valid_receipt_code(receipt_code):
                raise serializers.ValidationError(
                    {"receiptCode": "A 10-character M-Pesa receipt code is required."}
                )
            if PaymentAttempt.objects.filter(receipt_code=receipt_code).exists():
                raise serializers.ValidationError(
                    {"receiptCode": "This receipt is already recorded on another payment."}
                )
            attrs["receipt_code"] = receipt_code
        else:
            attrs["receipt_code"] = None
        return attrs


class VerificationResultSerializer(serializers.Serializer):
    """Outcome of a manual verification."""

    paymentId = serializers.UUIDField(source="payment_attempt_id")
    status = serializers.CharField()
    queried = serializers.BooleanField()
    action = serializers.SerializerMethodField()
    detail = serializers.CharField()

    def get_action(self, obj) -> str:
        return obj.action.value
