"""
Payment orchestrator service for coordinating payment operations.

This module provides the PaymentOrchestrator class which serves as the
entry point for fee payments. It coordinates between the student
directory, the M-Pesa gateway and PaymentAttempt persistence.

The orchestrator:
- Looks up the student and checks the caller may pay for them
- Sends the STK push (validation happens before any network call)
- Records the attempt as PENDING only once M-Pesa accepted it
- Provides lookup methods for finding PaymentAttempts

Usage:
    from payments.apps import get_gateway
    from payments.services import InitiatePaymentParams, PaymentOrchestrator

    result = PaymentOrchestrator(get_gateway()).initiate_payment(
        InitiatePaymentParams(
            student_id=student.id,
            amount=Decimal("2000"),
            phone_number="0712345678",
            description="Term 2 fees",
        )
    )

    if result.success:
        attempt = result.data.payment_attempt
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import DatabaseError

from core.services import BaseService, ServiceResult

from payments.exceptions import GatewayError, PaymentPersistenceError, PaymentValidationError
from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus
from students.services import StudentDirectory

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser
    from django.db.models import QuerySet

    from payments.adapters import MpesaGateway


logger = logging.getLogger(__name__)


# =============================================================================
# Parameter Types
# =============================================================================


@dataclass
class InitiatePaymentParams:
    """
    Parameters for initiating a fee payment.

    Attributes:
        student_id: Student whose fees are being paid
        amount: Amount in KES (rounded half up to whole shillings)
        phone_number: Payer phone; defaults to the student's phone
        description: Free-text description
        requested_by: Authenticated user making the request (None for
            trusted internal callers)

    Example:
        params = InitiatePaymentParams(
            student_id=student.id,
            amount=Decimal("2000"),
            requested_by=request.user,
        )
    """

    student_id: uuid.UUID | str
    amount: Decimal
    phone_number: str | None = None
    description: str = ""
    requested_by: AbstractBaseUser | None = None


@dataclass
class InitiatedPayment:
    """
    Result of an accepted initiation.

    Attributes:
        payment_attempt: The PENDING attempt
        customer_message: Message from M-Pesa to show the payer
    """

    payment_attempt: PaymentAttempt
    customer_message: str = ""


# =============================================================================
# Payment Orchestrator
# =============================================================================


class PaymentOrchestrator(BaseService):
    """
    Central coordinator for fee payment initiation.

    Failures are returned as ServiceResult with these error codes:
        STUDENT_NOT_FOUND - unknown or inactive student
        PERMISSION_DENIED - caller may not pay for this student
        VALIDATION_ERROR - rejected before reaching M-Pesa
        GATEWAY_* - M-Pesa failure; details["retryable"] says whether the
            caller may start a new attempt

    The orchestrator never re-initiates on its own: a timed-out push may
    still reach the payer's phone.

    Usage:
        orchestrator = PaymentOrchestrator(gateway)
        result = orchestrator.initiate_payment(params)
        attempt = PaymentOrchestrator.get_payment_attempt(attempt_id)
    """

    def __init__(self, gateway: MpesaGateway):
        self.gateway = gateway

    def initiate_payment(self, params: InitiatePaymentParams) -> ServiceResult[InitiatedPayment]:
        """
        Send an STK push and record the accepted attempt.

        Args:
            params: Payment initiation parameters

        Returns:
            ServiceResult containing InitiatedPayment on success, or
            error details on failure.

        Raises:
            PaymentPersistenceError: M-Pesa accepted the push but the
                attempt could not be stored
        """
        lookup = StudentDirectory.lookup(params.student_id)
        if not lookup.success:
            return lookup

        student = lookup.data.student
        if params.requested_by is not None and not StudentDirectory.can_act_for(
            params.requested_by, student
        ):
            logger.warning(
                "Payment initiation refused: caller cannot act for student",
                extra={
                    "student_id": str(student.id),
                    "user_id": str(params.requested_by.pk),
                },
            )
            return ServiceResult.failure(
                "You can only pay fees for your own account",
                error_code="PERMISSION_DENIED",
            )

        phone = params.phone_number or lookup.data.phone_number
        account_reference = student.admission_number

        self.get_logger().info(
            "Initiating payment",
            extra={
                "student_id": str(student.id),
                "amount": str(params.amount),
            },
        )

        try:
            accepted = self.gateway.initiate(
                phone, params.amount, account_reference, params.description
            )

        except PaymentValidationError as e:
            self.get_logger().info(
                f"Payment request rejected locally: {e.message}",
                extra={"student_id": str(student.id)},
            )
            return ServiceResult.failure(
                e.message,
                error_code="VALIDATION_ERROR",
                details=e.details or None,
            )

        except GatewayError as e:
            self.get_logger().warning(
                "Payment initiation failed at M-Pesa",
                extra={
                    "student_id": str(student.id),
                    "error_code": e.error_code,
                    "retryable": e.is_retryable,
                },
            )
            return ServiceResult.failure(
                e.message,
                error_code=e.error_code,
                details={**e.details, "retryable": e.is_retryable},
            )

        attempt = PaymentAttempt(
            student=student,
            amount=Decimal(accepted.amount),
            phone_number=accepted.phone_number,
            account_reference=account_reference,
            description=params.description or "",
            metadata={"requested_amount": str(params.amount)},
        )
        attempt.mark_pending(
            correlation_id=accepted.correlation_id,
            merchant_request_id=accepted.merchant_request_id,
        )

        try:
            with self.atomic():
                attempt.save()
        except DatabaseError as e:
            # The payer may already be looking at the prompt
            logger.critical(
                "STK push accepted but payment attempt could not be stored",
                extra={
                    "student_id": str(student.id),
                    "correlation_id": accepted.correlation_id,
                    "amount": accepted.amount,
                },
                exc_info=True,
            )
            raise PaymentPersistenceError(
                "Payment was sent to M-Pesa but could not be recorded",
                details={"correlation_id": accepted.correlation_id},
            ) from e

        self.get_logger().info(
            "Payment initiated successfully",
            extra={
                "payment_attempt_id": str(attempt.id),
                "correlation_id": attempt.correlation_id,
            },
        )
        return ServiceResult.success(
            InitiatedPayment(
                payment_attempt=attempt,
                customer_message=accepted.customer_message,
            )
        )

    # =========================================================================
    # Lookups
    # =========================================================================

    @classmethod
    def get_payment_attempt(cls, payment_attempt_id: uuid.UUID | str) -> PaymentAttempt | None:
        """
        Look up a PaymentAttempt by ID.

        Returns:
            PaymentAttempt if found, None otherwise (including malformed ids)
        """
        try:
            return PaymentAttempt.objects.select_related("student").get(id=payment_attempt_id)
        except (PaymentAttempt.DoesNotExist, DjangoValidationError):
            return None

    @classmethod
    def get_payment_by_correlation_id(cls, correlation_id: str) -> PaymentAttempt | None:
        try:
            return PaymentAttempt.objects.get(correlation_id=correlation_id)
        except PaymentAttempt.DoesNotExist:
            return None

    @classmethod
    def payment_history(
        cls,
        user,
        student_id: uuid.UUID | str | None = None,
        status: str | None = None,
    ) -> QuerySet[PaymentAttempt]:
        """
        Payments visible to a user, newest first.

        Operators see every payment; students only their own. Students are
        shown UNKNOWN as pending, so their status filter follows suit:
        "pending" includes UNKNOWN attempts and "unknown" matches nothing.
        """
        queryset = PaymentAttempt.objects.select_related("student").order_by("-created_at")
        if not getattr(user, "is_staff", False):
            queryset = queryset.filter(student__user=user)
            if status == PaymentAttemptStatus.PENDING:
                status = None
                queryset = queryset.filter(
                    status__in=[PaymentAttemptStatus.PENDING, PaymentAttemptStatus.UNKNOWN]
                )
            elif status == PaymentAttemptStatus.UNKNOWN:
                return queryset.none()

        if student_id:
            queryset = queryset.filter(student_id=student_id)
        if status:
            queryset = queryset.filter(status=status)
        return queryset

    @classmethod
    def unresolved_attempts(cls) -> QuerySet[PaymentAttempt]:
        """Attempts waiting for an operator (UNKNOWN), oldest first."""
        return (
            PaymentAttempt.objects.filter(status=PaymentAttemptStatus.UNKNOWN)
            .select_related("student")
            .order_by("created_at")
        )
