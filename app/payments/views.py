"""
DRF views for payments app.

This module provides API views for:
- Fee payment initiation (STK push)
- Payment status and history
- Operator verification and manual resolution

Related files:
    - services/payment_orchestrator.py: PaymentOrchestrator
    - ledger/services.py: PaymentLedger.resolve_manually
    - callbacks/views.py: M-Pesa callback endpoint (plain Django view)
    - serializers.py: Request/response serializers
    - urls.py: URL routing

Endpoints:
    POST /api/v1/payments/initiate/ - Start an STK push
    GET /api/v1/payments/ - Payment history
    GET /api/v1/payments/<id>/ - Payment status
    POST /api/v1/payments/<id>/verify/ - Query M-Pesa now (operators)
    POST /api/v1/payments/<id>/resolve/ - Resolve manually (operators)
    GET /api/v1/payments/unresolved/ - Payments awaiting an operator
    POST /api/v1/payments/callback/ - M-Pesa callback endpoint

Security:
    - All endpoints require authentication except the callback
    - Students may only pay for and view their own payments
"""

from __future__ import annotations

import logging

from drf_spectacular.utils import OpenApiResponse, extend_schema
from rest_framework import status
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from payments.apps import get_gateway
from payments.exceptions import (
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentPersistenceError,
)
from payments.ledger import PaymentLedger
from payments.permissions import CanViewPayment, IsFinanceOperator, is_finance_operator
from payments.serializers import (
    InitiatedPaymentSerializer,
    InitiatePaymentSerializer,
    OperatorPaymentAttemptSerializer,
    PaymentAttemptSerializer,
    PaymentHistoryFilterSerializer,
    ResolvePaymentSerializer,
    VerificationResultSerializer,
)
from payments.services import (
    InitiatePaymentParams,
    PaymentOrchestrator,
    VerificationService,
)

logger = logging.getLogger(__name__)


INITIATE_ERROR_STATUSES = {
    "VALIDATION_ERROR": status.HTTP_400_BAD_REQUEST,
    "STUDENT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "PERMISSION_DENIED": status.HTTP_403_FORBIDDEN,
}


class InitiatePaymentView(APIView):
    """
    Start an M-Pesa STK push for a student's fees.

    POST /api/v1/payments/initiate/

    Request body:
        {
            "studentId": "uuid",
            "amount": "2000.00",
            "phoneNumber": "0712345678",
            "description": "Term 2 fees"
        }

    Returns:
        201 {"paymentId", "correlationId", "status", "customerMessage"}
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="initiate_payment",
        summary="Initiate fee payment",
        description=(
            "Send an STK push to the payer's phone. The payment is recorded as "
            "pending once M-Pesa accepts the request; the final status arrives "
            "by callback or verification."
        ),
        request=InitiatePaymentSerializer,
        responses={
            201: InitiatedPaymentSerializer,
            400: OpenApiResponse(
                description="Validation error, or M-Pesa declined/failed (see retryable)"
            ),
            403: OpenApiResponse(description="Cannot pay for another student"),
            404: OpenApiResponse(description="Student not found"),
            503: OpenApiResponse(description="Accepted by M-Pesa but could not be recorded"),
        },
        tags=["Payments"],
    )
    def post(self, request):
        """Initiate a payment."""
        serializer = InitiatePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        params = InitiatePaymentParams(
            **serializer.validated_data,
            requested_by=request.user,
        )

        try:
            result = PaymentOrchestrator(get_gateway()).initiate_payment(params)
        except PaymentPersistenceError as e:
            return Response(e.to_dict(), status=e.http_status)

        if not result.success:
            body = {"error": result.error, "error_code": result.error_code}
            details = result.details or {}
            if "retryable" in details:
                body["retryable"] = details["retryable"]
            elif details:
                body["details"] = details
            return Response(
                body,
                status=INITIATE_ERROR_STATUSES.get(
                    result.error_code, status.HTTP_400_BAD_REQUEST
                ),
            )

        return Response(
            InitiatedPaymentSerializer(result.data).data,
            status=status.HTTP_201_CREATED,
        )


class PaymentDetailView(APIView):
    """
    Get a payment's status.

    GET /api/v1/payments/<payment_id>/

    Students see an UNKNOWN payment as pending; operators see the real
    status and reconciliation fields.
    """

    permission_classes = [IsAuthenticated, CanViewPayment]

    @extend_schema(
        operation_id="get_payment",
        summary="Get payment status",
        responses={
            200: PaymentAttemptSerializer,
            403: OpenApiResponse(description="Not your payment"),
            404: OpenApiResponse(description="Payment not found"),
        },
        tags=["Payments"],
    )
    def get(self, request, payment_id):
        """Get payment details."""
        attempt = PaymentOrchestrator.get_payment_attempt(payment_id)
        if attempt is None:
            return Response(
                {"error": "Payment not found"},
                status=status.HTTP_404_NOT_FOUND,
            )
        self.check_object_permissions(request, attempt)

        if is_finance_operator(request.user):
            serializer = OperatorPaymentAttemptSerializer(attempt)
        else:
            serializer = PaymentAttemptSerializer(attempt)
        return Response(serializer.data)


class VerifyPaymentView(APIView):
    """
    Query M-Pesa for a payment's status right away.

    POST /api/v1/payments/<payment_id>/verify/
    """

    permission_classes = [IsAuthenticated, IsFinanceOperator]

    @extend_schema(
        operation_id="verify_payment",
        summary="Verify payment with M-Pesa",
        description=(
            "Run the status query for one payment. A pending payment is resolved "
            "if M-Pesa has a definitive answer; resolved payments are left alone."
        ),
        request=None,
        responses={
            200: VerificationResultSerializer,
            404: OpenApiResponse(description="Payment not found"),
        },
        tags=["Payments - Reconciliation"],
    )
    def post(self, request, payment_id):
        """Verify a payment."""
        try:
            result = VerificationService(get_gateway()).verify(payment_id)
        except PaymentPersistenceError as e:
            return Response(e.to_dict(), status=e.http_status)

        if not result.success:
            return Response(
                {"error": result.error, "error_code": result.error_code},
                status=status.HTTP_404_NOT_FOUND,
            )

        logger.info(
            "Manual verification requested",
            extra={
                "payment_attempt_id": str(payment_id),
                "operator": request.user.get_username(),
                "action": result.data.action.value,
            },
        )
        return Response(VerificationResultSerializer(result.data).data)


class ResolvePaymentView(APIView):
    """
    Resolve a pending or unknown payment on an operator's word.

    POST /api/v1/payments/<payment_id>/resolve/

    Request body:
        {"status": "completed", "receiptCode": "NLJ7RT61SV"}
        {"status": "failed", "reason": "Payer confirms no deduction"}
    """

    permission_classes = [IsAuthenticated, IsFinanceOperator]

    @extend_schema(
        operation_id="resolve_payment",
        summary="Resolve payment manually",
        request=ResolvePaymentSerializer,
        responses={
            200: OperatorPaymentAttemptSerializer,
            400: OpenApiResponse(description="Validation error"),
            404: OpenApiResponse(description="Payment not found"),
            409: OpenApiResponse(
                description="Payment already resolved or receipt already recorded"
            ),
        },
        tags=["Payments - Reconciliation"],
    )
    def post(self, request, payment_id):
        """Resolve a payment."""
        serializer = ResolvePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        try:
            PaymentLedger.resolve_manually(
                payment_id,
                status=data["status"],
                receipt_code=data["receipt_code"],
                reason=data["reason"] or None,
                operator=request.user.get_username(),
            )
        except (
            PaymentNotFoundError,
            InvalidStateTransitionError,
            PaymentPersistenceError,
        ) as e:
            return Response(e.to_dict(), status=e.http_status)

        attempt = PaymentOrchestrator.get_payment_attempt(payment_id)
        return Response(OperatorPaymentAttemptSerializer(attempt).data)


class UnresolvedPaymentsView(APIView):
    """
    List payments awaiting manual resolution (status UNKNOWN), oldest first.

    GET /api/v1/payments/unresolved/
    """

    permission_classes = [IsAuthenticated, IsFinanceOperator]

    @extend_schema(
        operation_id="list_unresolved_payments",
        summary="List unresolved payments",
        responses={200: OperatorPaymentAttemptSerializer(many=True)},
        tags=["Payments - Reconciliation"],
    )
    def get(self, request):
        """List unresolved payments."""
        paginator = PageNumberPagination()
        page = paginator.paginate_queryset(
            PaymentOrchestrator.unresolved_attempts(), request, view=self
        )
        serializer = OperatorPaymentAttemptSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)


class PaymentListView(APIView):
    """
    List payments, newest first.

    GET /api/v1/payments/?studentId=<uuid>&status=<status>

    Students get their own payments, with UNKNOWN shown as pending.
    Operators get every payment with reconciliation fields.
    """

    permission_classes = [IsAuthenticated]

    @extend_schema(
        operation_id="list_payments",
        summary="Payment history",
        parameters=[PaymentHistoryFilterSerializer],
        responses={
            200: PaymentAttemptSerializer(many=True),
            400: OpenApiResponse(description="Invalid filter"),
        },
        tags=["Payments"],
    )
    def get(self, request):
        """List payments visible to the caller."""
        filters = PaymentHistoryFilterSerializer(data=request.query_params)
        filters.is_valid(raise_exception=True)

        queryset = PaymentOrchestrator.payment_history(
            request.user,
            student_id=filters.validated_data.get("student_id"),
            status=filters.validated_data.get("status"),
        )

        paginator = PageNumberPagination()
        page = paginator.paginate_queryset(queryset, request, view=self)
        if is_finance_operator(request.user):
            serializer = OperatorPaymentAttemptSerializer(page, many=True)
        else:
            serializer = PaymentAttemptSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)
