"""
Payment-specific exceptions for payment operations.

This module provides a hierarchy of exceptions for the fee payment
lifecycle: local validation, M-Pesa gateway failures, resolution
conflicts and persistence failures.

Exception Hierarchy:
    PaymentError (base for payment domain)
    ├── PaymentNotFoundError - PaymentAttempt lookup failures (also NotFoundError)
    ├── PaymentValidationError - Rejected locally, never reaches M-Pesa (also ValidationError)
    ├── PaymentPersistenceError - Resolution could not be stored
    ├── MalformedCallbackError - Callback body can never be processed
    └── GatewayError - Base for all M-Pesa failures (also ExternalServiceError)
        ├── GatewayTimeoutError - Timeout / connection failure (transient, retry)
        ├── GatewayUnavailableError - M-Pesa 5xx (transient, retry)
        ├── GatewayAuthError - Consumer key/secret rejected (permanent)
        └── GatewayRejectedError - Request declined by M-Pesa (permanent)

    ReconciliationConflict - Duplicate or losing-race resolution (inherits ConflictError)
    InvalidStateTransitionError - Transition not allowed (inherits ConflictError)

Usage:
    from payments.exceptions import GatewayError, PaymentValidationError

    try:
        result = gateway.initiate(phone, amount, account_ref, description)
    except PaymentValidationError as e:
        return Response(e.to_dict(), status=400)
    except GatewayError as e:
        # Never re-initiate silently: the payer may already have a prompt
        return Response({**e.to_dict(), "retryable": e.is_retryable}, status=400)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Payment Domain Exceptions
# =============================================================================


class PaymentError(BaseApplicationError):
    """
    Base exception for all payment operations.

    All payment-specific exceptions inherit from this class,
    which itself inherits from BaseApplicationError for
    consistent API error responses.
    """

    default_error_code: str = "PAYMENT_ERROR"


class PaymentNotFoundError(PaymentError, NotFoundError):
    """
    Raised when a PaymentAttempt cannot be found.

    Example:
        attempt = PaymentAttempt.objects.filter(id=attempt_id).first()
        if not attempt:
            raise PaymentNotFoundError(
                f"PaymentAttempt {attempt_id} not found",
                details={"payment_attempt_id": str(attempt_id)}
            )
    """

    default_error_code: str = "PAYMENT_NOT_FOUND"
    http_status: int = 404


class PaymentValidationError(PaymentError, ValidationError):
    """
    Raised when a payment request is rejected before any network call.

    Use for:
    - Phone number that is not a Kenyan mobile number
    - Non-positive amount, or amount outside M-Pesa limits once rounded
    - Missing account reference

    Example:
        if amount <= 0:
            raise PaymentValidationError(
                "Amount must be positive",
                details={"amount": str(amount)}
            )
    """

    default_error_code: str = "PAYMENT_VALIDATION_ERROR"


class PaymentPersistenceError(PaymentError):
    """
    Raised when a resolution could not be written after all retries.

    Money has conceptually moved (the payer saw a confirmation) but the
    ledger does not reflect it. This is a financial integrity incident:
    it is logged at CRITICAL with the full signal before being raised.
    """

    default_error_code: str = "PAYMENT_PERSISTENCE_FAILED"
    http_status: int = 503


class MalformedCallbackError(PaymentError):
    """
    Raised when an M-Pesa callback body cannot be processed.

    Use for:
    - Missing Body.stkCallback or CheckoutRequestID
    - Non-numeric ResultCode
    - Success without a well-formed receipt number

    The record is kept as MALFORMED for inspection and M-Pesa is still
    acknowledged: redelivering the same body would never succeed.
    """

    default_error_code: str = "MALFORMED_CALLBACK"


# =============================================================================
# M-Pesa Gateway Exceptions
# =============================================================================


class GatewayError(PaymentError, ExternalServiceError):
    """
    Base exception for all M-Pesa gateway errors.

    Provides common attributes for gateway error handling:
    - provider_code: M-Pesa's ResponseCode / errorCode, when present
    - is_retryable: Whether the operation can be retried

    Retrying is only ever done at the initiation step, and only by the
    caller (student or client app) deciding to start a new attempt.
    Status queries treat any GatewayError as an inconclusive result.
    """

    default_error_code: str = "GATEWAY_ERROR"
    http_status: int = 502
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        provider_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if provider_code:
            details["provider_code"] = provider_code
        super().__init__(message, error_code=error_code, details=details)
        self.provider_code = provider_code


# -----------------------------------------------------------------------------
# Transient Errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class GatewayTimeoutError(GatewayError):
    """
    M-Pesa call timed out or the connection failed.

    The request may have reached M-Pesa. For an STK push that means the
    payer might still receive a prompt, so the caller must not assume
    nothing happened.
    """

    default_error_code: str = "GATEWAY_TIMEOUT"
    http_status: int = 504
    is_retryable: bool = True


class GatewayUnavailableError(GatewayError):
    """M-Pesa returned a 5xx or an unparseable response."""

    default_error_code: str = "GATEWAY_UNAVAILABLE"
    is_retryable: bool = True


# -----------------------------------------------------------------------------
# Permanent Errors (do not retry)
# -----------------------------------------------------------------------------


class GatewayAuthError(GatewayError):
    """
    Consumer key/secret rejected when requesting an access token.

    Operational issue (wrong or rotated credentials); logged at CRITICAL.
    """

    default_error_code: str = "GATEWAY_AUTH_FAILED"


class GatewayRejectedError(GatewayError):
    """
    M-Pesa declined the request.

    Covers a non-zero ResponseCode on an STK push and 4xx responses
    (invalid shortcode, invalid phone for the network, etc.).
    """

    default_error_code: str = "GATEWAY_REJECTED"


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class ReconciliationConflict(ConflictError):
    """
    Raised when a resolution signal loses to an earlier one.

    The attempt was already resolved, or another writer resolved it
    between our read and our conditional write. This is always a safe
    no-op: the ledger catches it and reports the signal as a duplicate.
    It is never surfaced to API callers.
    """

    default_error_code: str = "RECONCILIATION_CONFLICT"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when an operator requests a transition that is not allowed.

    This exception wraps django-fsm's TransitionNotAllowed to provide
    our standard error format with additional context.

    Example:
        raise InvalidStateTransitionError(
            "Cannot resolve a completed payment",
            details={"current_status": "completed", "requested": "failed"}
        )
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


# =============================================================================
# Exports
# =============================================================================

__all__ = [
    # Payment domain
    "PaymentError",
    "PaymentNotFoundError",
    "PaymentValidationError",
    "PaymentPersistenceError",
    "MalformedCallbackError",
    # Gateway
    "GatewayError",
    "GatewayTimeoutError",
    "GatewayUnavailableError",
    "GatewayAuthError",
    "GatewayRejectedError",
    # Concurrency control
    "ReconciliationConflict",
    "InvalidStateTransitionError",
]
