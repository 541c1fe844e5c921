"""
State enums for payment models.

This module defines all state enums used by payment models with django-fsm.
These are Django TextChoices for database storage and admin integration.

State Machines Overview:

PaymentAttempt States:
    initiated → pending (gateway accepted the STK push)
    pending → completed (callback / verification / operator: success)
    pending → failed (callback / verification / operator: failure)
    pending → unknown (verification inconclusive retry-cap times)
    unknown → completed / failed (operator manual resolution only)

CallbackRecord Outcomes:
    received → applied | duplicate | orphaned | malformed
    received → failed (processing error, retried)
"""

from django.db import models


class PaymentAttemptStatus(models.TextChoices):
    """
    States for the PaymentAttempt model lifecycle.

    Terminal states: COMPLETED, FAILED
    UNKNOWN is terminal for provider signals; only an operator can
    move it on.

    State Flow:
        INITIATED → PENDING → COMPLETED
        INITIATED → PENDING → FAILED
        INITIATED → PENDING → UNKNOWN → COMPLETED / FAILED (manual)
    """

    INITIATED = "initiated", "Initiated"
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    UNKNOWN = "unknown", "Unknown"


class ResolutionSource(models.TextChoices):
    """Which signal resolved a PaymentAttempt."""

    CALLBACK = "callback", "M-Pesa Callback"
    VERIFICATION = "verification", "Status Query"
    MANUAL = "manual", "Operator"


class CallbackOutcome(models.TextChoices):
    """
    Processing outcome for a stored CallbackRecord.

    State Flow:
        RECEIVED → APPLIED (resolved its attempt)
        RECEIVED → DUPLICATE (attempt was already resolved)
        RECEIVED → ORPHANED (no attempt with this correlation id)
        RECEIVED → MALFORMED (payload can never be processed)
        RECEIVED → FAILED (processing error, can retry)
    """

    RECEIVED = "received", "Received"
    APPLIED = "applied", "Applied"
    DUPLICATE = "duplicate", "Duplicate"
    ORPHANED = "orphaned", "Orphaned"
    MALFORMED = "malformed", "Malformed"
    FAILED = "failed", "Failed"


PAYMENT_TERMINAL_STATUSES = (
    PaymentAttemptStatus.COMPLETED,
    PaymentAttemptStatus.FAILED,
)


__all__ = [
    "PaymentAttemptStatus",
    "ResolutionSource",
    "CallbackOutcome",
    "PAYMENT_TERMINAL_STATUSES",
]
