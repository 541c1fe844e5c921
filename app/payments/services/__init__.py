"""
Payment services for coordinating payment operations.

This module provides:
- PaymentOrchestrator: Entry point for payment initiation
- BalanceUpdater: Exactly-once balance decrement for completed payments
- VerificationService: Status-query fallback for late callbacks

Usage:
    from payments.apps import get_gateway
    from payments.services import InitiatePaymentParams, PaymentOrchestrator

    # Initiate a new payment
    result = PaymentOrchestrator(get_gateway()).initiate_payment(
        InitiatePaymentParams(student_id=student.id, amount=Decimal("2000"))
    )

    # Verify stale pending payments
    from payments.services import VerificationService

    summary = VerificationService(get_gateway()).sweep()

    # Recover completed payments whose balance was never applied
    from payments.services import BalanceUpdater

    BalanceUpdater.reconcile_unapplied()
"""

from payments.services.balance_updater import (
    BalanceApplication,
    BalanceSweepResult,
    BalanceUpdater,
)
from payments.services.payment_orchestrator import (
    InitiatedPayment,
    InitiatePaymentParams,
    PaymentOrchestrator,
)
from payments.services.verification_service import (
    SweepResult,
    VerificationResult,
    VerificationService,
)

__all__ = [
    # Orchestrator
    "InitiatePaymentParams",
    "InitiatedPayment",
    "PaymentOrchestrator",
    # Balance
    "BalanceApplication",
    "BalanceSweepResult",
    "BalanceUpdater",
    # Verification
    "SweepResult",
    "VerificationResult",
    "VerificationService",
]
