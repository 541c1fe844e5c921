"""
Ledger - resolution of payment attempts.

This package owns the PaymentAttempt state machine rules. Every signal
that could end an attempt (M-Pesa callback, status query, operator
decision) goes through PaymentLedger.apply_signal(), which locks the
attempt row, asks the pure decide() function what to do, and applies the
result together with the student balance update.

Public API:
    Service:
        PaymentLedger - apply_signal() and resolve_manually()

    Decision:
        decide - Pure (snapshot, signal, retry_cap) -> Decision

    Types:
        ProviderSignal - One piece of evidence about an outcome
        SignalKind - success / failure / inconclusive
        AttemptSnapshot - Attempt fields decide() depends on
        Action - What to do with a signal
        Decision - Action plus reason
        ResolutionOutcome - What apply_signal did

Usage:
    from payments.ledger import PaymentLedger, ProviderSignal
    from payments.state_machines import ResolutionSource

    outcome = PaymentLedger.apply_signal(
        attempt.id,
        ProviderSignal.success(ResolutionSource.CALLBACK, receipt_code="NLJ7RT61SV"),
    )
    outcome.status          # "completed"
    outcome.balance_applied # True the first time, False for redeliveries
"""

from .decisions import decide
from .services import PaymentLedger
from .types import (
    Action,
    AttemptSnapshot,
    Decision,
    ProviderSignal,
    ResolutionOutcome,
    SignalKind,
)

__all__ = [
    # Service
    "PaymentLedger",
    # Decision
    "decide",
    # Types
    "Action",
    "AttemptSnapshot",
    "Decision",
    "ProviderSignal",
    "ResolutionOutcome",
    "SignalKind",
]
