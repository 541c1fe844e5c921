"""
Pure resolution rules for payment attempts.

decide() takes the current attempt state and a signal and says what
should happen. It does no I/O, so every rule here is testable without
a database or HTTP.

Rules:
    - Provider signals (callback, verification) act only on PENDING.
    - Operator signals act on PENDING or UNKNOWN.
    - Anything else is a duplicate: the attempt was already resolved.
    - Success needs a receipt code.
    - Inconclusive verification counts towards the retry cap; reaching
      the cap moves the attempt to UNKNOWN.
"""

from __future__ import annotations

from payments.state_machines import PaymentAttemptStatus, ResolutionSource

from .types import Action, AttemptSnapshot, Decision, ProviderSignal, SignalKind

PROVIDER_ACTIONABLE = (PaymentAttemptStatus.PENDING,)
OPERATOR_ACTIONABLE = (PaymentAttemptStatus.PENDING, PaymentAttemptStatus.UNKNOWN)


def decide(snapshot: AttemptSnapshot, signal: ProviderSignal, retry_cap: int) -> Decision:
    """
    Decide what a signal does to an attempt.

    Args:
        snapshot: Current attempt state
        signal: The incoming evidence
        retry_cap: Inconclusive verifications allowed before UNKNOWN

    Returns:
        Decision
    """
    manual = signal.source == ResolutionSource.MANUAL
    actionable = OPERATOR_ACTIONABLE if manual else PROVIDER_ACTIONABLE

    if snapshot.status not in actionable:
        return Decision(
            Action.NOOP,
            reason=f"Payment attempt is already {snapshot.status}",
            duplicate=snapshot.status != PaymentAttemptStatus.INITIATED,
        )

    if signal.kind == SignalKind.SUCCESS:
        if not signal.receipt_code:
            return Decision(Action.NOOP, reason="Success signal carries no receipt code")
        return Decision(Action.COMPLETE, reason="Payment confirmed")

    if signal.kind == SignalKind.FAILURE:
        return Decision(Action.FAIL, reason=signal.reason or "Payment failed")

    # Inconclusive
    if manual:
        return Decision(Action.NOOP, reason="Operator resolution must be completed or failed")

    attempts = snapshot.verification_attempts + 1
    if attempts >= retry_cap:
        return Decision(
            Action.MARK_UNKNOWN,
            reason=f"No definitive result after {attempts} verification attempts",
        )
    return Decision(
        Action.RECORD_INCONCLUSIVE,
        reason=f"Verification inconclusive ({attempts}/{retry_cap})",
    )
