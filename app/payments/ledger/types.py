"""
Data types for payment resolution.

This module defines the dataclasses passed between signal sources
(callbacks, status queries, operators), the decision function and the
ledger service. Nothing here touches the database.

Types:
    SignalKind: success / failure / inconclusive
    ProviderSignal: One piece of evidence about an attempt's outcome
    AttemptSnapshot: The attempt fields a decision depends on
    Action: What the ledger should do with a signal
    Decision: Action plus the reason it was chosen
    ResolutionOutcome: What apply_signal actually did

Usage:
    from payments.ledger.types import ProviderSignal
    from payments.state_machines import ResolutionSource

    signal = ProviderSignal.success(
        source=ResolutionSource.CALLBACK,
        receipt_code="NLJ7RT61SV",
        amount=Decimal("2000"),
    )
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any


class SignalKind(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    INCONCLUSIVE = "inconclusive"


@dataclass(frozen=True)
class ProviderSignal:
    """
    Evidence about the outcome of one payment attempt.

    Attributes:
        kind: success, failure or inconclusive
        source: ResolutionSource value (callback, verification, manual)
        receipt_code: M-Pesa receipt number (required for success)
        reason: Failure reason or inconclusive detail
        amount: Amount reported by M-Pesa, if any
        payer_phone: Phone number that paid, if reported
        provider_timestamp: When M-Pesa says the transaction happened
        result_code: M-Pesa ResultCode
        raw: Provider payload the signal was built from
    """

    kind: SignalKind
    source: str
    receipt_code: str | None = None
    reason: str | None = None
    amount: Decimal | None = None
    payer_phone: str | None = None
    provider_timestamp: datetime | None = None
    result_code: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, source: str, receipt_code: str, **kwargs: Any) -> ProviderSignal:
        return cls(kind=SignalKind.SUCCESS, source=source, receipt_code=receipt_code, **kwargs)

    @classmethod
    def failure(cls, source: str, reason: str, **kwargs: Any) -> ProviderSignal:
        return cls(kind=SignalKind.FAILURE, source=source, reason=reason, **kwargs)

    @classmethod
    def inconclusive(cls, source: str, reason: str = "", **kwargs: Any) -> ProviderSignal:
        return cls(kind=SignalKind.INCONCLUSIVE, source=source, reason=reason, **kwargs)

    def to_log_dict(self) -> dict[str, Any]:
        """Flatten for structured logging."""
        return {
            "signal_kind": self.kind.value,
            "signal_source": str(self.source),
            "receipt_code": self.receipt_code,
            "reason": self.reason,
            "reported_amount": str(self.amount) if self.amount is not None else None,
            "result_code": self.result_code,
            "provider_timestamp": (
                self.provider_timestamp.isoformat() if self.provider_timestamp else None
            ),
            "raw": self.raw,
        }


@dataclass(frozen=True)
class AttemptSnapshot:
    """Read-only copy of the attempt fields decide() looks at."""

    status: str
    verification_attempts: int = 0

    @classmethod
    def from_attempt(cls, attempt) -> AttemptSnapshot:
        return cls(
            status=attempt.status,
            verification_attempts=attempt.verification_attempts,
        )


class Action(str, Enum):
    COMPLETE = "complete"
    FAIL = "fail"
    RECORD_INCONCLUSIVE = "record_inconclusive"
    MARK_UNKNOWN = "mark_unknown"
    NOOP = "noop"


@dataclass(frozen=True)
class Decision:
    """
    Result of decide().

    Attributes:
        action: What to do
        reason: Why (logged, and shown to operators on rejection)
        duplicate: True when the NOOP is because the attempt already left
            the state this signal could act on
    """

    action: Action
    reason: str = ""
    duplicate: bool = False

    @property
    def changes_status(self) -> bool:
        return self.action in (Action.COMPLETE, Action.FAIL, Action.MARK_UNKNOWN)


@dataclass
class ResolutionOutcome:
    """
    What PaymentLedger.apply_signal did.

    Attributes:
        payment_attempt_id: Attempt the signal was applied to
        status: Attempt status after the call
        action: Action taken (NOOP for duplicates)
        duplicate: Signal lost to an earlier resolution
        reason: Decision reason
        balance_applied: This call decremented the student balance
    """

    payment_attempt_id: uuid.UUID
    status: str
    action: Action
    duplicate: bool = False
    reason: str = ""
    balance_applied: bool = False

    @property
    def changed(self) -> bool:
        return self.action != Action.NOOP
