"""
Payment ledger service: the single code path that resolves attempts.

Callbacks, status queries and operators all build a ProviderSignal and
hand it to PaymentLedger.apply_signal(). Nothing else changes the status
of a PENDING or UNKNOWN attempt.

Usage:
    from payments.ledger import PaymentLedger, ProviderSignal
    from payments.state_machines import ResolutionSource

    outcome = PaymentLedger.apply_signal(
        attempt.id,
        ProviderSignal.failure(ResolutionSource.CALLBACK, "Request cancelled by user"),
    )
    if outcome.duplicate:
        ...  # someone else resolved it first
"""

from __future__ import annotations

import time
import uuid

from django.conf import settings
from django.db import IntegrityError, InterfaceError, OperationalError, transaction
from django_fsm import ConcurrentTransition

from core.services import BaseService

from payments.adapters.mpesa_adapter import backoff_delay
from payments.exceptions import (
    InvalidStateTransitionError,
    PaymentNotFoundError,
    PaymentPersistenceError,
    ReconciliationConflict,
)
from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus, ResolutionSource

from .decisions import decide
from .types import Action, AttemptSnapshot, ProviderSignal, ResolutionOutcome

TRANSIENT_DB_ERRORS = (OperationalError, InterfaceError)


class PaymentLedger(BaseService):
    """
    Applies resolution signals to payment attempts.

    Key features:
    - Row lock plus conditional UPDATE (status = old status) per attempt
    - Balance applied in the same transaction as the COMPLETED transition
    - Losing a race is a duplicate outcome, never an error
    - Transient database errors retried with backoff, then escalated

    All methods are class methods - no instance state is maintained.
    """

    @classmethod
    def apply_signal(
        cls,
        payment_attempt_id: uuid.UUID | str,
        signal: ProviderSignal,
        retry_cap: int | None = None,
    ) -> ResolutionOutcome:
        """
        Apply a signal to an attempt.

        Args:
            payment_attempt_id: Attempt to resolve
            signal: Evidence from a callback, status query or operator
            retry_cap: Inconclusive verifications allowed before UNKNOWN
                (default: PAYMENT_VERIFICATION_RETRY_CAP)

        Returns:
            ResolutionOutcome describing what happened

        Raises:
            PaymentNotFoundError: No such attempt
            PaymentPersistenceError: The result could not be stored
        """
        if retry_cap is None:
            retry_cap = settings.PAYMENT_VERIFICATION_RETRY_CAP
        max_retries = settings.PAYMENT_PERSISTENCE_MAX_RETRIES
        logger = cls.get_logger()

        retries = 0
        while True:
            try:
                return cls._apply_once(payment_attempt_id, signal, retry_cap)

            except ReconciliationConflict:
                # Another writer resolved the attempt between our read and write
                status = (
                    PaymentAttempt.objects.filter(id=payment_attempt_id)
                    .values_list("status", flat=True)
                    .first()
                )
                logger.info(
                    "Lost resolution race, treating signal as duplicate",
                    extra={
                        "payment_attempt_id": str(payment_attempt_id),
                        "status": status,
                        **signal.to_log_dict(),
                    },
                )
                return ResolutionOutcome(
                    payment_attempt_id=payment_attempt_id,
                    status=status,
                    action=Action.NOOP,
                    duplicate=True,
                    reason="Resolved concurrently by another signal",
                )

            except TRANSIENT_DB_ERRORS as e:
                if retries >= max_retries:
                    cls._escalate(payment_attempt_id, signal, e)
                delay = backoff_delay(retries, base=0.5, max_delay=5.0)
                logger.warning(
                    f"Database error resolving payment, retrying in {delay:.2f}s",
                    extra={
                        "payment_attempt_id": str(payment_attempt_id),
                        "retry": retries + 1,
                        "error": str(e),
                    },
                )
                time.sleep(delay)
                retries += 1

            except IntegrityError as e:
                if signal.source == ResolutionSource.MANUAL and cls._receipt_taken(
                    payment_attempt_id, signal.receipt_code
                ):
                    # Operator raced another resolve using the same receipt
                    logger.warning(
                        "Manual resolution refused: receipt already recorded",
                        extra={
                            "payment_attempt_id": str(payment_attempt_id),
                            **signal.to_log_dict(),
                        },
                    )
                    raise InvalidStateTransitionError(
                        "This receipt is already recorded on another payment",
                        details={
                            "payment_attempt_id": str(payment_attempt_id),
                            "receipt_code": signal.receipt_code,
                        },
                    ) from e
                # Not transient and not an operator conflict
                cls._escalate(payment_attempt_id, signal, e)

    @classmethod
    def _receipt_taken(cls, payment_attempt_id, receipt_code: str | None) -> bool:
        if not receipt_code:
            return False
        return (
            PaymentAttempt.objects.filter(receipt_code=receipt_code)
            .exclude(id=payment_attempt_id)
            .exists()
        )

    @classmethod
    def _escalate(cls, payment_attempt_id, signal: ProviderSignal, error: Exception) -> None:
        cls.get_logger().critical(
            "Payment resolution could not be persisted",
            extra={
                "payment_attempt_id": str(payment_attempt_id),
                "error": str(error),
                **signal.to_log_dict(),
            },
            exc_info=True,
        )
        raise PaymentPersistenceError(
            "Payment resolution could not be stored",
            details={"payment_attempt_id": str(payment_attempt_id)},
        ) from error

    @classmethod
    def _apply_once(
        cls,
        payment_attempt_id: uuid.UUID | str,
        signal: ProviderSignal,
        retry_cap: int,
    ) -> ResolutionOutcome:
        from payments.services.balance_updater import BalanceUpdater

        logger = cls.get_logger()

        with transaction.atomic():
            try:
                attempt = PaymentAttempt.objects.select_for_update().get(id=payment_attempt_id)
            except PaymentAttempt.DoesNotExist:
                raise PaymentNotFoundError(
                    f"PaymentAttempt {payment_attempt_id} not found",
                    details={"payment_attempt_id": str(payment_attempt_id)},
                ) from None

            decision = decide(AttemptSnapshot.from_attempt(attempt), signal, retry_cap)
            log_context = {
                "payment_attempt_id": str(attempt.id),
                "correlation_id": attempt.correlation_id,
                "status": attempt.status,
                "action": decision.action.value,
                "signal_kind": signal.kind.value,
                "signal_source": str(signal.source),
            }

            if decision.action == Action.NOOP:
                if decision.duplicate:
                    logger.info("Duplicate resolution signal ignored", extra=log_context)
                else:
                    logger.warning(
                        f"Resolution signal ignored: {decision.reason}", extra=log_context
                    )
                return ResolutionOutcome(
                    payment_attempt_id=attempt.id,
                    status=attempt.status,
                    action=Action.NOOP,
                    duplicate=decision.duplicate,
                    reason=decision.reason,
                )

            if signal.source == ResolutionSource.VERIFICATION:
                attempt.record_verification(
                    inconclusive=decision.action
                    in (Action.RECORD_INCONCLUSIVE, Action.MARK_UNKNOWN)
                )

            if decision.action == Action.COMPLETE:
                attempt.complete(receipt_code=signal.receipt_code, source=signal.source)
                cls._record_provider_detail(attempt, signal)
            elif decision.action == Action.FAIL:
                attempt.fail(reason=decision.reason, source=signal.source)
                cls._record_provider_detail(attempt, signal)
            elif decision.action == Action.MARK_UNKNOWN:
                attempt.mark_unknown()

            try:
                attempt.save()
            except ConcurrentTransition as e:
                raise ReconciliationConflict(
                    "Payment attempt resolved concurrently",
                    details={"payment_attempt_id": str(attempt.id)},
                ) from e

            balance_applied = False
            if decision.action == Action.COMPLETE:
                balance_applied = BalanceUpdater.apply_completed_payment(attempt.id).applied

            if decision.changes_status:
                cls._dispatch_resolved(attempt)

        log_context["status"] = attempt.status
        if decision.action == Action.MARK_UNKNOWN:
            logger.warning(
                "Payment attempt needs manual resolution", extra=log_context
            )
        else:
            logger.info(f"Resolution applied: {decision.reason}", extra=log_context)

        return ResolutionOutcome(
            payment_attempt_id=attempt.id,
            status=attempt.status,
            action=decision.action,
            reason=decision.reason,
            balance_applied=balance_applied,
        )

    @classmethod
    def _record_provider_detail(cls, attempt: PaymentAttempt, signal: ProviderSignal) -> None:
        """Copy provider-reported detail into metadata. Does not save."""
        detail = {
            "result_code": signal.result_code,
            "payer_phone": signal.payer_phone,
            "provider_timestamp": (
                signal.provider_timestamp.isoformat() if signal.provider_timestamp else None
            ),
            "reported_amount": str(signal.amount) if signal.amount is not None else None,
        }
        if signal.source == ResolutionSource.MANUAL:
            detail["resolved_by"] = signal.raw.get("operator") or None
        attempt.update_meta(
            {key: value for key, value in detail.items() if value is not None},
            save=False,
        )

        if signal.amount is not None and signal.amount != attempt.amount:
            # Balance is always applied with the attempt amount
            cls.get_logger().warning(
                "Provider reported a different amount than was requested",
                extra={
                    "payment_attempt_id": str(attempt.id),
                    "amount": str(attempt.amount),
                    "reported_amount": str(signal.amount),
                },
            )
            attempt.set_meta("amount_mismatch", True, save=False)

    @staticmethod
    def _dispatch_resolved(attempt: PaymentAttempt) -> None:
        from payments.signals import send_payment_resolved

        payment_id = attempt.id
        status = attempt.status
        amount = attempt.amount
        student_id = attempt.student_id
        transaction.on_commit(
            lambda: send_payment_resolved(payment_id, status, amount, student_id)
        )

    # =========================================================================
    # Operator Resolution
    # =========================================================================

    @classmethod
    def resolve_manually(
        cls,
        payment_attempt_id: uuid.UUID | str,
        status: str,
        receipt_code: str | None = None,
        reason: str | None = None,
        operator: str = "",
    ) -> ResolutionOutcome:
        """
        Resolve a PENDING or UNKNOWN attempt on an operator's word.

        Args:
            payment_attempt_id: Attempt to resolve
            status: "completed" or "failed"
            receipt_code: Required when status is completed
            reason: Failure reason (defaults to an operator note)
            operator: Who resolved it, for the audit trail

        Raises:
            InvalidStateTransitionError: Attempt cannot be resolved manually
        """
        if status == PaymentAttemptStatus.COMPLETED:
            signal = ProviderSignal.success(
                ResolutionSource.MANUAL,
                receipt_code=receipt_code,
                raw={"operator": operator},
            )
        elif status == PaymentAttemptStatus.FAILED:
            signal = ProviderSignal.failure(
                ResolutionSource.MANUAL,
                reason=reason or f"Marked failed by operator {operator}".strip(),
                raw={"operator": operator},
            )
        else:
            raise InvalidStateTransitionError(
                f"Cannot resolve a payment to {status}",
                details={"requested": status},
            )

        outcome = cls.apply_signal(payment_attempt_id, signal)
        if not outcome.changed:
            raise InvalidStateTransitionError(
                outcome.reason,
                details={"current_status": outcome.status, "requested": status},
            )
        return outcome

