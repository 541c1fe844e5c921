"""
Balance updater: applies a completed payment to the student's balance.

The decrement and the attempt's balance_applied marker are written in
one transaction, with both rows locked, so a payment can take money off
a balance at most once no matter how many signals complete it.

Usage:
    from payments.services import BalanceUpdater

    result = BalanceUpdater.apply_completed_payment(attempt.id)
    result.applied      # False if already applied or not completed

    # Recovery sweep (celery beat)
    BalanceUpdater.reconcile_unapplied()
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from decimal import Decimal

from django.db import transaction

from core.services import BaseService

from payments.exceptions import PaymentNotFoundError
from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus
from students.models import StudentBalance

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class BalanceApplication:
    """
    Result of apply_completed_payment().

    Attributes:
        payment_attempt_id: Attempt that was applied
        applied: Whether this call changed the balance
        previous_balance / new_balance: Balance around the decrement
        overpayment: Amount clamped away because the balance hit zero
        reason: Why nothing was applied
    """

    payment_attempt_id: uuid.UUID
    applied: bool
    previous_balance: Decimal | None = None
    new_balance: Decimal | None = None
    overpayment: Decimal = ZERO
    reason: str = ""


@dataclass
class BalanceSweepResult:
    """Summary of a reconcile_unapplied() run."""

    checked: int = 0
    applied: int = 0
    errors: list[str] = field(default_factory=list)


class BalanceUpdater(BaseService):
    """
    Exactly-once balance decrement for completed payments.

    All methods are class methods - no instance state is maintained.
    """

    @classmethod
    def apply_completed_payment(cls, payment_attempt_id: uuid.UUID | str) -> BalanceApplication:
        """
        Decrement the student's balance by a completed attempt's amount.

        Idempotent: keyed by attempt id, guarded by the balance_applied
        marker which is set in the same transaction as the decrement.
        The balance is clamped at zero; any excess is stored on the
        attempt as metadata["overpayment"].

        Args:
            payment_attempt_id: Completed attempt to apply

        Returns:
            BalanceApplication (applied=False on repeat calls)

        Raises:
            PaymentNotFoundError: No such attempt
        """
        with transaction.atomic():
            try:
                attempt = PaymentAttempt.objects.select_for_update().get(id=payment_attempt_id)
            except PaymentAttempt.DoesNotExist:
                raise PaymentNotFoundError(
                    f"PaymentAttempt {payment_attempt_id} not found",
                    details={"payment_attempt_id": str(payment_attempt_id)},
                ) from None

            if attempt.status != PaymentAttemptStatus.COMPLETED:
                return BalanceApplication(
                    payment_attempt_id=attempt.id,
                    applied=False,
                    reason=f"Payment attempt is {attempt.status}",
                )
            if attempt.balance_applied:
                logger.info(
                    "Balance already applied for payment",
                    extra={"payment_attempt_id": str(attempt.id)},
                )
                return BalanceApplication(
                    payment_attempt_id=attempt.id,
                    applied=False,
                    reason="Balance already applied",
                )

            balance, _ = StudentBalance.objects.select_for_update().get_or_create(
                student_id=attempt.student_id
            )
            previous = balance.outstanding_balance
            new_balance = previous - attempt.amount
            overpayment = ZERO

            if new_balance < ZERO:
                overpayment = -new_balance
                new_balance = ZERO
                attempt.set_meta("overpayment", str(overpayment), save=False)
                logger.warning(
                    "Payment exceeds outstanding balance, excess not credited",
                    extra={
                        "payment_attempt_id": str(attempt.id),
                        "student_id": str(attempt.student_id),
                        "outstanding_balance": str(previous),
                        "amount": str(attempt.amount),
                        "overpayment": str(overpayment),
                    },
                )

            balance.outstanding_balance = new_balance
            balance.save(update_fields=["outstanding_balance", "updated_at"])

            attempt.mark_balance_applied()
            attempt.save(
                update_fields=["balance_applied", "balance_applied_at", "metadata", "updated_at"]
            )

        logger.info(
            "Balance updated for completed payment",
            extra={
                "payment_attempt_id": str(attempt.id),
                "student_id": str(attempt.student_id),
                "previous_balance": str(previous),
                "new_balance": str(new_balance),
            },
        )
        return BalanceApplication(
            payment_attempt_id=attempt.id,
            applied=True,
            previous_balance=previous,
            new_balance=new_balance,
            overpayment=overpayment,
        )

    @classmethod
    def reconcile_unapplied(cls, limit: int = 100) -> BalanceSweepResult:
        """
        Apply any COMPLETED attempt whose balance was never decremented.

        Safe to run at any time: each attempt goes through
        apply_completed_payment(), which is idempotent.
        """
        result = BalanceSweepResult()
        attempt_ids = list(
            PaymentAttempt.objects.filter(
                status=PaymentAttemptStatus.COMPLETED,
                balance_applied=False,
            )
            .order_by("resolved_at")
            .values_list("id", flat=True)[:limit]
        )

        for attempt_id in attempt_ids:
            result.checked += 1
            try:
                if cls.apply_completed_payment(attempt_id).applied:
                    result.applied += 1
                    logger.warning(
                        "Recovered unapplied balance for completed payment",
                        extra={"payment_attempt_id": str(attempt_id)},
                    )
            except Exception as e:
                logger.error(
                    f"Error applying balance for payment {attempt_id}: {e}",
                    exc_info=True,
                )
                result.errors.append(f"{attempt_id}: {e}")

        return result
