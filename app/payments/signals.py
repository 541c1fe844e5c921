"""
Django signals for payments app.

This module defines:
- payment_resolved: sent after commit whenever an attempt reaches
  COMPLETED, FAILED or UNKNOWN
- A receiver queuing the payment confirmation email

Signal arguments:
    payment_id: PaymentAttempt UUID
    status: New status ("completed", "failed" or "unknown")
    amount: Decimal amount of the attempt
    student_id: Student UUID

Related files:
    - ledger/services.py: Sends the signal on commit
    - tasks.py: send_payment_confirmation_email
    - apps.py: Signal registration

Usage:
    from django.dispatch import receiver
    from payments.signals import payment_resolved

    @receiver(payment_resolved)
    def refresh_fee_report(sender, payment_id, status, amount, student_id, **kwargs):
        ...
"""

from __future__ import annotations

import logging

from django.dispatch import Signal, receiver

from payments.state_machines import PaymentAttemptStatus

logger = logging.getLogger(__name__)


payment_resolved = Signal()


def send_payment_resolved(payment_id, status, amount, student_id) -> None:
    """
    Send payment_resolved to every receiver.

    Receivers cannot affect the resolution: errors are logged, never raised.
    """
    from payments.models import PaymentAttempt

    responses = payment_resolved.send_robust(
        sender=PaymentAttempt,
        payment_id=payment_id,
        status=status,
        amount=amount,
        student_id=student_id,
    )
    for handler, response in responses:
        if isinstance(response, Exception):
            logger.error(
                f"payment_resolved receiver {getattr(handler, '__name__', handler)} failed: {response}",
                extra={"payment_attempt_id": str(payment_id), "status": status},
                exc_info=(type(response), response, response.__traceback__),
            )


@receiver(payment_resolved)
def queue_payment_confirmation(sender, payment_id, status, **kwargs):
    """
    Queue the confirmation email for completed payments.

    Args:
        sender: PaymentAttempt model class
        payment_id: Attempt that was resolved
        status: New status
        **kwargs: amount, student_id
    """
    if status != PaymentAttemptStatus.COMPLETED:
        return

    from payments.tasks import send_payment_confirmation_email

    send_payment_confirmation_email.delay(str(payment_id))
    logger.debug(f"Confirmation email queued for payment {payment_id}")
