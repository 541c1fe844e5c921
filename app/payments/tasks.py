"""
Celery tasks for payment processing.

This module provides async tasks for:
- Reconciling stored M-Pesa callbacks
- Retrying failed or never-queued callbacks
- Verifying stale pending payments against M-Pesa
- Recovering completed payments whose balance was never applied
- Sending payment confirmation emails

Usage:
    from payments.tasks import process_callback_record

    # Queue a stored callback for reconciliation
    process_callback_record.delay(str(record.id))

    # Verify stale pending payments (typically via celery-beat)
    from payments.tasks import verify_stale_payments
    verify_stale_payments.delay()
"""

from __future__ import annotations

import logging
from datetime import timedelta
from decimal import Decimal
from uuid import UUID

from celery import shared_task
from django.conf import settings
from django.core.mail import send_mail
from django.db.models import Q
from django.utils import timezone

from payments.models import CallbackRecord, PaymentAttempt
from payments.state_machines import CallbackOutcome, PaymentAttemptStatus

logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

MAX_CALLBACK_TASK_RETRIES = 5
UNQUEUED_CALLBACK_THRESHOLD_MINUTES = 5
RETRY_BATCH_SIZE = 100


# =============================================================================
# Callback Processing Tasks
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(Exception,),
    retry_backoff=True,
    retry_backoff_max=300,
    retry_kwargs={"max_retries": MAX_CALLBACK_TASK_RETRIES},
    acks_late=True,
)
def process_callback_record(self, callback_record_id: str) -> dict:
    """
    Reconcile a stored M-Pesa callback asynchronously.

    Args:
        callback_record_id: UUID of the CallbackRecord to process

    Returns:
        Dict with the record's outcome

    Raises:
        Exception: Re-raised to trigger Celery retry mechanism
    """
    from payments.callbacks.handlers import CallbackReconciler

    if isinstance(callback_record_id, str):
        callback_record_id = UUID(callback_record_id)

    try:
        record = CallbackReconciler.process(callback_record_id)
    except CallbackRecord.DoesNotExist:
        logger.error(
            "CallbackRecord not found",
            extra={"callback_record_id": str(callback_record_id)},
        )
        return {"status": "not_found", "callback_record_id": str(callback_record_id)}
    except Exception as e:
        error_msg = f"{type(e).__name__}: {str(e)}"
        CallbackRecord.objects.filter(id=callback_record_id).update(
            outcome=CallbackOutcome.FAILED,
            error_message=error_msg,
            updated_at=timezone.now(),
        )
        logger.exception(
            "Callback processing failed with exception",
            extra={
                "callback_record_id": str(callback_record_id),
                "error": error_msg,
            },
        )
        raise

    return {
        "status": record.outcome,
        "callback_record_id": str(record.id),
        "payment_attempt_id": str(record.payment_attempt_id) if record.payment_attempt_id else None,
    }


@shared_task
def retry_failed_callbacks() -> dict:
    """
    Periodic task to re-queue callbacks that never reached an outcome.

    Picks up FAILED records under the retry limit, and RECEIVED records
    old enough that their original task was evidently never queued.

    Returns:
        Dict with count of callbacks queued for retry
    """
    unqueued_before = timezone.now() - timedelta(minutes=UNQUEUED_CALLBACK_THRESHOLD_MINUTES)
    records = CallbackRecord.objects.filter(
        Q(
            outcome=CallbackOutcome.FAILED,
            retry_count__lt=settings.PAYMENT_CALLBACK_MAX_RETRIES,
        )
        | Q(outcome=CallbackOutcome.RECEIVED, received_at__lt=unqueued_before)
    ).order_by("received_at")[:RETRY_BATCH_SIZE]

    queued_count = 0
    for record in records:
        try:
            process_callback_record.delay(str(record.id))
            queued_count += 1
            logger.info(
                "Queued callback for retry",
                extra={
                    "callback_record_id": str(record.id),
                    "correlation_id": record.correlation_id,
                    "retry_count": record.retry_count,
                },
            )
        except Exception as e:
            logger.error(
                f"Failed to queue callback for retry: {e}",
                extra={"callback_record_id": str(record.id)},
            )

    if queued_count:
        logger.info(
            f"Queued {queued_count} callbacks for retry",
            extra={"queued_count": queued_count},
        )

    return {"queued_count": queued_count}


# =============================================================================
# Verification & Balance Recovery
# =============================================================================


@shared_task
def verify_stale_payments(
    grace_seconds: int | None = None,
    retry_cap: int | None = None,
    limit: int | None = None,
) -> dict:
    """
    Periodic task to query M-Pesa for PENDING attempts past the grace period.

    Returns:
        Dict with counts per verification outcome
    """
    from payments.apps import get_gateway
    from payments.services import VerificationService

    summary = VerificationService(get_gateway()).sweep(
        grace_seconds=grace_seconds,
        retry_cap=retry_cap,
        limit=limit,
    )
    return {
        "checked": summary.checked,
        "completed": summary.completed,
        "failed": summary.failed,
        "inconclusive": summary.inconclusive,
        "marked_unknown": summary.marked_unknown,
        "duplicates": summary.duplicates,
        "credentials_rejected": summary.credentials_rejected,
        "errors": len(summary.errors),
    }


@shared_task
def reconcile_unapplied_balances(limit: int = 100) -> dict:
    """
    Periodic task to apply balances for COMPLETED attempts that missed it.

    Returns:
        Dict with checked/applied counts
    """
    from payments.services import BalanceUpdater

    result = BalanceUpdater.reconcile_unapplied(limit=limit)
    if result.applied or result.errors:
        logger.warning(
            f"Recovered {result.applied} unapplied balances",
            extra={
                "checked": result.checked,
                "applied": result.applied,
                "errors": len(result.errors),
            },
        )
    return {
        "checked": result.checked,
        "applied": result.applied,
        "errors": len(result.errors),
    }


# =============================================================================
# Notifications
# =============================================================================


@shared_task(
    bind=True,
    autoretry_for=(ConnectionError, OSError),
    retry_backoff=True,
    retry_backoff_max=600,
    retry_kwargs={"max_retries": 3},
)
def send_payment_confirmation_email(self, payment_attempt_id: str) -> dict:
    """
    Email the student a confirmation for a completed payment.

    Students without an email address are skipped.

    Args:
        payment_attempt_id: UUID of the completed PaymentAttempt

    Returns:
        Dict with send status
    """
    try:
        attempt = PaymentAttempt.objects.select_related("student", "student__balance").get(
            id=payment_attempt_id
        )
    except PaymentAttempt.DoesNotExist:
        logger.error(
            "PaymentAttempt not found for confirmation email",
            extra={"payment_attempt_id": payment_attempt_id},
        )
        return {"status": "not_found"}

    if attempt.status != PaymentAttemptStatus.COMPLETED:
        return {"status": "skipped", "reason": f"status is {attempt.status}"}

    student = attempt.student
    if not student.email:
        logger.info(
            "Student has no email, skipping payment confirmation",
            extra={"payment_attempt_id": payment_attempt_id, "student_id": str(student.id)},
        )
        return {"status": "skipped", "reason": "no email"}

    balance = getattr(student, "balance", None)
    lines = [
        f"Dear {student.full_name},",
        "",
        f"We have received your payment of KES {attempt.amount:,.2f}.",
        f"M-Pesa receipt: {attempt.receipt_code}",
    ]
    if balance is not None:
        lines.append(f"Outstanding balance: KES {balance.outstanding_balance:,.2f}")
    overpayment = attempt.get_meta("overpayment")
    if overpayment:
        lines.append(
            f"You paid KES {Decimal(overpayment):,.2f} more than you owed. "
            "Please contact the bursar's office about the excess."
        )

    send_mail(
        subject=f"Fee payment received ({attempt.receipt_code})",
        message="\n".join(lines),
        from_email=settings.DEFAULT_FROM_EMAIL,
        recipient_list=[student.email],
    )

    logger.info(
        "Payment confirmation email sent",
        extra={"payment_attempt_id": payment_attempt_id, "student_id": str(student.id)},
    )
    return {"status": "sent"}
