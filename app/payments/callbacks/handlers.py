"""
Callback reconciliation: stored CallbackRecord -> ledger signal.

Steps for one record:
    1. Parse and validate the body (MALFORMED if it never can be)
    2. Skip if an identical body was already applied (DUPLICATE)
    3. Locate the attempt by CheckoutRequestID (ORPHANED if none)
    4. Feed the signal to PaymentLedger.apply_signal()
    5. Record APPLIED or DUPLICATE

Usage:
    from payments.callbacks.handlers import CallbackReconciler

    record = CallbackReconciler.store(request.body)
    CallbackReconciler.process(record.id)
"""

from __future__ import annotations

import json
import uuid

from django.db import transaction

from core.helpers import canonical_json_hash, hash_string
from core.services import BaseService

from payments.exceptions import MalformedCallbackError
from payments.ledger import PaymentLedger
from payments.models import CallbackRecord, PaymentAttempt
from payments.state_machines import CallbackOutcome

from .parser import extract_correlation_id, parse_callback


class CallbackReconciler(BaseService):
    """
    Stores and processes M-Pesa STK callbacks.

    All methods are class methods - no instance state is maintained.
    """

    @classmethod
    def store(cls, body: bytes | str) -> CallbackRecord:
        """
        Persist a callback body exactly as delivered.

        Any body is accepted, JSON or not; unreadable bodies are marked
        MALFORMED when processed.

        Raises:
            DatabaseError: The record could not be written
        """
        text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
        try:
            payload = json.loads(text)
        except ValueError:
            payload = None

        if payload is None:
            record = CallbackRecord.objects.create(
                payload=None,
                raw_body=text,
                payload_hash=hash_string(text),
            )
        else:
            record = CallbackRecord.objects.create(
                payload=payload,
                payload_hash=canonical_json_hash(payload),
                correlation_id=extract_correlation_id(payload),
            )

        cls.get_logger().info(
            "M-Pesa callback stored",
            extra={
                "callback_record_id": str(record.id),
                "correlation_id": record.correlation_id,
            },
        )
        return record

    @classmethod
    def process(cls, callback_record_id: uuid.UUID | str) -> CallbackRecord:
        """
        Reconcile one stored callback.

        Idempotent: records that already reached a final outcome are
        returned unchanged.

        Returns:
            The CallbackRecord with its outcome set

        Raises:
            CallbackRecord.DoesNotExist: Unknown record id
            PaymentPersistenceError: Ledger could not store the resolution
        """
        logger = cls.get_logger()

        with transaction.atomic():
            record = CallbackRecord.objects.select_for_update().get(id=callback_record_id)
            if record.is_processed:
                return record
            record.mark_processing()
            record.save(update_fields=["retry_count", "updated_at"])

        log_context = {
            "callback_record_id": str(record.id),
            "correlation_id": record.correlation_id,
        }

        try:
            parsed = parse_callback(record.payload)
        except MalformedCallbackError as e:
            logger.warning(f"Malformed M-Pesa callback: {e.message}", extra=log_context)
            record.mark_outcome(CallbackOutcome.MALFORMED, error_message=e.message)
            record.save()
            return record

        earlier = (
            CallbackRecord.objects.filter(
                payload_hash=record.payload_hash,
                outcome=CallbackOutcome.APPLIED,
            )
            .exclude(id=record.id)
            .first()
        )
        if earlier is not None:
            logger.info("Identical callback already applied", extra=log_context)
            record.mark_outcome(CallbackOutcome.DUPLICATE, payment_attempt=earlier.payment_attempt)
            record.save()
            return record

        attempt = (
            PaymentAttempt.objects.filter(correlation_id=parsed.correlation_id)
            .only("id")
            .first()
        )
        if attempt is None:
            logger.warning("M-Pesa callback for unknown CheckoutRequestID", extra=log_context)
            record.mark_outcome(
                CallbackOutcome.ORPHANED,
                error_message=f"No payment attempt with correlation id {parsed.correlation_id}",
            )
            record.save()
            return record

        outcome = PaymentLedger.apply_signal(attempt.id, parsed.to_signal(raw=record.payload))

        record.mark_outcome(
            CallbackOutcome.APPLIED if outcome.changed else CallbackOutcome.DUPLICATE,
            payment_attempt=attempt,
        )
        record.save()

        logger.info(
            f"M-Pesa callback {record.outcome}",
            extra={
                **log_context,
                "payment_attempt_id": str(attempt.id),
                "status": outcome.status,
                "balance_applied": outcome.balance_applied,
            },
        )
        return record
