"""
Verification fallback: ask M-Pesa about attempts whose callback is late.

A scheduled sweep picks PENDING attempts older than the grace period and
queries M-Pesa for each. Definitive answers are fed to the ledger exactly
like callbacks; timeouts and "still processing" count as inconclusive
verifications, and after PAYMENT_VERIFICATION_RETRY_CAP of those the attempt
becomes UNKNOWN. Rejected credentials say nothing about the payment, so they
are never counted and stop the sweep.

Usage:
    from payments.apps import get_gateway
    from payments.services import VerificationService

    service = VerificationService(get_gateway())

    # Periodic sweep
    summary = service.sweep()

    # Operator "verify now"
    result = service.verify(attempt.id)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING

from django.conf import settings
from django.core.exceptions import ValidationError as DjangoValidationError
from django.utils import timezone

from core.services import BaseService, ServiceResult

from payments.exceptions import GatewayAuthError, GatewayError
from payments.ledger import Action, PaymentLedger, ProviderSignal, ResolutionOutcome
from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus, ResolutionSource

if TYPE_CHECKING:
    from payments.adapters import MpesaGateway, QueryResult


# =============================================================================
# Data Types
# =============================================================================


@dataclass
class VerificationResult:
    """
    Result of verifying one attempt.

    Attributes:
        payment_attempt_id: Attempt that was checked
        status: Attempt status after the check
        queried: Whether M-Pesa was called
        outcome: Ledger outcome (None when nothing was applied)
        detail: Provider detail or reason for skipping
        credentials_rejected: M-Pesa refused our credentials; the
            attempt was left untouched
    """

    payment_attempt_id: uuid.UUID
    status: str
    queried: bool = False
    credentials_rejected: bool = False
    outcome: ResolutionOutcome | None = None
    detail: str = ""

    @property
    def action(self) -> Action:
        return self.outcome.action if self.outcome else Action.NOOP


@dataclass
class SweepResult:
    """Summary of one verification sweep."""

    checked: int = 0
    completed: int = 0
    failed: int = 0
    inconclusive: int = 0
    marked_unknown: int = 0
    duplicates: int = 0
    credentials_rejected: bool = False
    errors: list[str] = field(default_factory=list)


# =============================================================================
# Verification Service
# =============================================================================


class VerificationService(BaseService):
    """
    Resolves stale PENDING attempts by querying M-Pesa.

    Takes the gateway in its constructor so tests can substitute a fake.
    Re-running is side-effect free for resolved attempts: they are
    skipped before any provider call.
    """

    def __init__(self, gateway: MpesaGateway):
        self.gateway = gateway

    def verify(
        self,
        payment_attempt_id: uuid.UUID | str,
        retry_cap: int | None = None,
    ) -> ServiceResult[VerificationResult]:
        """
        Query M-Pesa for one attempt and apply the answer.

        PENDING attempts go through the ledger. UNKNOWN attempts are
        queried for the operator's benefit but not changed: only a manual
        resolution can move them. Resolved attempts are skipped.

        Returns:
            ServiceResult with VerificationResult, or PAYMENT_NOT_FOUND
        """
        logger = self.get_logger()
        try:
            attempt = PaymentAttempt.objects.get(id=payment_attempt_id)
        except (PaymentAttempt.DoesNotExist, DjangoValidationError):
            return ServiceResult.failure(
                f"PaymentAttempt {payment_attempt_id} not found",
                error_code="PAYMENT_NOT_FOUND",
            )

        if attempt.status not in (PaymentAttemptStatus.PENDING, PaymentAttemptStatus.UNKNOWN):
            logger.info(
                "Skipping verification of resolved payment",
                extra={"payment_attempt_id": str(attempt.id), "status": attempt.status},
            )
            return ServiceResult.success(
                VerificationResult(
                    payment_attempt_id=attempt.id,
                    status=attempt.status,
                    detail=f"Payment attempt is already {attempt.status}",
                )
            )

        signal = self._query_signal(attempt)
        if signal is None:
            return ServiceResult.success(
                VerificationResult(
                    payment_attempt_id=attempt.id,
                    status=attempt.status,
                    queried=True,
                    credentials_rejected=True,
                    detail="M-Pesa rejected the API credentials; payment not checked",
                )
            )

        if attempt.status == PaymentAttemptStatus.UNKNOWN:
            detail = signal.reason or signal.receipt_code or ""
            return ServiceResult.success(
                VerificationResult(
                    payment_attempt_id=attempt.id,
                    status=attempt.status,
                    queried=True,
                    detail=f"M-Pesa reports {signal.kind.value}: {detail}",
                )
            )

        outcome = PaymentLedger.apply_signal(attempt.id, signal, retry_cap=retry_cap)
        return ServiceResult.success(
            VerificationResult(
                payment_attempt_id=attempt.id,
                status=outcome.status,
                queried=True,
                outcome=outcome,
                detail=signal.reason or "",
            )
        )

    def sweep(
        self,
        grace_seconds: int | None = None,
        retry_cap: int | None = None,
        limit: int | None = None,
    ) -> SweepResult:
        """
        Verify PENDING attempts older than the grace period, oldest first.

        Args:
            grace_seconds: Minimum age (default: PAYMENT_VERIFICATION_GRACE_SECONDS)
            retry_cap: Inconclusive checks before UNKNOWN (default: PAYMENT_VERIFICATION_RETRY_CAP)
            limit: Batch size (default: PAYMENT_VERIFICATION_BATCH_SIZE)

        Returns:
            SweepResult with counts per outcome
        """
        if grace_seconds is None:
            grace_seconds = settings.PAYMENT_VERIFICATION_GRACE_SECONDS
        if limit is None:
            limit = settings.PAYMENT_VERIFICATION_BATCH_SIZE

        logger = self.get_logger()
        cutoff = timezone.now() - timedelta(seconds=grace_seconds)
        attempt_ids = list(
            PaymentAttempt.objects.filter(
                status=PaymentAttemptStatus.PENDING,
                created_at__lte=cutoff,
            )
            .order_by("created_at")
            .values_list("id", flat=True)[:limit]
        )

        summary = SweepResult()
        for attempt_id in attempt_ids:
            summary.checked += 1
            try:
                result = self.verify(attempt_id, retry_cap=retry_cap)
            except Exception as e:
                logger.error(
                    f"Error verifying payment {attempt_id}: {e}",
                    exc_info=True,
                )
                summary.errors.append(f"{attempt_id}: {e}")
                continue

            if result.success and result.data.credentials_rejected:
                # Every remaining query would be refused the same way
                summary.credentials_rejected = True
                break

            outcome = result.data.outcome if result.success else None
            if outcome is None:
                continue
            if outcome.duplicate:
                summary.duplicates += 1
            elif outcome.action == Action.COMPLETE:
                summary.completed += 1
            elif outcome.action == Action.FAIL:
                summary.failed += 1
            elif outcome.action == Action.MARK_UNKNOWN:
                summary.marked_unknown += 1
            elif outcome.action == Action.RECORD_INCONCLUSIVE:
                summary.inconclusive += 1

        logger.info(
            "Verification sweep finished",
            extra={
                "checked": summary.checked,
                "completed": summary.completed,
                "failed": summary.failed,
                "inconclusive": summary.inconclusive,
                "marked_unknown": summary.marked_unknown,
                "credentials_rejected": summary.credentials_rejected,
                "errors": len(summary.errors),
            },
        )
        return summary

    def _query_signal(self, attempt: PaymentAttempt) -> ProviderSignal | None:
        """
        Turn an M-Pesa status query into a ledger signal.

        Returns None when M-Pesa rejected our credentials: that is an
        operational fault, not evidence about the payment.
        """
        source = ResolutionSource.VERIFICATION
        try:
            result: QueryResult = self.gateway.query(attempt.correlation_id)
        except GatewayAuthError as e:
            self.get_logger().critical(
                "M-Pesa rejected API credentials during verification",
                extra={
                    "payment_attempt_id": str(attempt.id),
                    "error_code": e.error_code,
                },
            )
            return None
        except GatewayError as e:
            self.get_logger().warning(
                "Status query failed, counting as inconclusive",
                extra={
                    "payment_attempt_id": str(attempt.id),
                    "error_code": e.error_code,
                },
            )
            return ProviderSignal.inconclusive(source, reason=e.message)

        if not result.resolved:
            return ProviderSignal.inconclusive(
                source, reason=result.detail or "Transaction still processing"
            )

        if result.success:
            # The query API does not return the receipt number; the
            # CheckoutRequestID is recorded in its place
            return ProviderSignal.success(
                source,
                receipt_code=result.receipt_code or attempt.correlation_id,
                result_code=result.result_code,
                raw=result.raw_response,
            )

        return ProviderSignal.failure(
            source,
            reason=result.detail or f"M-Pesa result code {result.result_code}",
            result_code=result.result_code,
            raw=result.raw_response,
        )
