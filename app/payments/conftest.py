"""
Pytest fixtures shared by all payment tests.

This module provides fixtures for creating payment-related test data.
Fixtures are designed to provide objects in various states for testing
state transitions and business logic, plus a fake M-Pesa gateway so no
test ever reaches the network.

Usage:
    def test_callback_completes_payment(pending_attempt):
        outcome = PaymentLedger.apply_signal(pending_attempt.id, signal)
        assert outcome.status == PaymentAttemptStatus.COMPLETED
"""

from datetime import timedelta
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
from django.apps import apps
from django.utils import timezone
from rest_framework.test import APIClient

from payments.adapters import InitiateResult, MpesaGateway, QueryResult
from payments.models import PaymentAttempt
from payments.state_machines import PaymentAttemptStatus
from payments.tests.factories import (
    PaymentAttemptFactory,
    StaffUserFactory,
    StudentFactory,
    UserFactory,
)


# =============================================================================
# User and Student Fixtures
# =============================================================================


@pytest.fixture
def user(db):
    """Create a login account for a student."""
    return UserFactory()


@pytest.fixture
def operator(db):
    """Create a finance operator (staff user)."""
    return StaffUserFactory()


@pytest.fixture
def student(db, user):
    """Create a student owing KES 5,000, linked to the user fixture."""
    return StudentFactory(
        user=user,
        phone_number="+254712345678",
        balance=Decimal("5000.00"),
    )


# =============================================================================
# API Client Fixtures
# =============================================================================


@pytest.fixture
def api_client():
    """Unauthenticated DRF API client."""
    return APIClient()


@pytest.fixture
def student_client(user):
    """API client authenticated as the student's login."""
    client = APIClient()
    client.force_authenticate(user=user)
    return client


@pytest.fixture
def operator_client(operator):
    """API client authenticated as a finance operator."""
    client = APIClient()
    client.force_authenticate(user=operator)
    return client


# =============================================================================
# Payment Attempt Fixtures
# =============================================================================


@pytest.fixture
def pending_attempt(db, student):
    """Create a PENDING attempt for KES 2,000."""
    return PaymentAttemptFactory(
        student=student,
        amount=Decimal("2000.00"),
        correlation_id="ws_CO_15012024102115123456",
    )


@pytest.fixture
def stale_pending_attempt(db, student):
    """Create a PENDING attempt older than the verification grace period."""
    attempt = PaymentAttemptFactory(
        student=student,
        amount=Decimal("2000.00"),
        correlation_id="ws_CO_15012024090000000001",
    )
    PaymentAttempt.objects.filter(id=attempt.id).update(
        created_at=timezone.now() - timedelta(minutes=10)
    )
    return PaymentAttempt.objects.get(id=attempt.id)


@pytest.fixture
def completed_attempt(db, student):
    """Create a COMPLETED attempt whose balance was applied."""
    return PaymentAttemptFactory(
        student=student,
        completed=True,
        receipt_code="NLJ7RT61SV",
        balance_applied=True,
        balance_applied_at=timezone.now(),
    )


@pytest.fixture
def failed_attempt(db, student):
    """Create a FAILED attempt."""
    return PaymentAttemptFactory(student=student, failed=True)


@pytest.fixture
def unknown_attempt(db, student):
    """Create an UNKNOWN attempt awaiting an operator."""
    return PaymentAttemptFactory(
        student=student,
        status=PaymentAttemptStatus.UNKNOWN,
        verification_attempts=3,
    )


# =============================================================================
# Gateway Fixtures
# =============================================================================


@pytest.fixture
def fake_gateway():
    """
    MpesaGateway stand-in.

    initiate() accepts every push; query() reports "still processing".
    Tests override return_value / side_effect as needed.
    """
    gateway = MagicMock(spec=MpesaGateway)
    gateway.initiate.return_value = InitiateResult(
        correlation_id="ws_CO_TEST_0001",
        merchant_request_id="29115-34620561-1",
        customer_message="Success. Request accepted for processing",
        amount=2000,
        phone_number="+254712345678",
    )
    gateway.query.return_value = QueryResult(
        resolved=False,
        success=False,
        detail="The transaction is being processed",
        result_code="500.001.1001",
    )
    return gateway


@pytest.fixture
def use_fake_gateway(fake_gateway):
    """Install fake_gateway as the process gateway for views and tasks."""
    config = apps.get_app_config("payments")
    config.set_gateway(fake_gateway)
    yield fake_gateway
    config.set_gateway(None)


@pytest.fixture
def no_backoff_sleep():
    """Skip the ledger's sleep between database retries."""
    with patch("payments.ledger.services.time.sleep") as mock_sleep:
        yield mock_sleep
