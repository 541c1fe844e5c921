"""
Tests for ServiceResult and BaseService.

These tests verify that:
- ServiceResult carries either data or error details
- BaseService loggers are named after the service
- BaseService.atomic rolls back on error
"""

from __future__ import annotations

import pytest
from django.contrib.auth import get_user_model

from core.services import BaseService, ServiceResult


class ExampleService(BaseService):
    """Concrete service used to exercise BaseService helpers."""


# =============================================================================
# ServiceResult
# =============================================================================


class TestServiceResult:
    """Tests for ServiceResult construction."""

    def test_success(self):
        result = ServiceResult.success({"id": 1})

        assert result.success is True
        assert result.data == {"id": 1}
        assert result.error is None
        assert result.error_code is None

    def test_failure(self):
        result = ServiceResult.failure(
            "Student not found",
            error_code="STUDENT_NOT_FOUND",
            details={"student_id": "abc"},
        )

        assert result.success is False
        assert result.data is None
        assert result.error == "Student not found"
        assert result.error_code == "STUDENT_NOT_FOUND"
        assert result.details == {"student_id": "abc"}

    def test_failure_without_details(self):
        result = ServiceResult.failure("Nope")

        assert result.error_code is None
        assert result.details is None


# =============================================================================
# BaseService
# =============================================================================


class TestBaseService:
    """Tests for the BaseService helpers."""

    def test_logger_named_after_service(self):
        logger = ExampleService.get_logger()

        assert logger.name == f"{__name__}.ExampleService"

    @pytest.mark.django_db
    def test_atomic_commits(self):
        User = get_user_model()

        with ExampleService.atomic():
            User.objects.create(username="committed")

        assert User.objects.filter(username="committed").exists()

    @pytest.mark.django_db
    def test_atomic_rolls_back(self):
        User = get_user_model()

        with pytest.raises(RuntimeError):
            with ExampleService.atomic():
                User.objects.create(username="rollback")
                raise RuntimeError("boom")

        assert not User.objects.filter(username="rollback").exists()
