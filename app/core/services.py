"""
Base service layer patterns for business logic encapsulation.

This module provides foundational patterns for the service layer:
- ServiceResult: Standard result wrapper for consistent success/failure handling
- BaseService: Base class with common service utilities

Service Layer Philosophy:
    Services encapsulate business logic separate from views and models.
    Views handle HTTP concerns, models handle data, services handle logic.

Pattern Comparison:
    - ServiceResult: Use for expected failures (validation, provider declines)
    - Exceptions: Use for unexpected failures (database errors, bugs)

Usage:
    from core.services import BaseService, ServiceResult

    class StudentDirectory(BaseService):
        @classmethod
        def lookup(cls, student_id) -> ServiceResult[StudentSummary]:
            student = Student.objects.filter(id=student_id).first()
            if student is None:
                return ServiceResult.failure(
                    "Student not found",
                    error_code="STUDENT_NOT_FOUND",
                )
            return ServiceResult.success(StudentSummary(student=student))

    # In view
    result = StudentDirectory.lookup(student_id)
    if not result.success:
        return Response({"error": result.error, "error_code": result.error_code}, status=404)

Related:
    - core.exceptions: For unexpected/exceptional errors
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

from django.db import transaction

if TYPE_CHECKING:
    from collections.abc import Generator
    from typing import Any

# Generic type for ServiceResult data
T = TypeVar("T")


@dataclass
class ServiceResult(Generic[T]):
    """
    Standard result wrapper for service operations.

    Provides consistent success/failure handling without exceptions.
    Use this for expected failures (validation errors, provider rejections).

    Attributes:
        success: Whether the operation succeeded
        data: Result data if successful (None if failed)
        error: Error message if failed (None if successful)
        error_code: Machine-readable error code for client handling
        details: Extra machine-readable context (e.g. retryable flag)

    Usage:
        # Success case
        return ServiceResult.success(attempt)

        # Failure case
        return ServiceResult.failure("Student not found", "STUDENT_NOT_FOUND")

        # Check result
        result = orchestrator.initiate_payment(params)
        if result.success:
            attempt = result.data.payment_attempt
        else:
            print(f"Error: {result.error} ({result.error_code})")
    """

    success: bool
    data: T | None = None
    error: str | None = None
    error_code: str | None = None
    details: dict[str, Any] | None = field(default=None)

    @classmethod
    def success(cls, data: T) -> ServiceResult[T]:
        """
        Create a successful result.

        Args:
            data: The result data

        Returns:
            ServiceResult with success=True and data set
        """
        return cls(success=True, data=data)

    @classmethod
    def failure(
        cls,
        error: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> ServiceResult[T]:
        """
        Create a failed result.

        Args:
            error: Human-readable error message
            error_code: Machine-readable error code for client handling
            details: Additional machine-readable context

        Returns:
            ServiceResult with success=False and error details

        Example:
            return ServiceResult.failure(
                "Payment request rejected",
                error_code="VALIDATION_ERROR",
                details={"phone_number": "0812345678"},
            )
        """
        return cls(
            success=False,
            error=error,
            error_code=error_code,
            details=details,
        )


class BaseService:
    """
    Base class for service layer classes.

    Provides common utilities for services:
    - Logging setup per service
    - Database transaction management

    Design Notes:
        - Services that only touch the database use @classmethod
        - Services that talk to a provider take it in __init__ so the
          collaborator can be substituted in tests
        - Use ServiceResult for expected failures
        - Raise exceptions for unexpected failures
    """

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """
        Get logger for this service.

        Returns a logger named after the service class for
        easy filtering in logs.
        """
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    @classmethod
    @contextmanager
    def atomic(cls) -> Generator[None, None, None]:
        """
        Execute operations in a database transaction.

        Thin wrapper around Django's transaction.atomic() that makes
        transaction boundaries explicit in service code.

        Example:
            with cls.atomic():
                attempt.save()
                balance.save()
                # If the balance save fails, the attempt change is rolled back
        """
        with transaction.atomic():
            yield
