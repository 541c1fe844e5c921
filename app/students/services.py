"""
Student lookup service consumed by the payments app.

Payments never query Student/StudentBalance tables directly for lookups;
they go through StudentDirectory so the collaborator boundary stays in
one place.

Usage:
    from students.services import StudentDirectory

    result = StudentDirectory.lookup(student_id)
    if result.success:
        summary = result.data
        summary.phone_number, summary.outstanding_balance
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING

from django.core.exceptions import ValidationError as DjangoValidationError

from core.services import BaseService, ServiceResult

from students.models import Student, StudentBalance

if TYPE_CHECKING:
    from django.contrib.auth.models import AbstractBaseUser


@dataclass(frozen=True)
class StudentSummary:
    """Read-only view of a student for payment flows."""

    student: Student
    phone_number: str
    outstanding_balance: Decimal

    @property
    def id(self) -> uuid.UUID:
        return self.student.id


class StudentDirectory(BaseService):
    """Student lookups (id to phone and balance) and ownership checks."""

    @classmethod
    def lookup(cls, student_id: uuid.UUID | str) -> ServiceResult[StudentSummary]:
        """
        Find an active student and their current balance.

        Returns:
            ServiceResult with StudentSummary, or failure STUDENT_NOT_FOUND
            for unknown, malformed or inactive ids.
        """
        try:
            student = Student.objects.select_related("balance").get(
                id=student_id, is_active=True
            )
        except (Student.DoesNotExist, DjangoValidationError):
            return ServiceResult.failure(
                f"Student {student_id} not found",
                error_code="STUDENT_NOT_FOUND",
            )

        try:
            outstanding = student.balance.outstanding_balance
        except StudentBalance.DoesNotExist:
            outstanding = Decimal("0.00")

        return ServiceResult.success(
            StudentSummary(
                student=student,
                phone_number=student.phone_number,
                outstanding_balance=outstanding,
            )
        )

    @staticmethod
    def can_act_for(user: AbstractBaseUser, student: Student) -> bool:
        """Staff may act for any student; students only for themselves."""
        if getattr(user, "is_staff", False):
            return True
        return student.user_id is not None and student.user_id == user.pk
