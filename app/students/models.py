"""
Student and StudentBalance models.

Student is the person fees are paid for. StudentBalance tracks what the
student still owes; it is lowered only by payments.services.BalanceUpdater,
exactly once per completed payment attempt.

Usage:
    from students.models import Student, StudentBalance

    student = Student.objects.create(
        admission_number="ADM2024001",
        full_name="Wanjiru Kamau",
        phone_number="+254712345678",
    )
    student.balance.outstanding_balance  # Decimal("0.00"), created by signal
"""

from __future__ import annotations

from decimal import Decimal

from django.conf import settings
from django.db import models

from core.models import BaseModel
from core.model_mixins import UUIDPrimaryKeyMixin


class Student(UUIDPrimaryKeyMixin, BaseModel):
    """
    A student enrolled on the platform.

    Fields:
        admission_number: School-issued number; sent to M-Pesa as the
            account reference so statements can be matched by bursars
        full_name: Display name
        email: Where payment confirmations are sent (optional)
        phone_number: Default M-Pesa number in E.164 format (optional)
        user: Login account for student self-service (optional)
        is_active: Inactive students cannot start new payments
    """

    admission_number = models.CharField(
        max_length=32,
        unique=True,
        help_text="School admission number (used as M-Pesa account reference)",
    )

    full_name = models.CharField(
        max_length=200,
        help_text="Student's full name",
    )

    email = models.EmailField(
        blank=True,
        default="",
        help_text="Contact email for payment confirmations",
    )

    phone_number = models.CharField(
        max_length=16,
        blank=True,
        default="",
        help_text="Default M-Pesa phone number (E.164, e.g. +254712345678)",
    )

    user = models.OneToOneField(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="student",
        help_text="Login account linked to this student",
    )

    is_active = models.BooleanField(
        default=True,
        help_text="Whether the student can make new payments",
    )

    class Meta:
        ordering = ["admission_number"]
        verbose_name = "Student"
        verbose_name_plural = "Students"

    def __str__(self) -> str:
        return f"{self.full_name} ({self.admission_number})"


class StudentBalance(UUIDPrimaryKeyMixin, BaseModel):
    """
    Outstanding fee balance for one student.

    The balance never goes below zero; an overpayment is clamped and the
    clamped amount is recorded on the payment attempt instead.

    Fields:
        student: Owning student (one balance per student)
        outstanding_balance: Amount still owed in KES
    """

    student = models.OneToOneField(
        Student,
        on_delete=models.CASCADE,
        related_name="balance",
        help_text="Student this balance belongs to",
    )

    outstanding_balance = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        default=Decimal("0.00"),
        help_text="Outstanding fees in KES",
    )

    class Meta:
        verbose_name = "Student Balance"
        verbose_name_plural = "Student Balances"
        constraints = [
            models.CheckConstraint(
                condition=models.Q(outstanding_balance__gte=0),
                name="student_balance_non_negative",
            ),
        ]

    def __str__(self) -> str:
        return f"StudentBalance({self.student_id}, KES {self.outstanding_balance})"
