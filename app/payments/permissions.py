"""
Permission classes for payments API.

This module provides DRF permission classes:
- IsFinanceOperator: Staff users who verify and resolve payments
- CanViewPayment: Operators, or the student the payment belongs to

Design Decisions:
    - Operators are Django staff users (is_staff)
    - Students are linked to a login through Student.user
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rest_framework import permissions

from students.services import StudentDirectory

if TYPE_CHECKING:
    from rest_framework.request import Request
    from rest_framework.views import APIView

    from payments.models import PaymentAttempt


def is_finance_operator(user) -> bool:
    return bool(user and user.is_authenticated and user.is_staff)


class IsFinanceOperator(permissions.BasePermission):
    """
    Allows access only to finance operators.

    Used for reconciliation operations:
    - Manual verification
    - Manual resolution of UNKNOWN payments
    - Listing unresolved payments
    """

    message = "Only finance operators can perform this action."

    def has_permission(self, request: Request, view: APIView) -> bool:
        return is_finance_operator(request.user)


class CanViewPayment(permissions.BasePermission):
    """Allows operators, and the student who owns the payment."""

    message = "You can only view your own payments."

    def has_object_permission(
        self, request: Request, view: APIView, obj: PaymentAttempt
    ) -> bool:
        if not request.user.is_authenticated:
            return False
        return StudentDirectory.can_act_for(request.user, obj.student)
