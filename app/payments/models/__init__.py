"""
Payment domain models.

This module contains all payment-related models:
- PaymentAttempt: One M-Pesa STK push and its resolution
- CallbackRecord: Every M-Pesa callback delivery, for audit and idempotency
"""

from payments.models.callback_record import CallbackRecord
from payments.models.payment_attempt import PaymentAttempt

__all__ = [
    "CallbackRecord",
    "PaymentAttempt",
]
