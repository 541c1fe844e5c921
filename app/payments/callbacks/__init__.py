"""
Callback handling for M-Pesa STK push results.

Callbacks are stored verbatim, acknowledged, and reconciled
asynchronously via Celery tasks.

Usage:
    # In urls.py
    from payments.callbacks.views import mpesa_callback

    urlpatterns = [
        path("callback/", mpesa_callback, name="mpesa_callback"),
    ]
"""

from payments.callbacks.handlers import CallbackReconciler
from payments.callbacks.parser import (
    RECEIPT_CODE_RE,
    ParsedCallback,
    extract_correlation_id,
    is_valid_receipt_code,
    parse_callback,
)

__all__ = [
    "CallbackReconciler",
    "ParsedCallback",
    "RECEIPT_CODE_RE",
    "extract_correlation_id",
    "is_valid_receipt_code",
    "parse_callback",
]
