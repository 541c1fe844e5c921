"""
Payment adapters for external services.

This module provides the adapter for M-Pesa (Daraja STK push). All
M-Pesa API calls should go through it to ensure consistent validation,
error handling, timeouts, and observability.

Usage:
    from payments.adapters import MpesaConfig, MpesaGateway

    gateway = MpesaGateway(MpesaConfig.from_settings()).start()
    result = gateway.initiate("0712345678", Decimal("2000"), "ADM-0042", "School fees")
"""

from payments.adapters.mpesa_adapter import (
    InitiateResult,
    MpesaConfig,
    MpesaGateway,
    QueryResult,
    backoff_delay,
    normalize_phone,
    to_provider_amount,
    truncate,
)

__all__ = [
    "InitiateResult",
    "MpesaConfig",
    "MpesaGateway",
    "QueryResult",
    "backoff_delay",
    "normalize_phone",
    "to_provider_amount",
    "truncate",
]
