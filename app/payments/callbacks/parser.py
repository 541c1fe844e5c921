"""
Parsing of M-Pesa STK callback bodies.

Callback shape:
    {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": 1.00},
                        {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
                        {"Name": "TransactionDate", "Value": 20191219102115},
                        {"Name": "PhoneNumber", "Value": 254708374149}
                    ]
                }
            }
        }
    }

Failed payments carry a non-zero ResultCode and no CallbackMetadata.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from payments.adapters.mpesa_adapter import PROVIDER_TIMEZONE, normalize_phone
from payments.exceptions import MalformedCallbackError, PaymentValidationError
from payments.ledger import ProviderSignal
from payments.state_machines import ResolutionSource

RECEIPT_CODE_RE = re.compile(r"^[A-Z0-9]{10}$")
PROVIDER_TIMESTAMP_FORMAT = "%Y%m%d%H%M%S"


@dataclass(frozen=True)
class ParsedCallback:
    """Fields extracted from one STK callback."""

    correlation_id: str
    merchant_request_id: str
    result_code: int
    result_desc: str
    receipt_code: str | None = None
    amount: Decimal | None = None
    payer_phone: str | None = None
    provider_timestamp: datetime | None = None

    @property
    def success(self) -> bool:
        return self.result_code == 0

    def to_signal(self, raw: dict[str, Any] | None = None) -> ProviderSignal:
        common = {
            "amount": self.amount,
            "payer_phone": self.payer_phone,
            "provider_timestamp": self.provider_timestamp,
            "result_code": str(self.result_code),
            "raw": raw or {},
        }
        if self.success:
            return ProviderSignal.success(
                ResolutionSource.CALLBACK, receipt_code=self.receipt_code, **common
            )
        return ProviderSignal.failure(
            ResolutionSource.CALLBACK,
            reason=self.result_desc or f"M-Pesa result code {self.result_code}",
            **common,
        )


def is_valid_receipt_code(value: str | None) -> bool:
    return bool(value) and bool(RECEIPT_CODE_RE.match(value))


def _stk_callback(payload: Any) -> dict[str, Any] | None:
    if not isinstance(payload, dict):
        return None
    body = payload.get("Body")
    if not isinstance(body, dict):
        return None
    callback = body.get("stkCallback")
    return callback if isinstance(callback, dict) else None


def extract_correlation_id(payload: Any) -> str | None:
    """Best-effort CheckoutRequestID, for indexing a record before parsing."""
    callback = _stk_callback(payload)
    if callback is None:
        return None
    value = callback.get("CheckoutRequestID")
    return str(value)[:100] if value else None


def parse_provider_timestamp(value: Any) -> datetime | None:
    """20191219102115 -> aware datetime in Nairobi time; None if unparseable."""
    if value in (None, ""):
        return None
    try:
        naive = datetime.strptime(str(value), PROVIDER_TIMESTAMP_FORMAT)
    except ValueError:
        return None
    return naive.replace(tzinfo=PROVIDER_TIMEZONE)


def _metadata_items(callback: dict[str, Any]) -> dict[str, Any]:
    metadata = callback.get("CallbackMetadata") or {}
    items = metadata.get("Item") if isinstance(metadata, dict) else None
    if not isinstance(items, list):
        return {}
    return {
        item["Name"]: item.get("Value")
        for item in items
        if isinstance(item, dict) and "Name" in item
    }


def parse_callback(payload: Any) -> ParsedCallback:
    """
    Validate and extract an STK callback.

    Raises:
        MalformedCallbackError: The body can never be processed
    """
    callback = _stk_callback(payload)
    if callback is None:
        raise MalformedCallbackError("Callback body has no Body.stkCallback")

    correlation_id = callback.get("CheckoutRequestID")
    if not correlation_id:
        raise MalformedCallbackError("Callback has no CheckoutRequestID")

    try:
        result_code = int(callback.get("ResultCode"))
    except (TypeError, ValueError):
        raise MalformedCallbackError(
            "Callback ResultCode is missing or not numeric",
            details={"correlation_id": correlation_id},
        ) from None

    parsed = {
        "correlation_id": str(correlation_id),
        "merchant_request_id": str(callback.get("MerchantRequestID") or ""),
        "result_code": result_code,
        "result_desc": str(callback.get("ResultDesc") or ""),
    }
    if result_code != 0:
        return ParsedCallback(**parsed)

    items = _metadata_items(callback)
    receipt_code = items.get("MpesaReceiptNumber")
    receipt_code = str(receipt_code).strip() if receipt_code else None
    if not is_valid_receipt_code(receipt_code):
        raise MalformedCallbackError(
            "Successful callback has a missing or malformed receipt number",
            details={"correlation_id": correlation_id, "receipt_code": receipt_code},
        )

    amount = None
    if items.get("Amount") is not None:
        try:
            amount = Decimal(str(items["Amount"]))
        except InvalidOperation:
            amount = None

    payer_phone = None
    if items.get("PhoneNumber") is not None:
        try:
            payer_phone = normalize_phone(str(items["PhoneNumber"]))
        except PaymentValidationError:
            payer_phone = str(items["PhoneNumber"])

    return ParsedCallback(
        **parsed,
        receipt_code=receipt_code,
        amount=amount,
        payer_phone=payer_phone,
        provider_timestamp=parse_provider_timestamp(items.get("TransactionDate")),
    )
