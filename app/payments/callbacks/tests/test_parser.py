"""
Tests for M-Pesa STK callback parsing.
"""

from decimal import Decimal

import pytest

from payments.callbacks import (
    extract_correlation_id,
    is_valid_receipt_code,
    parse_callback,
)
from payments.callbacks.parser import parse_provider_timestamp
from payments.exceptions import MalformedCallbackError
from payments.ledger import SignalKind
from payments.state_machines import ResolutionSource
from payments.tests.factories import stk_callback_payload

CORRELATION_ID = "ws_CO_191220191020363925"


# =============================================================================
# parse_callback Tests
# =============================================================================


class TestParseSuccess:
    """Successful payment callbacks."""

    def test_extracts_metadata(self):
        parsed = parse_callback(stk_callback_payload(CORRELATION_ID, amount=1.00))

        assert parsed.success is True
        assert parsed.correlation_id == CORRELATION_ID
        assert parsed.merchant_request_id == "29115-34620561-1"
        assert parsed.result_code == 0
        assert parsed.receipt_code == "NLJ7RT61SV"
        assert parsed.amount == Decimal("1.0")
        assert parsed.payer_phone == "+254708374149"

    def test_provider_timestamp_in_nairobi_time(self):
        parsed = parse_callback(stk_callback_payload(CORRELATION_ID))

        assert parsed.provider_timestamp.isoformat() == "2024-01-15T10:21:15+03:00"

    def test_to_signal(self):
        parsed = parse_callback(stk_callback_payload(CORRELATION_ID, amount=2000))

        signal = parsed.to_signal(raw={"k": "v"})

        assert signal.kind == SignalKind.SUCCESS
        assert signal.source == ResolutionSource.CALLBACK
        assert signal.receipt_code == "NLJ7RT61SV"
        assert signal.amount == Decimal("2000")
        assert signal.result_code == "0"
        assert signal.raw == {"k": "v"}

    def test_string_result_code_accepted(self):
        payload = stk_callback_payload(CORRELATION_ID)
        payload["Body"]["stkCallback"]["ResultCode"] = "0"

        assert parse_callback(payload).success is True

    def test_missing_optional_items(self):
        """Amount, phone and date are optional; the receipt is not."""
        payload = stk_callback_payload(CORRELATION_ID)
        payload["Body"]["stkCallback"]["CallbackMetadata"]["Item"] = [
            {"Name": "MpesaReceiptNumber", "Value": "NLJ7RT61SV"},
            {"Name": "Balance"},
        ]

        parsed = parse_callback(payload)

        assert parsed.amount is None
        assert parsed.payer_phone is None
        assert parsed.provider_timestamp is None

    @pytest.mark.parametrize("receipt", [None, "", "SHORT", "nlj7rt61sv", "NLJ7RT61SV1", "NLJ7-T61SV"])
    def test_bad_receipt_is_malformed(self, receipt):
        payload = stk_callback_payload(CORRELATION_ID, receipt_code=receipt)

        with pytest.raises(MalformedCallbackError, match="receipt"):
            parse_callback(payload)


class TestParseFailure:
    """Failed payment callbacks."""

    def test_cancelled_by_user(self):
        parsed = parse_callback(stk_callback_payload(CORRELATION_ID, result_code=1032))

        assert parsed.success is False
        assert parsed.result_code == 1032
        assert parsed.result_desc == "Request cancelled by user"
        assert parsed.receipt_code is None

    def test_to_signal(self):
        parsed = parse_callback(
            stk_callback_payload(CORRELATION_ID, result_code=1, result_desc="Insufficient balance")
        )

        signal = parsed.to_signal()

        assert signal.kind == SignalKind.FAILURE
        assert signal.reason == "Insufficient balance"
        assert signal.result_code == "1"

    def test_empty_description_gets_default_reason(self):
        payload = stk_callback_payload(CORRELATION_ID, result_code=2001)
        payload["Body"]["stkCallback"]["ResultDesc"] = ""

        signal = parse_callback(payload).to_signal()

        assert signal.reason == "M-Pesa result code 2001"


class TestParseMalformed:
    """Bodies that can never be processed."""

    @pytest.mark.parametrize(
        "payload",
        [
            None,
            "not a dict",
            [],
            {},
            {"Body": "x"},
            {"Body": {}},
            {"Body": {"stkCallback": None}},
        ],
    )
    def test_missing_stk_callback(self, payload):
        with pytest.raises(MalformedCallbackError):
            parse_callback(payload)

    def test_missing_checkout_request_id(self):
        payload = stk_callback_payload(CORRELATION_ID)
        del payload["Body"]["stkCallback"]["CheckoutRequestID"]

        with pytest.raises(MalformedCallbackError, match="CheckoutRequestID"):
            parse_callback(payload)

    @pytest.mark.parametrize("result_code", [None, "abc", ""])
    def test_non_numeric_result_code(self, result_code):
        payload = stk_callback_payload(CORRELATION_ID)
        payload["Body"]["stkCallback"]["ResultCode"] = result_code

        with pytest.raises(MalformedCallbackError, match="ResultCode"):
            parse_callback(payload)


# =============================================================================
# Helper Tests
# =============================================================================


class TestHelpers:
    def test_extract_correlation_id(self):
        assert extract_correlation_id(stk_callback_payload(CORRELATION_ID)) == CORRELATION_ID

    def test_extract_correlation_id_from_junk(self):
        assert extract_correlation_id({"foo": "bar"}) is None
        assert extract_correlation_id(None) is None

    def test_receipt_code_format(self):
        assert is_valid_receipt_code("NLJ7RT61SV") is True
        assert is_valid_receipt_code("nlj7rt61sv") is False
        assert is_valid_receipt_code(None) is False

    def test_unparseable_timestamp(self):
        assert parse_provider_timestamp("yesterday") is None
        assert parse_provider_timestamp(None) is None
