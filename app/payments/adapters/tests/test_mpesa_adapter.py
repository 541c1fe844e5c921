"""
Tests for the M-Pesa gateway adapter.

Tests cover:
- Local validation (no network call on bad input)
- Amount rounding and field truncation
- STK push payload construction
- Token caching, single-flight renewal and 401 retry
- Error translation to domain exceptions
- Status query semantics

All HTTP goes through a mocked requests.Session.
"""

import base64
import threading
import time
from decimal import Decimal
from unittest.mock import MagicMock, patch

import pytest
import requests

from payments.adapters import (
    MpesaConfig,
    MpesaGateway,
    backoff_delay,
    normalize_phone,
    to_provider_amount,
    truncate,
)
from payments.adapters.mpesa_adapter import STK_PUSH_PATH, STK_QUERY_PATH, TOKEN_PATH
from payments.exceptions import (
    GatewayAuthError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    PaymentValidationError,
)

TIMESTAMP = "20240115102115"


def _response(status_code=200, body=None):
    response = MagicMock()
    response.status_code = status_code
    if body is None:
        response.json.side_effect = ValueError("No JSON")
    else:
        response.json.return_value = body
    return response


def _token_response(token="token-1", expires_in="3599"):
    return _response(200, {"access_token": token, "expires_in": expires_in})


def _accepted_response(correlation_id="ws_CO_191220191020363925"):
    return _response(
        200,
        {
            "MerchantRequestID": "29115-34620561-1",
            "CheckoutRequestID": correlation_id,
            "ResponseCode": "0",
            "ResponseDescription": "Success. Request accepted for processing",
            "CustomerMessage": "Success. Request accepted for processing",
        },
    )


@pytest.fixture
def config():
    return MpesaConfig(
        consumer_key="consumer-key",
        consumer_secret="consumer-secret",
        shortcode="174379",
        passkey="passkey",
        callback_url="https://fees.example.com/api/v1/payments/callback/",
    )


@pytest.fixture
def session():
    session = MagicMock(spec=requests.Session)
    session.get.return_value = _token_response()
    session.post.return_value = _accepted_response()
    return session


@pytest.fixture
def gateway(config, session):
    with patch.object(MpesaGateway, "_timestamp", return_value=TIMESTAMP):
        yield MpesaGateway(config, session=session)


# =============================================================================
# Helper Function Tests
# =============================================================================


class TestNormalizePhone:
    """Tests for normalize_phone()."""

    @pytest.mark.parametrize(
        "raw",
        ["0712345678", "712345678", "254712345678", "+254712345678", "0712 345 678", "0712-345-678"],
    )
    def test_accepted_formats(self, raw):
        """Should normalize every accepted format to E.164."""
        assert normalize_phone(raw) == "+254712345678"

    def test_accepts_01_prefix(self):
        """Should accept the newer 01XX prefixes."""
        assert normalize_phone("0110345678") == "+254110345678"

    @pytest.mark.parametrize("raw", ["", None, "12345", "0812345678", "+255712345678", "07123456789"])
    def test_rejected_formats(self, raw):
        """Should reject numbers that are not Kenyan mobiles."""
        with pytest.raises(PaymentValidationError):
            normalize_phone(raw)


class TestToProviderAmount:
    """Tests for to_provider_amount()."""

    @pytest.mark.parametrize(
        "amount,expected",
        [
            (Decimal("499.995"), 500),
            (Decimal("499.5"), 500),
            (Decimal("499.49"), 499),
            (Decimal("2000"), 2000),
            ("1.50", 2),
            (10, 10),
        ],
    )
    def test_rounds_half_up(self, amount, expected):
        assert to_provider_amount(amount) == expected

    def test_rejects_non_number(self):
        with pytest.raises(PaymentValidationError):
            to_provider_amount("abc")


class TestTruncate:
    def test_truncates(self):
        assert truncate("ADM2024000123456", 12) == "ADM202400012"

    def test_short_value_unchanged(self):
        assert truncate("ADM1", 12) == "ADM1"

    def test_none_is_empty(self):
        assert truncate(None, 12) == ""


class TestBackoffDelay:
    """Tests for backoff_delay."""

    def test_grows_and_caps(self):
        assert 1.0 <= backoff_delay(0) <= 1.25
        assert 4.0 <= backoff_delay(2) <= 5.0
        assert backoff_delay(20, max_delay=60.0) <= 75.0


class TestMpesaConfig:
    """Tests for MpesaConfig."""

    def test_base_url_by_environment(self, config):
        assert config.base_url == "https://sandbox.safaricom.co.ke"

    def test_unknown_environment(self, config):
        bad = MpesaConfig(**{**config.__dict__, "environment": "staging"})

        with pytest.raises(ValueError, match="staging"):
            bad.base_url

    def test_from_settings(self, settings):
        settings.MPESA_ENVIRONMENT = "production"
        settings.MPESA_SHORTCODE = 600000
        settings.MPESA_MAX_AMOUNT = 70000

        config = MpesaConfig.from_settings()

        assert config.environment == "production"
        assert config.shortcode == "600000"
        assert config.max_amount == 70000
        assert config.base_url == "https://api.safaricom.co.ke"


# =============================================================================
# Validation Tests
# =============================================================================


class TestValidation:
    """Validation happens before any network call."""

    def test_invalid_phone_makes_no_call(self, gateway, session):
        """Should reject a bad phone without touching the network."""
        with pytest.raises(PaymentValidationError, match="Kenyan mobile"):
            gateway.initiate("12345", Decimal("100"), "ADM2024001", "Fees")

        session.get.assert_not_called()
        session.post.assert_not_called()

    @pytest.mark.parametrize("amount", [Decimal("0"), Decimal("-5"), "abc", None, Decimal("NaN")])
    def test_non_positive_or_invalid_amount(self, gateway, session, amount):
        with pytest.raises(PaymentValidationError):
            gateway.initiate("0712345678", amount, "ADM2024001", "Fees")

        session.post.assert_not_called()

    def test_amount_rounding_to_zero_rejected(self, gateway, session):
        """0.4 rounds to 0, below the minimum."""
        with pytest.raises(PaymentValidationError, match="between"):
            gateway.initiate("0712345678", Decimal("0.4"), "ADM2024001", "Fees")

        session.post.assert_not_called()

    def test_amount_above_maximum(self, gateway, session):
        with pytest.raises(PaymentValidationError) as exc_info:
            gateway.initiate("0712345678", Decimal("150001"), "ADM2024001", "Fees")

        assert exc_info.value.details["max_amount"] == 150000
        session.post.assert_not_called()

    def test_blank_account_reference(self, gateway, session):
        with pytest.raises(PaymentValidationError, match="Account reference"):
            gateway.initiate("0712345678", Decimal("100"), "  ", "Fees")

        session.post.assert_not_called()

    def test_validate_returns_normalized_values(self, gateway):
        phone, amount = gateway.validate("0712345678", Decimal("499.995"), "ADM2024001")

        assert phone == "+254712345678"
        assert amount == 500


# =============================================================================
# STK Push Tests
# =============================================================================


class TestInitiate:
    """Tests for MpesaGateway.initiate()."""

    def test_accepted_push(self, gateway, session):
        """Should return the CheckoutRequestID as correlation id."""
        result = gateway.initiate("0712345678", Decimal("2000"), "ADM2024001", "Term 2 fees")

        assert result.correlation_id == "ws_CO_191220191020363925"
        assert result.merchant_request_id == "29115-34620561-1"
        assert result.customer_message == "Success. Request accepted for processing"
        assert result.amount == 2000
        assert result.phone_number == "+254712345678"

    def test_payload(self, gateway, session, config):
        """Should send the Daraja STK push body."""
        gateway.initiate("0712345678", Decimal("499.995"), "ADM2024000123456", "Term 2 school fees")

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        expected_password = base64.b64encode(f"174379passkey{TIMESTAMP}".encode()).decode()

        assert url == f"{config.base_url}{STK_PUSH_PATH}"
        assert payload["BusinessShortCode"] == "174379"
        assert payload["PartyB"] == "174379"
        assert payload["Password"] == expected_password
        assert payload["Timestamp"] == TIMESTAMP
        assert payload["TransactionType"] == "CustomerPayBillOnline"
        assert payload["Amount"] == 500
        assert payload["PartyA"] == "254712345678"
        assert payload["PhoneNumber"] == "254712345678"
        assert payload["CallBackURL"] == config.callback_url
        assert payload["AccountReference"] == "ADM202400012"
        assert payload["TransactionDesc"] == "Term 2 school"

    def test_bearer_token_and_timeout(self, gateway, session, config):
        gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        kwargs = session.post.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer token-1"
        assert kwargs["timeout"] == config.timeout_seconds

    def test_default_description(self, gateway, session):
        gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "")

        assert session.post.call_args.kwargs["json"]["TransactionDesc"] == "Fee payment"

    def test_declined_response_code(self, gateway, session):
        """A non-zero ResponseCode is a permanent rejection."""
        session.post.return_value = _response(
            200,
            {"ResponseCode": "1", "ResponseDescription": "Invalid shortcode"},
        )

        with pytest.raises(GatewayRejectedError, match="Invalid shortcode") as exc_info:
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert exc_info.value.provider_code == "1"
        assert exc_info.value.is_retryable is False

    def test_missing_checkout_request_id(self, gateway, session):
        session.post.return_value = _response(200, {"ResponseCode": "0"})

        with pytest.raises(GatewayUnavailableError):
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

    def test_timeout(self, gateway, session):
        """A timeout is retryable; the payer may still get a prompt."""
        session.post.side_effect = requests.Timeout("read timed out")

        with pytest.raises(GatewayTimeoutError) as exc_info:
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert exc_info.value.is_retryable is True

    def test_connection_error(self, gateway, session):
        session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(GatewayTimeoutError):
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

    def test_other_transport_error(self, gateway, session):
        session.post.side_effect = requests.TooManyRedirects("loop")

        with pytest.raises(GatewayUnavailableError):
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

    def test_server_error(self, gateway, session):
        session.post.return_value = _response(
            503, {"errorCode": "503.001.01", "errorMessage": "Service unavailable"}
        )

        with pytest.raises(GatewayUnavailableError, match="Service unavailable") as exc_info:
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert exc_info.value.is_retryable is True
        assert exc_info.value.details["provider_code"] == "503.001.01"

    def test_client_error(self, gateway, session):
        session.post.return_value = _response(
            400, {"errorCode": "400.002.02", "errorMessage": "Bad Request - Invalid PhoneNumber"}
        )

        with pytest.raises(GatewayRejectedError, match="Invalid PhoneNumber"):
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

    def test_unparseable_success_body(self, gateway, session):
        session.post.return_value = _response(200, None)

        with pytest.raises(GatewayUnavailableError, match="unreadable"):
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")


# =============================================================================
# Credential Tests
# =============================================================================


class TestTokenHandling:
    """Tests for bearer token caching and renewal."""

    def test_token_cached_between_calls(self, gateway, session):
        """Should fetch the token once for several calls."""
        gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")
        gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert session.get.call_count == 1
        assert session.post.call_count == 2

    def test_token_request_uses_basic_auth(self, gateway, session, config):
        gateway.get_token()

        url = session.get.call_args.args[0]
        assert url == f"{config.base_url}{TOKEN_PATH}"
        assert session.get.call_args.kwargs["auth"] == ("consumer-key", "consumer-secret")

    def test_token_renewed_inside_expiry_margin(self, gateway, session):
        """A token expiring within the margin is treated as expired."""
        session.get.side_effect = [
            _token_response("token-1", expires_in="60"),
            _token_response("token-2"),
        ]

        assert gateway.get_token() == "token-1"
        assert gateway.get_token() == "token-2"
        assert session.get.call_count == 2

    def test_renew_token_forces_fetch(self, gateway, session):
        session.get.side_effect = [_token_response("token-1"), _token_response("token-2")]

        gateway.get_token()

        assert gateway.renew_token() == "token-2"
        assert gateway.get_token() == "token-2"

    def test_single_flight_renewal(self, gateway, session):
        """Concurrent callers with an empty cache trigger one token request."""

        def slow_token(*args, **kwargs):
            time.sleep(0.05)
            return _token_response()

        session.get.side_effect = slow_token
        tokens = []

        threads = [threading.Thread(target=lambda: tokens.append(gateway.get_token())) for _ in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert tokens == ["token-1"] * 5
        assert session.get.call_count == 1

    def test_401_renews_token_and_retries_once(self, gateway, session):
        """A rejected token is dropped and the call retried with a new one."""
        session.get.side_effect = [_token_response("stale"), _token_response("fresh")]
        session.post.side_effect = [
            _response(401, {"errorCode": "404.001.04", "errorMessage": "Invalid Access Token"}),
            _accepted_response(),
        ]

        result = gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert result.correlation_id == "ws_CO_191220191020363925"
        assert session.get.call_count == 2
        second_headers = session.post.call_args_list[1].kwargs["headers"]
        assert second_headers["Authorization"] == "Bearer fresh"

    def test_repeated_401_is_auth_error(self, gateway, session):
        session.get.side_effect = [_token_response("a"), _token_response("b")]
        session.post.return_value = _response(401, {"errorMessage": "Invalid Access Token"})

        with pytest.raises(GatewayAuthError):
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert session.post.call_count == 2

    def test_rejected_credentials(self, gateway, session):
        """Bad consumer key/secret is a permanent auth failure."""
        session.get.return_value = _response(400, {"errorCode": "400.008.01"})

        with pytest.raises(GatewayAuthError) as exc_info:
            gateway.initiate("0712345678", Decimal("100"), "ADM2024001", "Fees")

        assert exc_info.value.is_retryable is False
        session.post.assert_not_called()

    def test_token_server_error(self, gateway, session):
        session.get.return_value = _response(500, {})

        with pytest.raises(GatewayUnavailableError):
            gateway.get_token()

    def test_token_timeout(self, gateway, session):
        session.get.side_effect = requests.Timeout()

        with pytest.raises(GatewayTimeoutError):
            gateway.get_token()

    def test_shutdown_drops_token_and_session(self, gateway, session):
        gateway.get_token()

        gateway.shutdown()

        session.close.assert_called_once()
        assert gateway._token is None


# =============================================================================
# Status Query Tests
# =============================================================================


class TestQuery:
    """Tests for MpesaGateway.query()."""

    def test_query_payload(self, gateway, session, config):
        session.post.return_value = _response(200, {"ResponseCode": "0", "ResultCode": "0"})

        gateway.query("ws_CO_191220191020363925")

        url = session.post.call_args.args[0]
        payload = session.post.call_args.kwargs["json"]
        assert url == f"{config.base_url}{STK_QUERY_PATH}"
        assert payload["CheckoutRequestID"] == "ws_CO_191220191020363925"
        assert payload["BusinessShortCode"] == "174379"
        assert payload["Timestamp"] == TIMESTAMP

    def test_success(self, gateway, session):
        session.post.return_value = _response(
            200,
            {
                "ResponseCode": "0",
                "ResponseDescription": "The service request has been accepted successsfully",
                "CheckoutRequestID": "ws_CO_191220191020363925",
                "ResultCode": "0",
                "ResultDesc": "The service request is processed successfully.",
            },
        )

        result = gateway.query("ws_CO_191220191020363925")

        assert result.resolved is True
        assert result.success is True
        assert result.result_code == "0"
        assert result.receipt_code is None

    def test_definitive_failure(self, gateway, session):
        session.post.return_value = _response(
            200,
            {"ResponseCode": "0", "ResultCode": "1032", "ResultDesc": "Request cancelled by user"},
        )

        result = gateway.query("ws_CO_191220191020363925")

        assert result.resolved is True
        assert result.success is False
        assert result.result_code == "1032"
        assert result.detail == "Request cancelled by user"

    def test_still_processing(self, gateway, session):
        """The processing error code means the payer has not answered yet."""
        session.post.return_value = _response(
            500,
            {"errorCode": "500.001.1001", "errorMessage": "The transaction is being processed"},
        )

        result = gateway.query("ws_CO_191220191020363925")

        assert result.resolved is False
        assert result.detail == "The transaction is being processed"

    def test_no_result_code_is_unresolved(self, gateway, session):
        session.post.return_value = _response(200, {"ResponseCode": "0"})

        result = gateway.query("ws_CO_191220191020363925")

        assert result.resolved is False

    def test_other_errors_raise(self, gateway, session):
        session.post.side_effect = requests.Timeout()

        with pytest.raises(GatewayTimeoutError):
            gateway.query("ws_CO_191220191020363925")
