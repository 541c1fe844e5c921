"""
M-Pesa Daraja API adapter for STK push payments.

This module provides the MpesaGateway class which encapsulates all
M-Pesa API interactions. All M-Pesa calls should go through this
adapter to ensure consistent validation, timeouts, error handling,
and observability.

Features:
- Bearer token cache with single-flight renewal
- Local validation before any network call
- Round-half-up conversion to whole shillings
- Automatic error translation to domain exceptions
- Structured logging with timing metrics
- Thread-safe for use from request and Celery workers

Configuration (via settings):
- MPESA_ENVIRONMENT: "sandbox" or "production"
- MPESA_CONSUMER_KEY / MPESA_CONSUMER_SECRET: Daraja app credentials
- MPESA_SHORTCODE / MPESA_PASSKEY: Paybill and Lipa na M-Pesa passkey
- MPESA_CALLBACK_URL: Public URL of the callback endpoint
- MPESA_TIMEOUT_SECONDS: API call timeout (default: 30)

Usage:
    from payments.adapters import MpesaConfig, MpesaGateway

    gateway = MpesaGateway(MpesaConfig.from_settings())
    gateway.start()

    result = gateway.initiate("0712345678", Decimal("2000"), "ADM-0042", "School fees")
    status = gateway.query(result.correlation_id)

    gateway.shutdown()
"""

from __future__ import annotations

import base64
import logging
import random
import re
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from zoneinfo import ZoneInfo

import requests
from django.conf import settings

from payments.exceptions import (
    GatewayAuthError,
    GatewayError,
    GatewayRejectedError,
    GatewayTimeoutError,
    GatewayUnavailableError,
    PaymentValidationError,
)


# =============================================================================
# Constants
# =============================================================================

BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

TRANSACTION_TYPE = "CustomerPayBillOnline"

# Daraja field limits
ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13

# Returned by the STK query endpoint while the payer has not answered yet
STK_QUERY_PROCESSING_CODE = "500.001.1001"

# Passwords are built from Nairobi wall-clock time
PROVIDER_TIMEZONE = ZoneInfo("Africa/Nairobi")

KENYAN_MOBILE_RE = re.compile(r"^(?:254|\+254|0)?([17]\d{8})$")


# =============================================================================
# Data Types
# =============================================================================


@dataclass(frozen=True)
class MpesaConfig:
    """
    Connection settings for one M-Pesa shortcode.

    Attributes:
        consumer_key: Daraja app consumer key
        consumer_secret: Daraja app consumer secret
        shortcode: Paybill / till number (BusinessShortCode and PartyB)
        passkey: Lipa na M-Pesa Online passkey
        callback_url: Where M-Pesa posts STK results
        environment: "sandbox" or "production"
        timeout_seconds: Timeout applied to every outbound call
        token_expiry_margin_seconds: Renew this long before the token expires
        min_amount / max_amount: Transaction limits in whole shillings
    """

    consumer_key: str
    consumer_secret: str
    shortcode: str
    passkey: str
    callback_url: str
    environment: str = "sandbox"
    timeout_seconds: float = 30
    token_expiry_margin_seconds: int = 60
    min_amount: int = 1
    max_amount: int = 150000

    @property
    def base_url(self) -> str:
        try:
            return BASE_URLS[self.environment]
        except KeyError:
            raise ValueError(f"Unknown M-Pesa environment: {self.environment!r}") from None

    @classmethod
    def from_settings(cls) -> MpesaConfig:
        """Build config from Django settings."""
        return cls(
            consumer_key=settings.MPESA_CONSUMER_KEY,
            consumer_secret=settings.MPESA_CONSUMER_SECRET,
            shortcode=str(settings.MPESA_SHORTCODE),
            passkey=settings.MPESA_PASSKEY,
            callback_url=settings.MPESA_CALLBACK_URL,
            environment=settings.MPESA_ENVIRONMENT,
            timeout_seconds=settings.MPESA_TIMEOUT_SECONDS,
            token_expiry_margin_seconds=settings.MPESA_TOKEN_EXPIRY_MARGIN_SECONDS,
            min_amount=settings.MPESA_MIN_AMOUNT,
            max_amount=settings.MPESA_MAX_AMOUNT,
        )


@dataclass
class InitiateResult:
    """
    Result of an accepted STK push.

    Attributes:
        correlation_id: CheckoutRequestID, links the push to its callback
        merchant_request_id: MerchantRequestID
        customer_message: Message M-Pesa suggests showing the payer
        amount: Whole-shilling amount actually transmitted
        phone_number: Payer phone in E.164 form
        raw_response: Full response body (for debugging)
    """

    correlation_id: str
    merchant_request_id: str
    customer_message: str
    amount: int
    phone_number: str
    raw_response: dict[str, Any] = field(default_factory=dict)


@dataclass
class QueryResult:
    """
    Result of an STK push status query.

    Attributes:
        resolved: Whether M-Pesa knows the final outcome
        success: Whether the payment went through (only meaningful if resolved)
        detail: ResultDesc or other human-readable detail
        result_code: M-Pesa ResultCode, if any
        receipt_code: Receipt number, when the response carries one
        raw_response: Full response body (for debugging)
    """

    resolved: bool
    success: bool
    detail: str
    result_code: str | None = None
    receipt_code: str | None = None
    raw_response: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Validation & Formatting Helpers
# =============================================================================


def normalize_phone(phone: str | None) -> str:
    """
    Normalize a Kenyan mobile number to E.164.

    Accepts 07XXXXXXXX, 01XXXXXXXX, 7XXXXXXXX, 2547XXXXXXXX and
    +2547XXXXXXXX (spaces and hyphens ignored).

    Raises:
        PaymentValidationError: If the number is not a Kenyan mobile number
    """
    cleaned = re.sub(r"[\s\-]", "", phone or "")
    match = KENYAN_MOBILE_RE.match(cleaned)
    if not match:
        raise PaymentValidationError(
            "Phone number must be a Kenyan mobile number (e.g. 0712345678)",
            details={"phone_number": phone},
        )
    return f"+254{match.group(1)}"


def to_provider_phone(e164_phone: str) -> str:
    """+254712345678 -> 254712345678 (the form Daraja expects)."""
    return e164_phone.lstrip("+")


def to_provider_amount(amount: Decimal | int | str) -> int:
    """
    Convert an amount to whole shillings, rounding half up.

    Examples:
        499.995 -> 500, 499.5 -> 500, 499.49 -> 499

    Raises:
        PaymentValidationError: If the amount is not a number
    """
    try:
        value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except (InvalidOperation, ValueError):
        raise PaymentValidationError(
            "Amount must be a number",
            details={"amount": str(amount)},
        ) from None


def truncate(value: str, max_length: int) -> str:
    return (value or "")[:max_length]


# =============================================================================
# Backoff
# =============================================================================


def backoff_delay(attempt: int, base: float = 1.0, max_delay: float = 60.0) -> float:
    """
    Calculate exponential backoff delay with jitter.

    Jitter prevents thundering herd when multiple workers retry simultaneously.

    Args:
        attempt: Current attempt number (0-indexed)
        base: Base delay in seconds (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)

    Returns:
        Delay in seconds with jitter (0-25% of calculated delay)

    Example:
        # Attempt 0: 1.0 - 1.25 seconds
        # Attempt 1: 2.0 - 2.5 seconds
        # Attempt 2: 4.0 - 5.0 seconds
        delay = backoff_delay(attempt=2)
    """
    delay = min(base * (2**attempt), max_delay)
    # Add jitter (0-25% of delay)
    jitter = delay * random.uniform(0, 0.25)
    return delay + jitter


# =============================================================================
# M-Pesa Gateway
# =============================================================================


class MpesaGateway:
    """
    Client for the M-Pesa Daraja STK push API.

    One instance per process, built by PaymentsConfig.get_gateway() and
    handed to services through their constructors. The token cache is the
    only state shared between threads.

    Lifecycle:
        start() -> opens the HTTP session
        renew_token() -> forces a fresh bearer token
        shutdown() -> closes the session and drops the token

    Usage:
        result = gateway.initiate(phone, amount, account_ref, description)
        status = gateway.query(result.correlation_id)
    """

    def __init__(self, config: MpesaConfig, session: requests.Session | None = None):
        self.config = config
        self._session = session
        self._token: str | None = None
        self._token_expires_at: float = 0.0
        self._token_lock = threading.Lock()

    @classmethod
    def get_logger(cls) -> logging.Logger:
        """Get logger for this adapter."""
        return logging.getLogger(f"{cls.__module__}.{cls.__name__}")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> MpesaGateway:
        if self._session is None:
            self._session = requests.Session()
            self._session.headers.update({"Content-Type": "application/json"})
        return self

    def shutdown(self) -> None:
        with self._token_lock:
            self._token = None
            self._token_expires_at = 0.0
        if self._session is not None:
            self._session.close()
            self._session = None

    @property
    def session(self) -> requests.Session:
        if self._session is None:
            self.start()
        return self._session

    # =========================================================================
    # Credentials
    # =========================================================================

    def _cached_token(self) -> str | None:
        if self._token and time.monotonic() < self._token_expires_at:
            return self._token
        return None

    def get_token(self) -> str:
        """
        Return a valid bearer token, renewing it if needed.

        Renewal is single-flight: callers that find the cache empty queue
        on the lock and re-check the cache once they hold it, so only the
        first of them actually calls M-Pesa.
        """
        token = self._cached_token()
        if token:
            return token

        with self._token_lock:
            token = self._cached_token()
            if token:
                return token
            return self._fetch_token()

    def renew_token(self) -> str:
        """Force a new token regardless of the cached one."""
        with self._token_lock:
            return self._fetch_token()

    def _invalidate_token(self, stale_token: str) -> None:
        # Only drop the token we used; another thread may already have renewed it
        with self._token_lock:
            if self._token == stale_token:
                self._token = None
                self._token_expires_at = 0.0

    def _fetch_token(self) -> str:
        """Call the OAuth endpoint. Caller must hold _token_lock."""
        logger = self.get_logger()
        log_context = {"operation": "generate_token", "environment": self.config.environment}

        start_time = time.time()
        try:
            response = self.session.get(
                f"{self.config.base_url}{TOKEN_PATH}",
                auth=(self.config.consumer_key, self.config.consumer_secret),
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as e:
            duration_ms = (time.time() - start_time) * 1000
            self._raise_transport_error(e, log_context, duration_ms)

        duration_ms = (time.time() - start_time) * 1000
        body = self._json_body(response)

        if response.status_code in (400, 401, 403):
            logger.critical(
                "M-Pesa rejected consumer credentials",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise GatewayAuthError(
                "M-Pesa rejected the consumer key/secret",
                provider_code=body.get("errorCode"),
            )
        if response.status_code >= 300 or not body.get("access_token"):
            logger.error(
                "M-Pesa token request failed",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise GatewayUnavailableError(
                "Could not obtain an M-Pesa access token",
                provider_code=body.get("errorCode"),
            )

        try:
            expires_in = int(body.get("expires_in", 3599))
        except (TypeError, ValueError):
            expires_in = 3599

        self._token = body["access_token"]
        self._token_expires_at = time.monotonic() + max(
            expires_in - self.config.token_expiry_margin_seconds, 0
        )
        logger.info(
            "M-Pesa token renewed",
            extra={**log_context, "expires_in": expires_in, "duration_ms": duration_ms},
        )
        return self._token

    def _password(self, timestamp: str) -> str:
        raw = f"{self.config.shortcode}{self.config.passkey}{timestamp}"
        return base64.b64encode(raw.encode()).decode()

    @staticmethod
    def _timestamp() -> str:
        return datetime.now(PROVIDER_TIMEZONE).strftime("%Y%m%d%H%M%S")

    # =========================================================================
    # Core Operations
    # =========================================================================

    def validate(self, phone: str | None, amount: Any, account_ref: str | None) -> tuple[str, int]:
        """
        Validate an STK push request locally.

        Returns:
            (E.164 phone, whole-shilling amount)

        Raises:
            PaymentValidationError: Never reaches M-Pesa
        """
        e164_phone = normalize_phone(phone)
        if not (account_ref or "").strip():
            raise PaymentValidationError(
                "Account reference is required",
                details={"account_reference": account_ref},
            )

        try:
            value = amount if isinstance(amount, Decimal) else Decimal(str(amount))
        except (InvalidOperation, ValueError):
            value = None
        if value is None or not value.is_finite() or value <= 0:
            raise PaymentValidationError(
                "Amount must be greater than zero",
                details={"amount": str(amount)},
            )

        provider_amount = to_provider_amount(value)
        if provider_amount < self.config.min_amount or provider_amount > self.config.max_amount:
            raise PaymentValidationError(
                f"Amount must be between KES {self.config.min_amount} "
                f"and KES {self.config.max_amount}",
                details={
                    "amount": str(amount),
                    "min_amount": self.config.min_amount,
                    "max_amount": self.config.max_amount,
                },
            )
        return e164_phone, provider_amount

    def initiate(
        self,
        phone: str,
        amount: Decimal | int | str,
        account_ref: str,
        description: str,
    ) -> InitiateResult:
        """
        Send an STK push to the payer's phone.

        Args:
            phone: Payer phone in any accepted Kenyan format
            amount: Amount in shillings (rounded half up before sending)
            account_ref: Account reference (truncated to 12 characters)
            description: Transaction description (truncated to 13 characters)

        Returns:
            InitiateResult with the CheckoutRequestID as correlation_id

        Raises:
            PaymentValidationError: Rejected locally, no network call made
            GatewayRejectedError: M-Pesa declined the request
            GatewayAuthError: Credentials rejected
            GatewayTimeoutError: Request timed out (payer may still get a prompt)
            GatewayUnavailableError: M-Pesa unavailable
        """
        e164_phone, provider_amount = self.validate(phone, amount, account_ref)
        provider_phone = to_provider_phone(e164_phone)
        timestamp = self._timestamp()

        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": TRANSACTION_TYPE,
            "Amount": provider_amount,
            "PartyA": provider_phone,
            "PartyB": self.config.shortcode,
            "PhoneNumber": provider_phone,
            "CallBackURL": self.config.callback_url,
            "AccountReference": truncate(account_ref, ACCOUNT_REFERENCE_MAX_LENGTH),
            "TransactionDesc": truncate(description or "Fee payment", TRANSACTION_DESC_MAX_LENGTH),
        }
        log_context = {
            "operation": "stk_push",
            "amount": provider_amount,
            "account_reference": payload["AccountReference"],
        }

        body = self._post(STK_PUSH_PATH, payload, log_context)

        response_code = str(body.get("ResponseCode", ""))
        if response_code != "0":
            self.get_logger().warning(
                "M-Pesa declined STK push",
                extra={**log_context, "response_code": response_code},
            )
            raise GatewayRejectedError(
                body.get("ResponseDescription") or body.get("errorMessage") or "STK push rejected",
                provider_code=response_code or body.get("errorCode"),
            )

        correlation_id = body.get("CheckoutRequestID")
        if not correlation_id:
            raise GatewayUnavailableError(
                "M-Pesa accepted the STK push without a CheckoutRequestID",
                details={"response": body},
            )

        return InitiateResult(
            correlation_id=correlation_id,
            merchant_request_id=body.get("MerchantRequestID", ""),
            customer_message=body.get("CustomerMessage", ""),
            amount=provider_amount,
            phone_number=e164_phone,
            raw_response=body,
        )

    def query(self, correlation_id: str) -> QueryResult:
        """
        Ask M-Pesa for the outcome of an STK push.

        Returns:
            QueryResult; resolved=False while the payer has not answered

        Raises:
            GatewayError: Network/timeout or unexpected provider error
        """
        timestamp = self._timestamp()
        payload = {
            "BusinessShortCode": self.config.shortcode,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": correlation_id,
        }
        log_context = {"operation": "stk_query", "correlation_id": correlation_id}

        try:
            body = self._post(STK_QUERY_PATH, payload, log_context)
        except GatewayError as e:
            if e.provider_code == STK_QUERY_PROCESSING_CODE:
                return QueryResult(
                    resolved=False,
                    success=False,
                    detail=e.message,
                    result_code=STK_QUERY_PROCESSING_CODE,
                )
            raise

        result_code = body.get("ResultCode")
        if result_code is None or str(body.get("ResponseCode", "0")) != "0":
            return QueryResult(
                resolved=False,
                success=False,
                detail=body.get("ResultDesc") or body.get("ResponseDescription", ""),
                raw_response=body,
            )

        result_code = str(result_code)
        return QueryResult(
            resolved=True,
            success=result_code == "0",
            detail=body.get("ResultDesc", ""),
            result_code=result_code,
            receipt_code=body.get("MpesaReceiptNumber"),
            raw_response=body,
        )

    # =========================================================================
    # HTTP Helpers
    # =========================================================================

    def _post(self, path: str, payload: dict[str, Any], log_context: dict[str, Any]) -> dict[str, Any]:
        """
        POST to Daraja with the bearer token.

        A 401 drops the cached token and retries once with a fresh one.
        """
        logger = self.get_logger()
        url = f"{self.config.base_url}{path}"

        start_time = time.time()
        logger.info("Starting M-Pesa operation", extra=log_context)

        response = None
        for attempt in range(2):
            token = self.get_token()
            try:
                response = self.session.post(
                    url,
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=self.config.timeout_seconds,
                )
            except requests.RequestException as e:
                duration_ms = (time.time() - start_time) * 1000
                self._raise_transport_error(e, log_context, duration_ms)

            if response.status_code == 401 and attempt == 0:
                logger.info("M-Pesa token rejected, renewing", extra=log_context)
                self._invalidate_token(token)
                continue
            break

        duration_ms = (time.time() - start_time) * 1000
        body = self._json_body(response)

        if response.status_code >= 300:
            self._handle_error_response(response.status_code, body, log_context, duration_ms)

        if not body:
            logger.error(
                "Unparseable response from M-Pesa",
                extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
            )
            raise GatewayUnavailableError("M-Pesa returned an unreadable response")

        logger.info(
            "M-Pesa operation completed",
            extra={**log_context, "status_code": response.status_code, "duration_ms": duration_ms},
        )
        return body

    @staticmethod
    def _json_body(response: requests.Response) -> dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {}

    def _raise_transport_error(
        self,
        error: requests.RequestException,
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate requests exceptions to domain exceptions.

        Raises:
            GatewayTimeoutError: Timeout or connection failure
            GatewayUnavailableError: Any other transport error
        """
        logger = self.get_logger()
        log_context = {**log_context, "duration_ms": duration_ms}

        if isinstance(error, (requests.Timeout, requests.ConnectionError)):
            logger.warning(
                "M-Pesa request timed out or could not connect",
                extra={**log_context, "error_type": type(error).__name__},
            )
            raise GatewayTimeoutError(
                "M-Pesa did not respond in time. Please retry.",
            ) from error

        logger.error(
            "M-Pesa request failed",
            extra={**log_context, "error_type": type(error).__name__},
            exc_info=True,
        )
        raise GatewayUnavailableError(f"M-Pesa request failed: {error}") from error

    def _handle_error_response(
        self,
        status_code: int,
        body: dict[str, Any],
        log_context: dict[str, Any],
        duration_ms: float,
    ) -> None:
        """
        Translate a non-2xx Daraja response to domain exceptions.

        Raises:
            GatewayAuthError: 401 even after renewing the token
            GatewayRejectedError: Other 4xx responses
            GatewayUnavailableError: 5xx responses
        """
        logger = self.get_logger()
        provider_code = body.get("errorCode")
        message = body.get("errorMessage") or f"M-Pesa returned HTTP {status_code}"
        log_context = {
            **log_context,
            "status_code": status_code,
            "provider_code": provider_code,
            "duration_ms": duration_ms,
        }

        if provider_code == STK_QUERY_PROCESSING_CODE:
            logger.info("M-Pesa transaction still processing", extra=log_context)
            raise GatewayUnavailableError(message, provider_code=provider_code)

        if status_code == 401:
            logger.critical("M-Pesa rejected a freshly issued token", extra=log_context)
            raise GatewayAuthError(message, provider_code=provider_code)

        if status_code < 500:
            logger.warning("M-Pesa rejected request", extra=log_context)
            raise GatewayRejectedError(message, provider_code=provider_code)

        logger.error("M-Pesa unavailable", extra=log_context)
        raise GatewayUnavailableError(message, provider_code=provider_code)
