"""M-Pesa Daraja client for STK push (Lipa Na M-Pesa Online)."""
from __future__ import annotations

import base64
import logging
import math
import re
import time
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Mapping

import httpx

from app.config import Settings, get_settings
from app.utils.masking import mask_phone
from app.utils.time import mpesa_timestamp

logger = logging.getLogger(__name__)

RESULT_SUCCESS = 0
RESULT_CANCELLED_BY_USER = 1032
RESULT_STILL_PROCESSING = 1037

TOKEN_PATH = "/oauth/v1/generate?grant_type=client_credentials"
STK_PUSH_PATH = "/mpesa/stkpush/v1/processrequest"
STK_QUERY_PATH = "/mpesa/stkpushquery/v1/query"

TOKEN_MAX_RETRIES = 2
TOKEN_RETRY_BASE_SECONDS = 0.5
TOKEN_REFRESH_MARGIN_SECONDS = 60
DEFAULT_TOKEN_TTL_SECONDS = 3599

ACCOUNT_REFERENCE_MAX_LENGTH = 12
TRANSACTION_DESC_MAX_LENGTH = 13

_PHONE_STRIP_RE = re.compile(r"[\s\-()]")
_PHONE_VALID_RE = re.compile(r"^254[017]\d{8}$")


class MpesaError(Exception):
    """Base class for Daraja integration failures."""


class InvalidPhoneFormat(MpesaError, ValueError):
    """Raised when a phone number cannot be normalised to ``254XXXXXXXXX``."""


class MpesaNotConfigured(MpesaError):
    """Raised when Daraja credentials are missing."""


class MpesaAuthError(MpesaError):
    """Daraja rejected the client credentials (HTTP 401/403). Never retried."""


class MpesaTokenError(MpesaError):
    """Access token could not be obtained after all retries."""


class ProviderRequestFailed(MpesaError):
    """Daraja answered a signed request with an error."""

    def __init__(self, message: str, *, provider_code: str | None = None, status_code: int | None = None):
        super().__init__(message)
        self.provider_code = provider_code
        self.status_code = status_code


class ChargeInitiationFailed(ProviderRequestFailed):
    """The STK push was refused or could not be sent."""


class StatusQueryFailed(ProviderRequestFailed):
    """The STK push query was refused or could not be sent."""


class CallbackParseError(MpesaError):
    """The callback envelope has no usable ``Body.stkCallback``."""


@dataclass(frozen=True)
class StkPushResponse:
    merchant_request_id: str
    checkout_request_id: str
    response_code: str
    response_description: str
    customer_message: str


@dataclass(frozen=True)
class StkQueryResponse:
    checkout_request_id: str
    result_code: str
    result_desc: str
    merchant_request_id: str | None = None
    response_code: str | None = None
    response_description: str | None = None


@dataclass(frozen=True)
class StkCallbackResult:
    merchant_request_id: str | None
    checkout_request_id: str
    result_code: int
    result_desc: str
    mpesa_receipt_number: str | None = None
    transaction_date: str | None = None
    phone_number: str | None = None
    amount: Decimal | None = None
    unreadable_amount: str | None = None


class AccessTokenCache:
    """In-memory bearer token holder owned by a client instance.

    Two callers refreshing at the same time simply both fetch a token; the
    last one stored wins and both tokens remain valid.
    """

    def __init__(
        self,
        refresh_margin_seconds: float = TOKEN_REFRESH_MARGIN_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._margin = refresh_margin_seconds
        self._clock = clock
        self._value: str | None = None
        self._expires_at: float = 0.0

    def get(self) -> str | None:
        if self._value and self._clock() < self._expires_at - self._margin:
            return self._value
        return None

    def store(self, value: str, expires_in: float) -> None:
        self._value = value
        self._expires_at = self._clock() + expires_in

    def clear(self) -> None:
        self._value = None
        self._expires_at = 0.0

    def get_or_refresh(self, fetch: Callable[[], tuple[str, float]]) -> str:
        cached = self.get()
        if cached is not None:
            return cached
        value, expires_in = fetch()
        self.store(value, expires_in)
        return value


def normalize_phone_number(value: str) -> str:
    """Normalise a Kenyan MSISDN to ``254XXXXXXXXX``.

    Accepts ``+254…``, ``254…``, ``07…``/``01…`` and the 9-digit ``7…``/``1…``
    short form, with spaces, dashes or parentheses anywhere.
    """

    cleaned = _PHONE_STRIP_RE.sub("", value or "")
    if cleaned.startswith("+"):
        cleaned = cleaned[1:]
    if cleaned.startswith("0") and len(cleaned) == 10:
        cleaned = "254" + cleaned[1:]
    if cleaned[:1] in {"7", "1"} and len(cleaned) == 9:
        cleaned = "254" + cleaned
    if not _PHONE_VALID_RE.match(cleaned):
        raise InvalidPhoneFormat(
            f"Invalid phone number format: {value!r}. Expected format: 254XXXXXXXXX (e.g., 254712345678)"
        )
    return cleaned


def _parse_amount(raw: Any) -> Decimal | None:
    try:
        amount = Decimal(str(raw).strip())
    except InvalidOperation:
        return None
    return amount if amount.is_finite() else None


def _coerce_result_code(value: Any) -> int:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError) as exc:
        raise CallbackParseError(f"Unusable ResultCode: {value!r}") from exc


def parse_stk_callback(payload: Mapping[str, Any]) -> StkCallbackResult:
    """Flatten a Daraja STK callback envelope.

    Metadata items are only read for successful results; unknown item names are
    ignored and missing optional items stay ``None``.
    """

    body = payload.get("Body") if isinstance(payload, Mapping) else None
    callback = body.get("stkCallback") if isinstance(body, Mapping) else None
    if not isinstance(callback, Mapping):
        raise CallbackParseError("Callback payload has no Body.stkCallback")

    checkout_request_id = callback.get("CheckoutRequestID")
    if not checkout_request_id:
        raise CallbackParseError("Callback payload has no CheckoutRequestID")

    result_code = _coerce_result_code(callback.get("ResultCode"))
    fields: dict[str, Any] = {}

    if result_code == RESULT_SUCCESS:
        metadata = callback.get("CallbackMetadata") or {}
        items = metadata.get("Item") if isinstance(metadata, Mapping) else None
        if not isinstance(items, list):
            items = []
        for item in items:
            if not isinstance(item, Mapping) or "Value" not in item:
                continue
            name, raw = item.get("Name"), item.get("Value")
            if name == "MpesaReceiptNumber":
                fields["mpesa_receipt_number"] = str(raw)
            elif name == "TransactionDate":
                fields["transaction_date"] = str(raw)
            elif name == "PhoneNumber":
                fields["phone_number"] = str(raw)
            elif name == "Amount":
                amount = _parse_amount(raw)
                if amount is None:
                    # Kept so the payment fails with a reason instead of completing unchecked.
                    logger.error(
                        "Unreadable Amount in successful M-Pesa callback",
                        extra={"checkout_request_id": str(checkout_request_id), "amount": repr(raw)},
                    )
                    fields["unreadable_amount"] = str(raw)
                else:
                    fields["amount"] = amount

    return StkCallbackResult(
        merchant_request_id=callback.get("MerchantRequestID"),
        checkout_request_id=str(checkout_request_id),
        result_code=result_code,
        result_desc=str(callback.get("ResultDesc") or ""),
        **fields,
    )


class MpesaClient:
    """Thin wrapper around the Daraja REST API."""

    def __init__(
        self,
        settings: Settings,
        *,
        http_client: httpx.Client | None = None,
        token_cache: AccessTokenCache | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.base_url = settings.mpesa_base_url
        self.timeout = settings.MPESA_TIMEOUT_SECONDS
        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(timeout=self.timeout)
        self.token_cache = token_cache or AccessTokenCache()
        self._sleep = sleep

    @classmethod
    def from_env(cls) -> "MpesaClient":
        """Instantiate a client using the cached application settings."""

        return cls(get_settings())

    def close(self) -> None:
        if self._owns_http:
            self._http.close()

    def _ensure_configured(self) -> None:
        missing = self.settings.missing_mpesa_credentials()
        if missing:
            raise MpesaNotConfigured(f"M-Pesa credentials missing: {', '.join(missing)}")

    # --- Access token ---------------------------------------------------
    def get_access_token(self) -> str:
        """Return a bearer token, reusing the cached one until 60s before expiry."""

        self._ensure_configured()
        return self.token_cache.get_or_refresh(self._fetch_token)

    def _fetch_token(self) -> tuple[str, float]:
        last_error: Exception | None = None
        for attempt in range(TOKEN_MAX_RETRIES + 1):
            if attempt:
                delay = TOKEN_RETRY_BASE_SECONDS * (2 ** (attempt - 1))
                logger.info("Retrying M-Pesa access token", extra={"attempt": attempt + 1, "delay": delay})
                self._sleep(delay)
            try:
                response = self._http.get(
                    f"{self.base_url}{TOKEN_PATH}",
                    auth=(self.settings.MPESA_CONSUMER_KEY or "", self.settings.MPESA_CONSUMER_SECRET or ""),
                    timeout=self.timeout,
                )
            except httpx.HTTPError as exc:
                logger.warning("M-Pesa token request failed", extra={"attempt": attempt + 1, "error": str(exc)})
                last_error = exc
                continue

            if response.status_code in (401, 403):
                logger.error("M-Pesa rejected client credentials", extra={"status_code": response.status_code})
                raise MpesaAuthError(f"Failed to get M-Pesa access token: {response.status_code} {response.text}")
            if response.is_error:
                last_error = MpesaTokenError(f"Failed to get M-Pesa access token: {response.status_code}")
                logger.warning("M-Pesa token endpoint error", extra={"status_code": response.status_code})
                continue
            try:
                data = response.json()
            except ValueError as exc:
                last_error = exc
                continue
            token = data.get("access_token")
            if not token:
                last_error = MpesaTokenError("M-Pesa token response has no access_token")
                continue
            try:
                expires_in = float(int(data.get("expires_in")))
            except (TypeError, ValueError):
                expires_in = float(DEFAULT_TOKEN_TTL_SECONDS)
            return token, expires_in

        raise MpesaTokenError("Failed to get M-Pesa access token after retries") from last_error

    # --- Signed requests ------------------------------------------------
    def _password(self, timestamp: str) -> str:
        raw = f"{self.settings.MPESA_SHORTCODE}{self.settings.MPESA_PASSKEY}{timestamp}"
        return base64.b64encode(raw.encode("utf-8")).decode("ascii")

    def _post_signed(
        self,
        path: str,
        payload: dict[str, Any],
        error_cls: type[ProviderRequestFailed],
        action: str,
    ) -> dict[str, Any]:
        token = self.get_access_token()
        try:
            response = self._http.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {token}"},
                timeout=self.timeout,
            )
        except httpx.HTTPError as exc:
            raise error_cls(f"{action} failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if response.is_error or data.get("errorCode"):
            message = (
                data.get("errorMessage")
                or data.get("ResponseDescription")
                or response.text
                or f"HTTP {response.status_code}"
            )
            raise error_cls(
                f"{action} failed: {message}",
                provider_code=data.get("errorCode"),
                status_code=response.status_code,
            )
        return data

    def initiate_stk_push(
        self,
        *,
        phone_number: str,
        amount: Decimal | float | int,
        account_reference: str,
        callback_url: str,
        transaction_desc: str | None = None,
    ) -> StkPushResponse:
        """Send the payment prompt to the customer's phone."""

        phone = normalize_phone_number(phone_number)
        timestamp = mpesa_timestamp()
        # Daraja rejects fractional amounts.
        whole_amount = math.ceil(Decimal(str(amount)))
        payload = {
            "BusinessShortCode": self.settings.MPESA_SHORTCODE,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "TransactionType": "CustomerPayBillOnline",
            "Amount": whole_amount,
            "PartyA": phone,
            "PartyB": self.settings.MPESA_SHORTCODE,
            "PhoneNumber": phone,
            "CallBackURL": callback_url,
            "AccountReference": account_reference[:ACCOUNT_REFERENCE_MAX_LENGTH],
            "TransactionDesc": (transaction_desc or "Payment")[:TRANSACTION_DESC_MAX_LENGTH],
        }
        logger.info(
            "Sending STK push",
            extra={"phone": mask_phone(phone), "amount": whole_amount, "reference": payload["AccountReference"]},
        )
        data = self._post_signed(STK_PUSH_PATH, payload, ChargeInitiationFailed, "STK Push")

        response_code = str(data.get("ResponseCode", ""))
        checkout_request_id = data.get("CheckoutRequestID")
        if response_code != "0" or not checkout_request_id:
            raise ChargeInitiationFailed(
                f"STK Push failed: {data.get('ResponseDescription') or 'no CheckoutRequestID returned'}",
                provider_code=response_code or None,
            )
        return StkPushResponse(
            merchant_request_id=str(data.get("MerchantRequestID") or ""),
            checkout_request_id=str(checkout_request_id),
            response_code=response_code,
            response_description=str(data.get("ResponseDescription") or ""),
            customer_message=str(data.get("CustomerMessage") or ""),
        )

    def query_stk_push(self, checkout_request_id: str) -> StkQueryResponse:
        """Ask Daraja for the outcome of an STK push."""

        timestamp = mpesa_timestamp()
        payload = {
            "BusinessShortCode": self.settings.MPESA_SHORTCODE,
            "Password": self._password(timestamp),
            "Timestamp": timestamp,
            "CheckoutRequestID": checkout_request_id,
        }
        data = self._post_signed(STK_QUERY_PATH, payload, StatusQueryFailed, "STK Query")
        if "ResultCode" not in data:
            raise StatusQueryFailed("STK Query failed: response has no ResultCode")
        return StkQueryResponse(
            checkout_request_id=str(data.get("CheckoutRequestID") or checkout_request_id),
            result_code=str(data.get("ResultCode")),
            result_desc=str(data.get("ResultDesc") or ""),
            merchant_request_id=data.get("MerchantRequestID"),
            response_code=data.get("ResponseCode"),
            response_description=data.get("ResponseDescription"),
        )


_default_client: MpesaClient | None = None


def get_mpesa_client() -> MpesaClient:
    """FastAPI dependency returning the process-wide client (and its token cache)."""

    global _default_client
    if _default_client is None:
        _default_client = MpesaClient.from_env()
    return _default_client


def close_mpesa_client() -> None:
    global _default_client
    if _default_client is not None:
        _default_client.close()
        _default_client = None


__all__ = [
    "AccessTokenCache",
    "CallbackParseError",
    "ChargeInitiationFailed",
    "InvalidPhoneFormat",
    "MpesaAuthError",
    "MpesaClient",
    "MpesaError",
    "MpesaNotConfigured",
    "MpesaTokenError",
    "ProviderRequestFailed",
    "RESULT_CANCELLED_BY_USER",
    "RESULT_STILL_PROCESSING",
    "RESULT_SUCCESS",
    "StatusQueryFailed",
    "StkCallbackResult",
    "StkPushResponse",
    "StkQueryResponse",
    "close_mpesa_client",
    "get_mpesa_client",
    "normalize_phone_number",
    "parse_stk_callback",
]
