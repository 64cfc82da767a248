"""Intake of M-Pesa STK push callbacks.

Safaricom retries any callback that is not answered with a 2xx, so every
outcome here (forged request, bad payload, unknown checkout id, store
failure) ends in the same acknowledgement. Failures are only visible in the
logs.
"""
from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Mapping

from sqlalchemy.orm import Session

from app.config import SAFARICOM_CALLBACK_IPS, Settings, get_settings
from app.services.mpesa import CallbackParseError, parse_stk_callback
from app.services.payment_state import Resolution, resolve_from_callback

logger = logging.getLogger(__name__)

CALLBACK_ACK: dict[str, Any] = {"ResultCode": 0, "ResultDesc": "Accepted"}


def callback_ack() -> dict[str, Any]:
    return dict(CALLBACK_ACK)


def secret_fingerprint(secret: str | None) -> str | None:
    """Deterministic marker for logging/health instead of the raw secret."""

    if not secret:
        return None
    return "sha256:" + hashlib.sha256(secret.encode("utf-8")).hexdigest()[:8]


def client_ip_from_headers(headers: Mapping[str, str], peer: str | None) -> str:
    """Rightmost ``X-Forwarded-For`` entry (appended by our proxy), else ``X-Real-IP``, else the peer."""

    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        parts = [part.strip() for part in forwarded.split(",") if part.strip()]
        if parts:
            return parts[-1]
    return headers.get("x-real-ip") or peer or "unknown"


def is_trusted_callback(
    *,
    token: str | None,
    client_ip: str,
    settings: Settings | None = None,
) -> bool:
    """Check the shared-secret token and, in production, the Safaricom IP allowlist."""

    settings = settings or get_settings()
    expected = settings.MPESA_CALLBACK_SECRET
    if expected and not hmac.compare_digest((token or "").encode(), expected.encode()):
        logger.warning(
            "Rejected M-Pesa callback: invalid token",
            extra={"secret": secret_fingerprint(expected), "client_ip": client_ip},
        )
        return False
    if settings.mpesa_is_production and client_ip not in SAFARICOM_CALLBACK_IPS:
        logger.warning("Rejected M-Pesa callback from non-Safaricom IP", extra={"client_ip": client_ip})
        return False
    return True


def process_callback(db: Session, payload: Any) -> Resolution | None:
    """Parse and apply a trusted callback; never raises."""

    try:
        callback = parse_stk_callback(payload)
    except CallbackParseError as exc:
        logger.warning("Malformed M-Pesa callback ignored", extra={"error": str(exc)})
        return None

    logger.info(
        "M-Pesa callback received",
        extra={"checkout_request_id": callback.checkout_request_id, "result_code": callback.result_code},
    )
    try:
        return resolve_from_callback(db, callback)
    except Exception:  # noqa: BLE001
        db.rollback()
        logger.exception(
            "M-Pesa callback processing failed; manual reconciliation required",
            extra={
                "checkout_request_id": callback.checkout_request_id,
                "result_code": callback.result_code,
            },
        )
        return None


__all__ = [
    "CALLBACK_ACK",
    "callback_ack",
    "client_ip_from_headers",
    "is_trusted_callback",
    "process_callback",
    "secret_fingerprint",
]
