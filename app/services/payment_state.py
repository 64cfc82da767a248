"""Payment confirmation state machine.

PENDING -> PROCESSING -> {COMPLETED, FAILED, CANCELLED}. The provider callback
(push) and the STK query (pull) both feed :func:`apply_gateway_result`, so a
payment resolves the same way whichever path reaches it first. Terminal
statuses are absorbing; the ledger's conditional update decides the winner.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy.orm import Session

from app.models import Payment, PaymentStatus
from app.services import payments as ledger
from app.services.mpesa import (
    RESULT_CANCELLED_BY_USER,
    RESULT_STILL_PROCESSING,
    RESULT_SUCCESS,
    MpesaClient,
    MpesaError,
    StkCallbackResult,
    StkQueryResponse,
)
from app.services.payments import PaymentUpdate
from app.utils.masking import mask_reference
from app.utils.time import parse_mpesa_timestamp, utcnow

logger = logging.getLogger(__name__)

AMOUNT_EPSILON = Decimal("0.01")


def _normalise_code(value: object) -> str:
    text = str(value).strip()
    try:
        return str(int(text))
    except ValueError:
        return text


@dataclass(frozen=True)
class GatewayResult:
    """Provider verdict for one checkout request, whatever channel delivered it."""

    checkout_request_id: str
    result_code: str
    result_desc: str
    merchant_request_id: str | None = None
    receipt_number: str | None = None
    transaction_date: str | None = None
    phone_number: str | None = None
    amount: Decimal | None = None
    unreadable_amount: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.result_code == str(RESULT_SUCCESS)

    @classmethod
    def from_callback(cls, callback: StkCallbackResult) -> "GatewayResult":
        return cls(
            checkout_request_id=callback.checkout_request_id,
            result_code=_normalise_code(callback.result_code),
            result_desc=callback.result_desc,
            merchant_request_id=callback.merchant_request_id,
            receipt_number=callback.mpesa_receipt_number,
            transaction_date=callback.transaction_date,
            phone_number=callback.phone_number,
            amount=callback.amount,
            unreadable_amount=callback.unreadable_amount,
        )

    @classmethod
    def from_query(cls, response: StkQueryResponse) -> "GatewayResult":
        # The query API reports neither receipt nor amount.
        return cls(
            checkout_request_id=response.checkout_request_id,
            result_code=_normalise_code(response.result_code),
            result_desc=response.result_desc,
            merchant_request_id=response.merchant_request_id,
        )


@dataclass(frozen=True)
class Resolution:
    """Outcome of applying a gateway result.

    ``applied`` is true only when this call performed the transition.
    """

    status: PaymentStatus
    applied: bool
    payment: Payment
    reason: str | None = None


def _current(db: Session, payment: Payment, reason: str) -> Resolution:
    fresh = ledger.find_by_id(db, payment.id) or payment
    return Resolution(status=fresh.status, applied=False, payment=fresh, reason=reason)


def _flag_unrecorded_charge(payment: Payment, result: GatewayResult, *, source: str) -> None:
    logger.error(
        "Successful M-Pesa charge reached a closed payment; manual reconciliation required",
        extra={
            "payment_id": payment.id,
            "invoice_id": payment.invoice_id,
            "status": payment.status.value,
            "result_desc": payment.result_desc,
            "receipt": mask_reference(result.receipt_number),
            "source": source,
        },
    )


def _transition(
    db: Session,
    payment: Payment,
    result: GatewayResult,
    patch: PaymentUpdate,
    *,
    source: str,
    reason: str | None = None,
) -> Resolution:
    updated = ledger.update_by_checkout_request_id(db, result.checkout_request_id, patch)
    if updated is None:
        logger.info(
            "Payment resolved concurrently; transition skipped",
            extra={"payment_id": payment.id, "source": source, "target": patch.status},
        )
        resolution = _current(db, payment, "already_resolved")
        if result.succeeded and resolution.status is not PaymentStatus.COMPLETED:
            _flag_unrecorded_charge(resolution.payment, result, source=source)
        return resolution
    logger.info(
        "Payment transitioned",
        extra={"payment_id": updated.id, "status": updated.status.value, "source": source},
    )
    return Resolution(status=updated.status, applied=True, payment=updated, reason=reason)


def _apply_success(db: Session, payment: Payment, result: GatewayResult, *, source: str) -> Resolution:
    expected = Decimal(str(payment.amount))
    received = result.amount if result.amount is not None else result.unreadable_amount
    if result.unreadable_amount is not None or (
        result.amount is not None and abs(Decimal(str(result.amount)) - expected) > AMOUNT_EPSILON
    ):
        logger.error(
            "Amount mismatch on successful M-Pesa result; invoice left unpaid",
            extra={
                "payment_id": payment.id,
                "expected": str(expected),
                "received": str(received),
                "source": source,
            },
        )
        patch = PaymentUpdate(
            status=PaymentStatus.FAILED,
            mpesa_receipt_number=result.receipt_number,
            result_code=result.result_code,
            result_desc=f"Amount mismatch: expected {expected}, received {received}",
        )
        return _transition(db, payment, result, patch, source=source, reason="amount_mismatch")

    patch = PaymentUpdate(
        status=PaymentStatus.COMPLETED,
        mpesa_receipt_number=result.receipt_number,
        transaction_date=parse_mpesa_timestamp(result.transaction_date),
        result_code=result.result_code,
        result_desc=result.result_desc,
        completed_at=utcnow(),
    )
    resolution = _transition(db, payment, result, patch, source=source)
    if resolution.applied:
        # Only the path that won the COMPLETED transition flags the invoice.
        ledger.mark_invoice_paid(db, resolution.payment.invoice_id)
        logger.info(
            "M-Pesa payment confirmed",
            extra={
                "payment_id": resolution.payment.id,
                "invoice_id": resolution.payment.invoice_id,
                "receipt": mask_reference(result.receipt_number),
                "source": source,
            },
        )
    return resolution


def apply_gateway_result(db: Session, payment: Payment, result: GatewayResult, *, source: str) -> Resolution:
    """Drive ``payment`` to its next state from a provider verdict."""

    if payment.status.is_terminal:
        if result.succeeded and payment.status is not PaymentStatus.COMPLETED:
            _flag_unrecorded_charge(payment, result, source=source)
        logger.info(
            "Payment already in terminal state; skipping",
            extra={"payment_id": payment.id, "status": payment.status.value, "source": source},
        )
        return Resolution(status=payment.status, applied=False, payment=payment, reason="already_terminal")

    code = result.result_code
    if result.succeeded:
        return _apply_success(db, payment, result, source=source)

    if code == str(RESULT_STILL_PROCESSING):
        logger.info("M-Pesa still processing", extra={"payment_id": payment.id, "source": source})
        return Resolution(
            status=PaymentStatus.PROCESSING, applied=False, payment=payment, reason="still_processing"
        )

    status = PaymentStatus.CANCELLED if code == str(RESULT_CANCELLED_BY_USER) else PaymentStatus.FAILED
    logger.info(
        "M-Pesa payment not completed",
        extra={"payment_id": payment.id, "status": status.value, "result_code": code, "source": source},
    )
    patch = PaymentUpdate(status=status, result_code=code, result_desc=result.result_desc)
    return _transition(db, payment, result, patch, source=source)


def resolve_from_callback(db: Session, callback: StkCallbackResult) -> Resolution | None:
    """Entry point for the provider callback. Returns ``None`` for unknown checkout ids."""

    payment = ledger.find_by_checkout_request_id(db, callback.checkout_request_id)
    if payment is None:
        logger.warning(
            "Callback for unknown CheckoutRequestID",
            extra={"checkout_request_id": callback.checkout_request_id},
        )
        return None
    return apply_gateway_result(db, payment, GatewayResult.from_callback(callback), source="callback")


def resolve_from_query(db: Session, payment: Payment, response: StkQueryResponse) -> Resolution:
    """Entry point for the manual / periodic STK query."""

    return apply_gateway_result(db, payment, GatewayResult.from_query(response), source="query")


def reconcile_stale_payment(
    db: Session, client: MpesaClient, invoice_id: str, *, stale_after_seconds: int
) -> Resolution | None:
    """Ask the provider about an in-flight payment whose prompt has outlived its window.

    Called before a new charge is started so an approved-but-unreported prompt
    settles the invoice instead of being replaced by a second prompt. Returns
    ``None`` when nothing stale is in flight or the provider could not answer;
    the payment then stays active.
    """

    payment = ledger.find_active_for_invoice(db, invoice_id)
    if payment is None or not payment.checkout_request_id or not ledger.is_stale(payment, stale_after_seconds):
        return None
    try:
        response = client.query_stk_push(payment.checkout_request_id)
    except MpesaError as exc:
        logger.warning(
            "Stale payment could not be checked with M-Pesa; left in flight",
            extra={"payment_id": payment.id, "error": str(exc)},
        )
        return None
    return apply_gateway_result(db, payment, GatewayResult.from_query(response), source="reconcile")


__all__ = [
    "AMOUNT_EPSILON",
    "GatewayResult",
    "Resolution",
    "apply_gateway_result",
    "reconcile_stale_payment",
    "resolve_from_callback",
    "resolve_from_query",
]
