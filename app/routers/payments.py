"""M-Pesa payment endpoints: initiate, provider callback and manual query."""
from __future__ import annotations

import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from app.config import get_settings
from app.db import get_db
from app.models import PaymentStatus
from app.schemas.payment import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentQueryRequest,
    PaymentQueryResponse,
)
from app.security import Tenant, get_tenant
from app.services import invoices as invoices_service
from app.services import payments as ledger
from app.services.mpesa import InvalidPhoneFormat, MpesaClient, MpesaError, get_mpesa_client, normalize_phone_number
from app.services.mpesa_callbacks import callback_ack, client_ip_from_headers, is_trusted_callback, process_callback
from app.services.payment_state import reconcile_stale_payment, resolve_from_query
from app.services.payments import AlreadyPaid, InvoiceNotFound, PaymentInProgress, PaymentUpdate
from app.services.rate_limit import rate_limit
from app.utils.errors import error_response
from app.utils.masking import mask_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

INITIATE_FAILED_MESSAGE = "Failed to initiate payment. Please try again."
QUERY_FAILED_MESSAGE = "Failed to query payment status. Please try again."


@router.post(
    "/initiate",
    response_model=PaymentInitiateResponse,
    dependencies=[Depends(rate_limit("payment"))],
)
def initiate_payment(
    payload: PaymentInitiateRequest,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_tenant),
    client: MpesaClient = Depends(get_mpesa_client),
):
    """Create a PENDING payment for the platform fee and send the STK prompt."""

    try:
        phone = normalize_phone_number(payload.phone_number)
    except InvalidPhoneFormat as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("INVALID_PHONE", str(exc)),
        ) from exc

    settings = get_settings()
    invoice = invoices_service.get_by_public_id(db, payload.public_invoice_id)
    # An old prompt may have been approved without a callback; settle it before prompting again.
    reconcile_stale_payment(
        db, client, invoice.id, stale_after_seconds=settings.PAYMENT_STALE_AFTER_SECONDS
    )
    try:
        payment = ledger.create_if_unpaid_and_no_active_payment(
            db,
            invoice_id=invoice.id,
            phone_number=phone,
            amount=settings.SERVICE_FEE_AMOUNT,
            currency=settings.SERVICE_FEE_CURRENCY,
            user_id=tenant.user_id,
            stale_after_seconds=settings.PAYMENT_STALE_AFTER_SECONDS,
        )
    except InvoiceNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("INVOICE_NOT_FOUND", "Invoice not found."),
        ) from exc
    except AlreadyPaid as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("ALREADY_PAID", str(exc)),
        ) from exc
    except PaymentInProgress as exc:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("PAYMENT_IN_PROGRESS", str(exc)),
        ) from exc

    try:
        push = client.initiate_stk_push(
            phone_number=phone,
            amount=payment.amount,
            account_reference=invoice.invoice_number,
            callback_url=settings.mpesa_callback_url,
            transaction_desc="Riciti fee",
        )
    except MpesaError as exc:
        # Free the invoice for a retry; the provider never accepted this charge.
        ledger.update_by_id(
            db,
            payment.id,
            PaymentUpdate(status=PaymentStatus.FAILED, result_desc=str(exc)[:255]),
        )
        logger.error(
            "STK push initiation failed",
            extra={"payment_id": payment.id, "phone": mask_phone(phone), "error": str(exc)},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_response("PAYMENT_INITIATION_FAILED", INITIATE_FAILED_MESSAGE),
        ) from exc

    updated = ledger.update_by_id(
        db,
        payment.id,
        PaymentUpdate(
            status=PaymentStatus.PROCESSING,
            merchant_request_id=push.merchant_request_id or None,
            checkout_request_id=push.checkout_request_id,
        ),
    )
    if updated is None:
        logger.warning(
            "Payment left PENDING before the STK push was recorded",
            extra={"payment_id": payment.id, "checkout_request_id": push.checkout_request_id},
        )
    logger.info(
        "STK push sent",
        extra={
            "payment_id": payment.id,
            "invoice_id": invoice.id,
            "checkout_request_id": push.checkout_request_id,
        },
    )
    return PaymentInitiateResponse(
        checkout_request_id=push.checkout_request_id,
        customer_message=push.customer_message or "Check your phone to complete the payment.",
        payment_id=payment.id,
    )


@router.post("/callback", status_code=status.HTTP_200_OK)
async def mpesa_callback(
    request: Request,
    token: str | None = Query(default=None),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Daraja result notification. Always acknowledged so Safaricom stops retrying."""

    peer = request.client.host if request.client else None
    client_ip = client_ip_from_headers(request.headers, peer)
    try:
        if not is_trusted_callback(token=token, client_ip=client_ip):
            return callback_ack()

        raw_body = await request.body()
        try:
            payload = json.loads(raw_body)
        except ValueError:
            logger.warning("M-Pesa callback body is not valid JSON", extra={"client_ip": client_ip})
            return callback_ack()

        process_callback(db, payload)
    except Exception:  # noqa: BLE001
        logger.exception("M-Pesa callback handling failed", extra={"client_ip": client_ip})
    return callback_ack()


@router.post(
    "/query",
    response_model=PaymentQueryResponse,
    response_model_exclude_none=True,
    dependencies=[Depends(rate_limit("public_read"))],
)
def query_payment(
    payload: PaymentQueryRequest,
    db: Session = Depends(get_db),
    client: MpesaClient = Depends(get_mpesa_client),
):
    """Ask the provider for the outcome when the callback is late."""

    payment = ledger.find_by_checkout_request_id(db, payload.checkout_request_id)
    if payment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=error_response("PAYMENT_NOT_FOUND", "Payment not found."),
        )
    if payment.status.is_terminal:
        return PaymentQueryResponse(
            status=payment.status,
            result_code=payment.result_code,
            result_desc=payment.result_desc,
            mpesa_receipt_number=payment.mpesa_receipt_number,
        )

    try:
        response = client.query_stk_push(payload.checkout_request_id)
    except MpesaError as exc:
        logger.error(
            "STK query failed",
            extra={"payment_id": payment.id, "error": str(exc)},
        )
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=error_response("PAYMENT_QUERY_FAILED", QUERY_FAILED_MESSAGE),
        ) from exc

    resolution = resolve_from_query(db, payment, response)
    current = resolution.payment
    return PaymentQueryResponse(
        status=resolution.status,
        result_code=response.result_code,
        result_desc=response.result_desc,
        mpesa_receipt_number=current.mpesa_receipt_number,
    )


__all__ = ["router"]
