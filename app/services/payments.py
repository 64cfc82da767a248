"""Payment ledger: the only writer of ``payments`` rows and of ``invoices.is_paid``.

Every status change goes through a conditional UPDATE that refuses to touch a
row already in a terminal status. That WHERE clause is what lets the provider
callback and the manual query race safely: the first terminal write wins and
any later one matches zero rows.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import ACTIVE_STATUSES, TERMINAL_STATUSES, Invoice, Payment, PaymentStatus
from app.utils.masking import mask_phone
from app.utils.time import ensure_aware, utcnow

logger = logging.getLogger(__name__)

STALE_PAYMENT_DESC = "Expired without confirmation"


class LedgerError(Exception):
    """Base class for business-rule refusals raised by the ledger."""


class InvoiceNotFound(LedgerError):
    pass


class AlreadyPaid(LedgerError):
    pass


class PaymentInProgress(LedgerError):
    def __init__(self, message: str, payment: Payment | None = None):
        super().__init__(message)
        self.payment = payment


@dataclass(frozen=True)
class PaymentUpdate:
    """Partial update of a payment; ``None`` fields are left untouched."""

    status: PaymentStatus | None = None
    merchant_request_id: str | None = None
    checkout_request_id: str | None = None
    mpesa_receipt_number: str | None = None
    transaction_date: datetime | None = None
    result_code: str | None = None
    result_desc: str | None = None
    completed_at: datetime | None = None

    def values(self) -> dict[str, object]:
        return {key: value for key, value in asdict(self).items() if value is not None}


def _active_payment(db: Session, invoice_id: str) -> Payment | None:
    stmt = (
        select(Payment)
        .where(Payment.invoice_id == invoice_id, Payment.status.in_(ACTIVE_STATUSES))
        .order_by(Payment.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def find_active_for_invoice(db: Session, invoice_id: str) -> Payment | None:
    return _active_payment(db, invoice_id)


def is_stale(payment: Payment, stale_after_seconds: int) -> bool:
    created_at = ensure_aware(payment.created_at)
    return created_at is not None and utcnow() - created_at >= timedelta(seconds=stale_after_seconds)


def _expire_if_stale(db: Session, payment: Payment, stale_after_seconds: int) -> bool:
    # A row with a checkout id reached the provider; only the provider's verdict may close it.
    if payment.checkout_request_id or not is_stale(payment, stale_after_seconds):
        return False
    result = db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(ACTIVE_STATUSES))
        .values(status=PaymentStatus.FAILED, result_desc=STALE_PAYMENT_DESC)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount:
        logger.warning(
            "Expired stale in-flight payment",
            extra={"payment_id": payment.id, "invoice_id": payment.invoice_id},
        )
    return True


def create_if_unpaid_and_no_active_payment(
    db: Session,
    *,
    invoice_id: str,
    phone_number: str,
    amount: Decimal,
    currency: str,
    user_id: str | None = None,
    stale_after_seconds: int | None = None,
) -> Payment:
    """Atomically insert a PENDING payment for an unpaid invoice with no charge in flight.

    The invoice row is locked for the duration of the check-and-insert. On
    databases without row locks, the partial unique index on active payments
    rejects the loser of a concurrent insert, which is reported the same way.
    """

    try:
        invoice = db.execute(
            select(Invoice)
            .where(Invoice.id == invoice_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if invoice is None:
            raise InvoiceNotFound(f"Invoice {invoice_id} not found")
        if invoice.is_paid:
            raise AlreadyPaid("This invoice has already been paid")

        existing = _active_payment(db, invoice_id)
        if existing is not None:
            if stale_after_seconds is None or not _expire_if_stale(db, existing, stale_after_seconds):
                raise PaymentInProgress("A payment for this invoice is already in progress", existing)

        payment = Payment(
            invoice_id=invoice_id,
            user_id=user_id,
            phone_number=phone_number,
            amount=amount,
            currency=currency,
            status=PaymentStatus.PENDING,
        )
        db.add(payment)
        db.flush()
    except LedgerError:
        db.rollback()
        raise
    except IntegrityError as exc:
        db.rollback()
        logger.info("Concurrent payment creation rejected", extra={"invoice_id": invoice_id})
        invoice = db.get(Invoice, invoice_id, populate_existing=True)
        if invoice is not None and invoice.is_paid:
            raise AlreadyPaid("This invoice has already been paid") from exc
        raise PaymentInProgress("A payment for this invoice is already in progress") from exc

    db.commit()
    logger.info(
        "Payment created",
        extra={
            "payment_id": payment.id,
            "invoice_id": invoice_id,
            "phone": mask_phone(phone_number),
            "amount": str(amount),
        },
    )
    return payment


def _conditional_update(db: Session, criterion, patch: PaymentUpdate) -> Payment | None:
    values = patch.values()
    if not values:
        raise ValueError("PaymentUpdate carries no fields")
    result = db.execute(
        update(Payment)
        .where(criterion, Payment.status.not_in(TERMINAL_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    if result.rowcount == 0:
        return None
    return db.scalars(
        select(Payment).where(criterion).execution_options(populate_existing=True)
    ).one()


def update_by_checkout_request_id(
    db: Session, checkout_request_id: str, patch: PaymentUpdate
) -> Payment | None:
    """Apply ``patch`` unless the payment is already terminal.

    Returns the refreshed row, or ``None`` when no mutable row matched (the
    payment was resolved by another path, or does not exist).
    """

    return _conditional_update(db, Payment.checkout_request_id == checkout_request_id, patch)


def update_by_id(db: Session, payment_id: str, patch: PaymentUpdate) -> Payment | None:
    """Same contract as :func:`update_by_checkout_request_id`, keyed by payment id."""

    return _conditional_update(db, Payment.id == payment_id, patch)


def find_by_checkout_request_id(db: Session, checkout_request_id: str) -> Payment | None:
    stmt = (
        select(Payment)
        .where(Payment.checkout_request_id == checkout_request_id)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).one_or_none()


def find_by_id(db: Session, payment_id: str) -> Payment | None:
    return db.get(Payment, payment_id, populate_existing=True)


def list_by_invoice(db: Session, invoice_id: str) -> list[Payment]:
    stmt = select(Payment).where(Payment.invoice_id == invoice_id).order_by(Payment.created_at.desc())
    return list(db.scalars(stmt))


def latest_for_invoice(db: Session, invoice_id: str) -> Payment | None:
    stmt = (
        select(Payment)
        .where(Payment.invoice_id == invoice_id)
        .order_by(Payment.created_at.desc())
        .limit(1)
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).first()


def mark_invoice_paid(db: Session, invoice_id: str) -> None:
    """Flag the invoice as paid. Setting it twice is harmless."""

    now = utcnow()
    db.execute(update(Invoice).where(Invoice.id == invoice_id).values(is_paid=True, paid_at=now))
    db.commit()
    logger.info("Invoice marked paid", extra={"invoice_id": invoice_id})


__all__ = [
    "AlreadyPaid",
    "InvoiceNotFound",
    "LedgerError",
    "PaymentInProgress",
    "PaymentUpdate",
    "create_if_unpaid_and_no_active_payment",
    "find_by_checkout_request_id",
    "find_active_for_invoice",
    "find_by_id",
    "is_stale",
    "latest_for_invoice",
    "list_by_invoice",
    "mark_invoice_paid",
    "update_by_checkout_request_id",
    "update_by_id",
]
