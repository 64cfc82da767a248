"""Invoice CRUD for the owning tenant, public lookup and tenant statistics."""
from __future__ import annotations

import logging
import secrets
import string
from datetime import timedelta
from decimal import Decimal

from fastapi import HTTPException, status
from sqlalchemy import case, func, select, update
from sqlalchemy.orm import Session, selectinload

from app.config import get_settings
from app.models import Invoice, LineItem, Payment, PaymentStatus
from app.schemas.invoice import (
    InvoiceCreate,
    InvoiceList,
    InvoicePaymentStatus,
    InvoiceStats,
    InvoiceSummary,
    InvoiceUpdate,
    LineItemCreate,
)
from app.schemas.payment import PaymentSummary
from app.security import Tenant
from app.services.payments import find_active_for_invoice, latest_for_invoice
from app.utils.errors import error_response
from app.utils.time import utcnow
from app.utils.totals import calculate_totals, line_amount

logger = logging.getLogger(__name__)

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits
_NUMBER_SUFFIX_LENGTH = 10
DEFAULT_DUE_DAYS = 7

ORDER_COLUMNS = {
    "createdAt": Invoice.created_at,
    "issueDate": Invoice.issue_date,
    "dueDate": Invoice.due_date,
}


def generate_invoice_number(year: int | None = None) -> str:
    year = year or utcnow().year
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(_NUMBER_SUFFIX_LENGTH))
    return f"INV-{year}-{suffix}"


def generate_public_id() -> str:
    return secrets.token_urlsafe(16)


def _tenant_filter(tenant: Tenant):
    if tenant.user_id:
        return Invoice.user_id == tenant.user_id
    return Invoice.guest_session_id == tenant.guest_session_id


def _checked_totals(lines, tax_rate, discount_type, discount_value):
    totals = calculate_totals(lines, tax_rate, discount_type, discount_value)
    if totals.total < 0:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("INVALID_DISCOUNT", "Discount cannot exceed the invoice amount."),
        )
    return totals


def _line_items(items: list[LineItemCreate]) -> list[LineItem]:
    return [
        LineItem(
            description=item.description,
            quantity=item.quantity,
            rate=item.rate,
            amount=line_amount(item.quantity, item.rate),
            sort_order=index,
        )
        for index, item in enumerate(items)
    ]


def _not_found() -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=error_response("INVOICE_NOT_FOUND", "Invoice not found."),
    )


def create_invoice(db: Session, payload: InvoiceCreate, tenant: Tenant) -> Invoice:
    """Persist an invoice with server-computed totals for ``tenant``."""

    totals = _checked_totals(
        [(item.quantity, item.rate) for item in payload.items],
        payload.tax_rate,
        payload.discount_type,
        payload.discount_value,
    )
    issue_date = payload.issue_date or utcnow()

    invoice = Invoice(
        public_id=generate_public_id(),
        user_id=tenant.user_id,
        guest_session_id=None if tenant.user_id else tenant.guest_session_id,
        document_type=payload.document_type,
        invoice_number=generate_invoice_number(),
        issue_date=issue_date,
        due_date=payload.due_date or issue_date + timedelta(days=DEFAULT_DUE_DAYS),
        from_name=payload.from_name,
        to_name=payload.to_name,
        currency=payload.currency.upper(),
        tax_rate=payload.tax_rate,
        discount_type=payload.discount_type,
        discount_value=payload.discount_value,
        subtotal=totals.subtotal,
        tax_amount=totals.tax_amount,
        discount_amount=totals.discount_amount,
        total=totals.total,
        notes=payload.notes,
        is_paid=False,
    )
    invoice.items = _line_items(payload.items)
    db.add(invoice)
    db.commit()
    db.refresh(invoice)
    logger.info(
        "Invoice created",
        extra={"invoice_id": invoice.id, "invoice_number": invoice.invoice_number},
    )
    return invoice


def find_by_public_id(db: Session, public_id: str) -> Invoice | None:
    stmt = (
        select(Invoice)
        .where(Invoice.public_id == public_id)
        .options(selectinload(Invoice.items))
        .execution_options(populate_existing=True)
    )
    return db.scalars(stmt).one_or_none()


def get_by_public_id(db: Session, public_id: str) -> Invoice:
    invoice = find_by_public_id(db, public_id)
    if invoice is None:
        raise _not_found()
    return invoice


def get_for_tenant(db: Session, invoice_id: str, tenant: Tenant) -> Invoice:
    """Owner-only lookup; another tenant's invoice is reported as missing."""

    stmt = (
        select(Invoice)
        .where(Invoice.id == invoice_id, _tenant_filter(tenant))
        .options(selectinload(Invoice.items))
        .execution_options(populate_existing=True)
    )
    invoice = db.scalars(stmt).one_or_none()
    if invoice is None:
        raise _not_found()
    return invoice


def list_invoices(
    db: Session,
    tenant: Tenant,
    *,
    limit: int = 20,
    offset: int = 0,
    order_by: str = "createdAt",
    order_dir: str = "desc",
) -> InvoiceList:
    criterion = _tenant_filter(tenant)
    column = ORDER_COLUMNS[order_by]
    ordering = column.asc() if order_dir == "asc" else column.desc()
    total = db.scalar(select(func.count(Invoice.id)).where(criterion)) or 0
    rows = db.scalars(
        select(Invoice).where(criterion).order_by(ordering, Invoice.id).limit(limit).offset(offset)
    ).all()
    return InvoiceList(
        invoices=[InvoiceSummary.model_validate(row) for row in rows],
        total=int(total),
        limit=limit,
        offset=offset,
    )


def update_invoice(db: Session, invoice_id: str, payload: InvoiceUpdate, tenant: Tenant) -> Invoice:
    """Apply the provided fields and recompute totals from the resulting lines."""

    invoice = get_for_tenant(db, invoice_id, tenant)
    changes = payload.model_dump(exclude_unset=True, exclude={"items"})
    for field, value in changes.items():
        # Only notes may be cleared.
        if value is None and field != "notes":
            continue
        if field == "currency":
            value = value.upper()
        setattr(invoice, field, value)

    if payload.items is not None:
        invoice.items = _line_items(payload.items)
    totals = _checked_totals(
        [(item.quantity, item.rate) for item in invoice.items],
        invoice.tax_rate,
        invoice.discount_type,
        invoice.discount_value,
    )
    invoice.subtotal = totals.subtotal
    invoice.tax_amount = totals.tax_amount
    invoice.discount_amount = totals.discount_amount
    invoice.total = totals.total
    db.commit()
    logger.info(
        "Invoice updated",
        extra={"invoice_id": invoice.id, "fields": sorted(changes), "items_replaced": payload.items is not None},
    )
    return get_for_tenant(db, invoice.id, tenant)


def delete_invoice(db: Session, invoice_id: str, tenant: Tenant) -> None:
    """Delete an invoice and its lines; its payment records are kept, detached."""

    invoice = get_for_tenant(db, invoice_id, tenant)
    if find_active_for_invoice(db, invoice.id) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=error_response("PAYMENT_IN_PROGRESS", "A payment for this invoice is in progress."),
        )
    db.execute(
        update(Payment)
        .where(Payment.invoice_id == invoice.id)
        .values(invoice_id=None)
        .execution_options(synchronize_session=False)
    )
    db.delete(invoice)
    db.commit()
    logger.info("Invoice deleted", extra={"invoice_id": invoice_id})


def payment_status(db: Session, public_id: str) -> InvoicePaymentStatus:
    """Paid flag plus the latest payment attempt, as read by the status poller."""

    invoice = get_by_public_id(db, public_id)
    latest = latest_for_invoice(db, invoice.id)
    return InvoicePaymentStatus(
        invoice_id=invoice.public_id,
        is_paid=invoice.is_paid,
        paid_at=invoice.paid_at,
        latest_payment=PaymentSummary.model_validate(latest) if latest is not None else None,
    )


def tenant_stats(db: Session, tenant: Tenant) -> InvoiceStats:
    """Invoice counts and platform fees collected for the tenant's invoices."""

    criterion = _tenant_filter(tenant)
    total, paid = db.execute(
        select(
            func.count(Invoice.id),
            func.coalesce(func.sum(case((Invoice.is_paid.is_(True), 1), else_=0)), 0),
        ).where(criterion)
    ).one()
    fees = db.scalar(
        select(func.coalesce(func.sum(Payment.amount), 0))
        .join(Invoice, Invoice.id == Payment.invoice_id)
        .where(criterion, Payment.status == PaymentStatus.COMPLETED)
    )
    total = int(total or 0)
    paid = int(paid or 0)
    return InvoiceStats(
        total_invoices=total,
        paid_invoices=paid,
        unpaid_invoices=total - paid,
        fees_collected=Decimal(str(fees or 0)),
        fee_currency=get_settings().SERVICE_FEE_CURRENCY,
    )


__all__ = [
    "create_invoice",
    "delete_invoice",
    "find_by_public_id",
    "generate_invoice_number",
    "generate_public_id",
    "get_by_public_id",
    "get_for_tenant",
    "list_invoices",
    "payment_status",
    "tenant_stats",
    "update_invoice",
]
