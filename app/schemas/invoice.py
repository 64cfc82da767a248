"""Schemas for invoice endpoints."""
from datetime import datetime
from decimal import Decimal

from pydantic import Field

from app.models.invoice import DiscountType, DocumentType
from app.schemas.payment import CamelModel, PaymentSummary


class LineItemCreate(CamelModel):
    description: str = Field(min_length=1, max_length=500)
    quantity: Decimal = Field(gt=0)
    rate: Decimal = Field(ge=0)


class InvoiceCreate(CamelModel):
    document_type: DocumentType = DocumentType.INVOICE
    from_name: str = Field(min_length=1, max_length=200)
    to_name: str = Field(min_length=1, max_length=200)
    currency: str = Field(default="KES", min_length=3, max_length=3)
    tax_rate: Decimal = Field(default=Decimal("0"), ge=0, le=100)
    discount_type: DiscountType = DiscountType.PERCENTAGE
    discount_value: Decimal = Field(default=Decimal("0"), ge=0)
    notes: str | None = None
    issue_date: datetime | None = None
    due_date: datetime | None = None
    items: list[LineItemCreate] = Field(min_length=1)


class InvoiceUpdate(CamelModel):
    """Partial update; omitted fields keep their value and ``items`` replaces all lines."""

    document_type: DocumentType | None = None
    from_name: str | None = Field(default=None, min_length=1, max_length=200)
    to_name: str | None = Field(default=None, min_length=1, max_length=200)
    currency: str | None = Field(default=None, min_length=3, max_length=3)
    tax_rate: Decimal | None = Field(default=None, ge=0, le=100)
    discount_type: DiscountType | None = None
    discount_value: Decimal | None = Field(default=None, ge=0)
    notes: str | None = None
    issue_date: datetime | None = None
    due_date: datetime | None = None
    items: list[LineItemCreate] | None = Field(default=None, min_length=1)


class LineItemRead(CamelModel):
    description: str
    quantity: Decimal
    rate: Decimal
    amount: Decimal


class InvoiceSummary(CamelModel):
    id: str
    public_id: str
    document_type: DocumentType
    invoice_number: str
    from_name: str
    to_name: str
    currency: str
    tax_rate: Decimal
    discount_type: DiscountType
    discount_value: Decimal
    subtotal: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total: Decimal
    notes: str | None
    is_paid: bool
    paid_at: datetime | None
    issue_date: datetime
    due_date: datetime
    created_at: datetime


class InvoiceRead(InvoiceSummary):
    items: list[LineItemRead]


class InvoiceList(CamelModel):
    invoices: list[InvoiceSummary]
    total: int
    limit: int
    offset: int


class InvoicePaymentStatus(CamelModel):
    invoice_id: str
    is_paid: bool
    paid_at: datetime | None
    latest_payment: PaymentSummary | None


class InvoiceStats(CamelModel):
    total_invoices: int
    paid_invoices: int
    unpaid_invoices: int
    fees_collected: Decimal
    fee_currency: str
