"""Pydantic schemas for request and response bodies."""
from .invoice import (
    InvoiceCreate,
    InvoiceList,
    InvoicePaymentStatus,
    InvoiceRead,
    InvoiceStats,
    InvoiceSummary,
    InvoiceUpdate,
    LineItemCreate,
    LineItemRead,
)
from .payment import (
    PaymentInitiateRequest,
    PaymentInitiateResponse,
    PaymentQueryRequest,
    PaymentQueryResponse,
    PaymentSummary,
)

__all__ = [
    "InvoiceCreate",
    "InvoiceList",
    "InvoicePaymentStatus",
    "InvoiceRead",
    "InvoiceStats",
    "InvoiceSummary",
    "InvoiceUpdate",
    "LineItemCreate",
    "LineItemRead",
    "PaymentInitiateRequest",
    "PaymentInitiateResponse",
    "PaymentQueryRequest",
    "PaymentQueryResponse",
    "PaymentSummary",
]
