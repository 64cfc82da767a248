"""ORM models package."""
from .base import Base
from .invoice import DiscountType, DocumentType, Invoice, LineItem
from .payment import ACTIVE_STATUSES, TERMINAL_STATUSES, Payment, PaymentStatus

__all__ = [
    "ACTIVE_STATUSES",
    "Base",
    "DiscountType",
    "DocumentType",
    "Invoice",
    "LineItem",
    "Payment",
    "PaymentStatus",
    "TERMINAL_STATUSES",
]
