"""Seed a demo guest invoice for local checkout testing."""
from __future__ import annotations

import uuid
from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from app.config import get_settings
from app.db import create_all, get_sessionmaker, init_engine
from app.models import DiscountType
from app.schemas.invoice import InvoiceCreate, LineItemCreate
from app.security import Tenant
from app.services.invoices import create_invoice


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    init_engine()
    create_all()
    session = get_sessionmaker()()

    try:
        payload = InvoiceCreate(
            from_name="Mama Mboga Supplies",
            to_name="Kilimani Cafe",
            tax_rate=Decimal("16"),
            discount_type=DiscountType.FIXED,
            discount_value=Decimal("50"),
            items=[
                LineItemCreate(description="Sukuma wiki (bunch)", quantity=Decimal("20"), rate=Decimal("30")),
                LineItemCreate(description="Tomatoes (kg)", quantity=Decimal("5"), rate=Decimal("120")),
            ],
        )
        invoice = create_invoice(session, payload, Tenant(guest_session_id=str(uuid.uuid4())))
        print("Seed data inserted.")
        print(f"Invoice {invoice.invoice_number}: total {invoice.currency} {invoice.total}")
        print(f"Public id: {invoice.public_id}")
        print(f"Status:    {settings.APP_URL.rstrip('/')}/invoices/{invoice.public_id}/status")
    finally:
        session.close()


if __name__ == "__main__":
    main()
