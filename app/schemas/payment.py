"""Schemas for payment endpoints."""
from datetime import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from app.models.payment import PaymentStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class PaymentInitiateRequest(CamelModel):
    public_invoice_id: str = Field(
        min_length=1,
        validation_alias=AliasChoices("publicInvoiceId", "publicId", "public_invoice_id"),
    )
    phone_number: str = Field(min_length=1, max_length=32)


class PaymentInitiateResponse(CamelModel):
    checkout_request_id: str
    customer_message: str
    payment_id: str


class PaymentQueryRequest(CamelModel):
    checkout_request_id: str = Field(min_length=1)


class PaymentQueryResponse(CamelModel):
    status: PaymentStatus
    result_code: str | None = None
    result_desc: str | None = None
    mpesa_receipt_number: str | None = None


class PaymentSummary(CamelModel):
    """Latest attempt as exposed to the status poller (no phone, no amounts)."""

    id: str
    status: PaymentStatus
    mpesa_receipt_number: str | None = None
    result_desc: str | None = None
    created_at: datetime
