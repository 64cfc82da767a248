"""Invoice endpoints: owner CRUD, public view, download gate and payment status."""
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.invoice import (
    InvoiceCreate,
    InvoiceList,
    InvoicePaymentStatus,
    InvoiceRead,
    InvoiceStats,
    InvoiceUpdate,
)
from app.security import Tenant, get_tenant
from app.services import invoices as invoices_service
from app.services.rate_limit import rate_limit
from app.utils.errors import error_response

router = APIRouter(prefix="/invoices", tags=["invoices"])


@router.post(
    "",
    response_model=InvoiceRead,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limit("invoice_create"))],
)
def create_invoice(
    payload: InvoiceCreate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_tenant),
):
    return invoices_service.create_invoice(db, payload, tenant)


@router.get("", response_model=InvoiceList, dependencies=[Depends(rate_limit("private_crud"))])
def list_invoices(
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    order_by: Literal["createdAt", "issueDate", "dueDate"] = Query(default="createdAt", alias="orderBy"),
    order_dir: Literal["asc", "desc"] = Query(default="desc", alias="orderDir"),
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_tenant),
):
    """The caller's invoices, one page at a time."""

    return invoices_service.list_invoices(
        db, tenant, limit=limit, offset=offset, order_by=order_by, order_dir=order_dir
    )


@router.get("/stats", response_model=InvoiceStats, dependencies=[Depends(rate_limit("private_crud"))])
def invoice_stats(db: Session = Depends(get_db), tenant: Tenant = Depends(get_tenant)):
    """Counts and fees for the caller's invoices."""

    return invoices_service.tenant_stats(db, tenant)


@router.get(
    "/public/{public_id}",
    response_model=InvoiceRead,
    dependencies=[Depends(rate_limit("public_read"))],
)
def read_public_invoice(public_id: str, db: Session = Depends(get_db)):
    return invoices_service.get_by_public_id(db, public_id)


@router.get(
    "/public/{public_id}/download",
    response_model=InvoiceRead,
    dependencies=[Depends(rate_limit("public_read"))],
)
def download_invoice(public_id: str, response: Response, db: Session = Depends(get_db)):
    """Gate for the PDF export: refused until the platform fee is paid."""

    invoice = invoices_service.get_by_public_id(db, public_id)
    if not invoice.is_paid:
        raise HTTPException(
            status_code=status.HTTP_402_PAYMENT_REQUIRED,
            detail=error_response("PAYMENT_REQUIRED", "Pay the service fee to download this invoice."),
        )
    response.headers["Cache-Control"] = "no-store"
    return invoice


@router.get(
    "/{public_id}/status",
    response_model=InvoicePaymentStatus,
    dependencies=[Depends(rate_limit("public_read"))],
)
def invoice_payment_status(public_id: str, response: Response, db: Session = Depends(get_db)):
    """Polled by the client while an STK push is in flight."""

    response.headers["Cache-Control"] = "no-store"
    return invoices_service.payment_status(db, public_id)


@router.get("/{invoice_id}", response_model=InvoiceRead, dependencies=[Depends(rate_limit("private_crud"))])
def read_invoice(invoice_id: str, db: Session = Depends(get_db), tenant: Tenant = Depends(get_tenant)):
    return invoices_service.get_for_tenant(db, invoice_id, tenant)


@router.put("/{invoice_id}", response_model=InvoiceRead, dependencies=[Depends(rate_limit("private_crud"))])
def update_invoice(
    invoice_id: str,
    payload: InvoiceUpdate,
    db: Session = Depends(get_db),
    tenant: Tenant = Depends(get_tenant),
):
    return invoices_service.update_invoice(db, invoice_id, payload, tenant)


@router.delete("/{invoice_id}", dependencies=[Depends(rate_limit("private_crud"))])
def delete_invoice(invoice_id: str, db: Session = Depends(get_db), tenant: Tenant = Depends(get_tenant)):
    invoices_service.delete_invoice(db, invoice_id, tenant)
    return {"success": True}


__all__ = ["router"]
