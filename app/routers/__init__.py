"""API routers for the Riciti backend."""
from fastapi import APIRouter

from . import health, invoices, payments


def get_api_router() -> APIRouter:
    """Return the root API router."""

    api_router = APIRouter()
    api_router.include_router(health.router)
    api_router.include_router(invoices.router)
    api_router.include_router(payments.router)
    return api_router
