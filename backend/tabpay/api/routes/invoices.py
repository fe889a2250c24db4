"""Invoice routes."""

from datetime import date, datetime
from typing import Optional

from fastapi import APIRouter, Query, Request

from tabpay.core.rate_limit import limiter
from tabpay.core.rbac import RequireManager, RequireStaff
from tabpay.core.responses import item_response, list_response
from tabpay.db.session import DbSession
from tabpay.schemas.invoice import InvoiceResponse, InvoiceSyncResult, RevenueSummary
from tabpay.services.invoice_service import InvoiceIssuer

router = APIRouter()


@router.get("")
@limiter.limit("60/minute")
def list_invoices(
    request: Request,
    db: DbSession,
    current_user: RequireStaff,
    table_id: Optional[str] = Query(None),
    payment_date: Optional[date] = Query(None, description="YYYY-MM-DD (UTC)"),
):
    invoices = InvoiceIssuer(db).list_invoices(current_user.restaurant_id, table_id, payment_date)
    return list_response([InvoiceResponse.model_validate(i) for i in invoices])


@router.get("/summary")
@limiter.limit("30/minute")
def revenue_summary(
    request: Request,
    db: DbSession,
    current_user: RequireManager,
    date_from: Optional[datetime] = Query(None),
    date_to: Optional[datetime] = Query(None),
):
    """Revenue and invoice count over a payment date range."""
    summary = InvoiceIssuer(db).revenue_summary(current_user.restaurant_id, date_from, date_to)
    return item_response(RevenueSummary(**summary))


@router.post("/sync")
@limiter.limit("5/minute")
def sync_invoices(request: Request, db: DbSession, current_user: RequireManager):
    """Issue missing invoices for paid order groups of the restaurant."""
    result = InvoiceIssuer(db).sync_missing(current_user.restaurant_id)
    return item_response(InvoiceSyncResult(**result))


@router.get("/order-group/{order_group_id}")
@limiter.limit("60/minute")
def get_invoice_by_order_group(request: Request, order_group_id: str, db: DbSession, current_user: RequireStaff):
    invoice = InvoiceIssuer(db).get_by_order_group(current_user.restaurant_id, order_group_id)
    return item_response(InvoiceResponse.model_validate(invoice))


@router.get("/{invoice_id}")
@limiter.limit("60/minute")
def get_invoice(request: Request, invoice_id: str, db: DbSession, current_user: RequireStaff):
    invoice = InvoiceIssuer(db).get_invoice(current_user.restaurant_id, invoice_id)
    return item_response(InvoiceResponse.model_validate(invoice))
