"""Order group routes - table tabs, payment and QR codes."""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from tabpay.core.rate_limit import limiter
from tabpay.core.rbac import RequireStaff
from tabpay.core.responses import item_response, list_response
from tabpay.db.session import DbSession
from tabpay.models import PaymentStatus
from tabpay.schemas.invoice import InvoiceResponse
from tabpay.schemas.ordering import PaymentRequest, QrCodeResponse
from tabpay.services.order_service import OrderService
from tabpay.services.settlement_service import SettlementService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("")
@limiter.limit("60/minute")
def list_order_groups(
    request: Request,
    db: DbSession,
    current_user: RequireStaff,
    payment_status: Optional[PaymentStatus] = Query(None),
):
    """Order groups with aggregated items.

    ``payment_status=Unpaid`` lists only tabs holding at least one approved order.
    """
    service = OrderService(db)
    groups = service.list_groups(current_user.restaurant_id, payment_status)
    return list_response(service.describe_groups(groups))


@router.get("/table/{table_name}")
@limiter.limit("60/minute")
def get_active_order_group(request: Request, table_name: int, db: DbSession, current_user: RequireStaff):
    """Open tab of a table, by table number."""
    service = OrderService(db)
    group = service.get_active_group_by_table_name(current_user.restaurant_id, table_name)
    return item_response(service.describe_group(group))


@router.get("/{order_group_id}")
@limiter.limit("60/minute")
def get_order_group(request: Request, order_group_id: str, db: DbSession, current_user: RequireStaff):
    service = OrderService(db)
    group = service.get_group(current_user.restaurant_id, order_group_id)
    return item_response(service.describe_group(group))


@router.put("/{order_group_id}/pay")
@limiter.limit("20/minute")
def pay_order_group(
    request: Request,
    order_group_id: str,
    db: DbSession,
    current_user: RequireStaff,
    body: Optional[PaymentRequest] = None,
):
    """Record payment (Cash unless stated) and issue the invoice."""
    payment_method = body.payment_method if body else None
    group, invoice = SettlementService(db).settle(current_user.restaurant_id, order_group_id, payment_method)
    logger.info(f"Order group {group.id} settled by user {current_user.user_id}")
    return {
        "success": True,
        "message": "Payment recorded",
        "data": OrderService(db).describe_group(group),
        "invoice": InvoiceResponse.model_validate(invoice),
    }


@router.post("/{order_group_id}/create-qr", response_model=QrCodeResponse)
@limiter.limit("20/minute")
def create_qr_code(request: Request, order_group_id: str, db: DbSession, current_user: RequireStaff):
    """Bank transfer QR code whose memo references this order group."""
    return SettlementService(db).build_qr_code(current_user.restaurant_id, order_group_id)
