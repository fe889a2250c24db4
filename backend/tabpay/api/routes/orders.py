"""Order routes - guest submission and staff approval."""

import logging
from typing import Optional

from fastapi import APIRouter, Query, Request

from tabpay.core.rate_limit import limiter
from tabpay.core.rbac import RequireStaff
from tabpay.core.responses import item_response, list_response
from tabpay.db.session import DbSession
from tabpay.models import OrderStatus
from tabpay.schemas.ordering import OrderResponse, OrderSubmit
from tabpay.services.order_service import OrderService

logger = logging.getLogger(__name__)

router = APIRouter()


def _orders_response(orders):
    return list_response([OrderResponse.model_validate(o) for o in orders])


@router.post("/add", status_code=201)
@limiter.limit("30/minute")
def add_order(request: Request, body: OrderSubmit, db: DbSession):
    """Submit an order from a table (public, no login).

    Prices are taken from the menu; any price in the body is ignored.
    """
    order = OrderService(db).submit_order(body.table_id, body.items, body.notes)
    return item_response(OrderResponse.model_validate(order))


@router.get("/")
@limiter.limit("60/minute")
def list_orders(
    request: Request,
    db: DbSession,
    current_user: RequireStaff,
    status_filter: Optional[OrderStatus] = Query(None, alias="status"),
):
    """All orders of the restaurant, newest first."""
    orders = OrderService(db).list_orders(current_user.restaurant_id, status_filter)
    return _orders_response(orders)


@router.get("/pending")
@limiter.limit("60/minute")
def list_pending_orders(request: Request, db: DbSession, current_user: RequireStaff):
    orders = OrderService(db).list_orders(current_user.restaurant_id, OrderStatus.PENDING)
    return _orders_response(orders)


@router.get("/approved")
@limiter.limit("60/minute")
def list_approved_orders(request: Request, db: DbSession, current_user: RequireStaff):
    orders = OrderService(db).list_orders(current_user.restaurant_id, OrderStatus.ACCEPTED)
    return _orders_response(orders)


@router.put("/{order_id}/approve")
@limiter.limit("30/minute")
def approve_order(request: Request, order_id: str, db: DbSession, current_user: RequireStaff):
    order = OrderService(db).approve_order(current_user.restaurant_id, order_id)
    return item_response(OrderResponse.model_validate(order))
