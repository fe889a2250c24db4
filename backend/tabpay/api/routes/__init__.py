"""API routes."""

from fastapi import APIRouter

from tabpay.api.routes import invoices, notifications, order_groups, orders, webhook

api_router = APIRouter()

api_router.include_router(orders.router, prefix="/orders", tags=["orders"])
api_router.include_router(order_groups.router, prefix="/order-groups", tags=["order-groups"])
api_router.include_router(invoices.router, prefix="/invoices", tags=["invoices"])
api_router.include_router(webhook.router, prefix="/webhook", tags=["webhook"])
api_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
