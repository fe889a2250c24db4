# Services module

from tabpay.services.counter_service import CounterService, format_invoice_number
from tabpay.services.invoice_service import InvoiceIssuer
from tabpay.services.notification_service import (
    NotificationEvent,
    NotificationService,
    get_notification_service,
    notifier,
)
from tabpay.services.order_service import OrderService
from tabpay.services.settlement_service import SettlementService
from tabpay.services.webhook_service import PaymentWebhookReconciler
from tabpay.services.websocket_service import ConnectionManager, ws_manager

__all__ = [
    "ConnectionManager",
    "CounterService",
    "InvoiceIssuer",
    "NotificationEvent",
    "NotificationService",
    "OrderService",
    "PaymentWebhookReconciler",
    "SettlementService",
    "format_invoice_number",
    "get_notification_service",
    "notifier",
    "ws_manager",
]
