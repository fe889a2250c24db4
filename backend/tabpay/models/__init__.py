"""SQLAlchemy models."""

from tabpay.models.restaurant import MenuItem, Restaurant, Table, TableStatus
from tabpay.models.ordering import (
    Counter,
    Order,
    OrderGroup,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
)
from tabpay.models.invoice import Invoice

__all__ = [
    "Counter",
    "Invoice",
    "MenuItem",
    "Order",
    "OrderGroup",
    "OrderStatus",
    "PaymentMethod",
    "PaymentStatus",
    "Restaurant",
    "Table",
    "TableStatus",
]
