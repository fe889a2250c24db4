"""Order and order group schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel

from tabpay.models.ordering import OrderStatus, PaymentMethod, PaymentStatus


class OrderSubmit(BaseModel):
    """Body of POST /orders/add.

    Fields are kept loose and checked by the service, so malformed bodies
    answer 400 with a reason. Each item is ``{"item_id", "quantity"}``;
    prices sent by clients are ignored.
    """

    table_id: Any = None
    items: Any = None
    notes: Any = None


class OrderLineResponse(BaseModel):
    item_id: str
    quantity: int
    price: float


class OrderResponse(BaseModel):
    id: str
    restaurant_id: str
    table_id: str
    table_name: Optional[int] = None
    order_group_id: str
    items: List[OrderLineResponse]
    total_cost: float
    notes: str = ""
    status: OrderStatus
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class AggregatedItem(BaseModel):
    """Quantity of one menu item summed over every order of a group."""

    item_id: str
    name: Optional[str] = None
    quantity: int
    price: float
    total: float


class OrderGroupResponse(BaseModel):
    id: str
    restaurant_id: str
    table_id: str
    table_name: Optional[int] = None
    total_cost: float
    payment_status: PaymentStatus
    payment_method: Optional[PaymentMethod] = None
    payment_date: Optional[datetime] = None
    is_order_count_processed: bool = False
    orders: List[OrderResponse] = []
    items: List[AggregatedItem] = []
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class PaymentRequest(BaseModel):
    """Body of PUT /order-groups/{id}/pay."""

    payment_method: Optional[PaymentMethod] = None


class QrCodeResponse(BaseModel):
    success: bool = True
    order_group_id: str
    amount: float
    memo: str
    qr_code_url: str
