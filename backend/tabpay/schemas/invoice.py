"""Invoice schemas."""

from __future__ import annotations

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel


class RestaurantSnapshot(BaseModel):
    name: str
    address: str
    restaurant_id: Optional[str] = None


class InvoiceResponse(BaseModel):
    id: str
    invoice_number: str
    order_group_id: str
    restaurant_id: str
    table_id: str
    table_name: Optional[int] = None
    total_cost: float
    payment_method: str
    payment_date: datetime
    restaurant_info: RestaurantSnapshot
    created_at: datetime

    model_config = {"from_attributes": True}


class PopularItem(BaseModel):
    item_id: str
    name: str
    order_count: int


class RevenueSummary(BaseModel):
    """Invoice totals over a payment date range."""

    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    invoice_count: int
    revenue: float
    by_payment_method: Dict[str, float]
    top_items: List[PopularItem]


class InvoiceSyncResult(BaseModel):
    checked: int
    created: List[str]
    updated: List[str]
    failed: List[str]
