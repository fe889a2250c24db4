"""Invoice model - the durable receipt of one settled order group."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, JSON, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from tabpay.db.base import Base, DocumentIdMixin, TimestampMixin


class Invoice(Base, DocumentIdMixin, TimestampMixin):
    """Immutable once issued.

    ``restaurant_info`` is a copy of the restaurant's name, address and id at
    issuance, so later restaurant edits never alter historical invoices.
    """

    __tablename__ = "invoices"

    invoice_number: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    order_group_id: Mapped[str] = mapped_column(
        ForeignKey("order_groups.id"), unique=True, nullable=False,
    )
    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"), nullable=False, index=True)
    table_id: Mapped[str] = mapped_column(ForeignKey("tables.id"), nullable=False, index=True)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    restaurant_info: Mapped[dict] = mapped_column(JSON, nullable=False)

    order_group = relationship("OrderGroup")
    table = relationship("Table")

    @property
    def table_name(self) -> Optional[int]:
        return self.table.name if self.table else None
