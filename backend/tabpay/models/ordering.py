"""Ordering models - order groups (table tabs), orders and sequence counters."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

from sqlalchemy import (
    Boolean, DateTime, Enum as SQLEnum, ForeignKey, Index, Integer, JSON, Numeric, String, Text, text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from tabpay.db.base import Base, DocumentIdMixin, TimestampMixin
from tabpay.models.validators import non_negative, validate_order_lines


class PaymentStatus(str, Enum):
    UNPAID = "Unpaid"
    PAID = "Paid"


class PaymentMethod(str, Enum):
    QR = "QR"
    CASH = "Cash"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    ACCEPTED = "Accepted"


def _enum_column(enum_cls):
    return SQLEnum(enum_cls, values_callable=lambda x: [e.value for e in x],
                   native_enum=False, length=20)


class OrderGroup(Base, DocumentIdMixin, TimestampMixin):
    """Running tab of one table's dining session.

    ``total_cost`` only grows while the group is Unpaid; Paid is terminal.
    At most one Unpaid group may exist per table (partial unique index).
    """

    __tablename__ = "order_groups"
    __table_args__ = (
        Index(
            "uq_order_groups_open_table",
            "table_id",
            unique=True,
            sqlite_where=text("payment_status = 'Unpaid'"),
            postgresql_where=text("payment_status = 'Unpaid'"),
        ),
    )

    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"), nullable=False, index=True)
    table_id: Mapped[str] = mapped_column(ForeignKey("tables.id"), nullable=False, index=True)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"), nullable=False)
    payment_status: Mapped[PaymentStatus] = mapped_column(
        _enum_column(PaymentStatus), default=PaymentStatus.UNPAID, nullable=False, index=True,
    )
    payment_method: Mapped[Optional[PaymentMethod]] = mapped_column(_enum_column(PaymentMethod), nullable=True)
    payment_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    is_order_count_processed: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    table = relationship("Table")
    orders: Mapped[List["Order"]] = relationship(
        back_populates="order_group",
        order_by="Order.created_at",
    )

    @validates("total_cost")
    def _validate_total(self, key, value):
        return non_negative(key, value)

    @property
    def table_name(self) -> Optional[int]:
        return self.table.name if self.table else None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID


class Order(Base, DocumentIdMixin, TimestampMixin):
    """One batch of items submitted together by a table.

    ``items`` is a list of ``{"item_id", "quantity", "price"}`` with the menu
    price copied at submission time.
    """

    __tablename__ = "orders"

    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"), nullable=False, index=True)
    table_id: Mapped[str] = mapped_column(ForeignKey("tables.id"), nullable=False, index=True)
    order_group_id: Mapped[str] = mapped_column(ForeignKey("order_groups.id"), nullable=False, index=True)
    items: Mapped[list] = mapped_column(JSON, nullable=False)
    total_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    notes: Mapped[str] = mapped_column(Text, default="", nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        _enum_column(OrderStatus), default=OrderStatus.PENDING, nullable=False, index=True,
    )

    order_group: Mapped["OrderGroup"] = relationship(back_populates="orders")
    table = relationship("Table")

    @property
    def table_name(self) -> Optional[int]:
        return self.table.name if self.table else None

    @validates("items")
    def _validate_items(self, key, value):
        return validate_order_lines(key, value)

    @validates("total_cost")
    def _validate_total(self, key, value):
        return non_negative(key, value)


class Counter(Base):
    """Named monotonic sequence (e.g. ``invoice_number``)."""

    __tablename__ = "counters"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    sequence_value: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
