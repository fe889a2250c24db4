"""Restaurant models - restaurants, menu items, tables."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import Enum as SQLEnum, ForeignKey, Integer, Numeric, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from tabpay.db.base import Base, DocumentIdMixin, TimestampMixin
from tabpay.models.validators import non_negative, positive


class TableStatus(str, Enum):
    FREE = "Free"
    OCCUPIED = "Occupied"


class Restaurant(Base, DocumentIdMixin, TimestampMixin):
    """Restaurant (tenant). Managed by the onboarding service."""

    __tablename__ = "restaurants"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)


class MenuItem(Base, DocumentIdMixin, TimestampMixin):
    """Menu item for ordering. Managed by the menu service; we read prices and bump popularity."""

    __tablename__ = "menu_items"
    __table_args__ = (UniqueConstraint("restaurant_id", "name", name="uq_menu_items_restaurant_name"),)

    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    order_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    @validates("price", "order_count")
    def _validate_non_negative(self, key, value):
        return non_negative(key, value)


class Table(Base, DocumentIdMixin, TimestampMixin):
    """Physical seating unit. ``name`` is the table number shown to guests."""

    __tablename__ = "tables"
    __table_args__ = (UniqueConstraint("restaurant_id", "name", name="uq_tables_restaurant_name"),)

    restaurant_id: Mapped[str] = mapped_column(ForeignKey("restaurants.id"), nullable=False, index=True)
    name: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[TableStatus] = mapped_column(
        SQLEnum(TableStatus, values_callable=lambda x: [e.value for e in x],
                native_enum=False, length=20),
        default=TableStatus.FREE,
        nullable=False,
    )
    # Display back-reference only; the open ledger is always resolved by query.
    current_order_group_id: Mapped[Optional[str]] = mapped_column(String(24), nullable=True)

    restaurant = relationship("Restaurant")

    @validates("name")
    def _validate_name(self, key, value):
        return positive(key, value)
