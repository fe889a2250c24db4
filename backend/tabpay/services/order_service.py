"""Order submission and order group (table tab) lifecycle.

A table has at most one Unpaid order group at a time. Submitting an order
finds that group by query, creating it on the first order of a dining
session, and adds the order total to the group's running ``total_cost``.
"""

import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tabpay.core.errors import Conflict, InvalidArgument, NotFound
from tabpay.db.base import utcnow
from tabpay.models import (
    MenuItem,
    Order,
    OrderGroup,
    OrderStatus,
    PaymentStatus,
    Table,
    TableStatus,
)
from tabpay.schemas.ordering import AggregatedItem, OrderGroupResponse, OrderResponse
from tabpay.services.notification_service import (
    NotificationEvent,
    NotificationService,
    get_notification_service,
)
from tabpay.services.websocket_service import restaurant_channel, table_room

logger = logging.getLogger(__name__)

MAX_NOTES_LENGTH = 1000


def normalize_quantity(value: Any) -> int:
    """Positive integer quantity, or 1 for anything missing or invalid."""
    if isinstance(value, bool):
        return 1
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    elif isinstance(value, str) and value.strip().isdigit():
        value = int(value.strip())
    if isinstance(value, int) and value >= 1:
        return value
    return 1


def aggregate_quantities(orders: Iterable[Order]) -> Dict[str, int]:
    """Sum line quantities per menu item over a set of orders."""
    totals: Dict[str, int] = OrderedDict()
    for order in orders:
        for line in order.items or []:
            totals[line["item_id"]] = totals.get(line["item_id"], 0) + int(line["quantity"])
    return totals


def _line_field(line: Any, name: str):
    if isinstance(line, dict):
        return line.get(name)
    return None


class OrderService:
    def __init__(self, db: Session, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or get_notification_service()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    def _get_table(self, table_id: str) -> Table:
        table = self.db.get(Table, table_id)
        if not table:
            raise NotFound(f"Table {table_id} not found", reason="table_not_found", related_id=table_id)
        return table

    def get_open_group(self, table_id: str) -> Optional[OrderGroup]:
        """The Unpaid group of a table, resolved by query rather than the table back-reference."""
        return self.db.query(OrderGroup).filter(
            OrderGroup.table_id == table_id,
            OrderGroup.payment_status == PaymentStatus.UNPAID,
        ).first()

    def _open_or_create_group(self, table: Table) -> Tuple[OrderGroup, bool]:
        group = self.get_open_group(table.id)
        if group:
            self._occupy(table, group)
            return group, False

        group = OrderGroup(
            restaurant_id=table.restaurant_id,
            table_id=table.id,
            total_cost=Decimal("0"),
            payment_status=PaymentStatus.UNPAID,
        )
        self.db.add(group)
        try:
            self.db.flush()
        except IntegrityError:
            # Another request opened the tab first
            self.db.rollback()
            group = self.get_open_group(table.id)
            if group is None:
                raise Conflict(
                    f"Could not open an order group for table {table.name}",
                    reason="order_group_conflict",
                    related_id=table.id,
                )
            logger.info(f"Joined concurrently created order group {group.id} for table {table.id}")
            self._occupy(table, group)
            return group, False

        self._occupy(table, group)
        return group, True

    @staticmethod
    def _occupy(table: Table, group: OrderGroup):
        """Point the table at its open tab."""
        if table.current_order_group_id != group.id or table.status != TableStatus.OCCUPIED:
            if table.current_order_group_id is not None and table.current_order_group_id != group.id:
                logger.warning(f"Table {table.id} pointed at {table.current_order_group_id}, re-pointing to {group.id}")
            table.status = TableStatus.OCCUPIED
            table.current_order_group_id = group.id

    def _price_lines(self, restaurant_id: str, items: List[Any]) -> Tuple[List[Dict[str, Any]], Decimal]:
        item_ids = []
        for line in items:
            item_id = _line_field(line, "item_id")
            if not item_id:
                raise InvalidArgument("Every order line needs an item_id")
            if not isinstance(item_id, str):
                raise InvalidArgument("item_id must be a string")
            item_ids.append(item_id)

        menu_items = {
            m.id: m for m in self.db.query(MenuItem).filter(
                MenuItem.restaurant_id == restaurant_id,
                MenuItem.id.in_(set(item_ids)),
            ).all()
        }

        lines = []
        total = Decimal("0")
        for line, item_id in zip(items, item_ids):
            menu_item = menu_items.get(item_id)
            if not menu_item:
                raise NotFound(f"Menu item {item_id} not found", reason="menu_item_not_found", related_id=item_id)
            price = Decimal(str(menu_item.price))
            if price < 0:
                raise InvalidArgument(f"Menu item {item_id} has a negative price", reason="invalid_price")
            quantity = normalize_quantity(_line_field(line, "quantity"))
            total += price * quantity
            lines.append({"item_id": item_id, "quantity": quantity, "price": float(price)})
        return lines, total

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def submit_order(self, table_id: Optional[str], items: Optional[List[Any]],
                     notes: Optional[str] = None) -> Order:
        """Create an order for a table and add it to the table's open tab."""
        if not table_id:
            raise InvalidArgument("table_id is required")
        if not isinstance(table_id, str):
            raise InvalidArgument("table_id must be a string")
        if not isinstance(items, list) or not items:
            raise InvalidArgument("items must be a list with at least one item")
        if notes is not None and (not isinstance(notes, str) or len(notes) > MAX_NOTES_LENGTH):
            raise InvalidArgument(f"notes must be text of at most {MAX_NOTES_LENGTH} characters")

        table = self._get_table(table_id)
        lines, total = self._price_lines(table.restaurant_id, items)

        group, created = self._open_or_create_group(table)
        order = Order(
            restaurant_id=table.restaurant_id,
            table_id=table.id,
            order_group_id=group.id,
            items=lines,
            total_cost=total,
            notes=notes or "",
            status=OrderStatus.PENDING,
        )
        self.db.add(order)
        self.db.flush()

        # Only an Unpaid group may grow
        result = self.db.execute(
            update(OrderGroup)
            .where(OrderGroup.id == group.id, OrderGroup.payment_status == PaymentStatus.UNPAID)
            .values(total_cost=OrderGroup.total_cost + total, updated_at=utcnow())
        )
        if result.rowcount != 1:
            self.db.rollback()
            raise Conflict(
                "The order group was settled while the order was being submitted",
                reason="order_group_closed",
                related_id=group.id,
            )

        self.db.commit()
        self.db.refresh(order)
        logger.info(
            f"Order {order.id} submitted for table {table.name} "
            f"(group {group.id}, total {total}, new_group={created})"
        )

        order_data = OrderResponse.model_validate(order).model_dump(mode="json")
        channel = restaurant_channel(table.restaurant_id)
        self.notifier.publish(NotificationEvent.NEW_ORDER, order_data, channel=channel)
        if created:
            self.notifier.publish(
                NotificationEvent.TABLE_STATUS_UPDATED,
                {"table_id": table.id, "table_name": table.name, "status": TableStatus.OCCUPIED.value,
                 "order_group_id": group.id},
                channel=channel,
            )
        self.notifier.publish(
            NotificationEvent.CUSTOMER_NOTIFICATION,
            {"type": "order_received", "order_id": order.id, "order_group_id": group.id,
             "message": "Your order has been sent to the staff"},
            channel=table_room(table.id),
        )
        return order

    def approve_order(self, restaurant_id: str, order_id: str) -> Order:
        """Move a Pending order to Accepted. Totals are not affected."""
        order = self.db.query(Order).filter(
            Order.id == order_id,
            Order.restaurant_id == restaurant_id,
        ).first()
        if not order:
            raise NotFound(f"Order {order_id} not found", reason="order_not_found", related_id=order_id)

        if order.status == OrderStatus.ACCEPTED:
            return order

        order.status = OrderStatus.ACCEPTED
        self.db.commit()
        self.db.refresh(order)
        logger.info(f"Order {order.id} approved")

        self.notifier.publish(
            NotificationEvent.CUSTOMER_NOTIFICATION,
            {"type": "order_approved", "order_id": order.id, "order_group_id": order.order_group_id,
             "message": "Your order has been approved"},
            channel=table_room(order.table_id),
        )
        self.notifier.publish(
            NotificationEvent.ORDER_GROUP_UPDATED,
            {"order_group_id": order.order_group_id, "order_id": order.id, "status": order.status.value},
            channel=restaurant_channel(restaurant_id),
        )
        return order

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_orders(self, restaurant_id: str, status: Optional[OrderStatus] = None) -> List[Order]:
        query = self.db.query(Order).filter(Order.restaurant_id == restaurant_id)
        if status:
            query = query.filter(Order.status == status)
        return query.order_by(Order.created_at.desc()).all()

    def list_groups(self, restaurant_id: str,
                    payment_status: Optional[PaymentStatus] = None) -> List[OrderGroup]:
        """Order groups of a restaurant.

        Unpaid groups are listed only once they hold an Accepted order, so
        staff never see a tab made solely of unapproved orders. Paid groups
        are sorted by payment date, everything else by creation, newest first.
        """
        query = self.db.query(OrderGroup).filter(OrderGroup.restaurant_id == restaurant_id)
        if payment_status:
            query = query.filter(OrderGroup.payment_status == payment_status)
        if payment_status == PaymentStatus.UNPAID:
            query = query.filter(OrderGroup.orders.any(Order.status == OrderStatus.ACCEPTED))

        if payment_status == PaymentStatus.PAID:
            query = query.order_by(OrderGroup.payment_date.desc())
        else:
            query = query.order_by(OrderGroup.created_at.desc())
        return query.all()

    def get_group(self, restaurant_id: str, order_group_id: str) -> OrderGroup:
        group = self.db.query(OrderGroup).filter(
            OrderGroup.id == order_group_id,
            OrderGroup.restaurant_id == restaurant_id,
        ).first()
        if not group:
            raise NotFound(
                f"Order group {order_group_id} not found",
                reason="order_group_not_found",
                related_id=order_group_id,
            )
        return group

    def get_active_group_by_table_name(self, restaurant_id: str, table_name: int) -> OrderGroup:
        """The open tab of a table identified by its number."""
        table = self.db.query(Table).filter(
            Table.restaurant_id == restaurant_id,
            Table.name == table_name,
        ).first()
        if not table:
            raise NotFound(f"Table {table_name} not found", reason="table_not_found")

        group = self.get_open_group(table.id)
        if not group:
            raise NotFound(
                f"Table {table_name} has no open order group",
                reason="order_group_not_found",
                related_id=table.id,
            )
        return group

    # ------------------------------------------------------------------
    # Serialization
    # ------------------------------------------------------------------

    def _menu_names(self, item_ids: Iterable[str]) -> Dict[str, str]:
        ids = set(item_ids)
        if not ids:
            return {}
        rows = self.db.query(MenuItem.id, MenuItem.name).filter(MenuItem.id.in_(ids)).all()
        return {row.id: row.name for row in rows}

    @staticmethod
    def aggregate_items(group: OrderGroup, names: Optional[Dict[str, str]] = None) -> List[AggregatedItem]:
        """Per-item quantities over every order of the group, priced at the last snapshot."""
        names = names or {}
        quantities = aggregate_quantities(group.orders)
        prices: Dict[str, float] = {}
        for order in group.orders:
            for line in order.items or []:
                prices[line["item_id"]] = float(line["price"])

        return [
            AggregatedItem(
                item_id=item_id,
                name=names.get(item_id),
                quantity=quantity,
                price=prices[item_id],
                total=round(prices[item_id] * quantity, 2),
            )
            for item_id, quantity in quantities.items()
        ]

    def describe_groups(self, groups: List[OrderGroup]) -> List[OrderGroupResponse]:
        names = self._menu_names(
            line["item_id"] for group in groups for order in group.orders for line in order.items or []
        )
        return [
            OrderGroupResponse.model_validate(group).model_copy(
                update={"items": self.aggregate_items(group, names)}
            )
            for group in groups
        ]

    def describe_group(self, group: OrderGroup) -> OrderGroupResponse:
        return self.describe_groups([group])[0]
