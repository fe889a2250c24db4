"""Settlement of order groups.

Flow:
1. Mark the group Paid with a conditional update that only matches an
   Unpaid group (a concurrent second payment matches nothing)
2. Release the table if it still points at this group
3. Add the group's item quantities to menu popularity, once per group
4. Issue the invoice
5. Notify staff and the table

Steps 2-4 run after the payment is committed and are never rolled back
into it. A failure there leaves the group Paid, publishes an
``InvoiceCreationFailed`` error notification and surfaces as
``UpstreamFailure``; ``sync_missing`` and ``backfill_order_counts`` repair
such groups later.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple
from urllib.parse import urlencode

from sqlalchemy import update
from sqlalchemy.orm import Session

from tabpay.core.config import settings
from tabpay.core.errors import Conflict, NotFound, UpstreamFailure
from tabpay.db.base import utcnow
from tabpay.models import (
    Invoice,
    MenuItem,
    OrderGroup,
    PaymentMethod,
    PaymentStatus,
    Table,
    TableStatus,
)
from tabpay.schemas.invoice import InvoiceResponse
from tabpay.services.invoice_service import InvoiceIssuer
from tabpay.services.notification_service import (
    NotificationEvent,
    NotificationService,
    get_notification_service,
)
from tabpay.services.order_service import aggregate_quantities
from tabpay.services.websocket_service import restaurant_channel, table_room

logger = logging.getLogger(__name__)


def payment_memo(order_group_id: str) -> str:
    """Transfer memo that the webhook reconciler maps back to the order group."""
    return f"{settings.payment_memo_prefix} {order_group_id}"


def _amount_param(amount: Decimal) -> str:
    amount = Decimal(str(amount))
    if amount == amount.to_integral_value():
        return str(int(amount))
    return str(amount.normalize())


class SettlementService:
    def __init__(self, db: Session, notifier: Optional[NotificationService] = None):
        self.db = db
        self.notifier = notifier or get_notification_service()
        self.issuer = InvoiceIssuer(db)

    def _get_group(self, restaurant_id: str, order_group_id: str) -> OrderGroup:
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

    def mark_paid(self, order_group_id: str, payment_method: PaymentMethod,
                  paid_at: Optional[datetime] = None) -> bool:
        """Flip an Unpaid group to Paid. Returns False if it was not Unpaid.

        Joins the caller's transaction; the caller commits.
        """
        result = self.db.execute(
            update(OrderGroup)
            .where(
                OrderGroup.id == order_group_id,
                OrderGroup.payment_status == PaymentStatus.UNPAID,
            )
            .values(
                payment_status=PaymentStatus.PAID,
                payment_method=payment_method,
                payment_date=paid_at or utcnow(),
                updated_at=utcnow(),
            )
        )
        return result.rowcount == 1

    def settle(self, restaurant_id: str, order_group_id: str,
               payment_method: Optional[PaymentMethod] = None) -> Tuple[OrderGroup, Invoice]:
        """Record a staff-confirmed payment and run the post-payment steps."""
        payment_method = payment_method or PaymentMethod.CASH
        group = self._get_group(restaurant_id, order_group_id)

        if not self.mark_paid(group.id, payment_method):
            self.db.rollback()
            raise Conflict("Order group is already paid", reason="already_paid", related_id=group.id)
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Order group {group.id} paid by {payment_method.value}, total {group.total_cost}")

        invoice = self.run_side_effects(group)
        return group, invoice

    def run_side_effects(self, group: OrderGroup) -> Invoice:
        """Post-payment steps for a group that is already committed as Paid."""
        self.release_table(group)
        try:
            self.process_order_counts(group)
            invoice = self.issuer.issue(group)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Post-payment processing failed for order group {group.id}: {e}")
            self.notifier.publish_error(
                "InvoiceCreationFailed",
                f"Payment recorded but invoice creation failed: {e}",
                related_id=group.id,
                channel=restaurant_channel(group.restaurant_id),
            )
            if isinstance(e, UpstreamFailure):
                raise
            raise UpstreamFailure(
                "Payment recorded but invoice creation failed",
                reason="invoice_creation_failed",
                related_id=group.id,
            ) from e

        self._publish_settled(group, invoice)
        return invoice

    def release_table(self, group: OrderGroup) -> bool:
        """Free the table if its back-reference still points at this group.

        Failure is logged only; the payment stands either way.
        """
        try:
            result = self.db.execute(
                update(Table)
                .where(Table.id == group.table_id, Table.current_order_group_id == group.id)
                .values(status=TableStatus.FREE, current_order_group_id=None, updated_at=utcnow())
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"Failed to release table {group.table_id} after paying group {group.id}: {e}")
            return False

        released = result.rowcount == 1
        if not released:
            logger.warning(f"Table {group.table_id} no longer references order group {group.id}, left as is")
        return released

    def process_order_counts(self, group: OrderGroup) -> bool:
        """Add the group's item quantities to menu popularity exactly once.

        Claiming the flag and the increments share one transaction, so a
        concurrent run that loses the claim changes nothing.
        """
        if group.is_order_count_processed:
            return False

        claimed = self.db.execute(
            update(OrderGroup)
            .where(OrderGroup.id == group.id, OrderGroup.is_order_count_processed.is_(False))
            .values(is_order_count_processed=True)
        )
        if claimed.rowcount != 1:
            self.db.rollback()
            return False

        quantities = aggregate_quantities(group.orders)
        for item_id, quantity in quantities.items():
            self.db.execute(
                update(MenuItem)
                .where(MenuItem.id == item_id)
                .values(order_count=MenuItem.order_count + quantity)
            )
        self.db.commit()
        logger.info(f"Popularity updated for order group {group.id}: {dict(quantities)}")
        return True

    def backfill_order_counts(self, restaurant_id: Optional[str] = None) -> List[str]:
        """Process popularity for Paid groups that were never counted."""
        query = self.db.query(OrderGroup).filter(
            OrderGroup.payment_status == PaymentStatus.PAID,
            OrderGroup.is_order_count_processed.is_(False),
        )
        if restaurant_id:
            query = query.filter(OrderGroup.restaurant_id == restaurant_id)

        processed = []
        for group in query.all():
            if self.process_order_counts(group):
                processed.append(group.id)
        logger.info(f"Order count backfill processed {len(processed)} order groups")
        return processed

    def build_qr_code(self, restaurant_id: str, order_group_id: str) -> dict:
        """Bank transfer QR for the group's outstanding total."""
        group = self._get_group(restaurant_id, order_group_id)
        if group.is_paid:
            raise Conflict("Order group is already paid", reason="already_paid", related_id=group.id)

        memo = payment_memo(group.id)
        params = urlencode({
            "acc": settings.payment_account_number,
            "bank": settings.payment_bank_code,
            "amount": _amount_param(group.total_cost),
            "des": memo,
        })
        return {
            "order_group_id": group.id,
            "amount": float(group.total_cost),
            "memo": memo,
            "qr_code_url": f"{settings.payment_qr_base_url}?{params}",
        }

    def _publish_settled(self, group: OrderGroup, invoice: Invoice):
        self.db.refresh(group)
        table = self.db.get(Table, group.table_id)
        channel = restaurant_channel(group.restaurant_id)

        if table:
            self.notifier.publish(
                NotificationEvent.TABLE_STATUS_UPDATED,
                {"table_id": table.id, "table_name": table.name, "status": table.status.value,
                 "order_group_id": table.current_order_group_id},
                channel=channel,
            )

        group_data = {
            "order_group_id": group.id,
            "table_id": group.table_id,
            "table_name": table.name if table else None,
            "total_cost": float(group.total_cost),
            "payment_status": group.payment_status.value,
            "payment_method": group.payment_method.value if group.payment_method else None,
            "payment_date": group.payment_date.isoformat() if group.payment_date else None,
        }
        self.notifier.publish(NotificationEvent.ORDER_GROUP_UPDATED, group_data, channel=channel)
        self.notifier.publish(NotificationEvent.ORDER_GROUP_UPDATED, group_data, channel=table_room(group.table_id))
        self.notifier.publish(
            NotificationEvent.INVOICE_CREATED,
            InvoiceResponse.model_validate(invoice).model_dump(mode="json"),
            channel=channel,
        )
