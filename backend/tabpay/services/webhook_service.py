"""Reconciliation of bank transfer webhooks against open order groups.

The transfer memo carries the order group reference
(``Thanh toan don <24-hex id>``). A notification settles the group only when
the receiving account matches, the referenced group is still Unpaid and the
amount equals its total exactly. Replayed notifications find the group
already Paid and are rejected as ``order_group_not_found``; transaction ids
are not deduplicated.
"""

import logging
import re
from typing import Any, Dict, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from tabpay.core.config import settings
from tabpay.core.errors import Conflict, InvalidArgument, NotFound
from tabpay.models import OrderGroup, PaymentMethod, PaymentStatus
from tabpay.schemas.webhook import PaymentNotification
from tabpay.services.notification_service import (
    NotificationEvent,
    NotificationService,
    get_notification_service,
)
from tabpay.services.settlement_service import SettlementService
from tabpay.services.websocket_service import restaurant_channel, table_room

logger = logging.getLogger(__name__)


def _memo_pattern(prefix: str) -> re.Pattern:
    words = [re.escape(word) for word in prefix.split()]
    return re.compile(r"\s+".join(words) + r"\s+([0-9a-f]{24})\b", re.IGNORECASE)


MEMO_PATTERN = _memo_pattern(settings.payment_memo_prefix)


def extract_order_group_id(memo: Optional[str]) -> Optional[str]:
    """Order group id referenced anywhere in a transfer memo, or None."""
    match = MEMO_PATTERN.search(memo or "")
    return match.group(1).lower() if match else None


class PaymentWebhookReconciler:
    def __init__(self, db: Session, notifier: Optional[NotificationService] = None,
                 account_number: Optional[str] = None):
        self.db = db
        self.notifier = notifier or get_notification_service()
        self.account_number = account_number if account_number is not None else settings.payment_account_number

    @staticmethod
    def parse(payload: Any) -> PaymentNotification:
        if not isinstance(payload, dict):
            raise InvalidArgument("Webhook body must be a JSON object")
        try:
            notification = PaymentNotification.model_validate(payload)
        except ValidationError as e:
            fields = sorted({str(err["loc"][0]) for err in e.errors() if err.get("loc")})
            raise InvalidArgument(f"Invalid or missing webhook fields: {', '.join(fields)}")
        if notification.direction.lower() != "in":
            raise InvalidArgument(f"Ignoring outgoing transfer {notification.transaction_id}",
                                  related_id=notification.transaction_id)
        return notification

    def reconcile(self, payload: Dict[str, Any]) -> OrderGroup:
        """Settle the order group a transfer pays for. Returns the Paid group."""
        notification = self.parse(payload)
        transaction_id = notification.transaction_id

        if not self.account_number or notification.account_number != self.account_number:
            raise Conflict(
                f"Transfer {transaction_id} was made to account {notification.account_number}",
                reason="account_mismatch",
                related_id=transaction_id,
            )

        order_group_id = extract_order_group_id(notification.memo)
        if not order_group_id:
            message = f"Transaction {transaction_id}: no order reference in memo '{notification.memo}'"
            self.notifier.publish_error("PaymentReferenceNotFound", message, related_id=transaction_id)
            raise InvalidArgument(message, reason="reference_not_found", related_id=transaction_id)

        group = self.db.query(OrderGroup).filter(
            OrderGroup.id == order_group_id,
            OrderGroup.payment_status == PaymentStatus.UNPAID,
        ).first()
        if not group:
            self._group_not_found(order_group_id, transaction_id)

        if notification.amount != group.total_cost:
            message = (
                f"Transaction {transaction_id}: received {notification.amount}, "
                f"expected {group.total_cost} for order group {group.id}"
            )
            self.notifier.publish_error(
                "PaymentAmountMismatch", message, related_id=group.id,
                channel=restaurant_channel(group.restaurant_id),
            )
            raise Conflict(message, reason="amount_mismatch", related_id=group.id)

        settlement = SettlementService(self.db, self.notifier)
        if not settlement.mark_paid(group.id, PaymentMethod.QR, notification.timestamp):
            self.db.rollback()
            self._group_not_found(order_group_id, transaction_id)
        self.db.commit()
        self.db.refresh(group)
        logger.info(f"Transaction {transaction_id} settled order group {group.id} ({notification.amount})")

        settlement.run_side_effects(group)

        success = {
            "order_group_id": group.id,
            "table_id": group.table_id,
            "table_name": group.table_name,
            "amount": float(notification.amount),
            "payment_method": PaymentMethod.QR.value,
            "transaction_id": transaction_id,
        }
        self.notifier.publish(NotificationEvent.PAYMENT_SUCCESS, success,
                              channel=restaurant_channel(group.restaurant_id))
        self.notifier.publish(
            NotificationEvent.CUSTOMER_NOTIFICATION,
            {"type": "payment_success", "order_group_id": group.id,
             "message": "Payment received, thank you"},
            channel=table_room(group.table_id),
        )
        return group

    def _group_not_found(self, order_group_id: str, transaction_id: str):
        message = f"Transaction {transaction_id}: no unpaid order group {order_group_id}"
        self.notifier.publish_error("OrderGroupNotFound", message, related_id=order_group_id)
        raise NotFound(message, reason="order_group_not_found", related_id=order_group_id)
