"""Invoice issuance and lookups.

Exactly one invoice exists per settled order group. ``issue`` checks for an
existing invoice first; the unique constraint on ``order_group_id`` settles
the race between two concurrent issuers, and the loser returns the winner's
invoice. Invoice numbers come from the ``invoice_number`` counter.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tabpay.core.errors import Conflict, Forbidden, NotFound, UpstreamFailure
from tabpay.models import Invoice, MenuItem, OrderGroup, PaymentStatus, Restaurant
from tabpay.services.counter_service import INVOICE_NUMBER_KEY, CounterService, format_invoice_number

logger = logging.getLogger(__name__)


def _day_bounds(day: date):
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


def restaurant_snapshot(restaurant: Restaurant) -> Dict[str, Any]:
    return {
        "name": restaurant.name,
        "address": restaurant.address,
        "restaurant_id": restaurant.id,
    }


class InvoiceIssuer:
    def __init__(self, db: Session):
        self.db = db
        self.counters = CounterService(db)

    def find_for_order_group(self, order_group_id: str) -> Optional[Invoice]:
        return self.db.query(Invoice).filter(Invoice.order_group_id == order_group_id).first()

    def issue(self, order_group: OrderGroup) -> Invoice:
        """Return the invoice of a Paid order group, creating it on first call."""
        existing = self.find_for_order_group(order_group.id)
        if existing:
            return existing

        if order_group.payment_status != PaymentStatus.PAID:
            raise Conflict(
                f"Order group {order_group.id} is not paid",
                reason="order_group_unpaid",
                related_id=order_group.id,
            )

        restaurant = self.db.get(Restaurant, order_group.restaurant_id)
        if not restaurant:
            raise UpstreamFailure(
                f"Restaurant {order_group.restaurant_id} not found",
                reason="restaurant_not_found",
                related_id=order_group.id,
            )

        sequence_value = self.counters.get_next(INVOICE_NUMBER_KEY)
        invoice = Invoice(
            invoice_number=format_invoice_number(sequence_value),
            order_group_id=order_group.id,
            restaurant_id=order_group.restaurant_id,
            table_id=order_group.table_id,
            total_cost=order_group.total_cost,
            payment_method=order_group.payment_method.value,
            payment_date=order_group.payment_date,
            restaurant_info=restaurant_snapshot(restaurant),
        )
        self.db.add(invoice)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost the race: the counter increment rolls back with our insert
            self.db.rollback()
            existing = self.find_for_order_group(order_group.id)
            if existing is None:
                raise
            logger.info(f"Invoice for order group {order_group.id} already issued as {existing.invoice_number}")
            return existing

        self.db.refresh(invoice)
        logger.info(f"Issued invoice {invoice.invoice_number} for order group {order_group.id}")
        return invoice

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @staticmethod
    def _check_scope(invoice: Invoice, restaurant_id: str) -> Invoice:
        if invoice.restaurant_id != restaurant_id:
            raise Forbidden("Invoice belongs to another restaurant", related_id=invoice.id)
        return invoice

    def list_invoices(self, restaurant_id: str, table_id: Optional[str] = None,
                      payment_date: Optional[date] = None) -> List[Invoice]:
        query = self.db.query(Invoice).filter(Invoice.restaurant_id == restaurant_id)
        if table_id:
            query = query.filter(Invoice.table_id == table_id)
        if payment_date:
            start, end = _day_bounds(payment_date)
            query = query.filter(Invoice.payment_date >= start, Invoice.payment_date < end)
        return query.order_by(Invoice.payment_date.desc()).all()

    def get_invoice(self, restaurant_id: str, invoice_id: str) -> Invoice:
        invoice = self.db.get(Invoice, invoice_id)
        if not invoice:
            raise NotFound(f"Invoice {invoice_id} not found", reason="invoice_not_found", related_id=invoice_id)
        return self._check_scope(invoice, restaurant_id)

    def get_by_order_group(self, restaurant_id: str, order_group_id: str) -> Invoice:
        invoice = self.find_for_order_group(order_group_id)
        if not invoice:
            raise NotFound(
                f"No invoice for order group {order_group_id}",
                reason="invoice_not_found",
                related_id=order_group_id,
            )
        return self._check_scope(invoice, restaurant_id)

    def revenue_summary(self, restaurant_id: str, date_from: Optional[datetime] = None,
                        date_to: Optional[datetime] = None, top: int = 5) -> Dict[str, Any]:
        """Invoice count and revenue over a payment date range, plus the most popular items."""
        filters = [Invoice.restaurant_id == restaurant_id]
        if date_from:
            filters.append(Invoice.payment_date >= date_from)
        if date_to:
            filters.append(Invoice.payment_date <= date_to)

        rows = self.db.query(
            Invoice.payment_method,
            func.count(Invoice.id),
            func.coalesce(func.sum(Invoice.total_cost), 0),
        ).filter(*filters).group_by(Invoice.payment_method).all()

        by_method = {method: float(total) for method, _, total in rows}
        top_items = self.db.query(MenuItem).filter(
            MenuItem.restaurant_id == restaurant_id,
            MenuItem.order_count > 0,
        ).order_by(MenuItem.order_count.desc(), MenuItem.name).limit(top).all()

        return {
            "date_from": date_from,
            "date_to": date_to,
            "invoice_count": sum(count for _, count, _ in rows),
            "revenue": float(sum((Decimal(str(total)) for _, _, total in rows), Decimal("0"))),
            "by_payment_method": by_method,
            "top_items": [
                {"item_id": item.id, "name": item.name, "order_count": item.order_count}
                for item in top_items
            ],
        }

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    def sync_missing(self, restaurant_id: Optional[str] = None) -> Dict[str, Any]:
        """Issue invoices for Paid groups that have none and complete older snapshots.

        Failures are reported per order group and do not stop the run.
        """
        query = self.db.query(OrderGroup).outerjoin(
            Invoice, Invoice.order_group_id == OrderGroup.id,
        ).filter(
            OrderGroup.payment_status == PaymentStatus.PAID,
            Invoice.id.is_(None),
        )
        if restaurant_id:
            query = query.filter(OrderGroup.restaurant_id == restaurant_id)
        missing = query.order_by(OrderGroup.payment_date).all()

        created, failed = [], []
        for group in missing:
            try:
                invoice = self.issue(group)
                created.append(invoice.invoice_number)
            except Exception as e:
                self.db.rollback()
                logger.error(f"Invoice sync failed for order group {group.id}: {e}")
                failed.append(group.id)

        updated = []
        invoices = self.db.query(Invoice)
        if restaurant_id:
            invoices = invoices.filter(Invoice.restaurant_id == restaurant_id)
        for invoice in invoices.all():
            info = dict(invoice.restaurant_info or {})
            if not info.get("restaurant_id"):
                info["restaurant_id"] = invoice.restaurant_id
                invoice.restaurant_info = info
                updated.append(invoice.invoice_number)
        if updated:
            self.db.commit()

        logger.info(f"Invoice sync: {len(missing)} missing, {len(created)} created, "
                    f"{len(updated)} snapshots completed, {len(failed)} failed")
        return {"checked": len(missing), "created": created, "updated": updated, "failed": failed}
