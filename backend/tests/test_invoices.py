"""Tests for invoice issuance, lookups, resync and revenue summary."""

from datetime import datetime, timezone
from decimal import Decimal

import pytest

from conftest import submit_order
from tabpay.core.errors import Conflict, Forbidden, NotFound, UpstreamFailure
from tabpay.maintenance import main as maintenance_main
from tabpay.models import Counter, Invoice, MenuItem, PaymentMethod, PaymentStatus, Table
from tabpay.services.counter_service import INVOICE_NUMBER_KEY
from tabpay.services.invoice_service import InvoiceIssuer
from tabpay.services.order_service import OrderService


def _paid_group(db_session, table, menu_item, quantity=1, method=PaymentMethod.CASH, events=None):
    """Unpaid -> Paid without running the settlement side effects."""
    order = OrderService(db_session, events).submit_order(
        table.id, [{"item_id": menu_item.id, "quantity": quantity}],
    )
    group = order.order_group
    group.payment_status = PaymentStatus.PAID
    group.payment_method = method
    group.payment_date = datetime.now(timezone.utc)
    db_session.commit()
    db_session.refresh(group)
    return group


@pytest.fixture
def second_table(db_session, restaurant):
    table = Table(restaurant_id=restaurant.id, name=6)
    db_session.add(table)
    db_session.commit()
    return table


class TestInvoiceIssuer:

    def test_issue_snapshots_group_and_restaurant(self, db_session, table, menu_items, events):
        group = _paid_group(db_session, table, menu_items["a"], quantity=2, events=events)
        invoice = InvoiceIssuer(db_session).issue(group)

        assert invoice.invoice_number == "INV-001"
        assert invoice.order_group_id == group.id
        assert invoice.table_id == table.id
        assert invoice.total_cost == Decimal("100000")
        assert invoice.payment_method == "Cash"
        assert invoice.restaurant_info == {
            "name": "Pho 24", "address": "12 Le Loi, District 1", "restaurant_id": table.restaurant_id,
        }

    def test_issue_is_idempotent(self, db_session, table, menu_items, events):
        group = _paid_group(db_session, table, menu_items["a"], events=events)
        issuer = InvoiceIssuer(db_session)
        first = issuer.issue(group)
        second = issuer.issue(group)

        assert first.id == second.id
        assert db_session.query(Invoice).count() == 1
        assert db_session.get(Counter, INVOICE_NUMBER_KEY).sequence_value == 1

    def test_numbers_are_sequential(self, db_session, table, second_table, menu_items, events):
        issuer = InvoiceIssuer(db_session)
        first = issuer.issue(_paid_group(db_session, table, menu_items["a"], events=events))
        second = issuer.issue(_paid_group(db_session, second_table, menu_items["b"], events=events))
        assert (first.invoice_number, second.invoice_number) == ("INV-001", "INV-002")

    def test_losing_concurrent_insert_returns_winner(self, db_session, table, menu_items, events, monkeypatch):
        group = _paid_group(db_session, table, menu_items["a"], events=events)
        issuer = InvoiceIssuer(db_session)
        winner = issuer.issue(group)

        # The loser checked for an invoice before the winner committed
        lookups = []
        real_find = issuer.find_for_order_group

        def stale_find(order_group_id):
            lookups.append(order_group_id)
            return None if len(lookups) == 1 else real_find(order_group_id)

        monkeypatch.setattr(issuer, "find_for_order_group", stale_find)
        result = issuer.issue(group)

        assert result.id == winner.id
        assert db_session.query(Invoice).count() == 1
        # The loser's counter increment rolled back with its insert
        assert db_session.get(Counter, INVOICE_NUMBER_KEY).sequence_value == 1

    def test_unpaid_group_is_rejected(self, db_session, table, menu_items, events):
        order = OrderService(db_session, events).submit_order(table.id, [{"item_id": menu_items["a"].id}])
        with pytest.raises(Conflict):
            InvoiceIssuer(db_session).issue(order.order_group)

    def test_missing_restaurant_is_upstream_failure(self, db_session, table, menu_items, events):
        group = _paid_group(db_session, table, menu_items["a"], events=events)
        group.restaurant_id = "c" * 24
        db_session.commit()

        with pytest.raises(UpstreamFailure) as exc:
            InvoiceIssuer(db_session).issue(group)
        assert exc.value.reason == "restaurant_not_found"

    def test_snapshot_survives_restaurant_edit(self, db_session, restaurant, table, menu_items, events):
        group = _paid_group(db_session, table, menu_items["a"], events=events)
        invoice = InvoiceIssuer(db_session).issue(group)

        restaurant.name = "Pho 24 Premium"
        restaurant.address = "1 Nguyen Hue"
        db_session.commit()
        db_session.refresh(invoice)
        assert invoice.restaurant_info["name"] == "Pho 24"
        assert invoice.restaurant_info["address"] == "12 Le Loi, District 1"

    def test_scoped_lookups(self, db_session, table, menu_items, other_restaurant, events):
        group = _paid_group(db_session, table, menu_items["a"], events=events)
        issuer = InvoiceIssuer(db_session)
        invoice = issuer.issue(group)

        assert issuer.get_invoice(table.restaurant_id, invoice.id).id == invoice.id
        assert issuer.get_by_order_group(table.restaurant_id, group.id).id == invoice.id
        with pytest.raises(Forbidden):
            issuer.get_invoice(other_restaurant.id, invoice.id)
        with pytest.raises(NotFound):
            issuer.get_invoice(table.restaurant_id, "d" * 24)
        with pytest.raises(NotFound):
            issuer.get_by_order_group(table.restaurant_id, "d" * 24)


class TestInvoiceRoutes:

    def _pay(self, client, table, menu_item, headers, quantity=1, method="Cash"):
        order = submit_order(client, table.id, [{"item_id": menu_item.id, "quantity": quantity}])
        res = client.put(f"/api/v1/order-groups/{order['order_group_id']}/pay",
                         json={"payment_method": method}, headers=headers)
        assert res.status_code == 200, res.text
        return res.json()["invoice"]

    def test_list_and_filter(self, client, table, second_table, menu_items, staff_headers):
        first = self._pay(client, table, menu_items["a"], staff_headers)
        second = self._pay(client, second_table, menu_items["b"], staff_headers)

        res = client.get("/api/v1/invoices", headers=staff_headers)
        assert res.status_code == 200
        assert [i["id"] for i in res.json()["data"]] == [second["id"], first["id"]]

        by_table = client.get("/api/v1/invoices", params={"table_id": table.id}, headers=staff_headers).json()
        assert [i["id"] for i in by_table["data"]] == [first["id"]]
        assert by_table["data"][0]["table_name"] == 5

        today = datetime.now(timezone.utc).date().isoformat()
        by_date = client.get("/api/v1/invoices", params={"payment_date": today}, headers=staff_headers).json()
        assert by_date["count"] == 2
        other_day = client.get("/api/v1/invoices", params={"payment_date": "2001-01-01"},
                               headers=staff_headers).json()
        assert other_day["count"] == 0

    def test_get_by_id_and_order_group(self, client, table, menu_items, staff_headers):
        invoice = self._pay(client, table, menu_items["a"], staff_headers)

        res = client.get(f"/api/v1/invoices/{invoice['id']}", headers=staff_headers)
        assert res.status_code == 200
        assert res.json()["data"]["invoice_number"] == "INV-001"

        res = client.get(f"/api/v1/invoices/order-group/{invoice['order_group_id']}", headers=staff_headers)
        assert res.json()["data"]["id"] == invoice["id"]

    def test_other_restaurant_is_forbidden(self, client, table, menu_items, staff_headers, other_staff_headers):
        invoice = self._pay(client, table, menu_items["a"], staff_headers)
        res = client.get(f"/api/v1/invoices/{invoice['id']}", headers=other_staff_headers)
        assert res.status_code == 403
        listed = client.get("/api/v1/invoices", headers=other_staff_headers).json()
        assert listed["count"] == 0

    def test_unknown_invoice_is_not_found(self, client, table, staff_headers):
        res = client.get(f"/api/v1/invoices/{'e' * 24}", headers=staff_headers)
        assert res.status_code == 404
        assert res.json()["reason"] == "invoice_not_found"

    def test_summary_requires_manager(self, client, table, staff_headers):
        res = client.get("/api/v1/invoices/summary", headers=staff_headers)
        assert res.status_code == 403

    def test_revenue_summary(self, client, table, second_table, menu_items, staff_headers, manager_headers):
        self._pay(client, table, menu_items["a"], staff_headers, quantity=2)
        self._pay(client, second_table, menu_items["b"], staff_headers, method="QR")

        res = client.get("/api/v1/invoices/summary", headers=manager_headers)
        assert res.status_code == 200
        data = res.json()["data"]
        assert data["invoice_count"] == 2
        assert data["revenue"] == 130000
        assert data["by_payment_method"] == {"Cash": 100000, "QR": 30000}
        assert [item["name"] for item in data["top_items"]] == ["Pho Bo", "Tra Da"]
        assert data["top_items"][0]["order_count"] == 2

    def test_sync_endpoint(self, client, db_session, table, menu_items, manager_headers, events):
        group = _paid_group(db_session, table, menu_items["a"], events=events)

        res = client.post("/api/v1/invoices/sync", headers=manager_headers)
        assert res.status_code == 200
        data = res.json()["data"]
        assert data["checked"] == 1
        assert data["created"] == ["INV-001"]
        assert data["failed"] == []
        assert db_session.query(Invoice).filter(Invoice.order_group_id == group.id).count() == 1


class TestSyncMissing:

    def test_issues_missing_and_completes_snapshots(self, db_session, table, second_table, menu_items, events):
        issuer = InvoiceIssuer(db_session)
        legacy = issuer.issue(_paid_group(db_session, table, menu_items["a"], events=events))
        legacy.restaurant_info = {"name": "Pho 24", "address": "12 Le Loi, District 1"}
        db_session.commit()
        missing = _paid_group(db_session, second_table, menu_items["b"], events=events)

        result = issuer.sync_missing()

        assert result["checked"] == 1
        assert result["created"] == ["INV-002"]
        assert result["updated"] == ["INV-001"]
        db_session.refresh(legacy)
        assert legacy.restaurant_info["restaurant_id"] == table.restaurant_id
        assert issuer.find_for_order_group(missing.id) is not None

        again = issuer.sync_missing()
        assert again == {"checked": 0, "created": [], "updated": [], "failed": []}

    def test_failures_are_reported(self, db_session, table, menu_items, events):
        group = _paid_group(db_session, table, menu_items["a"], events=events)
        group.restaurant_id = "c" * 24
        db_session.commit()

        result = InvoiceIssuer(db_session).sync_missing()
        assert result["failed"] == [group.id]

    def test_maintenance_command(self, db_session, session_factory, table, menu_items, events, capsys):
        _paid_group(db_session, table, menu_items["a"], events=events)

        exit_code = maintenance_main(["sync-invoices"], session_factory=session_factory)
        assert exit_code == 0
        assert "created INV-001" in capsys.readouterr().out
        assert db_session.query(Invoice).count() == 1

    def test_maintenance_order_counts(self, db_session, session_factory, table, menu_items, events):
        _paid_group(db_session, table, menu_items["a"], quantity=3, events=events)
        assert maintenance_main(["update-order-counts"], session_factory=session_factory) == 0

        item = db_session.get(MenuItem, menu_items["a"].id)
        db_session.refresh(item)
        assert item.order_count == 3
