"""Tests for notification fan-out, WebSocket channels and health endpoints."""

import asyncio
import threading

import pytest
from starlette.websockets import WebSocketDisconnect

from conftest import make_token, submit_order, webhook_payload
from tabpay.services.notification_service import NotificationEvent, NotificationService
from tabpay.services.websocket_service import ConnectionManager, restaurant_channel, table_room


class FakeWebSocket:
    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.accepted = False

    async def accept(self):
        self.accepted = True

    async def close(self, code=None):
        pass

    async def send_json(self, message):
        if self.fail:
            raise RuntimeError("connection lost")
        self.sent.append(message)


class TestNotificationService:

    def test_publish_without_dispatcher_keeps_history(self, events):
        events.publish(NotificationEvent.NEW_ORDER, {"id": "o1"}, channel="restaurant-r1")
        assert not events.is_running
        message = events.recent()[0]
        assert message["event"] == "new_order"
        assert message["data"] == {"id": "o1"}
        assert message["channel"] == "restaurant-r1"
        assert "timestamp" in message

    def test_publish_error_shape(self, events):
        events.publish_error("PaymentAmountMismatch", "received 1, expected 2")
        data = events.recent(event="error_notification")[0]["data"]
        assert data["error_type"] == "PaymentAmountMismatch"
        assert data["related_id"] == "N/A"
        assert set(data) == {"error_type", "message", "related_id", "timestamp"}

    def test_recent_filters(self, events):
        events.publish(NotificationEvent.NEW_ORDER, {"n": 1}, channel="restaurant-a")
        events.publish(NotificationEvent.NEW_ORDER, {"n": 2}, channel="restaurant-b")
        events.publish(NotificationEvent.INVOICE_CREATED, {"n": 3}, channel="restaurant-a")

        assert [m["data"]["n"] for m in events.recent(channels=["restaurant-a"])] == [3, 1]
        assert [m["data"]["n"] for m in events.recent(event="new_order")] == [2, 1]
        assert len(events.recent(limit=1)) == 1

    def test_recent_while_publishing_from_thread(self):
        service = NotificationService(ConnectionManager(), history_size=5000)
        for n in range(5000):
            service.publish(NotificationEvent.NEW_ORDER, {"n": n})

        done = threading.Event()

        def writer():
            n = 0
            while not done.is_set():
                service.publish(NotificationEvent.NEW_ORDER, {"n": n})
                n += 1

        thread = threading.Thread(target=writer)
        thread.start()
        try:
            for _ in range(300):
                assert len(service.recent(limit=5000)) == 5000
        finally:
            done.set()
            thread.join()

    def test_full_queue_drops_message(self):
        async def scenario():
            queue = asyncio.Queue(maxsize=1)
            NotificationService._enqueue(queue, None, {"event": "new_order"})
            NotificationService._enqueue(queue, None, {"event": "invoice_created"})
            return queue.qsize(), queue.get_nowait()

        size, kept = asyncio.run(scenario())
        assert size == 1
        assert kept == (None, {"event": "new_order"})

    def test_history_is_bounded(self):
        service = NotificationService(ConnectionManager(), history_size=3)
        for n in range(5):
            service.publish(NotificationEvent.NEW_ORDER, {"n": n})
        assert [m["data"]["n"] for m in service.recent()] == [4, 3, 2]

    def test_dispatcher_broadcasts_to_channel(self):
        """Scoped events reach their channel, unscoped ones only staff channels."""
        manager = ConnectionManager()
        service = NotificationService(manager)
        staff, guest, broken = FakeWebSocket(), FakeWebSocket(), FakeWebSocket(fail=True)

        async def scenario():
            await manager.connect(staff, "restaurant-r1")
            await manager.connect(guest, "room_table_t1")
            await manager.connect(broken, "restaurant-r1")
            await service.start()
            service.publish(NotificationEvent.TABLE_STATUS_UPDATED, {"status": "Free"}, channel="restaurant-r1")
            service.publish(NotificationEvent.ERROR_NOTIFICATION, {"error_type": "X"})
            await asyncio.sleep(0)
            await asyncio.wait_for(service._queue.join(), timeout=5)
            await service.stop()

        asyncio.run(scenario())

        assert [m["event"] for m in staff.sent] == ["table_status_updated", "error_notification"]
        assert guest.sent == []
        assert manager.get_connection_count("restaurant-r1") == 1

    def test_publish_from_worker_thread(self):
        manager = ConnectionManager()
        service = NotificationService(manager)
        socket = FakeWebSocket()

        async def scenario():
            await manager.connect(socket, "room_table_t1")
            await service.start()
            await asyncio.to_thread(
                service.publish, NotificationEvent.CUSTOMER_NOTIFICATION, {"type": "order_received"},
                "room_table_t1",
            )
            for _ in range(50):
                if socket.sent:
                    break
                await asyncio.sleep(0.01)
            await service.stop()

        asyncio.run(scenario())
        assert socket.sent[0]["data"] == {"type": "order_received"}


class TestConnectionManager:

    def test_disconnect_all_leaves_every_channel(self):
        manager = ConnectionManager()
        socket = FakeWebSocket()

        async def scenario():
            await manager.connect(socket, "restaurant-r1")
            await manager.connect(socket, "room_table_t1", accept=False)

        asyncio.run(scenario())
        assert manager.get_connection_count() == 1
        manager.disconnect_all(socket)
        assert manager.get_connection_count() == 0
        assert manager.active_connections == {}

    def test_broadcast_staff_skips_table_rooms(self):
        manager = ConnectionManager()
        staff, guest = FakeWebSocket(), FakeWebSocket()

        async def scenario():
            await manager.connect(staff, "restaurant-r1")
            await manager.connect(staff, "room_table_t1", accept=False)
            await manager.connect(guest, "room_table_t1")
            await manager.broadcast_staff({"event": "error_notification"})

        asyncio.run(scenario())
        assert staff.sent == [{"event": "error_notification"}]
        assert guest.sent == []

    def test_channel_names(self):
        assert restaurant_channel("r1") == "restaurant-r1"
        assert table_room("t1") == "room_table_t1"


class TestRecentNotificationsEndpoint:

    def test_scoped_to_restaurant(self, client, table, menu_items, staff_headers, other_staff_headers):
        submit_order(client, table.id, [{"item_id": menu_items["a"].id}])

        own = client.get("/api/v1/notifications/recent", headers=staff_headers).json()
        events = {m["event"] for m in own["data"]}
        assert {"new_order", "customer_notification"} <= events

        other = client.get("/api/v1/notifications/recent", headers=other_staff_headers).json()
        assert other["count"] == 0

    def test_event_filter(self, client, table, menu_items, staff_headers):
        submit_order(client, table.id, [{"item_id": menu_items["a"].id}])
        res = client.get("/api/v1/notifications/recent", params={"event": "new_order"}, headers=staff_headers)
        assert [m["event"] for m in res.json()["data"]] == ["new_order"]


class TestWebSockets:

    def test_table_room_receives_customer_notification(self, client, table, menu_items):
        with client.websocket_connect(f"/ws/tables/{table.id}") as ws:
            assert ws.receive_json()["event"] == "connected"
            submit_order(client, table.id, [{"item_id": menu_items["a"].id}])
            message = ws.receive_json()
            assert message["event"] == "customer_notification"
            assert message["data"]["type"] == "order_received"

    def test_table_room_does_not_receive_payment_diagnostics(self, client, table, menu_items):
        with client.websocket_connect(f"/ws/tables/{table.id}") as ws:
            ws.receive_json()
            res = client.post("/api/v1/webhook/payment",
                              json=webhook_payload("0" * 24, 1000, content="Nguyen Van A chuyen tien"))
            assert res.json()["reason"] == "reference_not_found"

            # Events are delivered in publish order
            submit_order(client, table.id, [{"item_id": menu_items["a"].id}])
            assert ws.receive_json()["event"] == "customer_notification"

    def test_staff_receive_payment_diagnostics(self, client, table, staff_token):
        with client.websocket_connect(f"/ws/staff?token={staff_token}") as ws:
            ws.receive_json()
            client.post("/api/v1/webhook/payment",
                        json=webhook_payload("0" * 24, 1000, content="Nguyen Van A chuyen tien"))
            message = ws.receive_json()
            assert message["event"] == "error_notification"
            assert message["data"]["error_type"] == "PaymentReferenceNotFound"

    def test_unknown_table_room_is_rejected(self, client, table):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/tables/{'0' * 24}") as ws:
                ws.receive_json()

    def test_staff_receives_new_orders(self, client, table, menu_items, staff_token):
        with client.websocket_connect(f"/ws/staff?token={staff_token}") as ws:
            connected = ws.receive_json()
            assert connected["data"]["channel"] == f"restaurant-{table.restaurant_id}"

            submit_order(client, table.id, [{"item_id": menu_items["a"].id}])
            assert ws.receive_json()["event"] == "new_order"

    def test_staff_can_subscribe_to_own_tables_only(self, client, table, other_table, staff_token):
        with client.websocket_connect(f"/ws/staff?token={staff_token}") as ws:
            ws.receive_json()
            ws.send_json({"event": "subscribe", "tables": [table.id, other_table.id]})
            reply = ws.receive_json()
            assert reply["event"] == "subscribed"
            assert reply["data"]["tables"] == [table.id]

    def test_staff_without_token_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect("/ws/staff") as ws:
                ws.receive_json()

    def test_staff_token_without_restaurant_is_rejected(self, client):
        with pytest.raises(WebSocketDisconnect):
            with client.websocket_connect(f"/ws/staff?token={make_token(None)}") as ws:
                ws.receive_json()


class TestHealth:

    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json()["status"] == "healthy"

    def test_readiness(self, client):
        res = client.get("/health/ready")
        assert res.status_code == 200
        body = res.json()
        assert body["checks"]["database"] == "healthy"
        assert body["checks"]["notifications"] == "healthy"
        assert body["status"] == "ready"
