"""Real-time notification fan-out.

Services publish events after their database commit; publishing only puts
the message on an in-process queue and never raises. A dispatcher task,
started with the application, drains the queue and broadcasts through the
WebSocket ``ConnectionManager``. Delivery is best effort: nothing is retried
and having no subscriber is not an error. A full queue drops the message.
Unscoped events go to staff restaurant channels only, never to table rooms.

``publish`` may be called from the event loop or from threadpool workers
(sync route handlers), hence ``call_soon_threadsafe``.
"""

import asyncio
import logging
import threading
from collections import deque
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

from tabpay.core.config import settings
from tabpay.services.websocket_service import ConnectionManager, ws_manager

logger = logging.getLogger(__name__)


class NotificationEvent(str, Enum):
    """Events pushed to WebSocket clients"""
    NEW_ORDER = "new_order"
    CUSTOMER_NOTIFICATION = "customer_notification"
    ORDER_GROUP_UPDATED = "order_group_updated"
    TABLE_STATUS_UPDATED = "table_status_updated"
    INVOICE_CREATED = "invoice_created"
    PAYMENT_SUCCESS = "payment_success"
    ERROR_NOTIFICATION = "error_notification"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class NotificationService:
    def __init__(self, manager: ConnectionManager, history_size: int = 200, queue_size: int = 1000):
        self.manager = manager
        self.queue_size = queue_size
        self.history: Deque[Dict[str, Any]] = deque(maxlen=history_size)
        self._history_lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self):
        """Start the dispatcher on the running loop."""
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._task = asyncio.create_task(self._dispatch_loop())
        logger.info("Notification dispatcher started")

    async def stop(self):
        """Stop the dispatcher. Undelivered messages are dropped."""
        task, self._task = self._task, None
        self._loop = None
        if task:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._queue = None
        logger.info("Notification dispatcher stopped")

    async def _dispatch_loop(self):
        while True:
            channel, message = await self._queue.get()
            try:
                if channel:
                    await self.manager.broadcast(message, channel)
                else:
                    await self.manager.broadcast_staff(message)
            except Exception as e:
                logger.warning(f"Notification broadcast failed for '{message.get('event')}': {e}")
            finally:
                self._queue.task_done()

    def publish(self, event: NotificationEvent, data: Dict[str, Any], channel: Optional[str] = None):
        """Queue an event for broadcast. ``channel=None`` reaches every staff client."""
        message = {"event": event.value, "data": data, "timestamp": _now_iso()}
        with self._history_lock:
            self.history.append({**message, "channel": channel})

        loop, queue = self._loop, self._queue
        if loop is None or queue is None:
            logger.debug(f"Notification dispatcher not running, '{event.value}' not broadcast")
            return
        try:
            loop.call_soon_threadsafe(self._enqueue, queue, channel, message)
        except RuntimeError as e:
            logger.debug(f"Notification dropped, event loop unavailable: {e}")

    @staticmethod
    def _enqueue(queue: asyncio.Queue, channel: Optional[str], message: Dict[str, Any]):
        try:
            queue.put_nowait((channel, message))
        except asyncio.QueueFull:
            logger.warning(f"Notification queue full, '{message['event']}' dropped")

    def publish_error(self, error_type: str, message: str, related_id: Optional[str] = None,
                      channel: Optional[str] = None):
        """Publish an ``error_notification`` for staff clients."""
        logger.warning(f"{error_type}: {message} (related_id={related_id})")
        self.publish(
            NotificationEvent.ERROR_NOTIFICATION,
            {
                "error_type": error_type,
                "message": message,
                "related_id": related_id or "N/A",
                "timestamp": _now_iso(),
            },
            channel=channel,
        )

    def recent(self, limit: int = 50, event: Optional[str] = None,
               channels: Optional[List[Optional[str]]] = None) -> List[Dict[str, Any]]:
        """Most recent published events, newest first."""
        with self._history_lock:
            snapshot = list(self.history)
        items = []
        for message in reversed(snapshot):
            if event and message["event"] != event:
                continue
            if channels is not None and message["channel"] not in channels:
                continue
            items.append(message)
            if len(items) >= limit:
                break
        return items


notifier = NotificationService(
    ws_manager,
    history_size=settings.notification_history_size,
    queue_size=settings.notification_queue_size,
)


def get_notification_service() -> NotificationService:
    return notifier
