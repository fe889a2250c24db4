"""Recent real-time notifications, for staff clients that reconnect."""

from typing import Optional

from fastapi import APIRouter, Query, Request

from tabpay.core.rate_limit import limiter
from tabpay.core.rbac import RequireStaff
from tabpay.core.responses import list_response
from tabpay.db.session import DbSession
from tabpay.models import Table
from tabpay.services.notification_service import NotificationEvent, get_notification_service
from tabpay.services.websocket_service import restaurant_channel, table_room

router = APIRouter()


@router.get("/recent")
@limiter.limit("30/minute")
def recent_notifications(
    request: Request,
    db: DbSession,
    current_user: RequireStaff,
    limit: int = Query(50, ge=1, le=500),
    event: Optional[NotificationEvent] = Query(None),
):
    """Newest first: the restaurant channel, its table rooms and global diagnostics."""
    table_ids = [
        row.id for row in db.query(Table.id).filter(Table.restaurant_id == current_user.restaurant_id).all()
    ]
    channels = [None, restaurant_channel(current_user.restaurant_id)]
    channels.extend(table_room(table_id) for table_id in table_ids)

    items = get_notification_service().recent(
        limit=limit,
        event=event.value if event else None,
        channels=channels,
    )
    return list_response(items)
