"""Payment provider webhook."""

import json
import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from tabpay.core.errors import InvalidArgument, TabPayError
from tabpay.core.rate_limit import limiter
from tabpay.db.session import DbSession
from tabpay.services.webhook_service import PaymentWebhookReconciler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/payment")
@limiter.limit("120/minute")
async def payment_webhook(request: Request, db: DbSession):
    """Bank transfer notification (public).

    Answers 200 ``{"success": true}`` when the transfer settled an order
    group and 400 with a ``reason`` for every rejected notification, so the
    provider does not keep retrying unmatched transfers.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        payload = None

    try:
        if payload is None:
            raise InvalidArgument("Webhook body must be valid JSON")
        group = await run_in_threadpool(PaymentWebhookReconciler(db).reconcile, payload)
    except TabPayError as e:
        if e.status_code >= 500:
            raise
        logger.warning(f"Payment webhook rejected ({e.reason}): {e.message}")
        return JSONResponse(status_code=400, content=e.to_dict())

    return {"success": True, "order_group_id": group.id}
