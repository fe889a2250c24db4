"""FastAPI application entry point."""

import json
import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Query, Request, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from tabpay import __version__
from tabpay.api.routes import api_router
from tabpay.core.config import settings
from tabpay.core.errors import TabPayError
from tabpay.core.rate_limit import limiter
from tabpay.core.rbac import token_data_from_payload
from tabpay.core.security import decode_access_token
from tabpay.db.base import Base
from tabpay.db.session import SessionLocal, engine
from tabpay.models import Table
from tabpay.services.counter_service import INVOICE_NUMBER_KEY, CounterService
from tabpay.services.notification_service import notifier
from tabpay.services.websocket_service import restaurant_channel, table_room, ws_manager

# Configure logging - use JSON format in production, human-readable in dev
root_logger = logging.getLogger()
root_logger.setLevel(getattr(logging, settings.log_level))
root_logger.handlers.clear()

if settings.debug:
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
else:
    import sys

    class JSONFormatter(logging.Formatter):
        def format(self, record):
            return json.dumps({
                "ts": self.formatTime(record, self.datefmt),
                "level": record.levelname,
                "logger": record.name,
                "msg": record.getMessage(),
                "module": record.module,
                "line": record.lineno,
            })

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())

root_logger.addHandler(handler)
logger = logging.getLogger(__name__)
request_logger = logging.getLogger("requests")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all HTTP requests and responses."""

    async def dispatch(self, request: Request, call_next):
        # Skip logging for health checks and docs
        if request.url.path in ["/health", "/health/ready", "/", "/docs", "/openapi.json"]:
            return await call_next(request)

        start_time = time.time()
        client_ip = request.client.host if request.client else "unknown"

        try:
            response = await call_next(request)
        except Exception as e:
            process_time = time.time() - start_time
            request_logger.error(
                f"Error: {request.method} {request.url.path} - "
                f"Exception: {str(e)} - Time: {process_time:.3f}s - Client: {client_ip}"
            )
            raise

        process_time = time.time() - start_time
        log_level = logging.WARNING if response.status_code >= 400 else logging.INFO
        request_logger.log(
            log_level,
            f"{request.method} {request.url.path} - "
            f"Status: {response.status_code} - Time: {process_time:.3f}s - Client: {client_ip}"
        )
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler."""
    logger.info("Starting TabPay")

    # Create tables if they don't exist (for SQLite dev)
    if settings.database_url.startswith("sqlite"):
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables created (SQLite mode)")

    db = None
    try:
        db = SessionLocal()
        CounterService(db).init_counter(INVOICE_NUMBER_KEY)
    except Exception as e:
        logger.warning(f"Invoice counter initialisation skipped: {e}")
    finally:
        if db:
            db.close()

    await notifier.start()

    yield

    await notifier.stop()
    logger.info("Shutting down TabPay")


app = FastAPI(
    title="TabPay",
    description="Table ordering, payment settlement and invoicing API",
    version=__version__,
    lifespan=lifespan,
    docs_url="/docs" if settings.debug else None,
    redoc_url="/redoc" if settings.debug else None,
)

# Rate limiting setup
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)


@app.exception_handler(TabPayError)
async def tabpay_error_handler(request: Request, exc: TabPayError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed ({exc.reason}): {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()))
    return JSONResponse(
        status_code=422,
        content={
            "success": False,
            "detail": f"{location}: {first.get('msg', 'invalid request')}",
            "reason": "validation_error",
        },
    )


# Request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# CORS middleware - added last so it runs first (Starlette LIFO order).
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins_list,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "Accept", "Origin", "X-Requested-With"],
    max_age=600,  # Cache preflight for 10 minutes
)

# Include API routes
app.include_router(api_router, prefix=settings.api_v1_prefix)


@app.get("/health")
def health_check():
    """Basic liveness check endpoint."""
    return {"status": "healthy", "version": __version__}


@app.get("/health/ready")
def readiness_check():
    """Readiness probe with database, notification and WebSocket checks."""
    checks = {}

    db = None
    try:
        db = SessionLocal()
        db.execute(text("SELECT 1"))
        checks["database"] = "healthy"
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        checks["database"] = "unhealthy"
    finally:
        if db:
            db.close()

    checks["notifications"] = "healthy" if notifier.is_running else "stopped"
    checks["websocket_manager"] = f"healthy ({ws_manager.get_connection_count()} connections)"

    all_healthy = all(c.startswith("healthy") for c in checks.values())
    return {
        "status": "ready" if all_healthy else "degraded",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "checks": checks,
    }


# ===== WebSockets =====

def _restaurant_table_ids(restaurant_id: str, table_ids) -> set:
    db = SessionLocal()
    try:
        rows = db.query(Table.id).filter(
            Table.restaurant_id == restaurant_id,
            Table.id.in_(table_ids),
        ).all()
        return {row.id for row in rows}
    finally:
        db.close()


def _table_exists(table_id: str) -> bool:
    db = SessionLocal()
    try:
        return db.get(Table, table_id) is not None
    finally:
        db.close()


async def _authenticate_websocket(websocket: WebSocket, token: Optional[str]):
    """Staff identity from the token query parameter or access_token cookie, or None (rejected)."""
    payload = decode_access_token(token) if token else None
    if not payload:
        cookie_token = websocket.cookies.get("access_token")
        if cookie_token:
            payload = decode_access_token(cookie_token)

    user = token_data_from_payload(payload)
    if user is None or not user.restaurant_id:
        logger.warning("Staff WebSocket rejected: no valid restaurant-scoped token")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return None
    return user


async def _receive_loop(websocket: WebSocket, on_message=None):
    """Receive until disconnect, answering pings; other JSON messages go to ``on_message``."""
    try:
        while True:
            data = await websocket.receive_text()
            if data == "ping":
                await websocket.send_text("pong")
                continue
            if len(data) > ws_manager.MAX_MESSAGE_SIZE or on_message is None:
                continue
            try:
                message = json.loads(data)
            except json.JSONDecodeError:
                continue
            if isinstance(message, dict):
                await on_message(message)
    except WebSocketDisconnect:
        pass
    except Exception as e:
        logger.error(f"WebSocket error: {e}", exc_info=True)
    finally:
        ws_manager.disconnect_all(websocket)


@app.websocket("/ws/staff")
async def websocket_staff(websocket: WebSocket, token: Optional[str] = Query(None)):
    """Staff updates for one restaurant. Requires a JWT.

    Send ``{"event": "subscribe", "tables": [<table_id>, ...]}`` to also join
    table rooms, ``"unsubscribe"`` to leave them.
    """
    user = await _authenticate_websocket(websocket, token)
    if user is None:
        return

    channel = restaurant_channel(user.restaurant_id)
    if not await ws_manager.connect(websocket, channel, user_id=user.user_id):
        return

    async def on_message(message: dict):
        event = message.get("event")
        requested = [t for t in message.get("tables", [])[:50] if isinstance(t, str)]
        if event == "subscribe" and requested:
            allowed = await run_in_threadpool(_restaurant_table_ids, user.restaurant_id, requested)
            for table_id in allowed:
                await ws_manager.connect(websocket, table_room(table_id), user_id=user.user_id, accept=False)
            await websocket.send_json({"event": "subscribed", "data": {"tables": sorted(allowed)}})
        elif event == "unsubscribe":
            for table_id in requested:
                ws_manager.disconnect(websocket, table_room(table_id))

    await websocket.send_json({
        "event": "connected",
        "data": {"restaurant_id": user.restaurant_id, "channel": channel},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    await _receive_loop(websocket, on_message)


@app.websocket("/ws/tables/{table_id}")
async def websocket_table(websocket: WebSocket, table_id: str):
    """Customer updates for one table (public)."""
    if not await run_in_threadpool(_table_exists, table_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    channel = table_room(table_id)
    if not await ws_manager.connect(websocket, channel):
        return
    await websocket.send_json({
        "event": "connected",
        "data": {"table_id": table_id, "channel": channel},
        "timestamp": datetime.now(timezone.utc).isoformat(),
    })
    await _receive_loop(websocket)
