"""Pytest configuration and fixtures."""

import os

# Must be set before tabpay.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("PAYMENT_ACCOUNT_NUMBER", "0123499999")

import pytest
from decimal import Decimal
from typing import Generator

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from tabpay.core.rbac import UserRole
from tabpay.core.security import create_access_token
from tabpay.db.base import Base
from tabpay.db.session import get_db
from tabpay.main import app
# Import all models to ensure they're registered with Base.metadata
from tabpay.models import *
from tabpay.services.notification_service import NotificationService, notifier
from tabpay.services.websocket_service import ConnectionManager

# Use in-memory SQLite for tests
TEST_DATABASE_URL = "sqlite:///:memory:"
ACCOUNT_NUMBER = os.environ["PAYMENT_ACCOUNT_NUMBER"]


@pytest.fixture(scope="function")
def db_engine():
    """Create a test database engine."""
    engine = create_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture(scope="function")
def db_session(session_factory) -> Generator[Session, None, None]:
    """Create a test database session."""
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def clear_notification_history():
    notifier.history.clear()
    yield
    notifier.history.clear()


@pytest.fixture
def events():
    """Isolated notification service for service-level tests."""
    return NotificationService(ConnectionManager(), history_size=100)


@pytest.fixture(scope="function")
def client(db_session: Session, session_factory, monkeypatch) -> Generator[TestClient, None, None]:
    """Create a test client with database override."""
    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    # WebSocket handlers open their own sessions
    monkeypatch.setattr("tabpay.main.SessionLocal", session_factory)
    # Disable rate limiters during tests to avoid flaky failures
    from tabpay.core.rate_limit import limiter as global_limiter
    global_limiter.enabled = False
    # Don't raise server exceptions so we can test error status codes
    with TestClient(app, raise_server_exceptions=False) as test_client:
        yield test_client
    global_limiter.enabled = True
    app.dependency_overrides.clear()


# ============== Restaurant data ==============

@pytest.fixture
def restaurant(db_session: Session) -> Restaurant:
    restaurant = Restaurant(name="Pho 24", address="12 Le Loi, District 1", phone="+84281234567")
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def other_restaurant(db_session: Session) -> Restaurant:
    restaurant = Restaurant(name="Bun Cha Corner", address="5 Hang Manh, Hoan Kiem")
    db_session.add(restaurant)
    db_session.commit()
    db_session.refresh(restaurant)
    return restaurant


@pytest.fixture
def table(db_session: Session, restaurant: Restaurant) -> Table:
    """Table number 5, free."""
    table = Table(restaurant_id=restaurant.id, name=5, status=TableStatus.FREE)
    db_session.add(table)
    db_session.commit()
    db_session.refresh(table)
    return table


@pytest.fixture
def other_table(db_session: Session, other_restaurant: Restaurant) -> Table:
    table = Table(restaurant_id=other_restaurant.id, name=1, status=TableStatus.FREE)
    db_session.add(table)
    db_session.commit()
    db_session.refresh(table)
    return table


@pytest.fixture
def menu_items(db_session: Session, restaurant: Restaurant) -> dict:
    """Item A at 50000 and item B at 30000."""
    item_a = MenuItem(restaurant_id=restaurant.id, name="Pho Bo", price=Decimal("50000"))
    item_b = MenuItem(restaurant_id=restaurant.id, name="Tra Da", price=Decimal("30000"))
    db_session.add_all([item_a, item_b])
    db_session.commit()
    db_session.refresh(item_a)
    db_session.refresh(item_b)
    return {"a": item_a, "b": item_b}


# ============== Auth ==============

def make_token(restaurant_id, role: UserRole = UserRole.STAFF, user_id: str = "staff-1") -> str:
    data = {"sub": user_id, "email": f"{user_id}@example.com", "role": role.value}
    if restaurant_id:
        data["restaurant_id"] = restaurant_id
    return create_access_token(data=data)


@pytest.fixture
def staff_token(restaurant: Restaurant) -> str:
    return make_token(restaurant.id)


@pytest.fixture
def staff_headers(staff_token: str) -> dict:
    return {"Authorization": f"Bearer {staff_token}"}


@pytest.fixture
def manager_headers(restaurant: Restaurant) -> dict:
    return {"Authorization": f"Bearer {make_token(restaurant.id, UserRole.MANAGER, 'manager-1')}"}


@pytest.fixture
def other_staff_headers(other_restaurant: Restaurant) -> dict:
    return {"Authorization": f"Bearer {make_token(other_restaurant.id, user_id='staff-2')}"}


# ============== Helpers ==============

def submit_order(client, table_id: str, items: list, notes: str = None) -> dict:
    body = {"table_id": table_id, "items": items}
    if notes is not None:
        body["notes"] = notes
    res = client.post("/api/v1/orders/add", json=body)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def webhook_payload(order_group_id: str, amount, **overrides) -> dict:
    payload = {
        "id": 92704,
        "gateway": "MBBank",
        "transactionDate": "2024-07-25 14:02:37",
        "accountNumber": ACCOUNT_NUMBER,
        "transferType": "in",
        "transferAmount": amount,
        "content": f"CT DEN:0123 Thanh toan don {order_group_id} FT24207",
    }
    payload.update(overrides)
    return payload
