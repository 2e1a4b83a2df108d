import datetime as dt
import os

# must be set before storefront.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("EVENTS_BACKEND", "memory")
os.environ.setdefault("SCHEDULER_ENABLED", "false")

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from storefront import orders
from storefront.config import ALGORITHM, SECRET_KEY
from storefront.main import create_app
from storefront.messaging import InMemoryEventPublisher
from storefront.models import Base, Product
from storefront.restorers import TransactionalRestorer

T0 = dt.datetime(2026, 3, 2, 9, 0, tzinfo=dt.timezone.utc)

ADMIN = {"id": "admin-1", "userName": "Ada Admin", "role": "admin"}
SUPERADMIN = {"id": "root-1", "userName": "Sam Super", "role": "superadmin"}
ALICE = {"id": "user-alice", "userName": "Alice", "role": "user"}
BOB = {"id": "user-bob", "userName": "Bob", "role": "user"}


class RecordingCalendar:
    """Stands in for the Google Calendar notifier."""

    def __init__(self):
        self.dispatched = []
        self.synced = []
        self.sync_all_result = {"total_orders": 0, "success_count": 0, "fail_count": 0}

    def dispatch(self, user_id, order):
        self.dispatched.append((user_id, order))

    def sync_all(self, user_id):
        self.synced.append(user_id)
        return self.sync_all_result


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher():
    return InMemoryEventPublisher()


@pytest.fixture
def calendar():
    return RecordingCalendar()


@pytest.fixture
def make_product(db):
    def _make(title="Lab Gown", stock=10, price="250.00", **kwargs):
        product = Product(title=title, total_stock=stock, price=price, category="uniform", **kwargs)
        db.add(product)
        db.commit()
        db.refresh(product)
        return product
    return _make


@pytest.fixture
def place_order(db, publisher):
    def _place(user, *lines, now=T0):
        return orders.create_order(
            db,
            user=user,
            items_data=[{"product_id": pid, "quantity": qty} for pid, qty in lines],
            payment_method="cash",
            publisher=publisher,
            now=now,
        )
    return _place


def stock_of(db, product_id):
    return db.query(Product.total_stock).filter(Product.id == product_id).scalar()


def create_access_token(data, expires_delta=dt.timedelta(minutes=60)):
    """Mint a token the way the account service does."""
    claims = dict(data, exp=dt.datetime.now(dt.timezone.utc) + expires_delta)
    return jwt.encode(claims, SECRET_KEY, algorithm=ALGORITHM)


def auth_headers(user):
    token = create_access_token({"id": user["id"], "userName": user["userName"], "role": user["role"]})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def app(session_factory, publisher, calendar, tmp_path):
    return create_app(
        session_factory=session_factory,
        publisher=publisher,
        calendar=calendar,
        restorer=TransactionalRestorer(),
        scheduler_enabled=False,
        upload_dir=str(tmp_path / "uploads"),
    )


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
