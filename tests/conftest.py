from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from main import app
import models  # noqa: F401
from core.db import Base, get_db
from core import config as core_config
from core.errors import UpstreamGatewayError
from models.discount import Discount
from models.product import Product
from models.shipping_zone import ShippingZone
from models.tax_config import TaxConfig
from models.user import User
from services import email as email_service
from services.pesapal import GatewayStatus, GatewayTransaction, get_payment_gateway
from security import jwt as jwt_utils


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.TESTING = True
    yield


class FakeGateway:
    """Stands in for the payment provider and records every call."""

    provider = "pesapal"

    def __init__(self):
        self.created = []
        self.queries = []
        self.statuses = {}
        self.fail_create = False
        self.fail_query = False

    def create_transaction(self, **kwargs):
        if self.fail_create:
            raise UpstreamGatewayError("Payment provider timed out, please retry")
        self.created.append(kwargs)
        tracking_id = f"TRK-{len(self.created)}"
        raw = {
            "order_tracking_id": tracking_id,
            "merchant_reference": kwargs["merchant_reference"],
            "redirect_url": f"https://pay.example.com/{tracking_id}",
            "status": "200",
        }
        return GatewayTransaction(
            tracking_id=tracking_id,
            redirect_url=raw["redirect_url"],
            merchant_reference=kwargs["merchant_reference"],
            raw=raw,
        )

    def query_status(self, tracking_id):
        if self.fail_query:
            raise UpstreamGatewayError("Payment provider timed out, please retry")
        self.queries.append(tracking_id)
        status = self.statuses.get(tracking_id, "INVALID")
        return GatewayStatus(
            tracking_id=tracking_id,
            status=status,
            raw={"order_tracking_id": tracking_id, "payment_status_description": status},
        )


@pytest.fixture()
def db_session_override():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    TestingSessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()

    def _get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield db
    finally:
        db.close()
        app.dependency_overrides.clear()
        engine.dispose()


@pytest.fixture()
def db(db_session_override):
    return db_session_override


@pytest.fixture()
def fake_gateway(db_session_override):
    gateway = FakeGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    return gateway


@pytest.fixture(autouse=True)
def mock_email_send(monkeypatch):
    sent = []

    def _fake_send(to_email: str, subject: str, body: str) -> None:
        sent.append({"to": to_email, "subject": subject, "body": body})

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    return sent


@pytest.fixture()
def client(db_session_override, fake_gateway):
    with TestClient(app) as c:
        yield c


@pytest.fixture()
def file_session_factory(tmp_path):
    """Sessions on a file-backed SQLite database, one per thread, for
    exercising concurrent writers."""
    engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'concurrency.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def buyer(db):
    user = User(
        first_name="Jane",
        last_name="Wanjiru",
        email="jane@example.com",
        phone="+254700000001",
        region="Nairobi",
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def other_buyer(db):
    user = User(first_name="Otieno", last_name="Ouma", email="otieno@example.com", region="Kisumu")
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def admin(db):
    user = User(first_name="Admin", last_name="User", email="admin@example.com", is_admin=True)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _headers(user):
    return {"Authorization": f"Bearer {jwt_utils.create_access_token(str(user.id))}"}


@pytest.fixture
def buyer_headers(buyer):
    return _headers(buyer)


@pytest.fixture
def other_headers(other_buyer):
    return _headers(other_buyer)


@pytest.fixture
def admin_headers(admin):
    return _headers(admin)


@pytest.fixture
def products(db):
    """Two products: a 1000.00 phone with 10 in stock and a 250.00 case with 5."""
    phone = Product(name="Phone", price=1000, buying_price=700, stock=10)
    case = Product(name="Phone Case", price=250, buying_price=100, stock=5)
    db.add_all([phone, case])
    db.commit()
    return phone, case


@pytest.fixture
def zone(db):
    zone = ShippingZone(
        name="CBD Pickup",
        location="Moi Avenue, Nairobi",
        base_rate=50,
        free_shipping_threshold=5000,
        operating_hours="Mon-Sat 8am-6pm",
        contact_phone="+254700000000",
    )
    db.add(zone)
    db.commit()
    db.refresh(zone)
    return zone


@pytest.fixture
def default_tax(db):
    config = TaxConfig(name="VAT", rate=0.16, is_default=True, applicable_regions=[])
    db.add(config)
    db.commit()
    db.refresh(config)
    return config


@pytest.fixture
def make_discount(db):
    def _make(code="SAVE10", type="percentage", value=10, **kwargs):
        now = datetime.utcnow()
        fields = {
            "start_date": now - timedelta(days=1),
            "end_date": now + timedelta(days=30),
            "min_purchase": 0,
            **kwargs,
        }
        discount = Discount(code=code, type=type, value=value, **fields)
        db.add(discount)
        db.commit()
        db.refresh(discount)
        return discount

    return _make
