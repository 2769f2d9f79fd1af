import os

# Must be set before config/database are imported anywhere.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key")

from decimal import Decimal  # noqa: E402
from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from jose import jwt  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

import models  # noqa: E402
from config import settings  # noqa: E402
from database import Base, get_db  # noqa: E402
from deps import ActorContext, get_dispatcher  # noqa: E402
from models import FulfillmentStage  # noqa: E402
from services.fulfillment_service import FulfillmentEngine  # noqa: E402
from services.order_ingest_service import IngestionEngine  # noqa: E402

WEBHOOK_SECRET = "shpss_test_secret"
RIDER_TOKEN = "f" * 32


class RecordingDispatcher:
    """Stands in for the SMS pool: remembers what would have been sent."""

    def __init__(self):
        self.sent = []

    def submit(self, company_id, order_id, trigger, context):
        self.sent.append(SimpleNamespace(company_id=company_id, order_id=order_id,
                                         trigger=trigger, context=dict(context)))
        return None

    @property
    def triggers(self):
        return [n.trigger for n in self.sent]


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture()
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def seed(db):
    company = models.Company(name="Ceylon Tea House")
    other_company = models.Company(name="Other Co")
    db.add_all([company, other_company])
    db.flush()

    staff = models.User(company_id=company.id, name="Kasun", email="kasun@example.com")
    rider = models.User(company_id=company.id, name="Ruwan", mobile="0771234567", is_rider=True)
    not_a_rider = models.User(company_id=company.id, name="Amal", mobile="0779999999")
    pos_merchant = models.User(company_id=company.id, name="Dilani", shopify_user_ids=["555"])
    coupon_merchant = models.User(company_id=company.id, name="Sunil", coupon_codes=["SAVE10"])
    default_merchant = models.User(company_id=company.id, name="Default")
    db.add_all([staff, rider, not_a_rider, pos_merchant, coupon_merchant, default_merchant])
    db.flush()

    location = models.CompanyLocation(company_id=company.id, name="Colombo 03",
                                      shopify_location_id="70001", default_merchant_user_id=default_merchant.id)
    other_location = models.CompanyLocation(company_id=other_company.id, name="Kandy", shopify_location_id="70002")
    db.add_all([location, other_location])
    db.add(models.WebhookSecret(company_id=company.id, secret=WEBHOOK_SECRET))

    hold_reason = models.PackageHoldReason(company_id=company.id, name="Address unclear")
    other_hold_reason = models.PackageHoldReason(company_id=other_company.id, name="Other")
    courier = models.CourierService(company_id=company.id, name="Pronto")
    sample = models.SampleFreeIssueItem(company_id=company.id, name="Green tea sachet", type="sample")
    free_issue = models.SampleFreeIssueItem(company_id=company.id, name="Tote bag", type="free_issue")
    db.add_all([hold_reason, other_hold_reason, courier, sample, free_issue])
    db.commit()

    return SimpleNamespace(
        company_id=company.id, other_company_id=other_company.id,
        location=location, other_location=other_location,
        staff_id=staff.id, rider_id=rider.id, not_a_rider_id=not_a_rider.id,
        pos_merchant_id=pos_merchant.id, coupon_merchant_id=coupon_merchant.id,
        default_merchant_id=default_merchant.id,
        hold_reason_id=hold_reason.id, other_hold_reason_id=other_hold_reason.id,
        courier_id=courier.id, sample_id=sample.id, free_issue_id=free_issue.id,
    )


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def ingest_engine(dispatcher):
    return IngestionEngine(dispatcher)


@pytest.fixture()
def fulfillment_engine(dispatcher):
    return FulfillmentEngine(dispatcher, token_factory=lambda: RIDER_TOKEN)


@pytest.fixture()
def actor(seed):
    return ActorContext(user_id=seed.staff_id, company_id=seed.company_id,
                        permissions=frozenset({"orders.manage", "orders.read"}))


@pytest.fixture()
def order_payload():
    def _build(order_id=1001, financial_status="pending", **overrides):
        payload = {
            "id": order_id,
            "created_at": "2024-05-01T10:00:00+05:30",
            "currency": "LKR",
            "financial_status": financial_status,
            "total_price": "2500.00",
            "subtotal_price": "2300.00",
            "total_discounts": "0.00",
            "total_tax": "0.00",
            "order_number": order_id,
            "name": f"#{order_id}",
            "source_name": "web",
            "email": "nimal@example.com",
            "phone": "0771112233",
            "shipping_address": {
                "first_name": "Nimal", "last_name": "Perera", "address1": "12 Galle Rd",
                "city": "Colombo", "phone": "0771112233",
            },
            "customer": {
                "id": 9001, "email": "nimal@example.com", "first_name": "Nimal",
                "last_name": "Perera", "phone": "0771112233",
            },
            "shipping_lines": [{"title": "Standard", "price": "200.00"}],
            "line_items": [
                {"id": 11, "variant_id": 501, "product_id": 401, "title": "Tea 100g",
                 "sku": "TEA-100", "vendor": "Dilmah", "price": "1150.00", "quantity": 2},
            ],
        }
        payload.update(overrides)
        return payload
    return _build


@pytest.fixture()
def make_order(db, seed):
    """Insert an order directly at a given point of the pipeline."""
    counter = {"n": 0}

    def _make(stage=FulfillmentStage.ORDER_RECEIVED, source_name="web", company_id=None, location=None, **fields):
        counter["n"] += 1
        location = location or seed.location
        order = models.Order(
            company_id=company_id or location.company_id,
            company_location_id=location.id,
            shopify_order_id=f"test-{counter['n']}",
            source_name=source_name,
            name=f"#T{counter['n']}",
            total_price=Decimal("1000.00"),
            currency="LKR",
            customer_phone="0771112233",
            shipping_address={"first_name": "Nimal", "last_name": "Perera"},
            raw_payload={},
            fulfillment_stage=stage,
            version=0,
            print_count=0,
            **fields,
        )
        db.add(order)
        db.commit()
        return order.id
    return _make


def make_token(user_id, company_id, permissions):
    return jwt.encode(
        {"sub": str(user_id), "company_id": company_id, "permissions": list(permissions)},
        settings.jwt_secret_key,
        algorithm=settings.jwt_algorithm,
    )


@pytest.fixture()
def auth_headers(seed):
    def _headers(permissions=("orders.manage", "orders.read"), user_id=None, company_id=None):
        token = make_token(user_id or seed.staff_id, company_id or seed.company_id, permissions)
        return {"Authorization": f"Bearer {token}"}
    return _headers


@pytest.fixture()
def client(session_factory, dispatcher, seed):
    from main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
