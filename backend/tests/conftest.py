"""
Pytest fixtures for keyshop backend tests.

Provides the application, a per-test clean database, a scripted payment
gateway and authenticated users.
"""

import hashlib
import hmac
import itertools
import json
from datetime import timedelta

import pytest

from keyshop import create_app
from keyshop.extensions import db
from keyshop.models import Product, User
from keyshop.models.auth import ROLE_ADMIN, ROLE_USER
from keyshop.models.catalog import PRODUCT_TYPE_KEY, PRODUCT_TYPE_OTHER
from keyshop.services import session_service
from keyshop.services.omise_gateway import (
    CHARGE_STATUS_PENDING,
    CHARGE_STATUS_SUCCESSFUL,
    CancelResult,
    ChargeResult,
    ChargeStatus,
    validate_charge_amount,
)
from keyshop.time_utils import utcnow


WEBHOOK_SECRET = "whsec_test"

TEST_CONFIG = {
    "TESTING": True,
    "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
    "SQLALCHEMY_TRACK_MODIFICATIONS": False,
    "OMISE_SECRET_KEY": "skey_test_123",
    "OMISE_API_URL": "https://api.omise.test",
    "OMISE_WEBHOOK_SECRET": WEBHOOK_SECRET,
    "OMISE_WEBHOOK_SIGNATURE_OPTIONAL": False,
    "PAYMENT_STATUS_FALLBACK_SECONDS": 60,
    "PAYMENT_POLL_WINDOW_SECONDS": 600,
}


class FakeGateway:
    """
    In-memory stand-in for the Omise adapter.

    Charges are recorded in `charges`; tests flip them to paid with
    mark_paid() or make calls fail by setting `fail_create` / `fail_status`
    / `fail_cancel` to an exception instance.
    """

    def __init__(self):
        self._ids = itertools.count(1)
        self.charges = {}
        self.create_calls = []
        self.status_calls = []
        self.cancel_calls = []
        self.fail_create = None
        self.fail_status = None
        self.fail_cancel = None

    def create_charge(self, *, amount_satang, order_id, description=None):
        validate_charge_amount(amount_satang)
        self.create_calls.append({"amount_satang": amount_satang, "order_id": order_id,
                                  "description": description})
        if self.fail_create is not None:
            raise self.fail_create

        charge_id = f"chrg_test_{next(self._ids):05d}"
        self.charges[charge_id] = {
            "id": charge_id,
            "amount": amount_satang,
            "status": CHARGE_STATUS_PENDING,
            "paid": False,
            "order_id": str(order_id),
        }
        return ChargeResult(
            charge_id=charge_id,
            status=CHARGE_STATUS_PENDING,
            paid=False,
            qr_code_url=f"https://cdn.omise.test/qr/{charge_id}.svg",
            expires_at=utcnow() + timedelta(hours=24),
            amount_satang=amount_satang,
        )

    def mark_paid(self, charge_id, amount=None):
        charge = self.charges[charge_id]
        charge["paid"] = True
        charge["status"] = CHARGE_STATUS_SUCCESSFUL
        if amount is not None:
            charge["amount"] = amount

    def get_charge_status(self, charge_id):
        self.status_calls.append(charge_id)
        if self.fail_status is not None:
            raise self.fail_status
        charge = self.charges[charge_id]
        return ChargeStatus(
            charge_id=charge_id,
            status=charge["status"],
            paid=charge["paid"],
            paid_at=utcnow() if charge["paid"] else None,
            expires_at=None,
            amount_satang=charge["amount"],
        )

    def cancel_charge(self, charge_id):
        self.cancel_calls.append(charge_id)
        if self.fail_cancel is not None:
            raise self.fail_cancel
        charge = self.charges.get(charge_id)
        if charge and charge["paid"]:
            return CancelResult(charge_id=charge_id, accepted=True, already_settled=True)
        if charge:
            charge["status"] = "failed"
        return CancelResult(charge_id=charge_id, accepted=True, status="failed")


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def fake_gateway(app):
    """Swap the Omise adapter for a scripted fake for one test."""
    original = app.extensions["omise_gateway"]
    fake = FakeGateway()
    app.extensions["omise_gateway"] = fake
    yield fake
    app.extensions["omise_gateway"] = original


@pytest.fixture(scope='function')
def buyer(db_session):
    user = User(name="Somchai", email="somchai@example.com", role=ROLE_USER, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_user(db_session):
    user = User(name="Mallory", email="mallory@example.com", role=ROLE_USER, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def admin_user(db_session):
    user = User(name="Admin", email="admin@example.com", role=ROLE_ADMIN, is_active=True)
    db_session.add(user)
    db_session.commit()
    return user


def _bearer(user):
    _, token = session_service.create_session(user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture(scope='function')
def buyer_headers(buyer):
    return _bearer(buyer)


@pytest.fixture(scope='function')
def other_headers(other_user):
    return _bearer(other_user)


@pytest.fixture(scope='function')
def admin_headers(admin_user):
    return _bearer(admin_user)


@pytest.fixture(scope='function')
def key_product(db_session):
    """Key product: THB 50.00, keys expire 7 days after first activation."""
    product = Product(
        name="Script Key",
        price_satang=5_000,
        type=PRODUCT_TYPE_KEY,
        stock=0,
        expire_days="7D",
        source_code="print('hello')",
        is_active=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def stock_product(db_session):
    """Stock-tracked product: THB 100.00, 3 in stock."""
    product = Product(
        name="Gift Card",
        price_satang=10_000,
        type=PRODUCT_TYPE_OTHER,
        stock=3,
        is_active=True,
    )
    db_session.add(product)
    db_session.commit()
    return product


def sign(body: bytes, secret: str = WEBHOOK_SECRET) -> str:
    return "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def webhook_event(key: str, charge: dict) -> bytes:
    return json.dumps({"object": "event", "key": key, "data": charge}).encode("utf-8")


def charge_payload(order, *, paid=True, status="successful", amount=None, source_status=None,
                   charge_id=None, **extra) -> dict:
    charge = {
        "object": "charge",
        "id": charge_id or order.omise_charge_id,
        "amount": order.total_amount_satang if amount is None else amount,
        "currency": "thb",
        "paid": paid,
        "status": status,
        "metadata": {"order_id": str(order.id)},
        "source": {"type": "promptpay", "charge_status": source_status or status},
    }
    charge.update(extra)
    return charge
