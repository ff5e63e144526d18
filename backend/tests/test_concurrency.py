"""
Threaded race tests against a file-backed SQLite database.

Each worker runs in its own app context (own session / connection), the
way concurrent requests and webhook deliveries would. Workers that lose to
SQLite's writer lock after retries are tolerated; the invariants checked
are about the committed state.
"""

import threading
from datetime import datetime

import pytest
from sqlalchemy.exc import OperationalError

from keyshop import create_app
from keyshop.extensions import db
from keyshop.models import Key, KeyLog, Order, Product, User
from keyshop.models.catalog import PRODUCT_TYPE_KEY, PRODUCT_TYPE_OTHER
from keyshop.services import key_service, order_service, payment_service
from keyshop.services.payment_service import TRIGGER_POLL, TRIGGER_WEBHOOK

from conftest import TEST_CONFIG, FakeGateway


WORKERS = 8


@pytest.fixture
def file_app(tmp_path):
    config = dict(TEST_CONFIG)
    config["SQLALCHEMY_DATABASE_URI"] = f"sqlite:///{tmp_path / 'race.db'}"
    config["SQLALCHEMY_ENGINE_OPTIONS"] = {"connect_args": {"timeout": 30}}
    app = create_app(config)
    app.extensions["omise_gateway"] = FakeGateway()

    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _seed_order(app, product_type, quantity):
    with app.app_context():
        user = User(name="Racer", email="racer@example.com", is_active=True)
        product = Product(
            name="Race Item",
            price_satang=5_000,
            type=product_type,
            stock=10 if product_type == PRODUCT_TYPE_OTHER else 0,
            expire_days="7D",
            is_active=True,
        )
        db.session.add_all([user, product])
        db.session.commit()

        order = order_service.create_order(
            user=user, subject_user_id=user.id, product_id=product.id, quantity=quantity,
        )
        return order.id, product.id


def _run(app, target, count=WORKERS):
    results = []
    errors = []
    lock = threading.Lock()
    start = threading.Barrier(count)

    def worker(index):
        with app.app_context():
            try:
                start.wait()
                result = target(index)
                with lock:
                    results.append(result)
            except OperationalError as exc:
                with lock:
                    errors.append(exc)
            finally:
                db.session.remove()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return results, errors


def test_concurrent_confirmations_generate_keys_once(file_app):
    order_id, _ = _seed_order(file_app, PRODUCT_TYPE_KEY, quantity=2)

    def confirm(index):
        trigger = TRIGGER_WEBHOOK if index % 2 else TRIGGER_POLL
        return payment_service.mark_order_paid(order_id, trigger=trigger).transitioned

    results, _ = _run(file_app, confirm)

    with file_app.app_context():
        assert db.session.get(Order, order_id).status == "paid"
        assert db.session.query(Key).filter_by(order_id=order_id).count() == 2
    assert results.count(True) == 1


def test_concurrent_confirmations_decrement_stock_once(file_app):
    order_id, product_id = _seed_order(file_app, PRODUCT_TYPE_OTHER, quantity=4)

    results, _ = _run(
        file_app, lambda index: payment_service.mark_order_paid(order_id, trigger=TRIGGER_WEBHOOK).transitioned
    )

    with file_app.app_context():
        assert db.session.get(Product, product_id).stock == 6
    assert results.count(True) == 1


def test_pay_and_cancel_race_has_one_winner(file_app):
    order_id, _ = _seed_order(file_app, PRODUCT_TYPE_KEY, quantity=1)

    def race(index):
        if index % 2:
            return "paid" if payment_service.mark_order_paid(order_id, trigger=TRIGGER_WEBHOOK).transitioned else None
        return "cancelled" if payment_service.cancel_pending_order(order_id, trigger=TRIGGER_WEBHOOK).transitioned else None

    results, _ = _run(file_app, race)
    winners = [r for r in results if r]

    with file_app.app_context():
        status = db.session.get(Order, order_id).status
        keys = db.session.query(Key).filter_by(order_id=order_id).count()

    assert len(winners) == 1
    assert status == winners[0]
    assert keys == (1 if status == "paid" else 0)


def test_concurrent_first_activation_sets_expiry_once(file_app, monkeypatch):
    order_id, _ = _seed_order(file_app, PRODUCT_TYPE_KEY, quantity=1)
    with file_app.app_context():
        payment_service.mark_order_paid(order_id, trigger=TRIGGER_WEBHOOK)
        code = db.session.query(Key).filter_by(order_id=order_id).one().code

    moments = [datetime(2026, 10, 1, 8, 0, second) for second in range(WORKERS)]
    local = threading.local()
    monkeypatch.setattr(key_service, "utcnow", lambda: moments[getattr(local, "index", 0)])

    def activate(index):
        local.index = index
        return key_service.activate_or_verify(code, key_service.VerifyContext(hwid=f"H{index}"))

    results, _ = _run(file_app, activate)

    with file_app.app_context():
        key = db.session.query(Key).filter_by(code=code).one()
        activations = db.session.query(KeyLog).filter_by(key_id=key.id, action="activate").count()
        expires_at = key.expires_at
        activated_at = key.activated_at

    assert activations == 1
    assert (expires_at - activated_at).days == 7
    # Every caller saw the winner's expiry
    assert {view["expires_at"] for view in results} == {results[0]["expires_at"]}
