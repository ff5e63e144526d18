"""
Omise webhook endpoint tests.

Verifies:
- HMAC-SHA256 signature is required and checked in constant time
- charge.create binds the charge when checkout has not recorded it yet
- charge.complete success / failure / ambiguous handling
- charge.expire cancels pending orders
- unknown events are acknowledged and ignored
"""

import pytest

from keyshop.models import Key, Order, OrderItem
from keyshop.models.orders import ORDER_STATUS_PENDING
from keyshop.services import order_service, webhook_service
from keyshop.services.webhook_service import (
    OUTCOME_AMBIGUOUS,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
    classify_completed_charge,
)
from keyshop.time_utils import utcnow

from conftest import charge_payload, sign, webhook_event


WEBHOOK_URL = "/api/webhooks/omise"


def _post(client, body, signature):
    headers = {}
    if signature is not None:
        headers["X-Omise-Signature"] = signature
    return client.post(WEBHOOK_URL, data=body, headers=headers, content_type="application/json")


def _create(user, product, quantity=1):
    return order_service.create_order(
        user=user, subject_user_id=user.id, product_id=product.id, quantity=quantity,
    )


class TestSignature:

    def test_valid_signature_accepted(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))

        resp = _post(client, body, sign(body))

        assert resp.status_code == 200
        assert resp.get_json()["action"] == "paid"

    def test_bare_hex_signature_accepted(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))

        resp = _post(client, body, sign(body)[len("sha256="):])

        assert resp.status_code == 200

    def test_invalid_signature_rejected(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))

        resp = _post(client, body, sign(body, secret="wrong-secret"))

        assert resp.status_code == 401
        assert db_session.get(Order, order.id).status == ORDER_STATUS_PENDING

    def test_tampered_body_rejected(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))
        signature = sign(body)
        tampered = body.replace(b'"paid": true', b'"paid": false')

        resp = _post(client, tampered, signature)

        assert resp.status_code == 401

    def test_missing_signature_rejected(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))

        resp = _post(client, body, None)

        assert resp.status_code == 401
        assert db_session.get(Order, order.id).status == ORDER_STATUS_PENDING

    def test_missing_signature_allowed_when_optional(self, app, client, db_session, fake_gateway, buyer,
                                                     key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))

        app.config["OMISE_WEBHOOK_SIGNATURE_OPTIONAL"] = True
        try:
            resp = _post(client, body, None)
        finally:
            app.config["OMISE_WEBHOOK_SIGNATURE_OPTIONAL"] = False

        assert resp.status_code == 200
        assert db_session.get(Order, order.id).status == "paid"


class TestClassification:

    @pytest.mark.parametrize("charge,expected", [
        ({"paid": True, "status": "successful"}, OUTCOME_SUCCESS),
        ({"paid": True, "status": "pending", "source": {"charge_status": "successful"}}, OUTCOME_SUCCESS),
        ({"paid": False, "status": "failed", "source": {"charge_status": "failed"}}, OUTCOME_FAILURE),
        ({"paid": False, "status": "expired"}, OUTCOME_FAILURE),
        ({"paid": False, "status": "failed", "source": {"charge_status": "successful"}}, OUTCOME_AMBIGUOUS),
        ({"paid": True, "status": "failed", "source": {"charge_status": "failed"}}, OUTCOME_AMBIGUOUS),
        ({"paid": False, "status": "pending"}, OUTCOME_AMBIGUOUS),
        ({"status": "successful"}, OUTCOME_AMBIGUOUS),
    ])
    def test_classify(self, charge, expected):
        assert classify_completed_charge(charge) == expected


class TestEvents:

    def test_complete_generates_keys(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product, 2)
        body = webhook_event("charge.complete", charge_payload(order))

        resp = _post(client, body, sign(body))

        assert resp.get_json() == {"received": True, "event": "charge.complete",
                                   "action": "paid", "order_id": order.id}
        assert db_session.query(Key).filter_by(order_id=order.id).count() == 2
        item = db_session.query(OrderItem).filter_by(order_id=order.id).one()
        assert item.code is not None

    def test_complete_failure_cancels(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order, paid=False, status="failed"))

        resp = _post(client, body, sign(body))

        assert resp.get_json()["action"] == "cancelled"
        assert db_session.get(Order, order.id).status == "cancelled"

    def test_ambiguous_complete_changes_nothing(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        charge = charge_payload(order, paid=False, status="failed", source_status="successful")
        body = webhook_event("charge.complete", charge)

        resp = _post(client, body, sign(body))

        assert resp.status_code == 200
        assert resp.get_json()["action"] == "ambiguous"
        assert db_session.get(Order, order.id).status == ORDER_STATUS_PENDING

    def test_complete_amount_mismatch_not_applied(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order, amount=2_000))

        resp = _post(client, body, sign(body))

        assert resp.get_json()["action"] == "amount_mismatch"
        assert db_session.get(Order, order.id).status == ORDER_STATUS_PENDING

    def test_expire_cancels_pending(self, client, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.expire", charge_payload(order, paid=False, status="expired"))

        resp = _post(client, body, sign(body))

        assert resp.get_json()["action"] == "cancelled"
        order = db_session.get(Order, order.id)
        assert order.status == "cancelled"
        assert order.cancelled_at is not None

    def test_create_binds_charge_for_unbound_order(self, client, db_session, buyer):
        order = Order(user_id=buyer.id, user_data=buyer.snapshot(), total_amount_satang=5_000,
                      status=ORDER_STATUS_PENDING, created_at=utcnow())
        db_session.add(order)
        db_session.commit()

        charge = {
            "id": "chrg_test_early",
            "amount": 5_000,
            "paid": False,
            "status": "pending",
            "metadata": {"order_id": str(order.id)},
            "source": {"type": "promptpay",
                       "scannable_code": {"image": {"download_uri": "https://cdn.omise.test/qr/early.svg"}}},
        }
        body = webhook_event("charge.create", charge)

        resp = _post(client, body, sign(body))

        assert resp.get_json()["action"] == "charge_bound"
        order = db_session.get(Order, order.id)
        assert order.omise_charge_id == "chrg_test_early"
        assert order.qr_code_url == "https://cdn.omise.test/qr/early.svg"

    def test_create_with_charge_bound_elsewhere_is_acknowledged(self, client, db_session, fake_gateway,
                                                                buyer, key_product):
        bound = _create(buyer, key_product)
        unbound = Order(user_id=buyer.id, user_data=buyer.snapshot(), total_amount_satang=5_000,
                        status=ORDER_STATUS_PENDING, created_at=utcnow())
        db_session.add(unbound)
        db_session.commit()

        charge = charge_payload(bound, paid=False, status="pending")
        charge["metadata"] = {"order_id": str(unbound.id)}
        body = webhook_event("charge.create", charge)

        resp = _post(client, body, sign(body))

        assert resp.status_code == 200
        assert resp.get_json()["action"] == "noop"
        assert db_session.get(Order, unbound.id).omise_charge_id is None
        assert db_session.get(Order, bound.id).omise_charge_id == charge["id"]

        assert webhook_service.claim_charge(unbound.id, charge) is False

    def test_complete_for_unknown_order_is_acknowledged(self, client, db_session):
        charge = {"id": "chrg_test_ghost", "paid": True, "status": "successful",
                  "metadata": {"order_id": "999999"}}
        body = webhook_event("charge.complete", charge)

        resp = _post(client, body, sign(body))

        assert resp.status_code == 200
        assert resp.get_json()["action"] == "ignored"

    def test_unknown_event_ignored(self, client, db_session):
        body = webhook_event("refund.create", {"id": "rfnd_test_1"})

        resp = _post(client, body, sign(body))

        assert resp.status_code == 200
        assert resp.get_json()["action"] == "ignored"

    def test_malformed_json(self, client, db_session):
        body = b"{not json"

        resp = _post(client, body, sign(body))

        assert resp.status_code == 400
        assert resp.get_json()["kind"] == "InvalidInput"

    def test_process_webhook_directly(self, app, db_session, fake_gateway, buyer, key_product):
        order = _create(buyer, key_product)
        body = webhook_event("charge.complete", charge_payload(order))

        first = webhook_service.process_webhook(body, sign(body))
        second = webhook_service.process_webhook(body, sign(body))

        assert first["action"] == "paid"
        assert second["action"] == "noop"
