# Overview: Omise webhook intake; signature verification, charge classification and event dispatch.

"""
Webhook Service

Omise delivers charge lifecycle events at least once, unordered relative to
client polling. Each handler is idempotent:
- charge.create   advisory; backfills charge reference / QR image while unset
- charge.complete authoritative success or failure
- charge.expire   cancels the order if still pending

Signature: X-Omise-Signature = "sha256=" + hex(HMAC-SHA256(secret, raw body)),
compared in constant time. Missing signatures are rejected unless
OMISE_WEBHOOK_SIGNATURE_OPTIONAL is set.
"""

from __future__ import annotations

import hashlib
import hmac
import json

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import InvalidInputError, UnauthorizedError
from ..models import Order
from ..models.orders import ORDER_STATUS_PENDING, PAYMENT_METHOD_PROMPTPAY
from ..extensions import db
from keyshop.time_utils import from_unix_or_iso
from . import order_store
from .omise_gateway import (
    CHARGE_STATUS_EXPIRED,
    CHARGE_STATUS_FAILED,
    CHARGE_STATUS_SUCCESSFUL,
)
from .payment_service import TRIGGER_WEBHOOK, cancel_pending_order, mark_order_paid


EVENT_CHARGE_CREATE = "charge.create"
EVENT_CHARGE_COMPLETE = "charge.complete"
EVENT_CHARGE_EXPIRE = "charge.expire"

OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"
OUTCOME_AMBIGUOUS = "ambiguous"

_FAILURE_STATUSES = {CHARGE_STATUS_FAILED, CHARGE_STATUS_EXPIRED}


# =============================================================================
# SIGNATURE
# =============================================================================

def _webhook_secret() -> str | None:
    return current_app.config.get("OMISE_WEBHOOK_SECRET") or current_app.config.get("OMISE_SECRET_KEY")


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def verify_signature(raw_body: bytes, signature_header: str | None) -> bool:
    """
    Check the request signature.

    Returns True when the payload may be trusted, False when it was accepted
    unsigned under the permissive setting.

    Raises:
        UnauthorizedError: bad signature, or missing signature while required
    """
    if not signature_header:
        if current_app.config.get("OMISE_WEBHOOK_SIGNATURE_OPTIONAL"):
            current_app.logger.warning("Processing Omise webhook without signature verification")
            return False
        raise UnauthorizedError("Missing webhook signature")

    secret = _webhook_secret()
    if not secret:
        current_app.logger.error("Webhook signature received but no signing secret is configured")
        raise UnauthorizedError("Invalid signature")

    received = signature_header.strip()
    if received.startswith("sha256="):
        received = received[len("sha256="):]

    expected = compute_signature(raw_body, secret)
    if not hmac.compare_digest(expected.encode("utf-8"), received.encode("utf-8")):
        current_app.logger.warning("Invalid Omise webhook signature")
        raise UnauthorizedError("Invalid signature")
    return True


# =============================================================================
# CLASSIFICATION / CORRELATION
# =============================================================================

def classify_completed_charge(charge: dict) -> str:
    """
    Decide what a charge.complete payload means.

    - success: paid is true AND status or source.charge_status is "successful"
    - failure: not paid, the two status fields do not disagree, and the
      status is a terminal failure
    - ambiguous: anything else (left for manual inspection)
    """
    paid = charge.get("paid") is True
    status = charge.get("status")
    source_status = (charge.get("source") or {}).get("charge_status")

    if paid and CHARGE_STATUS_SUCCESSFUL in (status, source_status):
        return OUTCOME_SUCCESS

    if not paid:
        agree = source_status is None or status is None or source_status == status
        observed = status if status is not None else source_status
        if agree and observed in _FAILURE_STATUSES:
            return OUTCOME_FAILURE

    return OUTCOME_AMBIGUOUS


def _metadata_order_id(charge: dict) -> int | None:
    metadata = charge.get("metadata") or {}
    raw = metadata.get("order_id") or metadata.get("orderId")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None


def _find_order(charge: dict) -> Order | None:
    """Locate the order by charge reference, falling back to metadata."""
    charge_id = charge.get("id")
    order = order_store.find_order_by_charge(charge_id)
    if order:
        return order

    order_id = _metadata_order_id(charge)
    if order_id is None:
        current_app.logger.error("Charge %s has no order id in metadata", charge_id)
        return None

    order = order_store.get_order(order_id)
    if not order:
        current_app.logger.error("Order %s not found for charge %s", order_id, charge_id)
        return None

    if order.omise_charge_id and order.omise_charge_id != charge_id:
        current_app.logger.warning(
            "Charge %s references order %s which is bound to charge %s; ignoring",
            charge_id, order.id, order.omise_charge_id,
        )
        return None

    if not order.omise_charge_id:
        # Synchronous checkout has not recorded the charge yet; record it now
        claim_charge(order.id, charge)
        order = order_store.get_order(order.id)
        if order.omise_charge_id != charge_id:
            return None

    return order


def claim_charge(order_id: int, charge: dict) -> bool:
    charge_id = charge.get("id")
    image = ((charge.get("source") or {}).get("scannable_code") or {}).get("image") or {}
    try:
        won = order_store.claim_charge_reference(
            order_id,
            charge_id,
            qr_code_url=image.get("download_uri"),
            charge_expires_at=from_unix_or_iso(charge.get("expires_at")),
            payment_method=PAYMENT_METHOD_PROMPTPAY,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning(
            "Charge %s is already bound to another order; not binding it to order %s", charge_id, order_id
        )
        return False
    if won:
        current_app.logger.info("Order %s bound to charge %s via webhook", order_id, charge_id)
    return won


# =============================================================================
# HANDLERS
# =============================================================================

def handle_charge_create(charge: dict) -> dict:
    order_id = _metadata_order_id(charge)
    if order_id is None or not order_store.get_order(order_id):
        current_app.logger.info("Charge %s created for unknown order", charge.get("id"))
        return {"action": "ignored"}

    claimed = claim_charge(order_id, charge)
    if not claimed:
        image = ((charge.get("source") or {}).get("scannable_code") or {}).get("image") or {}
        if image.get("download_uri"):
            order_store.fill_qr_code_url(order_id, charge.get("id"), image["download_uri"])
            db.session.commit()
    return {"action": "charge_bound" if claimed else "noop", "order_id": order_id}


def handle_charge_complete(charge: dict) -> dict:
    order = _find_order(charge)
    if not order:
        return {"action": "ignored"}

    outcome = classify_completed_charge(charge)

    if outcome == OUTCOME_SUCCESS:
        amount = charge.get("amount")
        if amount is not None and amount != order.total_amount_satang:
            current_app.logger.error(
                "Charge %s amount %s does not match order %s total %s; not marking paid",
                charge.get("id"), amount, order.id, order.total_amount_satang,
            )
            return {"action": "amount_mismatch", "order_id": order.id}
        result = mark_order_paid(order.id, trigger=TRIGGER_WEBHOOK)
        return {"action": "paid" if result.transitioned else "noop", "order_id": order.id}

    if outcome == OUTCOME_FAILURE:
        result = cancel_pending_order(order.id, trigger=TRIGGER_WEBHOOK)
        return {"action": "cancelled" if result.transitioned else "noop", "order_id": order.id}

    current_app.logger.warning(
        "Ambiguous charge.complete for charge %s (paid=%r status=%r source_status=%r); order %s left %s",
        charge.get("id"), charge.get("paid"), charge.get("status"),
        (charge.get("source") or {}).get("charge_status"), order.id, order.status,
    )
    return {"action": "ambiguous", "order_id": order.id}


def handle_charge_expire(charge: dict) -> dict:
    order = order_store.find_order_by_charge(charge.get("id"))
    if not order:
        current_app.logger.error("Order not found for expired charge %s", charge.get("id"))
        return {"action": "ignored"}

    if order.status != ORDER_STATUS_PENDING:
        return {"action": "noop", "order_id": order.id}

    result = cancel_pending_order(order.id, trigger=TRIGGER_WEBHOOK)
    return {"action": "cancelled" if result.transitioned else "noop", "order_id": order.id}


_HANDLERS = {
    EVENT_CHARGE_CREATE: handle_charge_create,
    EVENT_CHARGE_COMPLETE: handle_charge_complete,
    EVENT_CHARGE_EXPIRE: handle_charge_expire,
}


def process_webhook(raw_body: bytes, signature_header: str | None) -> dict:
    """
    Verify and dispatch one webhook delivery.

    Raises:
        UnauthorizedError: signature rejected
        InvalidInputError: body is not a JSON event
    """
    verify_signature(raw_body, signature_header)

    try:
        event = json.loads(raw_body or b"")
    except ValueError:
        raise InvalidInputError("Invalid JSON payload")
    if not isinstance(event, dict):
        raise InvalidInputError("Invalid JSON payload")

    event_key = event.get("key")
    charge = event.get("data")
    current_app.logger.info("Received Omise webhook event: %s", event_key)

    handler = _HANDLERS.get(event_key)
    if handler is None:
        current_app.logger.info("Unhandled webhook event: %s", event_key)
        return {"received": True, "event": event_key, "action": "ignored"}

    if not isinstance(charge, dict) or not charge.get("id"):
        raise InvalidInputError("Webhook event has no charge data")

    result = handler(charge)
    return {"received": True, "event": event_key, **result}
