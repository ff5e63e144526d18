# Overview: Payment confirmation state machine; reconciles polls and webhooks into exactly-once fulfillment.

"""
Payment Confirmation Service

WHY: Three independent agents race to move the same order:
- the buyer's client polling /api/payments/status
- the provider's "charge.complete" webhook (authoritative)
- the provider's "charge.expire" webhook (cancellation)
Webhooks are delivered at least once and in any order relative to polls.

DESIGN PRINCIPLES:
- The pending -> paid transition is a conditional UPDATE; only the writer
  whose UPDATE matched applies fulfillment
- Transition and fulfillment share ONE transaction: if fulfillment fails the
  status change rolls back too, and the next trigger retries cleanly
- Key generation is additionally guarded per line by "no keys exist yet"
- Stock decrements are SQL-side (stock = stock - n)
- Cancellation only ever matches status == pending, so a lagging expire
  signal can never undo a payment
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta

from flask import current_app

from ..errors import GatewayError, NotFoundError, UnauthorizedError
from ..extensions import db
from ..models import Order, User
from ..models.catalog import PRODUCT_TYPE_KEY, is_stock_tracked
from ..models.orders import (
    ORDER_STATUS_CANCELLED,
    ORDER_STATUS_PAID,
    ORDER_STATUS_PENDING,
    SETTLED_ORDER_STATUSES,
)
from keyshop.time_utils import to_utc_z, utcnow
from . import key_service, order_store
from .concurrency import run_with_retry
from .omise_gateway import get_gateway


# Trigger names recorded in logs
TRIGGER_POLL = "poll"
TRIGGER_WEBHOOK = "webhook"
TRIGGER_CLIENT_CANCEL = "client_cancel"


@dataclass
class TransitionResult:
    order: Order
    transitioned: bool


# =============================================================================
# TRANSITIONS
# =============================================================================

def _fulfil_order(order: Order) -> None:
    """
    Apply the side effects of a first successful payment.

    Must run in the same transaction as the pending -> paid UPDATE.
    """
    for item in order_store.get_order_items(order.id):
        if item.product_type == PRODUCT_TYPE_KEY:
            if order_store.count_item_keys(item.id) == 0:
                keys = key_service.generate_keys(order, item, item.quantity)
                current_app.logger.info(
                    "Generated %d key(s) for order %s item %s", len(keys), order.id, item.id
                )
        elif is_stock_tracked(item.product_type):
            if not order_store.decrement_stock(item.product_id, item.quantity):
                current_app.logger.warning(
                    "Product %s missing while decrementing stock for order %s",
                    item.product_id, order.id,
                )


def mark_order_paid(order_id: int, *, trigger: str) -> TransitionResult:
    """
    Transition an order to paid and fulfil it, exactly once.

    Safe to call any number of times from any trigger: losers observe the
    winner's state and do nothing.

    Raises:
        NotFoundError: order does not exist
        KeyGenerationExhaustedError: fulfillment failed (status rolled back)
    """
    def _op():
        won = order_store.transition_status(
            order_id, (ORDER_STATUS_PENDING,), ORDER_STATUS_PAID, paid_at=utcnow()
        )
        if not won:
            db.session.rollback()
            order = order_store.get_order(order_id)
            if not order:
                raise NotFoundError("Order not found")
            return TransitionResult(order=order, transitioned=False)

        order = order_store.get_order(order_id)
        _fulfil_order(order)
        db.session.commit()
        return TransitionResult(order=order, transitioned=True)

    try:
        result = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    if result.transitioned:
        current_app.logger.info("Order %s marked as paid via %s", order_id, trigger)
    elif result.order.status in SETTLED_ORDER_STATUSES:
        current_app.logger.info("Order %s already paid; %s is a no-op", order_id, trigger)
    else:
        current_app.logger.info(
            "Order %s is %s; %s cannot mark it paid", order_id, result.order.status, trigger
        )
    return result


def cancel_pending_order(order_id: int, *, trigger: str) -> TransitionResult:
    """
    Cancel an order only if it is still pending.

    Returns transitioned=False when the order already moved on.
    """
    def _op():
        won = order_store.transition_status(
            order_id, (ORDER_STATUS_PENDING,), ORDER_STATUS_CANCELLED, cancelled_at=utcnow()
        )
        if won:
            db.session.commit()
        else:
            db.session.rollback()
        order = order_store.get_order(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return TransitionResult(order=order, transitioned=won)

    result = run_with_retry(_op)
    if result.transitioned:
        current_app.logger.info("Order %s cancelled via %s", order_id, trigger)
    return result


# =============================================================================
# CLIENT POLL
# =============================================================================

def _should_check_gateway(order: Order, refresh: bool) -> bool:
    if order.status != ORDER_STATUS_PENDING or not order.omise_charge_id:
        return False
    if refresh:
        return True
    fallback = timedelta(seconds=current_app.config.get("PAYMENT_STATUS_FALLBACK_SECONDS", 60))
    return order.created_at is not None and utcnow() - order.created_at >= fallback


def get_payment_status(order_id: int, user: User, *, refresh: bool = False) -> dict:
    """
    Report an order's payment status to its owner, self-healing from a
    missed webhook by consulting the gateway while the order is pending.

    Gateway failures are logged and the last known database state returned.

    Raises:
        NotFoundError, UnauthorizedError
    """
    order = order_store.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if order.user_id != user.id:
        raise UnauthorizedError("Unauthorized")

    gateway_checked = False
    if _should_check_gateway(order, refresh):
        try:
            charge = get_gateway().get_charge_status(order.omise_charge_id)
            gateway_checked = True
        except GatewayError as exc:
            current_app.logger.warning(
                "Status poll for order %s could not reach gateway (%s): %s",
                order.id, exc.kind, exc.message,
            )
            charge = None

        if charge is not None and charge.paid:
            if charge.amount_satang is not None and charge.amount_satang != order.total_amount_satang:
                current_app.logger.error(
                    "Charge %s amount %s does not match order %s total %s; not marking paid",
                    charge.charge_id, charge.amount_satang, order.id, order.total_amount_satang,
                )
            else:
                order = mark_order_paid(order.id, trigger=TRIGGER_POLL).order

    window = timedelta(seconds=current_app.config.get("PAYMENT_POLL_WINDOW_SECONDS", 600))
    return {
        "order_id": order.id,
        "status": order.status,
        "paid": order.status in SETTLED_ORDER_STATUSES,
        "gateway_checked": gateway_checked,
        "poll_until": to_utc_z(order.created_at + window) if order.created_at else None,
    }
