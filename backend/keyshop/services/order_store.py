# Overview: Order aggregate persistence; conditional (compare-and-swap) writes used to resolve races.

"""
Order Aggregate Store

WHY: Client polls, two webhook events and the synchronous checkout can all
write the same order concurrently, possibly from different processes. No
in-process lock can cover that, so every contended write here is a single
conditional UPDATE whose WHERE clause encodes the expected current state.
The returned bool says whether THIS writer won.

RULES:
- claim_charge_reference: only while omise_charge_id IS NULL
- transition_status: only from an explicit set of source statuses
- decrement_stock: stock = stock - n in SQL, never read-then-write

None of these commit; callers own the transaction boundary.
"""

from __future__ import annotations

from sqlalchemy import func, update
from sqlalchemy.orm.util import identity_key

from ..extensions import db
from ..models import Key, Order, OrderItem, Product
from keyshop.time_utils import utcnow


def get_order(order_id: int) -> Order | None:
    return db.session.get(Order, order_id)


def find_order_by_charge(charge_id: str) -> Order | None:
    if not charge_id:
        return None
    return db.session.query(Order).filter_by(omise_charge_id=charge_id).first()


def get_order_items(order_id: int) -> list[OrderItem]:
    return (
        db.session.query(OrderItem)
        .filter_by(order_id=order_id)
        .order_by(OrderItem.id)
        .all()
    )


def list_user_orders(user_id: int) -> list[Order]:
    return (
        db.session.query(Order)
        .filter_by(user_id=user_id)
        .order_by(Order.created_at.desc(), Order.id.desc())
        .all()
    )


def get_order_keys(order_id: int) -> list[Key]:
    return db.session.query(Key).filter_by(order_id=order_id).order_by(Key.id).all()


def count_item_keys(order_item_id: int) -> int:
    return (
        db.session.query(func.count(Key.id))
        .filter(Key.order_item_id == order_item_id)
        .scalar()
        or 0
    )


def key_code_exists(code: str) -> bool:
    return db.session.query(Key.id).filter_by(code=code).first() is not None


def _expire_cached(model, pk) -> None:
    """Drop stale attribute state after a bulk UPDATE on a row this session holds."""
    obj = db.session.identity_map.get(identity_key(model, pk))
    if obj is not None:
        db.session.expire(obj)


# =============================================================================
# CONDITIONAL WRITES
# =============================================================================

def claim_charge_reference(
    order_id: int,
    charge_id: str,
    *,
    qr_code_url: str | None = None,
    charge_expires_at=None,
    payment_method: str | None = None,
    require_status: str | None = None,
) -> bool:
    """
    Set the order's charge reference only if none is set yet.

    Returns True if this call wrote the reference.
    """
    values = {"omise_charge_id": charge_id, "updated_at": utcnow()}
    if qr_code_url is not None:
        values["qr_code_url"] = qr_code_url
    if charge_expires_at is not None:
        values["charge_expires_at"] = charge_expires_at
    if payment_method is not None:
        values["payment_method"] = payment_method

    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.omise_charge_id.is_(None))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if require_status is not None:
        stmt = stmt.where(Order.status == require_status)

    won = db.session.execute(stmt).rowcount == 1
    if won:
        _expire_cached(Order, order_id)
    return won


def fill_qr_code_url(order_id: int, charge_id: str, qr_code_url: str) -> bool:
    """Backfill the QR image for a matching charge when still missing."""
    stmt = (
        update(Order)
        .where(
            Order.id == order_id,
            Order.omise_charge_id == charge_id,
            Order.qr_code_url.is_(None),
        )
        .values(qr_code_url=qr_code_url, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    won = db.session.execute(stmt).rowcount == 1
    if won:
        _expire_cached(Order, order_id)
    return won


def transition_status(order_id: int, from_statuses: tuple[str, ...], to_status: str, **extra) -> bool:
    """
    Move an order to to_status only if it is currently in from_statuses.

    Returns True if this call performed the transition.
    """
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status.in_(from_statuses))
        .values(status=to_status, updated_at=utcnow(), **extra)
        .execution_options(synchronize_session=False)
    )
    won = db.session.execute(stmt).rowcount == 1
    if won:
        _expire_cached(Order, order_id)
    return won


def decrement_stock(product_id: int, quantity: int) -> bool:
    """
    Atomic stock decrement. No floor check: availability was validated at
    order creation. Returns False if the product row no longer exists.
    """
    stmt = (
        update(Product)
        .where(Product.id == product_id)
        .values(stock=Product.stock - quantity)
        .execution_options(synchronize_session=False)
    )
    won = db.session.execute(stmt).rowcount == 1
    if won:
        _expire_cached(Product, product_id)
    return won


def delete_order(order_id: int) -> None:
    """Compensating delete for a partially created order."""
    db.session.query(OrderItem).filter_by(order_id=order_id).delete(synchronize_session=False)
    db.session.query(Order).filter_by(id=order_id).delete(synchronize_session=False)
