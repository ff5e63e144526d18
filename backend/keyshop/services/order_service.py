# Overview: Order creation, payment-request and cancellation flows for the storefront checkout.

"""
Order Service

WHY: Checkout turns a product + quantity into a pending order with a live
PromptPay charge, or into nothing at all.

CREATION FLOW:
1. Validate product (exists, active), stock (stock-tracked types), amount
   (gateway range, optional client-displayed amount must match)
2. Snapshot user and product onto the order / line
3. Insert the order (pending, no charge)
4. Create the charge, tagged with the order id
5. Record charge reference + QR image (conditional write)
6. Insert the order line

Any failure after step 3 deletes the order (compensating action) so no order
is left without a charge.
"""

from __future__ import annotations

from flask import current_app
from sqlalchemy.exc import IntegrityError

from ..errors import (
    AmountMismatchError,
    CreationConflictError,
    GatewayError,
    InsufficientStockError,
    InvalidInputError,
    NotFoundError,
    StateConflictError,
    UnauthorizedError,
)
from ..extensions import db
from ..models import Order, OrderItem, Product, User
from ..models.catalog import is_stock_tracked
from ..models.orders import ORDER_STATUS_PENDING, PAYMENT_METHOD_PROMPTPAY
from keyshop.time_utils import utcnow
from . import order_store
from .omise_gateway import get_gateway, validate_charge_amount
from .payment_service import TRIGGER_CLIENT_CANCEL, cancel_pending_order


def _describe(order_id: int, lines: list[tuple[str, int]]) -> str:
    """Charge description from product names ("Name x2, Other")."""
    names = [f"{name}{f' x{qty}' if qty > 1 else ''}" for name, qty in lines]
    return ", ".join(names) if names else f"Order #{order_id}"


def _compensate(order_id: int) -> None:
    """Best-effort removal of a partially created order."""
    db.session.rollback()
    try:
        order_store.delete_order(order_id)
        db.session.commit()
    except Exception:
        db.session.rollback()
        current_app.logger.exception("Failed to delete partially created order %s", order_id)


def _require_owner(order: Order | None, user: User) -> Order:
    if not order:
        raise NotFoundError("Order not found")
    if order.user_id != user.id:
        raise UnauthorizedError("Unauthorized")
    return order


# =============================================================================
# CREATION
# =============================================================================

def create_order(
    *,
    user: User,
    subject_user_id: int,
    product_id: int,
    quantity: int,
    client_amount_satang: int | None = None,
) -> Order:
    """
    Create a pending order with a PromptPay charge.

    Args:
        user: authenticated caller
        subject_user_id: user the order is for (must be the caller)
        product_id: catalog product
        quantity: units (>= 1)
        client_amount_satang: total shown to the buyer, if submitted

    Returns:
        The persisted order (charge reference and QR image set)

    Raises:
        UnauthorizedError, NotFoundError, InvalidInputError,
        InsufficientStockError, AmountOutOfRangeError, AmountMismatchError,
        GatewayError, CreationConflictError
    """
    if subject_user_id != user.id:
        raise UnauthorizedError("Unauthorized")
    if quantity < 1:
        raise InvalidInputError("quantity must be >= 1")

    product = db.session.get(Product, product_id)
    if not product or not product.is_active:
        raise NotFoundError("Product not found")

    if is_stock_tracked(product.type) and product.stock < quantity:
        raise InsufficientStockError(
            "Insufficient stock",
            details={"product_id": product.id, "requested_quantity": quantity, "available": product.stock},
        )

    total = product.price_satang * quantity
    if total < 0:
        raise InvalidInputError("Order total must be >= 0")
    validate_charge_amount(total)

    if client_amount_satang is not None and client_amount_satang != total:
        raise AmountMismatchError(
            "Submitted amount does not match the order total",
            details={"submitted_satang": client_amount_satang, "total_satang": total},
        )

    user_data = user.snapshot()
    product_data = product.snapshot()
    unit_price = product.price_satang

    order = Order(
        user_id=user.id,
        user_data=user_data,
        total_amount_satang=total,
        status=ORDER_STATUS_PENDING,
        created_at=utcnow(),
    )
    db.session.add(order)
    db.session.commit()
    order_id = order.id

    try:
        charge = get_gateway().create_charge(
            amount_satang=total,
            order_id=order_id,
            description=_describe(order_id, [(product_data["name"], quantity)]),
        )
    except GatewayError:
        current_app.logger.warning("Charge creation failed for order %s; deleting order", order_id)
        _compensate(order_id)
        raise
    except Exception:
        _compensate(order_id)
        raise

    try:
        claimed = order_store.claim_charge_reference(
            order_id,
            charge.charge_id,
            qr_code_url=charge.qr_code_url,
            charge_expires_at=charge.expires_at,
            payment_method=PAYMENT_METHOD_PROMPTPAY,
        )
        if not claimed:
            current = order_store.get_order(order_id)
            # The charge.create webhook may have recorded the same charge first
            if not current or current.omise_charge_id != charge.charge_id:
                raise CreationConflictError("Order creation conflict. Please try again.")

        db.session.add(OrderItem(
            order_id=order_id,
            product_id=product_data["id"],
            product_data=product_data,
            quantity=quantity,
            price_satang=unit_price,
            created_at=utcnow(),
        ))
        db.session.commit()
    except IntegrityError:
        current_app.logger.exception("Unique constraint violation while creating order %s", order_id)
        _compensate(order_id)
        raise CreationConflictError("Order creation conflict. Please try again.")
    except Exception:
        _compensate(order_id)
        raise

    current_app.logger.info("Order %s created with charge %s", order_id, charge.charge_id)
    return order_store.get_order(order_id)


# =============================================================================
# PAYMENT REQUEST
# =============================================================================

def ensure_charge(*, order_id: int, user: User, client_amount_satang: int) -> Order:
    """
    Return the order's charge, creating one only if none exists.

    Used by the payment page to (re)initialise the QR code. Never creates a
    second charge for an order that already has one.

    Raises:
        NotFoundError, UnauthorizedError, StateConflictError,
        AmountMismatchError, AmountOutOfRangeError, GatewayError
    """
    order = _require_owner(order_store.get_order(order_id), user)

    if order.status != ORDER_STATUS_PENDING:
        raise StateConflictError("Order is not pending payment", details={"status": order.status})

    if client_amount_satang != order.total_amount_satang:
        raise AmountMismatchError(
            "Submitted amount does not match the order total",
            details={"submitted_satang": client_amount_satang, "total_satang": order.total_amount_satang},
        )

    if order.omise_charge_id:
        return order

    lines = [((item.product_data or {}).get("name") or "Unknown Product", item.quantity)
             for item in order_store.get_order_items(order.id)]

    charge = get_gateway().create_charge(
        amount_satang=order.total_amount_satang,
        order_id=order.id,
        description=_describe(order.id, lines),
    )

    try:
        claimed = order_store.claim_charge_reference(
            order.id,
            charge.charge_id,
            qr_code_url=charge.qr_code_url,
            charge_expires_at=charge.expires_at,
            payment_method=PAYMENT_METHOD_PROMPTPAY,
            require_status=ORDER_STATUS_PENDING,
        )
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        raise CreationConflictError("Charge ID conflict")

    order = order_store.get_order(order.id)
    if claimed or order.omise_charge_id:
        # A losing writer returns the winner's charge
        return order

    raise StateConflictError(
        "Order status changed. Please refresh and try again.", details={"status": order.status}
    )


# =============================================================================
# CANCELLATION
# =============================================================================

def cancel_order(*, order_id: int, user: User) -> Order:
    """
    Cancel the caller's pending order.

    The upstream charge is cancelled best-effort; the order is cancelled
    regardless of the gateway's answer.

    Raises:
        NotFoundError, UnauthorizedError,
        StateConflictError: order is not pending (or was paid meanwhile)
    """
    order = _require_owner(order_store.get_order(order_id), user)

    if order.status != ORDER_STATUS_PENDING:
        raise StateConflictError("Only pending orders can be cancelled", details={"status": order.status})

    if order.omise_charge_id:
        try:
            result = get_gateway().cancel_charge(order.omise_charge_id)
            current_app.logger.info(
                "Omise charge %s cancel accepted (already_settled=%s)",
                order.omise_charge_id, result.already_settled,
            )
        except GatewayError as exc:
            current_app.logger.warning(
                "Failed to cancel Omise charge %s (%s): %s", order.omise_charge_id, exc.kind, exc.message
            )
    else:
        current_app.logger.info("Order %s has no charge; skipping gateway cancellation", order.id)

    result = cancel_pending_order(order.id, trigger=TRIGGER_CLIENT_CANCEL)
    if not result.transitioned:
        raise StateConflictError(
            "Only pending orders can be cancelled", details={"status": result.order.status}
        )
    return result.order


# =============================================================================
# READS
# =============================================================================

def get_order_detail(*, order_id: int, user: User) -> dict:
    order = order_store.get_order(order_id)
    if not order:
        raise NotFoundError("Order not found")
    if order.user_id != user.id and not user.is_admin:
        raise UnauthorizedError("Unauthorized")

    data = order.to_dict(include_items=True)
    data["keys"] = [key.to_dict() for key in order_store.get_order_keys(order.id)]
    return data


def list_orders(*, user: User) -> list[dict]:
    return [order.to_dict(include_items=True) for order in order_store.list_user_orders(user.id)]
