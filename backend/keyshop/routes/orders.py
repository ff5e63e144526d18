# Overview: Flask API routes for order checkout, reads and cancellation.

"""
Order API Routes

- POST /api/orders/create      create a pending order + PromptPay charge
- GET  /api/orders             caller's orders
- GET  /api/orders/<id>        order detail with issued keys
- POST /api/orders/<id>/cancel cancel a pending order
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import StorefrontError
from ..services import order_service
from ..validation import coerce_int, pick, require_payload, to_minor_units, MAX_QUANTITY


orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


@orders_bp.post("/create")
@require_auth
def create_order_route():
    """
    Create an order for one product.

    Request body:
    {
        "product_id": 3,
        "quantity": 2,
        "user_id": 7,
        "amount": "100.00"   (optional, total shown at checkout)
    }

    Returns:
        201: order with charge reference and QR image
        400: invalid input / insufficient stock / amount out of range / amount mismatch
        401: caller is not the subject user
        404: product not found
        409: creation conflict
        502/503: payment gateway failure
    """
    try:
        data = require_payload(request.get_json(silent=True))

        product_id = coerce_int(pick(data, "product_id", "productId"), "product_id", minimum=1)
        quantity = coerce_int(pick(data, "quantity"), "quantity", minimum=1, maximum=MAX_QUANTITY)
        user_id = coerce_int(pick(data, "user_id", "userId"), "user_id", minimum=1)
        amount = pick(data, "amount")
        client_amount = to_minor_units(amount) if amount is not None else None

        order = order_service.create_order(
            user=g.current_user,
            subject_user_id=user_id,
            product_id=product_id,
            quantity=quantity,
            client_amount_satang=client_amount,
        )

        return jsonify({
            "order_id": order.id,
            "order": order.to_dict(include_items=True),
        }), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("")
@require_auth
def list_orders_route():
    try:
        return jsonify({"orders": order_service.list_orders(user=g.current_user)}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to list orders")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.get("/<int:order_id>")
@require_auth
def get_order_route(order_id: int):
    try:
        return jsonify({"order": order_service.get_order_detail(order_id=order_id, user=g.current_user)}), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to load order")
        return jsonify({"error": "Internal server error"}), 500


@orders_bp.post("/<int:order_id>/cancel")
@require_auth
def cancel_order_route(order_id: int):
    """
    Cancel a pending order owned by the caller.

    Returns:
        200: cancelled
        401: not the owner
        404: order not found
        409: order is not pending
    """
    try:
        order = order_service.cancel_order(order_id=order_id, user=g.current_user)
        return jsonify({
            "success": True,
            "message": "Order cancelled successfully",
            "order": order.to_dict(),
        }), 200
    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to cancel order")
        return jsonify({"error": "Internal server error"}), 500
