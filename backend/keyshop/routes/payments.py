# Overview: Flask API routes for PromptPay payment requests and status polling.

"""
Payment API Routes

- POST /api/payments/create   return the order's charge, creating it if missing
- GET  /api/payments/status   poll order payment status (?order_id=&refresh=)
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..decorators import require_auth
from ..errors import StorefrontError
from ..services import order_service, payment_service
from ..time_utils import to_utc_z
from ..validation import coerce_bool, coerce_int, pick, require_payload, to_minor_units


payments_bp = Blueprint("payments", __name__, url_prefix="/api/payments")


@payments_bp.post("/create")
@require_auth
def create_payment_route():
    """
    Request body:
    {
        "order_id": 12,
        "amount": "100.00"
    }

    Returns:
        200: {charge_id, qr_code_url, expires_at}
        400: amount mismatch / out of range
        409: order not pending
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = coerce_int(pick(data, "order_id", "orderId"), "order_id", minimum=1)
        amount = to_minor_units(pick(data, "amount"))

        order = order_service.ensure_charge(order_id=order_id, user=g.current_user, client_amount_satang=amount)

        return jsonify({
            "order_id": order.id,
            "charge_id": order.omise_charge_id,
            "qr_code_url": order.qr_code_url,
            "expires_at": to_utc_z(order.charge_expires_at),
        }), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to create payment")
        return jsonify({"error": "Internal server error"}), 500


@payments_bp.get("/status")
@require_auth
def payment_status_route():
    """
    Query params:
    - order_id: order to check (required)
    - refresh: force a live gateway check while pending (default: false)
    """
    try:
        order_id = coerce_int(request.args.get("order_id") or request.args.get("orderId"), "order_id", minimum=1)
        refresh = coerce_bool(request.args.get("refresh"), "refresh")

        status = payment_service.get_payment_status(order_id, g.current_user, refresh=refresh)
        return jsonify(status), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to check payment status")
        return jsonify({"error": "Internal server error"}), 500
