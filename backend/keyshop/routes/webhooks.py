# Overview: Flask route receiving Omise webhook deliveries.

from flask import Blueprint, request, jsonify, current_app

from ..errors import StorefrontError
from ..services import webhook_service


webhooks_bp = Blueprint("webhooks", __name__, url_prefix="/api/webhooks")


@webhooks_bp.post("/omise")
def omise_webhook_route():
    """
    Receive a charge lifecycle event.

    The raw body is read before any JSON parsing so the signature covers
    exactly the bytes Omise signed.

    Returns:
        200: {"received": true, ...}
        400: malformed event
        401: signature rejected
        500: processing failed (Omise retries the delivery)
    """
    try:
        raw_body = request.get_data(cache=True)
        signature = request.headers.get("X-Omise-Signature")

        result = webhook_service.process_webhook(raw_body, signature)
        return jsonify(result), 200

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Error processing Omise webhook")
        return jsonify({"error": "Internal server error"}), 500
