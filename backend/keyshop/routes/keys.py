# Overview: Flask API routes for key verification (public) and admin key generation.

"""
Key API Routes

- GET  /api/keys/verify    public verify/activate endpoint used by game clients
- POST /api/keys/generate  admin: issue extra keys for a key-type order line
"""

from flask import Blueprint, request, jsonify, current_app

from ..decorators import client_ip, require_auth, require_role
from ..errors import StorefrontError
from ..models.auth import ROLE_ADMIN
from ..services import key_service
from ..time_utils import to_utc_z
from ..validation import coerce_int, coerce_str, pick, require_payload


keys_bp = Blueprint("keys", __name__, url_prefix="/api/keys")


def _arg(*names: str, max_length: int = 255) -> str | None:
    value = pick(request.args, *names)
    return coerce_str(value, names[0], required=False, max_length=max_length)


@keys_bp.get("/verify")
def verify_key_route():
    """
    Verify (and on first use, activate) a key.

    Query params:
    - key: key code (required, case-insensitive)
    - hwid, place_id, game_name, user_id, user_name: optional client context
      (camelCase aliases accepted)

    Returns:
        200: {"success": true, "key": {...}}
        400: invalid input / key inactive / key expired
        404: key not found
    """
    try:
        code = coerce_str(request.args.get("key"), "key", max_length=64)

        context = key_service.VerifyContext(
            hwid=_arg("hwid"),
            place_id=_arg("place_id", "placeId"),
            game_name=_arg("game_name", "gameName", "GameName"),
            user_id=_arg("user_id", "userId"),
            user_name=_arg("user_name", "userName"),
            ip_address=client_ip(),
            user_agent=request.headers.get("User-Agent") or "unknown",
        )

        view = key_service.activate_or_verify(code, context)
        return jsonify({"success": True, "key": view}), 200

    except StorefrontError as e:
        body = e.to_dict()
        body["success"] = False
        return jsonify(body), e.status_code
    except Exception:
        current_app.logger.exception("Failed to verify key")
        return jsonify({"error": "Internal server error", "success": False}), 500


@keys_bp.post("/generate")
@require_auth
@require_role(ROLE_ADMIN)
def generate_keys_route():
    """
    Request body:
    {
        "order_id": 12,
        "order_item_id": 30,
        "quantity": 1
    }
    """
    try:
        data = require_payload(request.get_json(silent=True))
        order_id = coerce_int(pick(data, "order_id", "orderId"), "order_id", minimum=1)
        order_item_id = coerce_int(pick(data, "order_item_id", "orderItemId"), "order_item_id", minimum=1)
        quantity = coerce_int(pick(data, "quantity"), "quantity", minimum=1, maximum=1000)

        keys = key_service.admin_generate_keys(order_id, order_item_id, quantity)

        return jsonify({
            "success": True,
            "keys": [
                {"id": k.id, "key": k.code, "expires_at": to_utc_z(k.expires_at)}
                for k in keys
            ],
        }), 201

    except StorefrontError as e:
        return jsonify(e.to_dict()), e.status_code
    except Exception:
        current_app.logger.exception("Failed to generate keys")
        return jsonify({"error": "Internal server error"}), 500
