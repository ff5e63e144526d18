# Overview: Domain error kinds shared by services and routes.

"""
Storefront error hierarchy.

Every failure the order/payment/key core can surface is a StorefrontError
subclass carrying:
- kind: stable machine-readable tag returned to clients
- status_code: HTTP status the blueprints answer with

Routes catch StorefrontError and serialize it with to_dict(); anything else
is logged and answered with a generic 500.
"""


class StorefrontError(Exception):
    """Base class for expected, client-reportable failures."""
    kind = "Error"
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"error": self.message, "kind": self.kind}
        if self.details:
            body["details"] = self.details
        return body


# =============================================================================
# BOUNDARY ERRORS
# =============================================================================

class UnauthorizedError(StorefrontError):
    """Caller is not the resource owner."""
    kind = "Unauthorized"
    status_code = 401


class ForbiddenError(StorefrontError):
    """Caller lacks the role an operation requires."""
    kind = "Forbidden"
    status_code = 403


class NotFoundError(StorefrontError):
    kind = "NotFound"
    status_code = 404


class InvalidInputError(StorefrontError):
    kind = "InvalidInput"
    status_code = 400


# =============================================================================
# CHECKOUT ERRORS
# =============================================================================

class InsufficientStockError(StorefrontError):
    kind = "InsufficientStock"
    status_code = 400


class AmountOutOfRangeError(StorefrontError):
    """Amount outside the gateway's accepted transaction range."""
    kind = "AmountOutOfRange"
    status_code = 400


class AmountMismatchError(StorefrontError):
    """Client-submitted amount disagrees with the server-computed total."""
    kind = "AmountMismatch"
    status_code = 400


class CreationConflictError(StorefrontError):
    kind = "CreationConflict"
    status_code = 409


class StateConflictError(StorefrontError):
    kind = "StateConflict"
    status_code = 409


# =============================================================================
# GATEWAY ERRORS
# =============================================================================

class GatewayError(StorefrontError):
    """Classified failure reported by (or talking to) the payment provider."""
    kind = "GatewayUnknown"
    status_code = 502

    def __init__(self, message: str, details: dict | None = None, http_status: int | None = None,
                 provider_code: str | None = None):
        super().__init__(message, details)
        self.http_status = http_status
        self.provider_code = provider_code


class GatewayAuthFailureError(GatewayError):
    kind = "GatewayAuthFailure"
    status_code = 502


class GatewayBadRequestError(GatewayError):
    kind = "GatewayBadRequest"
    status_code = 502


class GatewayRateLimitedError(GatewayError):
    kind = "GatewayRateLimited"
    status_code = 503


class GatewayUnknownError(GatewayError):
    kind = "GatewayUnknown"
    status_code = 502


# =============================================================================
# KEY ERRORS
# =============================================================================

class KeyGenerationExhaustedError(StorefrontError):
    kind = "KeyGenerationExhausted"
    status_code = 500


class KeyInactiveError(StorefrontError):
    kind = "KeyInactive"
    status_code = 400


class KeyExpiredError(StorefrontError):
    kind = "KeyExpired"
    status_code = 400


class InvalidPolicyError(StorefrontError):
    """Product expiry policy string cannot be parsed."""
    kind = "InvalidPolicy"
    status_code = 500
