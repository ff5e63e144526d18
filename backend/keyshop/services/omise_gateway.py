# Overview: Omise PromptPay adapter; charge creation, status polling and cancellation over HTTP.

"""
Payment Gateway Adapter (Omise)

WHY: Isolates every provider call behind three operations so the order and
confirmation services only ever see domain results and classified errors.

DESIGN:
- Amounts are integer satang; the PromptPay range [2000, 15_000_000] is
  enforced before any network call
- Charge + PromptPay source are created in ONE request (no source-then-charge race)
- metadata.order_id on the charge is the correlation key used by webhooks
- Provider error payloads are classified into auth / bad request / rate
  limited / unknown
- Cancelling a charge that already settled is a successful no-op
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

import httpx
from flask import current_app

from ..errors import (
    AmountOutOfRangeError,
    GatewayAuthFailureError,
    GatewayBadRequestError,
    GatewayError,
    GatewayRateLimitedError,
    GatewayUnknownError,
)
from ..time_utils import from_unix_or_iso
from ..validation import format_minor_units


MIN_CHARGE_SATANG = 2_000          # THB 20.00
MAX_CHARGE_SATANG = 15_000_000     # THB 150,000.00

CHARGE_STATUS_PENDING = "pending"
CHARGE_STATUS_SUCCESSFUL = "successful"
CHARGE_STATUS_FAILED = "failed"
CHARGE_STATUS_EXPIRED = "expired"

_AUTH_CODES = {"authentication_failure", "key_expired_error"}
_RATE_LIMIT_CODES = {"rate_limit", "too_many_requests"}
_BAD_REQUEST_CODES = {"bad_request", "not_found", "invalid_charge", "invalid_amount",
                      "invalid_card", "used_token", "missing_card", "failed_capture"}

# Cancellation responses meaning "already paid / already cancelled"
_ALREADY_SETTLED_MARKERS = ("already", "cannot be cancelled", "paid")


@dataclass(frozen=True)
class ChargeResult:
    charge_id: str
    status: str
    paid: bool
    qr_code_url: str | None
    expires_at: datetime | None
    amount_satang: int | None
    authorize_uri: str | None = None


@dataclass(frozen=True)
class ChargeStatus:
    charge_id: str
    status: str
    paid: bool
    paid_at: datetime | None
    expires_at: datetime | None
    amount_satang: int | None
    source_charge_status: str | None = None


@dataclass(frozen=True)
class CancelResult:
    charge_id: str
    accepted: bool
    status: str | None = None
    already_settled: bool = False


def validate_charge_amount(amount_satang: int) -> None:
    """
    Enforce the PromptPay transaction range.

    Raises:
        AmountOutOfRangeError: below THB 20.00 or above THB 150,000.00
    """
    if amount_satang < MIN_CHARGE_SATANG:
        raise AmountOutOfRangeError(
            f"Amount must be at least THB{format_minor_units(MIN_CHARGE_SATANG)}",
            details={"amount_satang": amount_satang, "min_satang": MIN_CHARGE_SATANG},
        )
    if amount_satang > MAX_CHARGE_SATANG:
        raise AmountOutOfRangeError(
            f"Amount must not exceed THB{format_minor_units(MAX_CHARGE_SATANG)}",
            details={"amount_satang": amount_satang, "max_satang": MAX_CHARGE_SATANG},
        )


def classify_error(http_status: int, payload: dict | None) -> GatewayError:
    """Map a non-2xx provider response to a domain gateway error."""
    payload = payload or {}
    code = str(payload.get("code") or "").lower()
    message = payload.get("message") or f"Omise API returned status {http_status}"
    details = {"provider_code": code or None, "http_status": http_status}

    if http_status == 401 or code in _AUTH_CODES:
        cls = GatewayAuthFailureError
    elif http_status == 429 or code in _RATE_LIMIT_CODES:
        cls = GatewayRateLimitedError
    elif http_status in (400, 404, 422) or code in _BAD_REQUEST_CODES or code.startswith("invalid_"):
        cls = GatewayBadRequestError
    else:
        cls = GatewayUnknownError

    return cls(message, details=details, http_status=http_status, provider_code=code or None)


def _scannable_image_uri(charge: dict) -> str | None:
    source = charge.get("source") or {}
    image = (source.get("scannable_code") or {}).get("image") or {}
    return image.get("download_uri")


class OmiseGateway:
    """
    Flask extension wrapping the Omise REST API.

    A transport may be supplied (httpx.MockTransport in tests).
    """

    def __init__(self, app=None, *, transport: httpx.BaseTransport | None = None):
        self._transport = transport
        if app is not None:
            self.init_app(app)

    def init_app(self, app) -> None:
        app.config.setdefault("OMISE_API_URL", "https://api.omise.co")
        app.config.setdefault("OMISE_TIMEOUT_SECONDS", 15.0)
        app.config.setdefault("STOREFRONT_CURRENCY", "THB")
        app.extensions["omise_gateway"] = self

    # -------------------------------------------------------------------------
    # HTTP plumbing
    # -------------------------------------------------------------------------

    def _client(self) -> httpx.Client:
        secret_key = current_app.config.get("OMISE_SECRET_KEY")
        if not secret_key:
            raise GatewayAuthFailureError("OMISE_SECRET_KEY is not set")

        return httpx.Client(
            base_url=current_app.config["OMISE_API_URL"],
            auth=(secret_key, ""),
            timeout=current_app.config["OMISE_TIMEOUT_SECONDS"],
            transport=self._transport,
        )

    def _request(self, method: str, path: str, *, json: dict | None = None) -> dict:
        try:
            with self._client() as client:
                response = client.request(method, path, json=json)
        except httpx.HTTPError as exc:
            current_app.logger.warning("Omise request %s %s failed: %s", method, path, exc)
            raise GatewayUnknownError(f"Omise request failed: {exc.__class__.__name__}")

        if response.is_success:
            return response.json()

        try:
            payload = response.json()
        except ValueError:
            payload = {"message": f"Omise API returned status {response.status_code}",
                       "code": str(response.status_code)}

        error = classify_error(response.status_code, payload)
        current_app.logger.warning(
            "Omise API error on %s %s: status=%s code=%s message=%s",
            method, path, response.status_code, error.provider_code, error.message,
        )
        raise error

    # -------------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------------

    def create_charge(self, *, amount_satang: int, order_id: int | str,
                      description: str | None = None) -> ChargeResult:
        """
        Create a PromptPay charge for an order.

        Raises:
            AmountOutOfRangeError: before any network call
            GatewayError: classified provider failure
        """
        validate_charge_amount(amount_satang)

        body = {
            "amount": amount_satang,
            "currency": current_app.config["STOREFRONT_CURRENCY"],
            "source": {"type": "promptpay"},
            "metadata": {"order_id": str(order_id)},
        }
        if description:
            body["description"] = description

        charge = self._request("POST", "/charges", json=body)

        return ChargeResult(
            charge_id=charge["id"],
            status=charge.get("status") or CHARGE_STATUS_PENDING,
            paid=charge.get("paid") is True,
            qr_code_url=_scannable_image_uri(charge),
            expires_at=from_unix_or_iso(charge.get("expires_at")),
            amount_satang=charge.get("amount"),
            authorize_uri=charge.get("authorize_uri"),
        )

    def get_charge_status(self, charge_id: str) -> ChargeStatus:
        """Read-only poll of a charge."""
        charge = self._request("GET", f"/charges/{charge_id}")
        return ChargeStatus(
            charge_id=charge.get("id", charge_id),
            status=charge.get("status") or CHARGE_STATUS_PENDING,
            paid=charge.get("paid") is True,
            paid_at=from_unix_or_iso(charge.get("paid_at")),
            expires_at=from_unix_or_iso(charge.get("expires_at")),
            amount_satang=charge.get("amount"),
            source_charge_status=(charge.get("source") or {}).get("charge_status"),
        )

    def cancel_charge(self, charge_id: str) -> CancelResult:
        """
        Ask the provider to fail a pending charge.

        "Already paid / already cancelled" responses are accepted as a no-op:
        cancellation always races settlement.
        """
        if not charge_id:
            raise GatewayBadRequestError("Charge ID is required")

        try:
            charge = self._request("POST", f"/charges/{charge_id}/mark_as_failed")
        except GatewayBadRequestError as exc:
            message = (exc.message or "").lower()
            if any(marker in message for marker in _ALREADY_SETTLED_MARKERS):
                current_app.logger.info("Charge %s already processed; cancel is a no-op", charge_id)
                return CancelResult(charge_id=charge_id, accepted=True, already_settled=True)
            raise

        return CancelResult(charge_id=charge_id, accepted=True, status=charge.get("status"))


def get_gateway() -> OmiseGateway:
    """Gateway bound to the current app (tests swap in a fake)."""
    return current_app.extensions["omise_gateway"]
