"""
Omise adapter tests.

The real OmiseGateway runs against httpx.MockTransport, so request shape,
error classification and the "already settled" cancel path are exercised
without network access.
"""

import json

import httpx
import pytest

from keyshop.errors import (
    AmountOutOfRangeError,
    GatewayAuthFailureError,
    GatewayBadRequestError,
    GatewayRateLimitedError,
    GatewayUnknownError,
)
from keyshop.services.omise_gateway import (
    OmiseGateway,
    classify_error,
    validate_charge_amount,
)
from keyshop.validation import to_minor_units


PROMPTPAY_CHARGE = {
    "object": "charge",
    "id": "chrg_test_5x1",
    "amount": 5000,
    "currency": "thb",
    "status": "pending",
    "paid": False,
    "expires_at": "2026-10-19T09:00:00Z",
    "source": {
        "type": "promptpay",
        "scannable_code": {"image": {"download_uri": "https://api.omise.co/charges/chrg_test_5x1/documents/qr"}},
    },
}


def _gateway(handler):
    return OmiseGateway(transport=httpx.MockTransport(handler))


class TestAmountRange:

    @pytest.mark.parametrize("amount", ["19.99", "150000.01"])
    def test_out_of_range_rejected(self, amount):
        with pytest.raises(AmountOutOfRangeError):
            validate_charge_amount(to_minor_units(amount))

    @pytest.mark.parametrize("amount", ["20.00", "150000.00"])
    def test_bounds_accepted(self, amount):
        validate_charge_amount(to_minor_units(amount))

    def test_out_of_range_makes_no_network_call(self, app):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json=PROMPTPAY_CHARGE)

        with pytest.raises(AmountOutOfRangeError):
            _gateway(handler).create_charge(amount_satang=1_999, order_id=1)
        assert calls == []


class TestCreateCharge:

    def test_single_request_with_promptpay_source_and_metadata(self, app):
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(200, json=PROMPTPAY_CHARGE)

        result = _gateway(handler).create_charge(amount_satang=5000, order_id=42, description="Script Key x2")

        assert len(seen) == 1
        request = seen[0]
        assert request.method == "POST"
        assert request.url.path == "/charges"
        assert request.headers["Authorization"].startswith("Basic ")
        body = json.loads(request.content)
        assert body["amount"] == 5000
        assert body["currency"] == "THB"
        assert body["source"] == {"type": "promptpay"}
        assert body["metadata"] == {"order_id": "42"}

        assert result.charge_id == "chrg_test_5x1"
        assert result.paid is False
        assert result.qr_code_url.endswith("/documents/qr")
        assert result.expires_at is not None

    def test_missing_secret_is_auth_failure(self, app):
        gateway = _gateway(lambda request: httpx.Response(200, json=PROMPTPAY_CHARGE))
        original = app.config["OMISE_SECRET_KEY"]
        app.config["OMISE_SECRET_KEY"] = None
        try:
            with pytest.raises(GatewayAuthFailureError):
                gateway.create_charge(amount_satang=5000, order_id=1)
        finally:
            app.config["OMISE_SECRET_KEY"] = original

    def test_transport_error_is_unknown(self, app):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        with pytest.raises(GatewayUnknownError):
            _gateway(handler).create_charge(amount_satang=5000, order_id=1)

    @pytest.mark.parametrize("status,payload,expected", [
        (401, {"object": "error", "code": "authentication_failure", "message": "authentication failed"},
         GatewayAuthFailureError),
        (400, {"object": "error", "code": "invalid_amount", "message": "amount is invalid"},
         GatewayBadRequestError),
        (429, {"object": "error", "code": "rate_limit", "message": "too many requests"},
         GatewayRateLimitedError),
        (500, {"object": "error", "code": "internal_error", "message": "boom"},
         GatewayUnknownError),
    ])
    def test_provider_errors_are_classified(self, app, status, payload, expected):
        gateway = _gateway(lambda request: httpx.Response(status, json=payload))
        with pytest.raises(expected) as exc_info:
            gateway.create_charge(amount_satang=5000, order_id=1)
        assert exc_info.value.http_status == status


class TestClassifyError:

    def test_code_wins_over_generic_status(self):
        error = classify_error(500, {"code": "key_expired_error", "message": "expired key"})
        assert isinstance(error, GatewayAuthFailureError)
        assert error.provider_code == "key_expired_error"

    def test_empty_payload(self):
        error = classify_error(502, None)
        assert isinstance(error, GatewayUnknownError)
        assert "502" in error.message


class TestChargeStatusAndCancel:

    def test_get_charge_status(self, app):
        paid_charge = dict(PROMPTPAY_CHARGE, status="successful", paid=True, paid_at="2026-10-18T09:05:00Z")

        def handler(request):
            assert request.method == "GET"
            assert request.url.path == "/charges/chrg_test_5x1"
            return httpx.Response(200, json=paid_charge)

        status = _gateway(handler).get_charge_status("chrg_test_5x1")
        assert status.paid is True
        assert status.status == "successful"
        assert status.amount_satang == 5000

    def test_cancel_pending_charge(self, app):
        def handler(request):
            assert request.url.path == "/charges/chrg_test_5x1/mark_as_failed"
            return httpx.Response(200, json=dict(PROMPTPAY_CHARGE, status="failed"))

        result = _gateway(handler).cancel_charge("chrg_test_5x1")
        assert result.accepted is True
        assert result.already_settled is False
        assert result.status == "failed"

    def test_cancel_already_paid_is_noop(self, app):
        payload = {"object": "error", "code": "bad_request", "message": "charge is already paid"}
        result = _gateway(lambda request: httpx.Response(400, json=payload)).cancel_charge("chrg_test_5x1")
        assert result.accepted is True
        assert result.already_settled is True

    def test_cancel_other_bad_request_propagates(self, app):
        payload = {"object": "error", "code": "not_found", "message": "charge chrg_x was not found"}
        with pytest.raises(GatewayBadRequestError):
            _gateway(lambda request: httpx.Response(404, json=payload)).cancel_charge("chrg_x")
