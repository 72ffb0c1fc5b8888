import json
from decimal import Decimal

import httpx
import pytest

from restopay.config import PayPalConfig
from restopay.payments.errors import CaptureFailed, GatewayNotConfigured, GatewayUnavailable, InvalidSignature
from restopay.payments.gateways.paypal import PayPalGateway
from restopay.payments.models import CallbackRequest, PaymentStatus


def _order(order_id="PP-ORDER-1", status="COMPLETED", capture_status="COMPLETED", value="134.00"):
    return {
        "id": order_id,
        "status": status,
        "purchase_units": [{
            "amount": {"currency_code": "USD", "value": value},
            "payments": {"captures": [{"status": capture_status, "amount": {"currency_code": "USD", "value": value}}]},
        }],
    }


class PayPalStub:
    """Routeur minimal des endpoints PayPal utilisés par la passerelle."""

    def __init__(self):
        self.requests = []
        self.routes = {}

    def on(self, method, path, *responses):
        self.routes[(method, path)] = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def paths(self):
        return [r.url.path for r in self.requests]


@pytest.fixture
def stub():
    return PayPalStub()


def _gateway(stub, **kw):
    values = dict(client_id="cid", client_secret="secret", webhook_id="WH-1")
    values.update(kw)
    gw = PayPalGateway(PayPalConfig(**values), client=httpx.Client(transport=httpx.MockTransport(stub)))
    gw.retry_delay = 0
    return gw


def test_create_payment_returns_approve_link(stub):
    stub.on("POST", "/v2/checkout/orders", httpx.Response(201, json={
        "id": "PP-ORDER-1",
        "status": "CREATED",
        "links": [{"rel": "self", "href": "https://x/self"}, {"rel": "approve", "href": "https://paypal.test/approve"}],
    }))
    gw = _gateway(stub)
    result = gw.create_payment(
        amount=Decimal("134.00"), currency="usd", description="Commande order-1",
        return_url="http://testserver/success", cancel_url="http://testserver/cancel",
        metadata={"order_id": "order-1"}, idempotency_key="inv-1",
    )
    assert result.transaction_ref == "PP-ORDER-1"
    assert result.next_action == {"type": "redirect", "url": "https://paypal.test/approve"}
    create = stub.requests[-1]
    assert create.headers["PayPal-Request-Id"] == "inv-1"
    body = json.loads(create.content)
    assert body["purchase_units"][0]["amount"] == {"currency_code": "USD", "value": "134.00"}
    assert body["purchase_units"][0]["invoice_id"] == "inv-1"


def test_oauth_token_is_cached(stub):
    stub.on("GET", "/v2/checkout/orders/PP-ORDER-1", httpx.Response(200, json=_order(status="APPROVED")))
    gw = _gateway(stub)
    gw.verify_payment("PP-ORDER-1")
    gw.verify_payment("PP-ORDER-1")
    assert stub.paths().count("/v1/oauth2/token") == 1


def test_unconfigured_gateway_refuses_to_call():
    gw = PayPalGateway(PayPalConfig(client_id="", client_secret=""))
    with pytest.raises(GatewayNotConfigured):
        gw.access_token()


def test_return_capture_completes(stub):
    stub.on("POST", "/v2/checkout/orders/PP-ORDER-1/capture", httpx.Response(201, json=_order()))
    gw = _gateway(stub)
    payload = gw.verify_callback(CallbackRequest(method="GET", query={"token": "PP-ORDER-1"}, kind="return"))
    result = gw.handle_callback(payload)
    assert result.status is PaymentStatus.COMPLETED
    assert result.transaction_ref == "PP-ORDER-1"
    assert result.amount == Decimal("134.00")


def test_forged_token_fails_capture(stub):
    stub.on("POST", "/v2/checkout/orders/FORGED/capture", httpx.Response(404, json={
        "name": "RESOURCE_NOT_FOUND", "details": [{"issue": "INVALID_RESOURCE_ID"}],
    }))
    gw = _gateway(stub)
    with pytest.raises(CaptureFailed):
        gw.verify_callback(CallbackRequest(method="GET", query={"token": "FORGED"}, kind="return"))


def test_missing_token_fails_capture(stub):
    with pytest.raises(CaptureFailed):
        _gateway(stub).verify_callback(CallbackRequest(method="GET", kind="return"))


def test_already_captured_reads_order(stub):
    stub.on("POST", "/v2/checkout/orders/PP-ORDER-1/capture", httpx.Response(422, json={
        "name": "UNPROCESSABLE_ENTITY", "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
    }))
    stub.on("GET", "/v2/checkout/orders/PP-ORDER-1", httpx.Response(200, json=_order()))
    gw = _gateway(stub)
    order = gw.capture("PP-ORDER-1")
    assert order["status"] == "COMPLETED"
    assert stub.paths()[-1] == "/v2/checkout/orders/PP-ORDER-1"


def test_capture_retries_on_503_then_succeeds(stub):
    stub.on(
        "POST", "/v2/checkout/orders/PP-ORDER-1/capture",
        httpx.Response(503), httpx.Response(503), httpx.Response(201, json=_order()),
    )
    gw = _gateway(stub)
    assert gw.capture("PP-ORDER-1")["status"] == "COMPLETED"
    assert stub.paths().count("/v2/checkout/orders/PP-ORDER-1/capture") == 3


def test_capture_gives_up_after_two_retries(stub):
    stub.on("POST", "/v2/checkout/orders/PP-ORDER-1/capture", httpx.Response(503))
    gw = _gateway(stub)
    with pytest.raises(GatewayUnavailable):
        gw.verify_callback(CallbackRequest(method="GET", query={"token": "PP-ORDER-1"}, kind="return"))
    assert stub.paths().count("/v2/checkout/orders/PP-ORDER-1/capture") == 3


def test_cancel_return_leaves_approvable_order_pending(stub):
    stub.on("GET", "/v2/checkout/orders/PP-ORDER-1", httpx.Response(200, json=_order(status="APPROVED", capture_status=None)))
    gw = _gateway(stub)
    payload = gw.verify_callback(CallbackRequest(method="GET", query={"token": "PP-ORDER-1"}, kind="cancel"))
    assert gw.handle_callback(payload).status is PaymentStatus.PENDING
    assert not any(p.endswith("/capture") for p in stub.paths())


def test_cancel_return_on_voided_order_is_cancelled(stub):
    stub.on("GET", "/v2/checkout/orders/PP-ORDER-1", httpx.Response(200, json=_order(status="VOIDED", capture_status=None)))
    gw = _gateway(stub)
    payload = gw.verify_callback(CallbackRequest(method="GET", query={"token": "PP-ORDER-1"}, kind="cancel"))
    assert gw.handle_callback(payload).status is PaymentStatus.CANCELLED


@pytest.mark.parametrize("request_,expected", [
    (CallbackRequest(method="GET", query={"token": " PP-ORDER-1 "}, kind="return"), "PP-ORDER-1"),
    (CallbackRequest(method="GET", query={"token": "PP-ORDER-1"}, kind="cancel"), None),
    (CallbackRequest(method="GET", kind="return"), None),
    (CallbackRequest(method="POST", body=json.dumps({
        "event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "PP-ORDER-1"},
    }).encode()), "PP-ORDER-1"),
    (CallbackRequest(method="POST", body=json.dumps({"event_type": "PAYMENT.CAPTURE.COMPLETED"}).encode()), None),
    (CallbackRequest(method="POST", body=b"not json"), None),
])
def test_capture_reference_only_for_fund_moving_callbacks(stub, request_, expected):
    assert _gateway(stub).capture_reference(request_) == expected
    assert stub.requests == []


def _webhook(event, headers=None):
    default = {
        "PAYPAL-AUTH-ALGO": "SHA256withRSA",
        "PAYPAL-CERT-URL": "https://api.paypal.com/cert",
        "PAYPAL-TRANSMISSION-ID": "tx-1",
        "PAYPAL-TRANSMISSION-SIG": "sig",
        "PAYPAL-TRANSMISSION-TIME": "2024-01-01T00:00:00Z",
    }
    return CallbackRequest(method="POST", headers=headers if headers is not None else default, body=json.dumps(event).encode())


def test_webhook_without_webhook_id_is_rejected(stub):
    gw = _gateway(stub, webhook_id="")
    with pytest.raises(InvalidSignature):
        gw.verify_callback(_webhook({"event_type": "CHECKOUT.ORDER.APPROVED"}))
    assert stub.requests == []


def test_webhook_without_signature_headers_is_rejected(stub):
    with pytest.raises(InvalidSignature):
        _gateway(stub).verify_callback(_webhook({"event_type": "CHECKOUT.ORDER.APPROVED"}, headers={}))


def test_webhook_failed_verification_is_rejected(stub):
    stub.on("POST", "/v1/notifications/verify-webhook-signature", httpx.Response(200, json={"verification_status": "FAILURE"}))
    with pytest.raises(InvalidSignature):
        _gateway(stub).verify_callback(_webhook({"event_type": "CHECKOUT.ORDER.APPROVED", "resource": {"id": "PP-ORDER-1"}}))


def test_verified_capture_completed_webhook_reads_order(stub):
    stub.on("POST", "/v1/notifications/verify-webhook-signature", httpx.Response(200, json={"verification_status": "SUCCESS"}))
    stub.on("GET", "/v2/checkout/orders/PP-ORDER-1", httpx.Response(200, json=_order()))
    gw = _gateway(stub)
    event = {
        "event_type": "PAYMENT.CAPTURE.COMPLETED",
        "resource": {"id": "CAP-1", "supplementary_data": {"related_ids": {"order_id": "PP-ORDER-1"}}},
    }
    payload = gw.verify_callback(_webhook(event))
    result = gw.handle_callback(payload)
    assert result.status is PaymentStatus.COMPLETED
    assert result.transaction_ref == "PP-ORDER-1"
    verification = json.loads(next(r for r in stub.requests if r.url.path.endswith("verify-webhook-signature")).content)
    assert verification["webhook_id"] == "WH-1"
    assert verification["transmission_id"] == "tx-1"


def test_declined_capture_maps_to_failed(stub):
    stub.on("GET", "/v2/checkout/orders/PP-ORDER-1", httpx.Response(200, json=_order(capture_status="DECLINED")))
    assert _gateway(stub).verify_payment("PP-ORDER-1").status is PaymentStatus.FAILED
