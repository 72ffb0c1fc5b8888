import json

import httpx
import pytest

from restopay.config import PayPalConfig
from restopay.payments.callbacks import CallbackProcessor
from restopay.payments.errors import CaptureFailed, GatewayUnavailable, InvalidSignature, PaymentRejected
from restopay.payments.gateways.paypal import PayPalGateway
from restopay.payments.models import CallbackRequest, OrderStatus, PaymentStatus
from restopay.payments.registry import GatewayRegistry
from restopay.payments.service import PaymentOrchestrator


@pytest.fixture
def processor(orchestrator):
    return CallbackProcessor(orchestrator)


@pytest.fixture
def intent(orchestrator, order, fake_user):
    return orchestrator.create_intent(order_id="order-1", user=fake_user, policy="full_service", gateway_id="fake")


def _request(payload, signer, signature=None, kind="webhook"):
    body = json.dumps(payload).encode()
    headers = {"X-Fake-Signature": signature if signature is not None else signer(body)}
    return CallbackRequest(method="POST", headers=headers, body=body, kind=kind, remote_addr="10.0.0.1")


def test_verified_callback_applies_result(processor, intent, signer, store):
    ref = intent.invoice.transaction_ref
    outcome = processor.handle("fake", _request({"ref": ref, "status": "completed"}, signer))
    assert outcome.status == "accepted"
    assert outcome.payment_status is PaymentStatus.COMPLETED
    assert outcome.order_paid is True
    assert store.get_order("order-1").status is OrderStatus.PAID


def test_replayed_callback_is_a_noop(processor, intent, signer, store):
    req = _request({"ref": intent.invoice.transaction_ref, "status": "completed"}, signer)
    processor.handle("fake", req)
    again = processor.handle("fake", req)
    assert again.status == "noop"
    assert again.order_paid is False
    events = [e.event for e in store.get_invoice(intent.invoice.id).audit_trail]
    assert events.count("status_applied") == 1


def test_forged_callback_never_reaches_the_store(processor, intent, signer, store, caplog):
    before = store.get_invoice(intent.invoice.id)
    req = _request({"ref": intent.invoice.transaction_ref, "status": "completed"}, signer, signature="0" * 64)
    with pytest.raises(InvalidSignature):
        processor.handle("fake", req)
    after = store.get_invoice(intent.invoice.id)
    assert after.payment_status is PaymentStatus.PENDING
    assert len(after.audit_trail) == len(before.audit_trail)
    assert store.get_order("order-1").status is OrderStatus.PENDING
    assert req.body_digest() in caplog.text


def test_unknown_reference_is_acknowledged_as_ignored(processor, order, signer):
    outcome = processor.handle("fake", _request({"ref": "unknown-ref-999", "status": "completed"}, signer))
    assert outcome.status == "ignored"


def test_event_without_reference_is_ignored(processor, intent, signer):
    outcome = processor.handle("fake", _request({"status": "completed"}, signer))
    assert outcome.status == "ignored"


def test_unavailable_gateway_during_verification_is_retryable(processor, fake_gateway, intent, signer, monkeypatch):
    def _down(request):
        raise GatewayUnavailable("timeout", gateway="fake")

    monkeypatch.setattr(fake_gateway, "verify_callback", _down)
    with pytest.raises(GatewayUnavailable):
        processor.handle("fake", _request({"ref": "x"}, signer))


def test_non_retryable_gateway_error_during_verification_becomes_capture_failed(processor, fake_gateway, intent, signer, monkeypatch):
    def _rejected(request):
        raise PaymentRejected("order not approved", gateway="fake")

    monkeypatch.setattr(fake_gateway, "verify_callback", _rejected)
    with pytest.raises(CaptureFailed):
        processor.handle("fake", _request({"ref": "x"}, signer))


class PayPalSandbox:
    """Ordres PayPal en mémoire: CREATED -> APPROVED (acheteur) -> COMPLETED (capture)."""

    def __init__(self):
        self.orders = {}
        self.captures = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "A21", "expires_in": 3600})
        if path == "/v2/checkout/orders":
            order_id = f"PPORDER{len(self.orders) + 1:04d}"
            self.orders[order_id] = "CREATED"
            return httpx.Response(201, json={
                "id": order_id, "status": "CREATED",
                "links": [{"rel": "approve", "href": f"https://paypal.test/approve/{order_id}"}],
            })
        order_id = path.split("/")[4] if path.startswith("/v2/checkout/orders/") else None
        if order_id not in self.orders:
            return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND", "details": [{"issue": "INVALID_RESOURCE_ID"}]})
        if path.endswith("/capture"):
            self.captures.append(order_id)
            self.orders[order_id] = "COMPLETED"
        return httpx.Response(200, json={
            "id": order_id,
            "status": self.orders[order_id],
            "purchase_units": [{"amount": {"currency_code": "USD", "value": "134.00"}}],
        })


@pytest.fixture
def paypal_sandbox():
    return PayPalSandbox()


@pytest.fixture
def paypal_orchestrator(store, settings, paypal_sandbox):
    gateway = PayPalGateway(
        PayPalConfig(client_id="cid", client_secret="secret"),
        client=httpx.Client(transport=httpx.MockTransport(paypal_sandbox)),
    )
    gateway.retry_delay = 0
    return PaymentOrchestrator(store=store, registry=GatewayRegistry([gateway]), settings=settings)


def _paypal_redirect(kind, token):
    return CallbackRequest(method="GET", query={"token": token}, kind=kind)


def test_paypal_cancel_then_approval_captures_and_pays(paypal_orchestrator, paypal_sandbox, order, fake_user, store):
    processor = CallbackProcessor(paypal_orchestrator)
    invoice = paypal_orchestrator.create_intent(
        order_id="order-1", user=fake_user, policy="full_service", gateway_id="paypal",
    ).invoice
    token = invoice.transaction_ref

    cancelled = processor.handle("paypal", _paypal_redirect("cancel", token))
    assert cancelled.status == "noop"
    assert store.get_invoice(invoice.id).payment_status is PaymentStatus.PENDING
    assert store.get_order("order-1").status is OrderStatus.PENDING
    assert paypal_sandbox.captures == []

    paypal_sandbox.orders[token] = "APPROVED"
    returned = processor.handle("paypal", _paypal_redirect("return", token))
    assert returned.status == "accepted"
    assert returned.order_paid is True
    assert paypal_sandbox.captures == [token]
    assert store.get_order("order-1").status is OrderStatus.PAID


def test_paypal_return_on_closed_invoice_is_not_captured(paypal_orchestrator, paypal_sandbox, order, fake_user, store):
    processor = CallbackProcessor(paypal_orchestrator)
    invoice = paypal_orchestrator.create_intent(
        order_id="order-1", user=fake_user, policy="full_service", gateway_id="paypal",
    ).invoice
    paypal_orchestrator.apply_result(invoice.transaction_ref, PaymentStatus.CANCELLED, {}, gateway="paypal")
    trail = len(store.get_invoice(invoice.id).audit_trail)

    paypal_sandbox.orders[invoice.transaction_ref] = "APPROVED"
    outcome = processor.handle("paypal", _paypal_redirect("return", invoice.transaction_ref))
    assert outcome.status == "noop"
    assert outcome.payment_status is PaymentStatus.CANCELLED
    assert paypal_sandbox.captures == []
    assert len(store.get_invoice(invoice.id).audit_trail) == trail


def test_paypal_return_for_unknown_order_is_refused_without_capture(paypal_orchestrator, paypal_sandbox, order):
    paypal_sandbox.orders["PPFOREIGN"] = "APPROVED"
    with pytest.raises(CaptureFailed):
        CallbackProcessor(paypal_orchestrator).handle("paypal", _paypal_redirect("return", "PPFOREIGN"))
    assert paypal_sandbox.captures == []
