import hashlib
import hmac
import json
import time
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from restopay.config import StripeConfig
from restopay.payments.errors import (
    DuplicateIntent,
    GatewayNotConfigured,
    GatewayUnavailable,
    InvalidSignature,
    PaymentRejected,
)
from restopay.payments.gateways.stripe_client import StripeGateway
from restopay.payments.models import CallbackRequest, PaymentStatus

WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture
def gateway():
    gw = StripeGateway(StripeConfig(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET, public_key="pk_test_123"))
    gw.retry_delay = 0
    return gw


def _signed(event, secret=WEBHOOK_SECRET, timestamp=None):
    payload = json.dumps(event)
    ts = int(timestamp if timestamp is not None else time.time())
    sig = hmac.new(secret.encode(), f"{ts}.{payload}".encode(), hashlib.sha256).hexdigest()
    return CallbackRequest(
        method="POST",
        headers={"Stripe-Signature": f"t={ts},v1={sig}"},
        body=payload.encode(),
    )


def _event(event_type="payment_intent.succeeded", **intent):
    obj = {"id": "pi_123", "object": "payment_intent", "amount": 13400, "currency": "usd", "status": "succeeded"}
    obj.update(intent)
    return {"id": "evt_1", "object": "event", "type": event_type, "data": {"object": obj}}


def test_create_payment_uses_invoice_id_as_idempotency_key(gateway, monkeypatch):
    captured = {}

    def fake_create(**kwargs):
        captured.update(kwargs)
        return {"id": "pi_123", "client_secret": "pi_123_secret_abc", "status": "requires_payment_method"}

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    result = gateway.create_payment(
        amount=Decimal("134.00"), currency="USD", description="Commande order-1",
        return_url="r", cancel_url="c", customer={"email": "a@b.c"},
        metadata={"order_id": "order-1", "invoice_id": "inv-1"}, idempotency_key="inv-1",
    )
    assert captured["idempotency_key"] == "inv-1"
    assert captured["amount"] == 13400
    assert captured["currency"] == "usd"
    assert captured["metadata"] == {"order_id": "order-1", "invoice_id": "inv-1"}
    assert captured["receipt_email"] == "a@b.c"
    assert result.transaction_ref == "pi_123"
    assert result.next_action == {"type": "client_secret", "client_secret": "pi_123_secret_abc", "publishable_key": "pk_test_123"}


def test_missing_secret_key_is_not_configured():
    gw = StripeGateway(StripeConfig(secret_key="", webhook_secret=""))
    with pytest.raises(GatewayNotConfigured):
        gw.verify_payment("pi_123")


@pytest.mark.parametrize("exc,expected", [
    (stripe.CardError("Your card was declined.", None, "card_declined"), PaymentRejected),
    (stripe.InvalidRequestError("No such customer", "customer"), PaymentRejected),
    (stripe.IdempotencyError("Keys for idempotent requests can only be used with the same parameters"), DuplicateIntent),
    (stripe.APIConnectionError("Network error"), GatewayUnavailable),
])
def test_sdk_errors_are_mapped(gateway, monkeypatch, exc, expected):
    calls = []

    def fake_create(**kwargs):
        calls.append(kwargs)
        raise exc

    monkeypatch.setattr(stripe.PaymentIntent, "create", fake_create)
    with pytest.raises(expected):
        gateway.create_payment(
            amount=Decimal("10.00"), currency="USD", description="d", return_url="r", cancel_url="c",
            idempotency_key="inv-1",
        )
    # seules les indisponibilités sont retentées
    assert len(calls) == (3 if expected is GatewayUnavailable else 1)


def test_signed_webhook_is_accepted(gateway):
    payload = gateway.verify_callback(_signed(_event()))
    result = gateway.handle_callback(payload)
    assert result.status is PaymentStatus.COMPLETED
    assert result.transaction_ref == "pi_123"
    assert result.amount == Decimal("134")
    assert result.currency == "USD"


def test_payment_failed_event_keeps_error_message(gateway):
    event = _event("payment_intent.payment_failed", status="requires_payment_method",
                   last_payment_error={"message": "Insufficient funds"})
    result = gateway.handle_callback(gateway.verify_callback(_signed(event)))
    assert result.status is PaymentStatus.FAILED
    assert result.raw["error"] == "Insufficient funds"


def test_unhandled_event_type_is_pending(gateway):
    result = gateway.handle_callback(gateway.verify_callback(_signed(_event("charge.refunded"))))
    assert result.status is PaymentStatus.PENDING


def test_bad_signature_is_rejected(gateway):
    with pytest.raises(InvalidSignature):
        gateway.verify_callback(_signed(_event(), secret="whsec_other"))


def test_stale_timestamp_is_rejected(gateway):
    with pytest.raises(InvalidSignature):
        gateway.verify_callback(_signed(_event(), timestamp=time.time() - 3600))


def test_missing_header_and_browser_returns_are_rejected(gateway):
    with pytest.raises(InvalidSignature):
        gateway.verify_callback(CallbackRequest(method="POST", body=b"{}"))
    with pytest.raises(InvalidSignature):
        gateway.verify_callback(CallbackRequest(method="GET", query={"payment_intent": "pi_123"}, kind="return"))


@pytest.mark.parametrize("intent,expected", [
    ({"status": "succeeded"}, PaymentStatus.COMPLETED),
    ({"status": "canceled"}, PaymentStatus.CANCELLED),
    ({"status": "processing"}, PaymentStatus.PENDING),
    ({"status": "requires_payment_method", "last_payment_error": {"message": "declined"}}, PaymentStatus.FAILED),
])
def test_verify_payment_maps_intent_status(gateway, monkeypatch, intent, expected):
    obj = SimpleNamespace(id="pi_123", amount=13400, currency="usd", last_payment_error=None)
    for k, v in intent.items():
        setattr(obj, k, v)
    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda ref: obj)
    assert gateway.verify_payment("pi_123").status is expected
