"""
Parcours complet Paymob: intention -> iframe -> callback HMAC -> commande payée -> rejeu.
Les appels sortants passent par httpx.MockTransport (aucun réseau).
"""
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from restopay.app import create_app
from restopay.config import PaymobConfig, load_settings
from restopay.payments.gateways.paymob import PaymobGateway, compute_hmac, flatten_transaction
from restopay.payments.memory_store import InMemoryPaymentStore
from restopay.payments.models import OrderStatus, PaymentStatus
from restopay.payments.registry import GatewayRegistry
from restopay.payments.service import PaymentOrchestrator

HMAC_SECRET = "functional-hmac"
BASE = "/api/v1/payments/paymob"


class PaymobSandbox:
    def __init__(self):
        self.orders = {}
        self.calls = []
        self.payment_keys_down = 0

    def _by_merchant_id(self, merchant_order_id):
        return next((oid for oid, o in self.orders.items() if o["merchant_order_id"] == merchant_order_id), None)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))
        if path.endswith("/auth/tokens"):
            return httpx.Response(201, json={"token": "auth-token"})
        if path.endswith("/ecommerce/orders/transaction_inquiry"):
            order_id = self._by_merchant_id(json.loads(request.content)["merchant_order_id"])
            if order_id is None:
                return httpx.Response(404, json={"detail": "not found"})
            return httpx.Response(200, json={"id": 880000, "order": {"id": order_id}})
        if path.endswith("/ecommerce/orders") and request.method == "POST":
            body = json.loads(request.content)
            if self._by_merchant_id(body["merchant_order_id"]) is not None:
                return httpx.Response(422, json={"message": "duplicate"})
            order_id = 5000 + len(self.orders)
            self.orders[order_id] = body
            return httpx.Response(201, json={"id": order_id})
        if path.endswith("/acceptance/payment_keys"):
            if self.payment_keys_down:
                self.payment_keys_down -= 1
                return httpx.Response(503)
            return httpx.Response(201, json={"token": "payment-key"})
        if "/ecommerce/orders/" in path:
            order_id = int(path.rsplit("/", 1)[-1])
            cents = self.orders[order_id]["amount_cents"]
            return httpx.Response(200, json={"id": order_id, "amount_cents": cents, "paid_amount_cents": cents, "currency": "EGP"})
        return httpx.Response(404, json={"detail": "not found"})


@pytest.fixture
def sandbox():
    return PaymobSandbox()


@pytest.fixture
def store(fake_user):
    s = InMemoryPaymentStore()
    s.add_order("order-eg", fake_user["id"], "100.00")
    return s


@pytest.fixture
def app(sandbox, store):
    settings = load_settings({"PAYMENTS_STORE": "memory", "BASE_URL": "http://testserver", "PAYMENTS_CURRENCY": "EGP"})
    config = PaymobConfig(api_key="k", integration_id="111", hmac_secret=HMAC_SECRET, iframe_id="999")
    gateway = PaymobGateway(config, client=httpx.Client(transport=httpx.MockTransport(sandbox)))
    gateway.retry_delay = 0
    orchestrator = PaymentOrchestrator(store=store, registry=GatewayRegistry([gateway]), settings=settings)
    return create_app(orchestrator)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


def _transaction(paymob_order_id, amount_cents, success=True):
    return {
        "id": 880001,
        "pending": False,
        "amount_cents": amount_cents,
        "success": success,
        "is_auth": False,
        "is_capture": False,
        "is_standalone_payment": True,
        "is_voided": False,
        "is_refunded": False,
        "is_3d_secure": True,
        "integration_id": 111,
        "has_parent_transaction": False,
        "order": {"id": paymob_order_id},
        "created_at": "2024-05-01T12:00:00.000000",
        "currency": "EGP",
        "error_occured": False,
        "owner": 1,
        "source_data": {"pan": "2346", "sub_type": "MasterCard", "type": "card"},
    }


def _webhook(client, obj, secret=HMAC_SECRET):
    digest = compute_hmac(flatten_transaction(obj), secret)
    return client.post(f"{BASE}/callback", params={"hmac": digest}, json={"type": "TRANSACTION", "obj": obj})


def test_full_paymob_flow(client, store, sandbox):
    r = client.post(f"{BASE}/intent", json={"order_id": "order-eg", "pricing_policy": "full_service"})
    assert r.status_code == 201
    body = r.json()
    assert body["next_action"]["type"] == "iframe"
    assert "/iframes/999?payment_token=payment-key" in body["next_action"]["url"]
    invoice = body["invoice"]
    assert invoice["final_amount"] == "134.00"
    assert invoice["currency"] == "EGP"
    ref = invoice["transaction_ref"]
    assert sandbox.orders[int(ref)]["merchant_order_id"] == invoice["id"]
    assert store.get_order("order-eg").status is OrderStatus.PENDING

    # Webhook forgé: refusé, aucun changement
    forged = _webhook(client, _transaction(int(ref), 13400), secret="attacker")
    assert forged.status_code == 400
    assert store.get_order("order-eg").status is OrderStatus.PENDING

    accepted = _webhook(client, _transaction(int(ref), 13400))
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert accepted.json()["order_paid"] is True
    assert store.get_order("order-eg").status is OrderStatus.PAID

    replay = _webhook(client, _transaction(int(ref), 13400))
    assert replay.json()["status"] == "noop"

    # Redirection navigateur (GET signé) après le webhook
    flat = flatten_transaction(_transaction(int(ref), 13400))
    query = {k: v for k, v in flat.items() if k != "order.id"}
    query["order"] = flat["order.id"]
    query["hmac"] = compute_hmac(flat, HMAC_SECRET)
    success = client.get(f"{BASE}/success", params=query)
    assert success.status_code == 200
    assert success.json()["payment"] == "completed"

    trail = [e["event"] for e in client.get(f"/api/v1/payments/invoices/{invoice['id']}").json()["audit_trail"]]
    assert trail[:3] == ["intent_requested", "intent_created", "status_applied"]
    assert trail.count("replay_ignored") == 2


def test_late_failure_never_downgrades_completed_invoice(client, store):
    ref = client.post(f"{BASE}/intent", json={"order_id": "order-eg"}).json()["invoice"]["transaction_ref"]
    _webhook(client, _transaction(int(ref), 13400))
    late = _webhook(client, _transaction(int(ref), 13400, success=False))
    assert late.status_code == 200
    assert late.json()["status"] == "noop"
    assert late.json()["payment_status"] == "completed"
    assert store.get_order("order-eg").status is OrderStatus.PAID


def test_reconcile_recovers_lost_webhook(client, app, store):
    from datetime import timedelta

    invoice = client.post(f"{BASE}/intent", json={"order_id": "order-eg"}).json()["invoice"]
    store._invoices[invoice["id"]].created_at -= timedelta(hours=1)

    report = app.state.orchestrator.reconcile_pending(older_than_minutes=30)
    assert report.updated == 1
    assert store.get_invoice(invoice["id"]).payment_status is PaymentStatus.COMPLETED
    assert store.get_order("order-eg").status is OrderStatus.PAID


def test_intent_retry_reuses_order_registered_by_interrupted_attempt(client, store, sandbox):
    sandbox.payment_keys_down = 3
    first = client.post(f"{BASE}/intent", json={"order_id": "order-eg"})
    assert first.status_code == 503
    assert len(sandbox.orders) == 1

    retry = client.post(f"{BASE}/intent", json={"order_id": "order-eg"})
    assert retry.status_code == 201
    invoice = retry.json()["invoice"]
    [(paymob_order_id, registered)] = sandbox.orders.items()
    assert invoice["transaction_ref"] == str(paymob_order_id)
    assert registered["merchant_order_id"] == invoice["id"]
    assert any(p.endswith("/transaction_inquiry") for _, p in sandbox.calls)
    assert store.total_invoices() == 1

    paid = _webhook(client, _transaction(paymob_order_id, 13400))
    assert paid.json()["status"] == "accepted"
    assert store.get_order("order-eg").status is OrderStatus.PAID
