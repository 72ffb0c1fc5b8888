import hashlib
import hmac
import itertools
import os
import threading
import time
from typing import Any, Dict, Generator, Optional

os.environ.setdefault("DISABLE_FASTAPI_LIMITER_INIT_FOR_TESTS", "1")
os.environ.setdefault("PAYMENTS_STORE", "memory")

import pytest
from fastapi.testclient import TestClient

from restopay.app import create_app
from restopay.config import GatewayHttpConfig, load_settings
from restopay.payments.errors import InvalidSignature
from restopay.payments.gateways.base import GatewayClient
from restopay.payments.memory_store import InMemoryPaymentStore
from restopay.payments.models import PaymentResult, PaymentStatus, canonical_status
from restopay.payments.registry import GatewayRegistry
from restopay.payments.service import PaymentOrchestrator
from restopay.utils.security import require_user

FAKE_SECRET = "fake-webhook-secret"

# Marquage automatique selon le dossier
def pytest_collection_modifyitems(config, items):
    for item in items:
        nodeid = item.nodeid.replace("\\", "/")
        if "tests/unit/" in nodeid:
            item.add_marker(pytest.mark.unit)
        elif "tests/integration/" in nodeid:
            item.add_marker(pytest.mark.integration)
        elif "tests/functional/" in nodeid:
            item.add_marker(pytest.mark.functional)


class FakeGateway(GatewayClient):
    """
    Passerelle scriptable pour les tests.
    - create_payment: référence unique, échec injectable via fail_with, latence via delay
    - verify_callback: HMAC-SHA256 du corps dans l'en-tête X-Fake-Signature
    - verify_payment: renvoie verify_status
    """
    flow = "redirect"
    supported_currencies = ("USD", "EUR", "EGP")
    retry_delay = 0

    def __init__(self, name: str = "fake"):
        super().__init__(GatewayHttpConfig())
        self.name = name
        self.calls = []
        self.fail_with: Optional[Exception] = None
        self.delay = 0.0
        self.verify_status = PaymentStatus.COMPLETED
        self._seq = itertools.count(1)
        self._lock = threading.Lock()

    def create_payment(self, *, amount, currency, description, return_url, cancel_url,
                       customer=None, metadata=None, idempotency_key):
        with self._lock:
            self.calls.append({"amount": amount, "currency": currency, "metadata": metadata,
                               "idempotency_key": idempotency_key, "return_url": return_url})
            seq = next(self._seq)
        if self.delay:
            time.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        ref = f"{self.name}-txn-{idempotency_key[:8]}-{seq:04d}"
        return PaymentResult(
            success=True,
            status=PaymentStatus.PENDING,
            transaction_ref=ref,
            gateway=self.name,
            amount=amount,
            currency=currency,
            next_action={"type": "redirect", "url": f"https://pay.example.test/{ref}"},
            raw={"id": ref},
        )

    def verify_callback(self, request):
        received = request.header("X-Fake-Signature")
        expected = sign(request.body)
        if not received or not hmac.compare_digest(received, expected):
            raise InvalidSignature("Signature invalide")
        return request.json()

    def handle_callback(self, payload):
        status = canonical_status(payload.get("status"))
        return PaymentResult(
            success=status is PaymentStatus.COMPLETED,
            status=status,
            transaction_ref=payload.get("ref"),
            gateway=self.name,
            raw={"event": payload.get("event", "test")},
        )

    def verify_payment(self, transaction_ref):
        return PaymentResult(
            success=self.verify_status is PaymentStatus.COMPLETED,
            status=self.verify_status,
            transaction_ref=transaction_ref,
            gateway=self.name,
            raw={"pulled": True},
        )


def sign(body: bytes) -> str:
    return hmac.new(FAKE_SECRET.encode(), body, hashlib.sha256).hexdigest()


@pytest.fixture
def fake_user() -> Dict[str, Any]:
    return {"id": "test-user", "email": "test@example.com", "role": "user"}

@pytest.fixture
def settings():
    return load_settings({"PAYMENTS_STORE": "memory", "BASE_URL": "http://testserver", "PAYMENTS_CURRENCY": "USD"})

@pytest.fixture
def store() -> InMemoryPaymentStore:
    return InMemoryPaymentStore()

@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()

@pytest.fixture
def signer():
    return sign

@pytest.fixture
def registry(fake_gateway) -> GatewayRegistry:
    return GatewayRegistry([fake_gateway])

@pytest.fixture
def orchestrator(store, registry, settings) -> PaymentOrchestrator:
    return PaymentOrchestrator(store=store, registry=registry, settings=settings)

@pytest.fixture
def order(store, fake_user):
    return store.add_order("order-1", fake_user["id"], "100.00")

@pytest.fixture
def app(orchestrator):
    return create_app(orchestrator)

@pytest.fixture()
def client(app) -> Generator[TestClient, None, None]:
    with TestClient(app) as c:
        yield c

# Simuler un utilisateur authentifié pour les endpoints protégés
@pytest.fixture(autouse=True)
def _override_require_user(request, fake_user):
    if "app" not in request.fixturenames:
        yield
        return
    app = request.getfixturevalue("app")
    app.dependency_overrides[require_user] = lambda: fake_user
    try:
        yield
    finally:
        app.dependency_overrides.pop(require_user, None)
