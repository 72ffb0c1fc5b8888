"""
Adaptateur PayPal (flux redirection, API Orders v2).

- create_payment: POST /v2/checkout/orders (intent CAPTURE) -> lien d'approbation
- retour client (?token=<order_id>): l'authenticité est prouvée par la capture
  (POST /v2/checkout/orders/{id}/capture); un jeton forgé échoue -> CaptureFailed
- retour annulation: simple relecture de l'ordre, la facture reste pending tant que PayPal ne l'a pas annulé
- webhooks: vérifiés via /v1/notifications/verify-webhook-signature puis relecture de l'ordre
"""
import logging
import threading
import time
from decimal import Decimal
from typing import Any, Dict, Optional

import httpx

from restopay.config import PayPalConfig
from restopay.payments.errors import (
    CaptureFailed,
    DuplicateIntent,
    GatewayError,
    GatewayNotConfigured,
    GatewayProtocolError,
    InvalidSignature,
    PaymentError,
    PaymentRejected,
)
from restopay.payments.gateways.base import GatewayClient
from restopay.payments.models import CallbackRequest, PaymentResult, PaymentStatus
from restopay.payments.pricing import to_decimal

logger = logging.getLogger(__name__)

_ORDER_STATUS = {
    "COMPLETED": PaymentStatus.COMPLETED,
    "VOIDED": PaymentStatus.CANCELLED,
}

WEBHOOK_HEADERS = {
    "auth_algo": "PAYPAL-AUTH-ALGO",
    "cert_url": "PAYPAL-CERT-URL",
    "transmission_id": "PAYPAL-TRANSMISSION-ID",
    "transmission_sig": "PAYPAL-TRANSMISSION-SIG",
    "transmission_time": "PAYPAL-TRANSMISSION-TIME",
}


# module restopay.payments.gateways.paypal
class PayPalGateway(GatewayClient):
    name = "paypal"
    flow = "redirect"
    supported_currencies = ("USD", "EUR", "GBP")

    def __init__(self, config: PayPalConfig, client: Optional[httpx.Client] = None):
        super().__init__(config.http, client)
        self.config = config
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    # --- OAuth2 client-credentials ---

    def access_token(self) -> str:
        """Jeton OAuth2 mis en cache jusqu'à 60 s avant expiration."""
        if not self.config.configured:
            raise GatewayNotConfigured("PAYPAL_CLIENT_ID / PAYPAL_CLIENT_SECRET manquants", gateway=self.name)
        with self._token_lock:
            if self._token and time.monotonic() < self._token_expires_at:
                return self._token
            body = self.request_json(
                "POST",
                f"{self.config.base_url}/v1/oauth2/token",
                op="oauth_token",
                data={"grant_type": "client_credentials"},
                auth=(self.config.client_id, self.config.client_secret),
                headers={"Accept": "application/json"},
            )
            self._token = self.require(body, "access_token", op="oauth_token")
            self._token_expires_at = time.monotonic() + max(int(body.get("expires_in") or 300) - 60, 30)
            return self._token

    def _headers(self, request_id: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token()}",
            "Content-Type": "application/json",
            "Prefer": "return=representation",
        }
        if request_id:
            headers["PayPal-Request-Id"] = request_id
        return headers

    def map_client_error(self, status: int, body: Dict[str, Any], *, op: str) -> PaymentError:
        issues = [d.get("issue") for d in (body.get("details") or []) if isinstance(d, dict)]
        name = body.get("name") or ""
        message = body.get("message") or f"HTTP {status}"
        if "DUPLICATE_INVOICE_ID" in issues or "DUPLICATE_REQUEST_ID" in issues:
            return DuplicateIntent(f"PayPal: intention déjà créée ({op})", details={"issues": issues})
        return PaymentRejected(
            f"PayPal a refusé la requête ({op}): {message}",
            gateway=self.name,
            details={"status": status, "name": name, "issues": issues},
        )

    # --- Opérations ---

    def create_payment(
        self,
        *,
        amount: Decimal,
        currency: str,
        description: str,
        return_url: str,
        cancel_url: str,
        customer: Optional[Dict[str, Any]] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: str,
    ) -> PaymentResult:
        self.validate_payment_data(amount, currency, customer)
        metadata = metadata or {}
        payload = {
            "intent": "CAPTURE",
            "purchase_units": [
                {
                    "reference_id": str(metadata.get("order_id") or idempotency_key),
                    "custom_id": idempotency_key,
                    "invoice_id": idempotency_key,
                    "description": description[:127],
                    "amount": {"currency_code": currency.upper(), "value": f"{amount:.2f}"},
                }
            ],
            "application_context": {
                "brand_name": self.config.brand_name,
                "user_action": "PAY_NOW",
                "shipping_preference": "NO_SHIPPING",
                "return_url": return_url,
                "cancel_url": cancel_url,
            },
        }
        body = self.request_json(
            "POST",
            f"{self.config.base_url}/v2/checkout/orders",
            op="create_order",
            json=payload,
            headers=self._headers(request_id=idempotency_key),
        )
        order_id = self.require(body, "id", op="create_order")
        approve = next(
            (l.get("href") for l in body.get("links") or [] if l.get("rel") in ("approve", "payer-action")),
            None,
        )
        if not approve:
            raise self._protocol("create_order", "lien d'approbation manquant")
        logger.info("paypal.create_order order_id=%s invoice_id=%s", order_id, idempotency_key)
        return PaymentResult(
            success=True,
            status=PaymentStatus.PENDING,
            transaction_ref=order_id,
            gateway=self.name,
            amount=amount,
            currency=currency.upper(),
            next_action={"type": "redirect", "url": approve},
            raw={"id": order_id, "status": body.get("status")},
        )

    def get_order(self, order_id: str, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        return self.request_json(
            "GET",
            f"{self.config.base_url}/v2/checkout/orders/{order_id}",
            op="get_order",
            timeout=timeout,
            headers=self._headers(),
        )

    def capture(self, order_id: str, *, timeout: Optional[float] = None) -> Dict[str, Any]:
        """
        Capture (rédemption) d'un ordre approuvé.
        - ORDER_ALREADY_CAPTURED: relit l'ordre, seul un statut COMPLETED est accepté
        - tout autre refus -> CaptureFailed
        """
        try:
            return self.request_json(
                "POST",
                f"{self.config.base_url}/v2/checkout/orders/{order_id}/capture",
                op="capture",
                timeout=timeout,
                json={},
                headers=self._headers(request_id=f"capture-{order_id}"),
            )
        except PaymentRejected as e:
            issues = e.details.get("issues") or []
            if "ORDER_ALREADY_CAPTURED" in issues:
                order = self.get_order(order_id, timeout=timeout)
                if order.get("status") == "COMPLETED":
                    return order
            raise CaptureFailed(f"Capture PayPal refusée pour {order_id}", details={"issues": issues}) from e
        except DuplicateIntent as e:
            raise CaptureFailed(f"Capture PayPal refusée pour {order_id}") from e

    def capture_reference(self, request: CallbackRequest) -> Optional[str]:
        if request.kind == "return":
            return (request.query.get("token") or "").strip() or None
        if request.kind == "webhook":
            try:
                event = request.json()
            except ValueError:
                return None
            if isinstance(event, dict) and event.get("event_type") == "CHECKOUT.ORDER.APPROVED":
                return (event.get("resource") or {}).get("id") or None
        return None

    def verify_callback(self, request: CallbackRequest) -> Dict[str, Any]:
        if request.kind == "webhook":
            return self._verify_webhook(request)
        token = (request.query.get("token") or "").strip()
        if not token:
            raise CaptureFailed("Paramètre 'token' manquant dans le retour PayPal")
        if request.kind == "cancel":
            # Pas de capture ni d'annulation locale: seul l'état lu chez PayPal compte
            order = self._read_order_for_callback(token)
            return {"kind": "cancel", "order": order}
        try:
            order = self.capture(token)
        except GatewayError as e:
            if e.retryable:
                raise
            raise CaptureFailed(f"Capture PayPal impossible pour {token}") from e
        return {"kind": "return", "order": order}

    def _read_order_for_callback(self, order_id: str) -> Dict[str, Any]:
        try:
            return self.get_order(order_id)
        except PaymentRejected as e:
            raise CaptureFailed(f"Ordre PayPal inconnu: {order_id}") from e

    def _verify_webhook(self, request: CallbackRequest) -> Dict[str, Any]:
        if not self.config.webhook_id:
            raise InvalidSignature("PAYPAL_WEBHOOK_ID non configuré: webhook refusé")
        try:
            event = request.json()
        except ValueError as e:
            raise InvalidSignature("Corps de webhook PayPal illisible") from e
        verification = {key: request.header(header) for key, header in WEBHOOK_HEADERS.items()}
        if not all(verification.values()):
            raise InvalidSignature("En-têtes de signature PayPal manquants")
        verification["webhook_id"] = self.config.webhook_id
        verification["webhook_event"] = event
        try:
            body = self.request_json(
                "POST",
                f"{self.config.base_url}/v1/notifications/verify-webhook-signature",
                op="verify_webhook",
                timeout=self.http.webhook_timeout,
                json=verification,
                headers=self._headers(),
            )
        except PaymentRejected as e:
            raise InvalidSignature("Vérification de signature PayPal refusée") from e
        if body.get("verification_status") != "SUCCESS":
            raise InvalidSignature("Signature de webhook PayPal invalide")

        event_type = event.get("event_type") or ""
        resource = event.get("resource") or {}
        if event_type == "CHECKOUT.ORDER.APPROVED":
            order_id = resource.get("id")
            order = self.capture(order_id, timeout=self.http.webhook_timeout) if order_id else {}
        elif event_type.startswith("PAYMENT.CAPTURE."):
            related = (resource.get("supplementary_data") or {}).get("related_ids") or {}
            order_id = related.get("order_id")
            order = self.get_order(order_id, timeout=self.http.webhook_timeout) if order_id else {}
        else:
            order = {}
        return {"kind": "webhook", "event_type": event_type, "order": order}

    def handle_callback(self, payload: Dict[str, Any]) -> PaymentResult:
        order = payload.get("order") or {}
        result = self._result_from_order(order)
        if payload.get("event_type") == "PAYMENT.CAPTURE.DENIED" and result.status is PaymentStatus.PENDING:
            return PaymentResult(
                success=False,
                status=PaymentStatus.FAILED,
                transaction_ref=result.transaction_ref,
                gateway=self.name,
                amount=result.amount,
                currency=result.currency,
                raw=result.raw,
            )
        return result

    def verify_payment(self, transaction_ref: str) -> PaymentResult:
        return self._result_from_order(self.get_order(transaction_ref))

    # --- Helpers ---

    def _result_from_order(self, order: Dict[str, Any]) -> PaymentResult:
        status_raw = str(order.get("status") or "")
        status = _ORDER_STATUS.get(status_raw, PaymentStatus.PENDING)
        amount = currency = None
        units = order.get("purchase_units") or []
        if units:
            captures = ((units[0].get("payments") or {}).get("captures")) or []
            if captures and status is PaymentStatus.COMPLETED:
                capture_status = captures[0].get("status")
                if capture_status == "DECLINED":
                    status = PaymentStatus.FAILED
                elif capture_status not in ("COMPLETED", None):
                    status = PaymentStatus.PENDING
            money = (captures[0].get("amount") if captures else None) or units[0].get("amount") or {}
            if money.get("value") is not None:
                amount = to_decimal(money["value"])
                currency = money.get("currency_code")
        return PaymentResult(
            success=status is PaymentStatus.COMPLETED,
            status=status,
            transaction_ref=order.get("id"),
            gateway=self.name,
            amount=amount,
            currency=currency,
            raw={"id": order.get("id"), "status": status_raw},
        )

    def _protocol(self, op: str, reason: str):
        logger.error("paypal.protocol_error op=%s reason=%s", op, reason)
        return GatewayProtocolError(f"Réponse PayPal invalide ({op}): {reason}", gateway=self.name)
