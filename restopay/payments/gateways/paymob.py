"""
Adaptateur Paymob Accept (flux iframe carte / redirection wallet).

Création: auth/tokens -> ecommerce/orders -> acceptance/payment_keys
Retours: POST "transaction processed" ({"obj": {...}}, hmac en query) ou GET de redirection
(champs aplatis + hmac). Authenticité: HMAC-SHA512 sur 20 champs dans un ordre fixe.
"""
import hashlib
import hmac
import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from restopay.config import PaymobConfig
from restopay.payments.errors import (
    DuplicateIntent,
    GatewayNotConfigured,
    InvalidSignature,
    PaymentError,
    PaymentRejected,
)
from restopay.payments.gateways.base import GatewayClient, to_minor_units
from restopay.payments.models import CallbackRequest, PaymentResult, PaymentStatus
from restopay.payments.pricing import to_decimal

logger = logging.getLogger(__name__)

# Ordre documenté par Paymob pour le calcul du HMAC (ne pas trier, ne pas modifier)
HMAC_FIELDS = (
    "amount_cents",
    "created_at",
    "currency",
    "error_occured",
    "has_parent_transaction",
    "id",
    "integration_id",
    "is_3d_secure",
    "is_auth",
    "is_capture",
    "is_refunded",
    "is_standalone_payment",
    "is_voided",
    "order.id",
    "owner",
    "pending",
    "source_data.pan",
    "source_data.sub_type",
    "source_data.type",
    "success",
)

EG_MOBILE_RE = re.compile(r"^(\+20|0)?1[0-9]{9}$")


def _stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return ""
    return str(value)


def _is_true(value: Any) -> bool:
    return _stringify(value).lower() == "true"


def flatten_transaction(obj: Dict[str, Any]) -> Dict[str, str]:
    """Aplatit l'objet transaction du webhook POST en clés pointées (order.id, source_data.pan...)."""
    order = obj.get("order")
    source = obj.get("source_data") or {}
    flat = {k: _stringify(v) for k, v in obj.items() if not isinstance(v, (dict, list))}
    flat["order.id"] = _stringify(order.get("id") if isinstance(order, dict) else order)
    for key in ("pan", "sub_type", "type"):
        flat[f"source_data.{key}"] = _stringify(source.get(key))
    return flat


def flatten_query(query: Dict[str, str]) -> Dict[str, str]:
    """Normalise les paramètres du GET de redirection (order -> order.id)."""
    flat = dict(query)
    if "order.id" not in flat and "order" in flat:
        flat["order.id"] = flat["order"]
    return flat


def compute_hmac(flat: Dict[str, str], secret: str) -> str:
    message = "".join(_stringify(flat.get(name)) for name in HMAC_FIELDS)
    return hmac.new(secret.encode("utf-8"), message.encode("utf-8"), hashlib.sha512).hexdigest()


# module restopay.payments.gateways.paymob
class PaymobGateway(GatewayClient):
    name = "paymob"
    flow = "iframe"
    supported_currencies = ("EGP", "USD")

    def __init__(self, config: PaymobConfig, client: Optional[httpx.Client] = None):
        super().__init__(config.http, client)
        self.config = config

    def validate_payment_data(self, amount: Decimal, currency: str, customer: Optional[Dict[str, Any]] = None) -> None:
        super().validate_payment_data(amount, currency, customer)
        customer = customer or {}
        if (customer.get("payment_method") or "card") == "wallet":
            mobile = str(customer.get("mobile_number") or "").strip()
            if not mobile:
                raise PaymentRejected("Numéro mobile requis pour le paiement wallet", gateway=self.name)
            if not EG_MOBILE_RE.match(mobile):
                raise PaymentRejected("Format de numéro mobile égyptien invalide", gateway=self.name)
            if not self.config.wallet_integration_id:
                raise GatewayNotConfigured("PAYMOB_WALLET_INTEGRATION_ID manquant", gateway=self.name)

    def map_client_error(self, status: int, body: Dict[str, Any], *, op: str) -> PaymentError:
        message = str(body.get("message") or body.get("detail") or f"HTTP {status}")
        if op == "register_order" and "duplicate" in message.lower():
            return DuplicateIntent("Paymob: merchant_order_id déjà enregistré")
        return PaymentRejected(f"Paymob a refusé la requête ({op}): {message}", gateway=self.name, details={"status": status})

    def _url(self, path: str) -> str:
        return f"{self.config.base_url.rstrip('/')}{path}"

    def auth_token(self) -> str:
        if not self.config.configured:
            raise GatewayNotConfigured("PAYMOB_API_KEY / PAYMOB_INTEGRATION_ID / PAYMOB_HMAC_SECRET manquants", gateway=self.name)
        body = self.request_json("POST", self._url("/auth/tokens"), op="auth", json={"api_key": self.config.api_key})
        return self.require(body, "token", op="auth")

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
        customer = customer or {}
        self.validate_payment_data(amount, currency, customer)
        token = self.auth_token()
        cents = to_minor_units(amount)
        try:
            order = self.request_json(
                "POST",
                self._url("/ecommerce/orders"),
                op="register_order",
                json={
                    "auth_token": token,
                    "delivery_needed": "false",
                    "amount_cents": cents,
                    "currency": currency.upper(),
                    "merchant_order_id": idempotency_key,
                    "items": [
                        {"name": description[:50], "amount_cents": cents, "description": description, "quantity": 1}
                    ],
                },
            )
            paymob_order_id = str(self.require(order, "id", op="register_order"))
        except DuplicateIntent:
            # Tentative précédente interrompue après l'enregistrement de l'ordre
            paymob_order_id = self.registered_order_id(token, idempotency_key)

        wallet = (customer.get("payment_method") or "card") == "wallet"
        integration_id = self.config.wallet_integration_id if wallet else self.config.integration_id
        key_body = self.request_json(
            "POST",
            self._url("/acceptance/payment_keys"),
            op="payment_key",
            json={
                "auth_token": token,
                "amount_cents": cents,
                "expiration": 3600,
                "order_id": paymob_order_id,
                "billing_data": self._billing_data(customer),
                "currency": currency.upper(),
                "integration_id": integration_id,
                "lock_order_when_paid": "true",
            },
        )
        payment_key = self.require(key_body, "token", op="payment_key")

        if wallet:
            pay = self.request_json(
                "POST",
                self._url("/acceptance/payments/pay"),
                op="wallet_pay",
                json={
                    "source": {"identifier": str(customer.get("mobile_number")), "subtype": "WALLET"},
                    "payment_token": payment_key,
                },
            )
            redirect = pay.get("redirect_url") or pay.get("iframe_redirection_url")
            if not redirect:
                redirect = self.require(pay, "redirect_url", op="wallet_pay")
            next_action = {"type": "redirect", "url": redirect}
        else:
            if not self.config.iframe_id:
                raise GatewayNotConfigured("PAYMOB_IFRAME_ID manquant", gateway=self.name)
            iframe = "https://accept.paymob.com/api/acceptance/iframes/{}?{}".format(
                self.config.iframe_id, urlencode({"payment_token": payment_key})
            )
            next_action = {"type": "iframe", "url": iframe}

        logger.info("paymob.create_payment paymob_order_id=%s invoice_id=%s wallet=%s", paymob_order_id, idempotency_key, wallet)
        return PaymentResult(
            success=True,
            status=PaymentStatus.PENDING,
            transaction_ref=paymob_order_id,
            gateway=self.name,
            amount=amount,
            currency=currency.upper(),
            next_action=next_action,
            raw={"paymob_order_id": paymob_order_id, "method": "wallet" if wallet else "card"},
        )

    def registered_order_id(self, token: str, merchant_order_id: str) -> str:
        """
        Retrouve l'ordre Paymob déjà enregistré pour ce merchant_order_id.
        - introuvable ou réponse sans ordre -> DuplicateIntent (aucun nouvel ordre créé)
        """
        try:
            body = self.request_json(
                "POST",
                self._url("/ecommerce/orders/transaction_inquiry"),
                op="order_inquiry",
                json={"auth_token": token, "merchant_order_id": merchant_order_id},
            )
        except PaymentRejected as e:
            raise DuplicateIntent(
                "Paymob: merchant_order_id déjà enregistré, ordre existant introuvable",
                details={"merchant_order_id": merchant_order_id},
            ) from e
        order = body.get("order")
        order_id = order.get("id") if isinstance(order, dict) else order
        if order_id in (None, ""):
            raise DuplicateIntent(
                "Paymob: merchant_order_id déjà enregistré, ordre existant introuvable",
                details={"merchant_order_id": merchant_order_id},
            )
        logger.info("paymob.register_order reused paymob_order_id=%s invoice_id=%s", order_id, merchant_order_id)
        return str(order_id)

    @staticmethod
    def _billing_data(customer: Dict[str, Any]) -> Dict[str, str]:
        return {
            "first_name": customer.get("first_name") or "Customer",
            "last_name": customer.get("last_name") or "NA",
            "email": customer.get("email") or "customer@example.com",
            "phone_number": customer.get("mobile_number") or customer.get("phone") or "+201000000000",
            "apartment": "NA",
            "floor": "NA",
            "street": "NA",
            "building": "NA",
            "shipping_method": "NA",
            "postal_code": "NA",
            "city": customer.get("city") or "Cairo",
            "country": "EG",
            "state": "NA",
        }

    def verify_callback(self, request: CallbackRequest) -> Dict[str, Any]:
        """
        Vérifie le HMAC (comparaison à temps constant) et renvoie la transaction aplatie.
        - POST: corps JSON {"obj": {...}}, hmac dans la query (ou dans le corps)
        - GET: tous les champs en query
        """
        if not self.config.hmac_secret:
            raise InvalidSignature("PAYMOB_HMAC_SECRET non configuré: callback refusé")
        if request.method.upper() == "POST":
            try:
                body = request.json()
            except ValueError as e:
                raise InvalidSignature("Corps de callback Paymob illisible") from e
            obj = body.get("obj")
            if not isinstance(obj, dict):
                raise InvalidSignature("Callback Paymob sans objet transaction")
            flat = flatten_transaction(obj)
            received = request.query.get("hmac") or body.get("hmac") or ""
        else:
            flat = flatten_query(request.query)
            received = flat.get("hmac") or ""
        if not received:
            raise InvalidSignature("HMAC Paymob manquant")
        expected = compute_hmac(flat, self.config.hmac_secret)
        if not hmac.compare_digest(expected, str(received).lower()):
            raise InvalidSignature("HMAC Paymob invalide")
        return flat

    def handle_callback(self, payload: Dict[str, Any]) -> PaymentResult:
        if _is_true(payload.get("is_voided")) or _is_true(payload.get("is_refunded")):
            status = PaymentStatus.CANCELLED
        elif _is_true(payload.get("pending")):
            status = PaymentStatus.PENDING
        elif _is_true(payload.get("success")):
            status = PaymentStatus.COMPLETED
        else:
            status = PaymentStatus.FAILED
        cents = payload.get("amount_cents")
        return PaymentResult(
            success=status is PaymentStatus.COMPLETED,
            status=status,
            transaction_ref=payload.get("order.id") or None,
            gateway=self.name,
            amount=(to_decimal(cents) / 100) if cents not in (None, "") else None,
            currency=payload.get("currency") or None,
            raw={"paymob_transaction_id": payload.get("id"), "success": payload.get("success"), "pending": payload.get("pending")},
        )

    def verify_payment(self, transaction_ref: str) -> PaymentResult:
        token = self.auth_token()
        order = self.request_json(
            "GET",
            self._url(f"/ecommerce/orders/{transaction_ref}"),
            op="get_order",
            headers={"Authorization": f"Bearer {token}"},
        )
        paid = to_decimal(order.get("paid_amount_cents") or 0)
        status = PaymentStatus.COMPLETED if paid > 0 else PaymentStatus.PENDING
        cents = order.get("amount_cents")
        return PaymentResult(
            success=status is PaymentStatus.COMPLETED,
            status=status,
            transaction_ref=str(order.get("id") or transaction_ref),
            gateway=self.name,
            amount=(to_decimal(cents) / 100) if cents not in (None, "") else None,
            currency=order.get("currency"),
            raw={"paid_amount_cents": str(paid)},
        )
