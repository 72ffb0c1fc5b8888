"""
Adaptateur Stripe (flux carte inline, PaymentIntents).
Centralise les appels SDK, la vérification des webhooks et le mapping des erreurs.
"""
import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import stripe

from restopay.config import StripeConfig
from restopay.payments.errors import (
    DuplicateIntent,
    GatewayNotConfigured,
    GatewayProtocolError,
    GatewayUnavailable,
    InvalidSignature,
    PaymentRejected,
)
from restopay.payments.gateways.base import GatewayClient, to_minor_units
from restopay.payments.models import CallbackRequest, PaymentResult, PaymentStatus

logger = logging.getLogger(__name__)

EVENT_STATUS = {
    "payment_intent.succeeded": PaymentStatus.COMPLETED,
    "payment_intent.payment_failed": PaymentStatus.FAILED,
    "payment_intent.canceled": PaymentStatus.CANCELLED,
}

INTENT_STATUS = {
    "succeeded": PaymentStatus.COMPLETED,
    "canceled": PaymentStatus.CANCELLED,
}


def _field(obj: Any, key: str, default: Any = None) -> Any:
    """Lecture tolérante d'un champ (dict ou StripeObject)."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(key, default)
    return getattr(obj, key, default)


# module restopay.payments.gateways.stripe_client
class StripeGateway(GatewayClient):
    name = "stripe"
    flow = "inline"
    supported_currencies = ("USD", "EUR", "GBP")

    def __init__(self, config: StripeConfig):
        super().__init__(config.http)
        self.config = config

    def require_stripe(self):
        """
        Prépare et retourne le module stripe.
        - api_key depuis StripeConfig; les retries sont gérés par with_retries (pas par le SDK)
        """
        if not self.config.secret_key:
            raise GatewayNotConfigured("STRIPE_SECRET_KEY manquant", gateway=self.name)
        stripe.api_key = self.config.secret_key
        stripe.max_network_retries = 0
        return stripe

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        """Exécute un appel SDK et traduit les erreurs Stripe dans la taxonomie."""
        def _once():
            try:
                return fn()
            except stripe.IdempotencyError as e:
                raise DuplicateIntent(f"Stripe: clé d'idempotence déjà utilisée ({op})") from e
            except (stripe.APIConnectionError, stripe.RateLimitError) as e:
                raise GatewayUnavailable(f"Stripe indisponible ({op}): {e.user_message or e}", gateway=self.name) from e
            except stripe.CardError as e:
                raise PaymentRejected(
                    f"Carte refusée ({op}): {e.user_message or e}",
                    gateway=self.name,
                    details={"code": e.code},
                ) from e
            except stripe.InvalidRequestError as e:
                raise PaymentRejected(
                    f"Requête Stripe refusée ({op}): {e.user_message or e}",
                    gateway=self.name,
                    details={"code": e.code},
                ) from e
            except stripe.APIError as e:
                raise GatewayUnavailable(f"Erreur serveur Stripe ({op})", gateway=self.name) from e
            except stripe.StripeError as e:
                if (e.http_status or 0) >= 500:
                    raise GatewayUnavailable(f"Erreur serveur Stripe ({op})", gateway=self.name) from e
                raise PaymentRejected(f"Stripe a refusé la requête ({op})", gateway=self.name) from e

        return self.with_retries(op, _once)

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
        """
        Crée un PaymentIntent (montant en centimes) et renvoie le client_secret comme action suivante.
        - metadata: {order_id, invoice_id} pour retrouver la facture depuis le webhook
        - idempotency_key: id de facture (rejouer la même requête renvoie le même intent)
        """
        self.validate_payment_data(amount, currency, customer)
        client = self.require_stripe()
        params: Dict[str, Any] = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "description": description,
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if customer and customer.get("email"):
            params["receipt_email"] = customer["email"]
        intent = self._call(
            "create_intent",
            lambda: client.PaymentIntent.create(idempotency_key=idempotency_key, **params),
        )
        intent_id = _field(intent, "id")
        client_secret = _field(intent, "client_secret")
        if not intent_id or not client_secret:
            logger.error("stripe.protocol_error op=create_intent invoice_id=%s", idempotency_key)
            raise GatewayProtocolError("Réponse Stripe incomplète (create_intent)", gateway=self.name)
        logger.info("stripe.create_intent intent_id=%s invoice_id=%s", intent_id, idempotency_key)
        return PaymentResult(
            success=True,
            status=PaymentStatus.PENDING,
            transaction_ref=intent_id,
            gateway=self.name,
            amount=amount,
            currency=currency.upper(),
            next_action={
                "type": "client_secret",
                "client_secret": client_secret,
                "publishable_key": self.config.public_key or None,
            },
            raw={"id": intent_id, "status": _field(intent, "status")},
        )

    def verify_callback(self, request: CallbackRequest) -> Dict[str, Any]:
        """
        Valide un webhook signé (Stripe-Signature, HMAC-SHA256, tolérance 300 s).
        Les retours navigateur (success/cancel) ne portent pas de signature: refusés.
        """
        if request.kind != "webhook":
            raise InvalidSignature("Stripe: seuls les webhooks signés sont acceptés")
        if not self.config.webhook_secret:
            raise InvalidSignature("STRIPE_WEBHOOK_SECRET non configuré: webhook refusé")
        sig_header = request.header("Stripe-Signature")
        if not sig_header:
            raise InvalidSignature("En-tête Stripe-Signature manquant")
        try:
            event = stripe.Webhook.construct_event(
                request.body,
                sig_header,
                self.config.webhook_secret,
                tolerance=self.config.webhook_tolerance,
            )
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Signature Stripe invalide") from e
        except ValueError as e:
            raise InvalidSignature("Corps de webhook Stripe illisible") from e
        return {"type": _field(event, "type"), "id": _field(event, "id"), "object": _field(_field(event, "data"), "object")}

    def handle_callback(self, payload: Dict[str, Any]) -> PaymentResult:
        event_type = payload.get("type") or ""
        intent = payload.get("object") or {}
        status = EVENT_STATUS.get(event_type, PaymentStatus.PENDING)
        raw: Dict[str, Any] = {"event_id": payload.get("id"), "event_type": event_type}
        if status is PaymentStatus.FAILED:
            err = _field(intent, "last_payment_error") or {}
            raw["error"] = _field(err, "message") or "Payment failed"
        return self._result(intent, status, raw)

    def verify_payment(self, transaction_ref: str) -> PaymentResult:
        client = self.require_stripe()
        intent = self._call("retrieve_intent", lambda: client.PaymentIntent.retrieve(transaction_ref))
        intent_status = _field(intent, "status") or ""
        status = INTENT_STATUS.get(intent_status, PaymentStatus.PENDING)
        if intent_status == "requires_payment_method" and _field(intent, "last_payment_error"):
            status = PaymentStatus.FAILED
        return self._result(intent, status, {"intent_status": intent_status})

    def _result(self, intent: Any, status: PaymentStatus, raw: Dict[str, Any]) -> PaymentResult:
        minor = _field(intent, "amount")
        currency = _field(intent, "currency")
        return PaymentResult(
            success=status is PaymentStatus.COMPLETED,
            status=status,
            transaction_ref=_field(intent, "id"),
            gateway=self.name,
            amount=(Decimal(int(minor)) / 100) if minor is not None else None,
            currency=currency.upper() if currency else None,
            raw=raw,
        )
