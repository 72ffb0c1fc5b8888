"""
Taxonomie d'erreurs de la feature 'payments'.

Chaque erreur porte un code stable (exposé au client), un statut HTTP et un
drapeau retryable. Le handler FastAPI (restopay.app_setup.exception_handlers)
les rend en JSON {"detail": ..., "code": ...}.
"""
from typing import Iterable, Optional


class PaymentError(Exception):
    code = "payment_error"
    status_code = 400
    retryable = False

    def __init__(self, message: str = "", *, details: Optional[dict] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = details or {}

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.details:
            body["details"] = self.details
        return body


# --- Validation / propriété ---

class InvalidPolicy(PaymentError):
    code = "invalid_policy"


class InvalidAmount(PaymentError):
    code = "invalid_amount"


class UnsupportedGateway(PaymentError):
    code = "unsupported_gateway"

    def __init__(self, identifier: str, supported: Iterable[str]):
        supported = sorted(supported)
        super().__init__(
            f"Passerelle non supportée: {identifier}. Passerelles supportées: {', '.join(supported) or 'aucune'}",
            details={"gateway": identifier, "supported": supported},
        )
        self.identifier = identifier
        self.supported = supported


class AlreadyPaid(PaymentError):
    code = "already_paid"

    def __init__(self, order_id: str):
        super().__init__(f"La commande {order_id} est déjà payée", details={"order_id": order_id})


class OrderNotFound(PaymentError):
    code = "order_not_found"
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__("Commande introuvable", details={"order_id": order_id})


class OrderNotPayable(PaymentError):
    code = "order_not_payable"


class DuplicateIntent(PaymentError):
    code = "duplicate_intent"
    status_code = 409


class InvoiceNotFound(PaymentError):
    code = "invoice_not_found"
    status_code = 404


# --- Passerelles ---

class GatewayError(PaymentError):
    code = "gateway_error"
    status_code = 502

    def __init__(self, message: str = "", *, gateway: str = "", details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.gateway = gateway


class GatewayUnavailable(GatewayError):
    """Erreur réseau / timeout / 5xx côté fournisseur: retryable."""
    code = "gateway_unavailable"
    status_code = 503
    retryable = True


class PaymentRejected(GatewayError):
    """Refus métier du fournisseur (déclinée, expirée): terminal."""
    code = "payment_rejected"
    status_code = 402


class GatewayProtocolError(GatewayError):
    """Réponse fournisseur mal formée: terminal, à investiguer."""
    code = "gateway_protocol_error"
    status_code = 502


class GatewayNotConfigured(GatewayError):
    code = "gateway_not_configured"
    status_code = 500


# --- Frontière de sécurité (callbacks) ---

class InvalidSignature(PaymentError):
    code = "invalid_signature"


class CaptureFailed(PaymentError):
    code = "capture_failed"
