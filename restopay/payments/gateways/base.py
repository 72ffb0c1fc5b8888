"""
Contrat commun des passerelles de paiement (redirection, carte inline, wallet/iframe).

Chaque client:
- reçoit une configuration explicite (dataclass gelée) et, optionnellement, un httpx.Client
- traduit les réponses fournisseur en PaymentResult canonique
- classe les échecs dans la taxonomie restopay.payments.errors
"""
import abc
import logging
import time
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Optional, TypeVar

import httpx

from restopay.config import GatewayHttpConfig
from restopay.payments.errors import (
    GatewayProtocolError,
    GatewayUnavailable,
    InvalidAmount,
    PaymentError,
    PaymentRejected,
)
from restopay.payments.models import CallbackRequest, PaymentResult

logger = logging.getLogger(__name__)

T = TypeVar("T")


def to_minor_units(amount: Decimal) -> int:
    """Montant décimal -> centimes (entier), ex: Decimal("134.00") -> 13400."""
    return int((amount * 100).to_integral_value())


class GatewayClient(abc.ABC):
    name: str = ""
    flow: str = ""
    supported_currencies: Iterable[str] = ()
    retry_delay: float = 0.25

    def __init__(self, http: Optional[GatewayHttpConfig] = None, client: Optional[httpx.Client] = None):
        self.http = http or GatewayHttpConfig()
        self._client = client

    # --- Contrat ---

    @abc.abstractmethod
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
        """Crée l'intention chez le fournisseur. Ne marque jamais rien comme payé."""

    @abc.abstractmethod
    def verify_callback(self, request: CallbackRequest) -> Dict[str, Any]:
        """
        Vérifie l'authenticité d'un retour et renvoie la charge utile vérifiée.
        Soulève InvalidSignature (signature) ou CaptureFailed (rédemption de jeton).
        """

    @abc.abstractmethod
    def handle_callback(self, payload: Dict[str, Any]) -> PaymentResult:
        """Traduit une charge utile vérifiée en PaymentResult."""

    @abc.abstractmethod
    def verify_payment(self, transaction_ref: str) -> PaymentResult:
        """Interroge le fournisseur (hors bande) sur l'état d'une transaction."""

    def capture_reference(self, request: CallbackRequest) -> Optional[str]:
        """
        Référence d'un ordre que verify_callback encaisserait (capture) pour ce retour.
        None si la vérification ne déplace pas de fonds.
        """
        return None

    def get_gateway_name(self) -> str:
        return self.name

    @property
    def gateway_name(self) -> str:
        return self.name

    def describe(self) -> Dict[str, Any]:
        return {"id": self.name, "flow": self.flow, "currencies": sorted(self.supported_currencies)}

    def validate_payment_data(self, amount: Decimal, currency: str, customer: Optional[Dict[str, Any]] = None) -> None:
        """Contrôles locaux avant tout appel réseau (montant, devise)."""
        if amount is None or amount <= 0:
            raise InvalidAmount(f"Montant invalide pour {self.name}: {amount}")
        if self.supported_currencies and (currency or "").upper() not in self.supported_currencies:
            raise PaymentRejected(
                f"Devise {currency} non supportée par {self.name}",
                gateway=self.name,
                details={"currency": currency, "supported": sorted(self.supported_currencies)},
            )

    # --- Transport ---

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.http.timeout)
        return self._client

    def with_retries(self, op: str, fn: Callable[[], T]) -> T:
        """
        Exécute fn avec au plus http.max_retries nouvelles tentatives,
        uniquement sur GatewayUnavailable. Les autres erreurs remontent immédiatement.
        """
        attempts = max(0, min(self.http.max_retries, 2)) + 1
        for attempt in range(1, attempts + 1):
            try:
                return fn()
            except GatewayUnavailable as e:
                if attempt >= attempts:
                    logger.warning("gateway.unavailable gateway=%s op=%s attempts=%s error=%s", self.name, op, attempt, e.message)
                    raise
                logger.info("gateway.retry gateway=%s op=%s attempt=%s error=%s", self.name, op, attempt, e.message)
                if self.retry_delay:
                    time.sleep(self.retry_delay * attempt)
        raise GatewayUnavailable("unreachable", gateway=self.name)

    def request_json(
        self,
        method: str,
        url: str,
        *,
        op: str,
        timeout: Optional[float] = None,
        **kwargs: Any,
    ) -> Dict[str, Any]:
        """
        Appel HTTP JSON borné (timeout) avec retries sur indisponibilité.
        - réseau/timeout/5xx/429 -> GatewayUnavailable
        - 4xx -> map_client_error (PaymentRejected par défaut)
        - corps non JSON / non objet -> GatewayProtocolError
        """
        def _once() -> Dict[str, Any]:
            try:
                resp = self.client.request(method, url, timeout=timeout or self.http.timeout, **kwargs)
            except httpx.TimeoutException as e:
                raise GatewayUnavailable(f"Timeout {self.name} ({op})", gateway=self.name) from e
            except httpx.TransportError as e:
                raise GatewayUnavailable(f"Erreur réseau {self.name} ({op}): {e}", gateway=self.name) from e
            return self.parse_response(resp, op=op)

        return self.with_retries(op, _once)

    def parse_response(self, resp: httpx.Response, *, op: str) -> Dict[str, Any]:
        if resp.status_code >= 500 or resp.status_code == 429:
            raise GatewayUnavailable(
                f"{self.name} indisponible ({op}): HTTP {resp.status_code}",
                gateway=self.name,
                details={"status": resp.status_code},
            )
        try:
            body = resp.json() if resp.content else {}
        except ValueError:
            body = None
        if resp.status_code >= 400:
            raise self.map_client_error(resp.status_code, body if isinstance(body, dict) else {}, op=op)
        if not isinstance(body, dict):
            logger.error("gateway.protocol_error gateway=%s op=%s status=%s", self.name, op, resp.status_code)
            raise GatewayProtocolError(f"Réponse {self.name} invalide ({op})", gateway=self.name)
        return body

    def map_client_error(self, status: int, body: Dict[str, Any], *, op: str) -> PaymentError:
        message = body.get("message") or body.get("detail") or body.get("error") or f"HTTP {status}"
        return PaymentRejected(f"{self.name} a refusé la requête ({op}): {message}", gateway=self.name, details={"status": status})

    def require(self, body: Dict[str, Any], key: str, *, op: str) -> Any:
        value = body.get(key)
        if value in (None, ""):
            logger.error("gateway.protocol_error gateway=%s op=%s missing=%s", self.name, op, key)
            raise GatewayProtocolError(f"Réponse {self.name} incomplète ({op}): '{key}' manquant", gateway=self.name)
        return value
