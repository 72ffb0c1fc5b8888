"""
Registre des passerelles: construit une fois au démarrage, immuable ensuite.
Pas de passerelle par défaut: un identifiant inconnu est une erreur.
"""
import logging
from types import MappingProxyType
from typing import Any, Dict, Iterable, List, Mapping, Optional

from restopay.config import Settings
from restopay.payments.errors import UnsupportedGateway
from restopay.payments.gateways import GatewayClient, PayPalGateway, PaymobGateway, StripeGateway

logger = logging.getLogger(__name__)


class GatewayRegistry:
    def __init__(self, clients: Iterable[GatewayClient]):
        self._frozen = False
        self._clients: Dict[str, GatewayClient] = {}
        for client in clients:
            self.register(client)
        self._frozen = True
        self._clients = MappingProxyType(self._clients)  # type: ignore[assignment]

    def register(self, client: GatewayClient) -> None:
        if self._frozen:
            raise RuntimeError("GatewayRegistry est figé après construction")
        key = client.get_gateway_name().lower()
        if not key:
            raise ValueError("Passerelle sans identifiant")
        if key in self._clients:
            raise ValueError(f"Passerelle déjà enregistrée: {key}")
        self._clients[key] = client

    def resolve(self, identifier: Optional[str]) -> GatewayClient:
        key = str(identifier or "").strip().lower()
        client = self._clients.get(key)
        if client is None:
            raise UnsupportedGateway(str(identifier or ""), self.supported())
        return client

    def supported(self) -> List[str]:
        return sorted(self._clients)

    def describe(self) -> List[Dict[str, Any]]:
        return [self._clients[k].describe() for k in self.supported()]

    def __contains__(self, identifier: str) -> bool:
        return str(identifier or "").lower() in self._clients

    def __len__(self) -> int:
        return len(self._clients)

    @property
    def clients(self) -> Mapping[str, GatewayClient]:
        return self._clients


def build_registry(settings: Settings) -> GatewayRegistry:
    """
    Construit le registre depuis les Settings.
    - Seules les passerelles configurées (identifiants présents) sont enregistrées
    - PAYMENTS_FORCE_GATEWAYS force l'enregistrement (dev: erreurs GatewayNotConfigured à l'usage)
    """
    forced = {g.lower() for g in settings.force_gateways}
    candidates = (
        ("paypal", settings.paypal.configured, lambda: PayPalGateway(settings.paypal)),
        ("stripe", settings.stripe.configured, lambda: StripeGateway(settings.stripe)),
        ("paymob", settings.paymob.configured, lambda: PaymobGateway(settings.paymob)),
    )
    clients: List[GatewayClient] = []
    for name, configured, factory in candidates:
        if configured or name in forced:
            clients.append(factory())
        else:
            logger.info("payments.registry gateway=%s skipped=not_configured", name)
    registry = GatewayRegistry(clients)
    logger.info("payments.registry supported=%s", ",".join(registry.supported()) or "-")
    return registry


