"""
Passerelles de paiement: un client par fournisseur, même contrat (GatewayClient).
"""

from .base import GatewayClient, to_minor_units
from .paypal import PayPalGateway
from .stripe_client import StripeGateway
from .paymob import PaymobGateway

__all__ = [
    "GatewayClient",
    "to_minor_units",
    "PayPalGateway",
    "StripeGateway",
    "PaymobGateway",
]
