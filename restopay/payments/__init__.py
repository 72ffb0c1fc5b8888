"""
Module 'payments' (feature-first): point d'entrée public.
Réunit tarification, passerelles, stockage des factures, orchestration et callbacks.
"""

from .pricing import PricingPolicy, PricingBreakdown, calculate, list_policies, resolve_policy
from .errors import PaymentError
from .models import (
    AuditEntry,
    CallbackOutcome,
    CallbackRequest,
    Invoice,
    Order,
    OrderStatus,
    PaymentResult,
    PaymentStatus,
)
from .registry import GatewayRegistry, build_registry
from .repository import PaymentStore, build_store
from .service import IntentResult, PaymentOrchestrator, build_orchestrator
from .callbacks import CallbackProcessor

__all__ = [
    # pricing
    "PricingPolicy",
    "PricingBreakdown",
    "calculate",
    "list_policies",
    "resolve_policy",
    # records
    "AuditEntry",
    "CallbackOutcome",
    "CallbackRequest",
    "Invoice",
    "Order",
    "OrderStatus",
    "PaymentResult",
    "PaymentStatus",
    "PaymentError",
    # gateways / stockage
    "GatewayRegistry",
    "build_registry",
    "PaymentStore",
    "build_store",
    # services
    "IntentResult",
    "PaymentOrchestrator",
    "build_orchestrator",
    "CallbackProcessor",
]
