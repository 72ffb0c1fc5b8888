"""
Logique de tarification pure (pas de passerelle, pas de BD).
Une politique = un taux de taxe + un taux de service, appliquée une fois par facture.
"""
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Union

from .errors import InvalidAmount, InvalidPolicy

CENT = Decimal("0.01")

# module restopay.payments.pricing
class PricingPolicy(str, Enum):
    FULL_SERVICE = "full_service"
    SERVICE_ONLY = "service_only"


@dataclass(frozen=True)
class PolicyRates:
    name: str
    description: str
    tax_rate: Decimal
    service_charge_rate: Decimal
    legacy_id: int


POLICY_RATES: Dict[PricingPolicy, PolicyRates] = {
    PricingPolicy.FULL_SERVICE: PolicyRates(
        name="Full Service Package",
        description="14% taxes + 20% service charge",
        tax_rate=Decimal("0.14"),
        service_charge_rate=Decimal("0.20"),
        legacy_id=1,
    ),
    PricingPolicy.SERVICE_ONLY: PolicyRates(
        name="Service Only",
        description="15% service charge only",
        tax_rate=Decimal("0"),
        service_charge_rate=Decimal("0.15"),
        legacy_id=2,
    ),
}

_LEGACY_IDS = {rates.legacy_id: policy for policy, rates in POLICY_RATES.items()}


@dataclass(frozen=True)
class PricingBreakdown:
    policy: PricingPolicy
    base_amount: Decimal
    tax: Decimal
    service_charge: Decimal
    final_amount: Decimal

    def to_dict(self) -> Dict[str, str]:
        return {
            "pricing_policy": self.policy.value,
            "base_amount": f"{self.base_amount:.2f}",
            "tax_amount": f"{self.tax:.2f}",
            "service_charge_amount": f"{self.service_charge:.2f}",
            "final_amount": f"{self.final_amount:.2f}",
        }


def round_money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def to_decimal(value: Any) -> Decimal:
    """
    Convertit un montant (str|int|float|Decimal) en Decimal.
    - Les floats passent par str() pour éviter 0.1 -> 0.1000000000000000055...
    - Soulève InvalidAmount si la valeur n'est pas un nombre fini.
    """
    if isinstance(value, bool):
        raise InvalidAmount(f"Montant invalide: {value!r}")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        raise InvalidAmount(f"Montant invalide: {value!r}")
    if not d.is_finite():
        raise InvalidAmount(f"Montant invalide: {value!r}")
    return d


def resolve_policy(policy: Union[PricingPolicy, str, int]) -> PricingPolicy:
    """
    Accepte une PricingPolicy, sa valeur texte ("full_service", "full-service")
    ou l'identifiant numérique historique (1 / 2). Soulève InvalidPolicy sinon.
    """
    if isinstance(policy, PricingPolicy):
        return policy
    if isinstance(policy, int) and not isinstance(policy, bool):
        if policy in _LEGACY_IDS:
            return _LEGACY_IDS[policy]
        raise InvalidPolicy(f"Politique de tarification inconnue: {policy}")
    raw = str(policy or "").strip().lower().replace("-", "_")
    if raw.isdigit() and int(raw) in _LEGACY_IDS:
        return _LEGACY_IDS[int(raw)]
    try:
        return PricingPolicy(raw)
    except ValueError:
        raise InvalidPolicy(f"Politique de tarification inconnue: {policy}")


def calculate(base_amount: Any, policy: Union[PricingPolicy, str, int]) -> PricingBreakdown:
    """
    Calcule taxe, frais de service et montant final.
    - Taxe et service sont arrondis indépendamment (2 décimales, ROUND_HALF_UP)
      puis additionnés au montant de base: final = base + round(tax) + round(service).
    - Déterministe: mêmes entrées -> même sortie (création de facture rejouable).
    """
    resolved = resolve_policy(policy)
    base = to_decimal(base_amount)
    if base <= 0:
        raise InvalidAmount(f"Le montant de base doit être positif: {base_amount!r}")
    rates = POLICY_RATES[resolved]
    tax = round_money(base * rates.tax_rate)
    service = round_money(base * rates.service_charge_rate)
    return PricingBreakdown(
        policy=resolved,
        base_amount=base,
        tax=tax,
        service_charge=service,
        final_amount=base + tax + service,
    )


def list_policies() -> List[Dict[str, Any]]:
    """Description publique des politiques (GET /payments/policies)."""
    return [
        {
            "id": policy.value,
            "legacy_id": rates.legacy_id,
            "name": rates.name,
            "description": rates.description,
            "tax_rate": str(rates.tax_rate),
            "service_charge_rate": str(rates.service_charge_rate),
        }
        for policy, rates in POLICY_RATES.items()
    ]
