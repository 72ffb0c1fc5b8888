"""
Enregistrements du domaine paiements: Order (consommée), Invoice (possédée),
AuditEntry (journal append-only) et PaymentResult (forme canonique transitoire).
"""
import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from .pricing import PricingPolicy, to_decimal


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    PAYMENT_FAILED = "payment_failed"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not PaymentStatus.PENDING


# Statut facture terminal -> statut commande
ORDER_STATUS_FOR = {
    PaymentStatus.COMPLETED: OrderStatus.PAID,
    PaymentStatus.FAILED: OrderStatus.PAYMENT_FAILED,
    PaymentStatus.CANCELLED: OrderStatus.CANCELLED,
}

_STATUS_ALIASES = {
    "completed": PaymentStatus.COMPLETED,
    "complete": PaymentStatus.COMPLETED,
    "succeeded": PaymentStatus.COMPLETED,
    "success": PaymentStatus.COMPLETED,
    "paid": PaymentStatus.COMPLETED,
    "captured": PaymentStatus.COMPLETED,
    "failed": PaymentStatus.FAILED,
    "failure": PaymentStatus.FAILED,
    "declined": PaymentStatus.FAILED,
    "denied": PaymentStatus.FAILED,
    "expired": PaymentStatus.FAILED,
    "cancelled": PaymentStatus.CANCELLED,
    "canceled": PaymentStatus.CANCELLED,
    "voided": PaymentStatus.CANCELLED,
}


def canonical_status(value: Any) -> PaymentStatus:
    """Normalise un statut (enum ou texte, casse libre). Tout statut inconnu vaut 'pending' (no-op)."""
    if isinstance(value, PaymentStatus):
        return value
    return _STATUS_ALIASES.get(str(value or "").strip().lower(), PaymentStatus.PENDING)


@dataclass
class Order:
    id: str
    user_id: str
    amount: Decimal
    status: OrderStatus = OrderStatus.PENDING
    currency: Optional[str] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=str(row.get("id")),
            user_id=str(row.get("user_id") or ""),
            amount=to_decimal(row.get("total_amount", row.get("amount", 0))),
            status=OrderStatus(row.get("status") or OrderStatus.PENDING.value),
            currency=row.get("currency"),
        )


@dataclass(frozen=True)
class AuditEntry:
    timestamp: datetime
    event: str
    payload: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {"timestamp": self.timestamp.isoformat(), "event": self.event, "payload": self.payload}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "AuditEntry":
        ts = row.get("created_at") or row.get("timestamp")
        if isinstance(ts, str):
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00"))
        return cls(timestamp=ts or utcnow(), event=str(row.get("event") or ""), payload=row.get("payload") or {})


@dataclass
class Invoice:
    id: str
    order_id: str
    pricing_policy: PricingPolicy
    tax_amount: Decimal
    service_charge_amount: Decimal
    final_amount: Decimal
    currency: str
    gateway: str
    payment_status: PaymentStatus = PaymentStatus.PENDING
    transaction_ref: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    audit_trail: List[AuditEntry] = field(default_factory=list)

    def copy(self) -> "Invoice":
        return replace(self, audit_trail=list(self.audit_trail))

    @classmethod
    def from_row(cls, row: Dict[str, Any], events: Optional[List[Dict[str, Any]]] = None) -> "Invoice":
        def _ts(v):
            if isinstance(v, str):
                return datetime.fromisoformat(v.replace("Z", "+00:00"))
            return v or utcnow()

        return cls(
            id=str(row.get("id")),
            order_id=str(row.get("order_id")),
            pricing_policy=PricingPolicy(row.get("pricing_policy")),
            tax_amount=to_decimal(row.get("tax_amount") or 0),
            service_charge_amount=to_decimal(row.get("service_charge_amount") or 0),
            final_amount=to_decimal(row.get("final_amount") or 0),
            currency=str(row.get("currency") or ""),
            gateway=str(row.get("payment_gateway") or row.get("gateway") or ""),
            payment_status=PaymentStatus(row.get("payment_status") or PaymentStatus.PENDING.value),
            transaction_ref=row.get("transaction_id") or row.get("transaction_ref"),
            created_at=_ts(row.get("created_at")),
            updated_at=_ts(row.get("updated_at")),
            audit_trail=[AuditEntry.from_row(e) for e in (events or [])],
        )


@dataclass(frozen=True)
class PaymentResult:
    """
    Forme canonique retournée par chaque opération GatewayClient.
    - status: completed | failed | cancelled | pending
    - next_action: {"type": "redirect"|"client_secret"|"iframe", ...} pour create_payment
    - raw: charge utile fournisseur (audit)
    """
    success: bool
    status: PaymentStatus
    transaction_ref: Optional[str]
    gateway: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    next_action: Optional[Dict[str, Any]] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status.value,
            "transaction_ref": self.transaction_ref,
            "gateway": self.gateway,
            "amount": f"{self.amount:.2f}" if self.amount is not None else None,
            "currency": self.currency,
            "next_action": self.next_action,
        }


@dataclass(frozen=True)
class ApplyOutcome:
    invoice: Invoice
    applied: bool
    order_paid: bool
    replay: bool = False
    conflict: bool = False
    noop: bool = False


@dataclass(frozen=True)
class CallbackRequest:
    """
    Requête brute d'un retour passerelle, indépendante de FastAPI.
    - kind: "webhook" (POST serveur à serveur), "return" (redirection succès), "cancel"
    - body: octets bruts (les signatures HMAC portent sur le corps exact)
    """
    method: str
    query: Dict[str, str] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    body: bytes = b""
    kind: str = "webhook"
    remote_addr: Optional[str] = None

    def header(self, name: str, default: str = "") -> str:
        lname = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lname:
                return v
        return default

    def json(self) -> Dict[str, Any]:
        if not self.body:
            return {}
        data = json.loads(self.body.decode("utf-8"))
        if not isinstance(data, dict):
            raise ValueError("JSON object expected")
        return data

    def body_digest(self) -> str:
        return hashlib.sha256(self.body or b"").hexdigest()


@dataclass(frozen=True)
class CallbackOutcome:
    status: str  # accepted | noop | ignored
    gateway: str
    payment_status: Optional[PaymentStatus] = None
    invoice_id: Optional[str] = None
    order_paid: bool = False

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": self.status, "gateway": self.gateway}
        if self.payment_status is not None:
            body["payment_status"] = self.payment_status.value
        if self.invoice_id:
            body["invoice_id"] = self.invoice_id
            body["order_paid"] = self.order_paid
        return body


def mask_reference(ref: Optional[str]) -> Optional[str]:
    """Masque une référence de transaction: 4 premiers / 4 derniers caractères visibles."""
    if not ref:
        return ref
    if len(ref) <= 8:
        return "*" * len(ref)
    return f"{ref[:4]}{'*' * (len(ref) - 8)}{ref[-4:]}"
