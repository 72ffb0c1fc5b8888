"""
Accès aux données pour la feature 'payments'.

- PaymentStore: contrat de persistance (commandes consommées, factures possédées, journal d'audit)
- SupabasePaymentStore: implémentation Postgres via Supabase; les unités atomiques
  (verrou de ligne + compare-and-set) sont des fonctions SQL appelées par RPC (sql/payments.sql)
"""
import abc
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import restopay.infra.supabase_client as supabase_client
from restopay.payments.errors import AlreadyPaid, DuplicateIntent, OrderNotFound, OrderNotPayable
from restopay.payments.models import AuditEntry, Invoice, Order, PaymentStatus
from restopay.payments.pricing import PricingBreakdown

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StatusChange:
    """
    Résultat d'une application atomique de statut.
    - applied: le compare-and-set sur payment_status='pending' a réussi
    - order_paid: la commande est passée à 'paid' dans cette unité
    - order_was_paid: la commande était déjà 'paid' via une autre facture (double paiement)
    """
    invoice: Invoice
    applied: bool
    previous_status: PaymentStatus
    order_paid: bool = False
    order_was_paid: bool = False


class PaymentStore(abc.ABC):
    kind = "abstract"

    @abc.abstractmethod
    def get_order(self, order_id: str) -> Optional[Order]:
        ...

    @abc.abstractmethod
    def begin_intent(
        self,
        *,
        order_id: str,
        owner_id: str,
        pricing: PricingBreakdown,
        gateway: str,
        currency: str,
        stale_after: int = 300,
    ) -> Tuple[Invoice, str]:
        """
        Unité atomique sous verrou de la commande. Retourne (facture, issue) avec issue:
        - "created": nouvelle facture pending
        - "existing": facture pending avec référence (même passerelle, même politique)
        - "retry": facture sans référence dont l'appel passerelle a échoué (ou abandonné
          depuis plus de stale_after secondes), réclamée pour un nouvel essai
        Soulève OrderNotFound, AlreadyPaid, OrderNotPayable ou DuplicateIntent.
        """

    @abc.abstractmethod
    def attach_transaction(self, invoice_id: str, transaction_ref: str, payload: Dict[str, Any]) -> Invoice:
        ...

    @abc.abstractmethod
    def append_event(self, invoice_id: str, event: str, payload: Optional[Dict[str, Any]] = None) -> AuditEntry:
        ...

    @abc.abstractmethod
    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        ...

    @abc.abstractmethod
    def find_invoice_by_ref(self, transaction_ref: str, gateway: Optional[str] = None) -> Optional[Invoice]:
        ...

    @abc.abstractmethod
    def apply_status(self, invoice_id: str, status: PaymentStatus, payload: Dict[str, Any]) -> StatusChange:
        """Statut facture + statut commande dans une seule unité atomique (CAS sur 'pending')."""

    @abc.abstractmethod
    def list_invoices_for_order(self, order_id: str) -> List[Invoice]:
        ...

    @abc.abstractmethod
    def list_pending(self, older_than: datetime, limit: int = 100) -> List[Invoice]:
        """Factures 'pending' avec référence, créées avant older_than (réconciliation)."""


_BEGIN_ERRORS = {
    "not_found": lambda order_id: OrderNotFound(order_id),
    "already_paid": lambda order_id: AlreadyPaid(order_id),
    "not_payable": lambda order_id: OrderNotPayable(
        f"La commande {order_id} n'est pas payable", details={"order_id": order_id}
    ),
    "in_flight": lambda order_id: DuplicateIntent(
        f"Une intention de paiement est déjà en cours pour la commande {order_id}", details={"order_id": order_id}
    ),
}


# module restopay.payments.repository
class SupabasePaymentStore(PaymentStore):
    """
    Tables: orders, invoices, invoice_events (append-only).
    Client service-role (bypass RLS): les webhooks n'ont pas de session utilisateur.
    """
    kind = "supabase"

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        return self._client or supabase_client.get_service_supabase()

    def _events(self, invoice_id: str) -> List[Dict[str, Any]]:
        res = (
            self.client.table("invoice_events")
            .select("*")
            .eq("invoice_id", invoice_id)
            .order("id")
            .execute()
        )
        return res.data or []

    def _invoice(self, row: Optional[Dict[str, Any]], with_events: bool = True) -> Optional[Invoice]:
        if not row:
            return None
        events = self._events(str(row.get("id"))) if with_events else []
        return Invoice.from_row(row, events)

    def get_order(self, order_id: str) -> Optional[Order]:
        try:
            res = self.client.table("orders").select("*").eq("id", order_id).limit(1).execute()
        except Exception:
            logger.exception("payments.repository.get_order failed order_id=%s", order_id)
            raise
        rows = res.data or []
        return Order.from_row(rows[0]) if rows else None

    def begin_intent(self, *, order_id, owner_id, pricing, gateway, currency, stale_after=300):
        try:
            res = self.client.rpc(
                "restopay_begin_intent",
                {
                    "p_order_id": order_id,
                    "p_user_id": owner_id,
                    "p_pricing_policy": pricing.policy.value,
                    "p_tax_amount": str(pricing.tax),
                    "p_service_charge_amount": str(pricing.service_charge),
                    "p_final_amount": str(pricing.final_amount),
                    "p_currency": currency,
                    "p_gateway": gateway,
                    "p_stale_seconds": int(stale_after),
                },
            ).execute()
        except Exception:
            logger.exception("payments.repository.begin_intent failed order_id=%s gateway=%s", order_id, gateway)
            raise
        data = res.data or {}
        outcome = data.get("outcome")
        if outcome in _BEGIN_ERRORS:
            raise _BEGIN_ERRORS[outcome](order_id)
        invoice = self._invoice(data.get("invoice"))
        if invoice is None:
            raise RuntimeError(f"restopay_begin_intent: réponse inattendue ({outcome})")
        return invoice, outcome

    def attach_transaction(self, invoice_id, transaction_ref, payload):
        try:
            res = (
                self.client.table("invoices")
                .update({"transaction_id": transaction_ref})
                .eq("id", invoice_id)
                .is_("transaction_id", "null")
                .execute()
            )
        except Exception:
            logger.exception("payments.repository.attach_transaction failed invoice_id=%s", invoice_id)
            raise
        if not res.data:
            logger.warning("payments.repository.attach_transaction noop invoice_id=%s (référence déjà présente)", invoice_id)
        self.append_event(invoice_id, "intent_created", payload)
        return self.get_invoice(invoice_id)

    def append_event(self, invoice_id, event, payload=None):
        row = {"invoice_id": invoice_id, "event": event, "payload": payload or {}}
        res = self.client.table("invoice_events").insert(row).execute()
        rows = res.data or [row]
        return AuditEntry.from_row(rows[0])

    def get_invoice(self, invoice_id):
        res = self.client.table("invoices").select("*").eq("id", invoice_id).limit(1).execute()
        rows = res.data or []
        return self._invoice(rows[0]) if rows else None

    def find_invoice_by_ref(self, transaction_ref, gateway=None):
        query = self.client.table("invoices").select("*").eq("transaction_id", transaction_ref)
        if gateway:
            query = query.eq("payment_gateway", gateway)
        res = query.limit(1).execute()
        rows = res.data or []
        return self._invoice(rows[0]) if rows else None

    def apply_status(self, invoice_id, status, payload):
        try:
            res = self.client.rpc(
                "restopay_apply_invoice_status",
                {"p_invoice_id": invoice_id, "p_status": status.value, "p_payload": payload or {}},
            ).execute()
        except Exception:
            logger.exception("payments.repository.apply_status failed invoice_id=%s status=%s", invoice_id, status.value)
            raise
        data = res.data or {}
        invoice = self._invoice(data.get("invoice"))
        if invoice is None:
            raise RuntimeError(f"restopay_apply_invoice_status: facture introuvable {invoice_id}")
        return StatusChange(
            invoice=invoice,
            applied=bool(data.get("applied")),
            previous_status=PaymentStatus(data.get("previous_status") or PaymentStatus.PENDING.value),
            order_paid=bool(data.get("order_paid")),
            order_was_paid=bool(data.get("order_was_paid")),
        )

    def list_invoices_for_order(self, order_id):
        res = (
            self.client.table("invoices")
            .select("*")
            .eq("order_id", order_id)
            .order("created_at")
            .execute()
        )
        return [self._invoice(r) for r in res.data or []]

    def list_pending(self, older_than, limit=100):
        res = (
            self.client.table("invoices")
            .select("*")
            .eq("payment_status", PaymentStatus.PENDING.value)
            .not_.is_("transaction_id", "null")
            .lt("created_at", older_than.isoformat())
            .order("created_at")
            .limit(limit)
            .execute()
        )
        return [self._invoice(r, with_events=False) for r in res.data or []]


def build_store(kind: str) -> PaymentStore:
    """Sélectionne le stockage (PAYMENTS_STORE): 'memory' (dev/tests) ou 'supabase'."""
    if kind == "memory":
        from restopay.payments.memory_store import InMemoryPaymentStore
        return InMemoryPaymentStore()
    if kind == "supabase":
        return SupabasePaymentStore()
    raise ValueError(f"PAYMENTS_STORE inconnu: {kind}")
