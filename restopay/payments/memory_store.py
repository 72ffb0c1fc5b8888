"""
Stockage en mémoire (dev / tests), mêmes garanties que les fonctions SQL:
- begin_intent et apply_status s'exécutent sous le verrou de la commande
- compare-and-set sur payment_status='pending'
- journal d'audit append-only
"""
import threading
import uuid
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from restopay.payments.errors import AlreadyPaid, DuplicateIntent, OrderNotFound, OrderNotPayable
from restopay.payments.models import (
    ORDER_STATUS_FOR,
    AuditEntry,
    Invoice,
    Order,
    OrderStatus,
    PaymentStatus,
    utcnow,
)
from restopay.payments.pricing import PricingBreakdown, to_decimal
from restopay.payments.repository import PaymentStore, StatusChange


class InMemoryPaymentStore(PaymentStore):
    kind = "memory"

    def __init__(self):
        self._orders: Dict[str, Order] = {}
        self._invoices: Dict[str, Invoice] = {}
        self._events: Dict[str, List[AuditEntry]] = defaultdict(list)
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.RLock()

    def _lock(self, order_id: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(order_id)
            if lock is None:
                lock = self._locks[order_id] = threading.RLock()
            return lock

    def _snapshot(self, invoice: Invoice) -> Invoice:
        snap = invoice.copy()
        snap.audit_trail = list(self._events[invoice.id])
        return snap

    # --- Commandes (alimentées par le module commandes en amont) ---

    def add_order(self, order_id: str, user_id: str, amount: Any, status: OrderStatus = OrderStatus.PENDING) -> Order:
        order = Order(id=str(order_id), user_id=str(user_id), amount=to_decimal(amount), status=OrderStatus(status))
        with self._lock(order.id):
            self._orders[order.id] = order
        return Order(**vars(order))

    def set_order_status(self, order_id: str, status: OrderStatus) -> None:
        with self._lock(order_id):
            self._orders[order_id].status = OrderStatus(status)

    def get_order(self, order_id):
        with self._lock(order_id):
            order = self._orders.get(order_id)
            return Order(**vars(order)) if order else None

    # --- Factures ---

    def _claimable(self, invoice: Invoice, stale_after: int) -> bool:
        events = self._events[invoice.id]
        if events and events[-1].event == "intent_failed":
            return True
        return invoice.updated_at < utcnow() - timedelta(seconds=stale_after)

    def _reusable(self, invoice: Invoice) -> bool:
        # Identifiant refusé comme doublon par la passerelle: nouvelle facture
        events = self._events[invoice.id]
        return not (events and events[-1].event == "intent_failed" and events[-1].payload.get("code") == "duplicate_intent")

    def begin_intent(self, *, order_id, owner_id, pricing: PricingBreakdown, gateway, currency, stale_after=300) -> Tuple[Invoice, str]:
        with self._lock(order_id):
            order = self._orders.get(order_id)
            if order is None or order.user_id != owner_id:
                raise OrderNotFound(order_id)
            if order.status is OrderStatus.PAID:
                raise AlreadyPaid(order_id)
            if order.status is OrderStatus.CANCELLED:
                raise OrderNotPayable(f"La commande {order_id} n'est pas payable", details={"order_id": order_id})

            pending = sorted(
                (
                    inv for inv in self._invoices.values()
                    if inv.order_id == order_id and inv.payment_status is PaymentStatus.PENDING
                ),
                key=lambda i: i.created_at,
                reverse=True,
            )
            retry: Optional[Invoice] = None
            for inv in pending:
                if inv.transaction_ref is not None:
                    continue
                if not self._claimable(inv, stale_after):
                    raise DuplicateIntent(
                        f"Une intention de paiement est déjà en cours pour la commande {order_id}",
                        details={"order_id": order_id},
                    )
                if (
                    retry is None
                    and inv.gateway == gateway
                    and inv.pricing_policy is pricing.policy
                    and self._reusable(inv)
                ):
                    retry = inv
            if retry is not None:
                retry.updated_at = utcnow()
                self._append(retry.id, "intent_requested", {"gateway": gateway, "retry": True})
                return self._snapshot(retry), "retry"
            for inv in pending:
                if inv.transaction_ref is not None and inv.gateway == gateway and inv.pricing_policy is pricing.policy:
                    return self._snapshot(inv), "existing"

            invoice = Invoice(
                id=str(uuid.uuid4()),
                order_id=order_id,
                pricing_policy=pricing.policy,
                tax_amount=pricing.tax,
                service_charge_amount=pricing.service_charge,
                final_amount=pricing.final_amount,
                currency=currency,
                gateway=gateway,
            )
            self._invoices[invoice.id] = invoice
            self._append(invoice.id, "intent_requested", {
                "gateway": gateway,
                "pricing_policy": pricing.policy.value,
                "final_amount": f"{pricing.final_amount:.2f}",
            })
            return self._snapshot(invoice), "created"

    def attach_transaction(self, invoice_id, transaction_ref, payload):
        invoice = self._invoices[invoice_id]
        with self._lock(invoice.order_id):
            if invoice.transaction_ref is None:
                invoice.transaction_ref = transaction_ref
                invoice.updated_at = utcnow()
            self._append(invoice_id, "intent_created", payload)
            return self._snapshot(invoice)

    def _append(self, invoice_id: str, event: str, payload: Optional[Dict[str, Any]]) -> AuditEntry:
        entry = AuditEntry(timestamp=utcnow(), event=event, payload=dict(payload or {}))
        self._events[invoice_id].append(entry)
        return entry

    def append_event(self, invoice_id, event, payload=None):
        invoice = self._invoices.get(invoice_id)
        with self._lock(invoice.order_id) if invoice else self._guard:
            return self._append(invoice_id, event, payload)

    def get_invoice(self, invoice_id):
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            return None
        with self._lock(invoice.order_id):
            return self._snapshot(invoice)

    def find_invoice_by_ref(self, transaction_ref, gateway=None):
        for invoice in list(self._invoices.values()):
            if invoice.transaction_ref == transaction_ref and (gateway is None or invoice.gateway == gateway):
                with self._lock(invoice.order_id):
                    return self._snapshot(invoice)
        return None

    def apply_status(self, invoice_id, status, payload):
        invoice = self._invoices[invoice_id]
        with self._lock(invoice.order_id):
            previous = invoice.payment_status
            if previous is not PaymentStatus.PENDING:
                return StatusChange(invoice=self._snapshot(invoice), applied=False, previous_status=previous)

            order = self._orders.get(invoice.order_id)
            order_paid = order_was_paid = False
            invoice.payment_status = status
            invoice.updated_at = utcnow()
            if order is not None:
                if status is PaymentStatus.COMPLETED:
                    if order.status is OrderStatus.PAID:
                        order_was_paid = True
                    else:
                        order.status = OrderStatus.PAID
                        order_paid = True
                elif order.status is not OrderStatus.PAID:
                    order.status = ORDER_STATUS_FOR[status]
            self._append(invoice_id, "status_applied", {"from": previous.value, "to": status.value, "payload": payload or {}})
            return StatusChange(
                invoice=self._snapshot(invoice),
                applied=True,
                previous_status=previous,
                order_paid=order_paid,
                order_was_paid=order_was_paid,
            )

    def list_invoices_for_order(self, order_id):
        with self._lock(order_id):
            rows = [inv for inv in self._invoices.values() if inv.order_id == order_id]
            return [self._snapshot(inv) for inv in sorted(rows, key=lambda i: i.created_at)]

    def list_pending(self, older_than: datetime, limit: int = 100):
        rows = [
            inv for inv in list(self._invoices.values())
            if inv.payment_status is PaymentStatus.PENDING
            and inv.transaction_ref is not None
            and inv.created_at < older_than
        ]
        return [self._snapshot(inv) for inv in sorted(rows, key=lambda i: i.created_at)[:limit]]

    def total_invoices(self) -> int:
        return len(self._invoices)
