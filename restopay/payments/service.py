"""
Cas d'usage 'payments': orchestre tarification, passerelles et stockage.

Deux points d'entrée qui modifient l'état:
- create_intent: prix + facture 'pending' + intention chez la passerelle (ne marque jamais rien payé)
- apply_result: seul chemin qui fait évoluer payment_status / statut commande
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

from restopay.config import Settings
from restopay.payments.errors import (
    AlreadyPaid,
    GatewayProtocolError,
    InvoiceNotFound,
    OrderNotFound,
    PaymentError,
)
from restopay.payments.models import (
    ApplyOutcome,
    Invoice,
    OrderStatus,
    PaymentResult,
    PaymentStatus,
    canonical_status,
    mask_reference,
)
from restopay.payments.pricing import PricingPolicy, calculate
from restopay.payments.registry import GatewayRegistry
from restopay.payments.repository import PaymentStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IntentResult:
    invoice: Invoice
    next_action: Optional[Dict[str, Any]]
    created: bool


@dataclass(frozen=True)
class VerificationResult:
    invoice: Invoice
    payment: PaymentResult
    outcome: Optional[ApplyOutcome] = None


def _is_admin(user: Dict[str, Any]) -> bool:
    return str(user.get("role") or "").lower() == "admin"


# module restopay.payments.service
class PaymentOrchestrator:
    def __init__(self, store: PaymentStore, registry: GatewayRegistry, settings: Settings):
        self.store = store
        self.registry = registry
        self.settings = settings

    # --- Création d'intention ---

    def create_intent(
        self,
        *,
        order_id: str,
        user: Dict[str, Any],
        policy: Union[PricingPolicy, str, int],
        gateway_id: str,
        extra_data: Optional[Dict[str, Any]] = None,
    ) -> IntentResult:
        """
        Étapes:
          1) commande déjà payée -> AlreadyPaid, puis passerelle + tarification (aucune écriture)
          2) store.begin_intent (verrou commande): created | existing | retry
          3) appel passerelle hors verrou, idempotency_key = id de facture
          4) rattachement de la référence + entrée d'audit
        Une facture 'existing' est renvoyée telle quelle, sans nouvel appel passerelle.
        """
        owner_id = str(user.get("id") or "")
        order = self.store.get_order(order_id)
        if order is None or order.user_id != owner_id:
            raise OrderNotFound(order_id)
        if order.status is OrderStatus.PAID:
            raise AlreadyPaid(order_id)
        gateway = self.registry.resolve(gateway_id)
        pricing = calculate(order.amount, policy)
        currency = (order.currency or self.settings.currency).upper()
        extra = dict(extra_data or {})
        gateway.validate_payment_data(pricing.final_amount, currency, extra)

        invoice, outcome = self.store.begin_intent(
            order_id=order_id,
            owner_id=owner_id,
            pricing=pricing,
            gateway=gateway.name,
            currency=currency,
            stale_after=self.settings.intent_stale_seconds,
        )
        if outcome == "existing":
            logger.info("payments.create_intent replay order_id=%s invoice_id=%s gateway=%s", order_id, invoice.id, gateway.name)
            return IntentResult(invoice=invoice, next_action=self._last_next_action(invoice), created=False)

        customer = {**extra, "email": extra.get("email") or user.get("email")}
        try:
            result = gateway.create_payment(
                amount=invoice.final_amount,
                currency=currency,
                description=f"Commande {order_id}",
                return_url=self.settings.callback_url(gateway.name, "success"),
                cancel_url=self.settings.callback_url(gateway.name, "cancel"),
                customer=customer,
                metadata={"order_id": order_id, "invoice_id": invoice.id},
                idempotency_key=invoice.id,
            )
            if not result.transaction_ref:
                raise GatewayProtocolError("Référence de transaction absente", gateway=gateway.name)
        except PaymentError as e:
            self.store.append_event(
                invoice.id,
                "intent_failed",
                {"code": e.code, "message": e.message, "retryable": e.retryable},
            )
            logger.warning(
                "payments.create_intent failed order_id=%s invoice_id=%s gateway=%s code=%s retryable=%s",
                order_id, invoice.id, gateway.name, e.code, e.retryable,
            )
            raise

        invoice = self.store.attach_transaction(
            invoice.id,
            result.transaction_ref,
            {"transaction_ref": result.transaction_ref, "next_action": result.next_action, "raw": result.raw},
        )
        logger.info(
            "payments.create_intent ok order_id=%s invoice_id=%s gateway=%s policy=%s final_amount=%s outcome=%s",
            order_id, invoice.id, gateway.name, pricing.policy.value, pricing.final_amount, outcome,
        )
        return IntentResult(invoice=invoice, next_action=result.next_action, created=True)

    @staticmethod
    def _last_next_action(invoice: Invoice) -> Optional[Dict[str, Any]]:
        for entry in reversed(invoice.audit_trail):
            if entry.event == "intent_created":
                return entry.payload.get("next_action")
        return None

    # --- Application d'un résultat ---

    def apply_result(
        self,
        transaction_ref: str,
        status: Union[PaymentStatus, str],
        raw_payload: Optional[Dict[str, Any]] = None,
        *,
        gateway: Optional[str] = None,
    ) -> ApplyOutcome:
        """
        Règles:
        - facture inconnue -> InvoiceNotFound (pas de retry côté appelant)
        - statut non terminal -> no-op (entrée 'callback_received')
        - même statut terminal -> rejeu absorbé (entrée 'replay_ignored')
        - autre statut terminal -> conflit journalisé, jamais de rétrogradation ('conflict_ignored')
        - completed sur facture failed/cancelled -> 'refund_required' (fonds à rembourser)
        - sinon: facture + commande dans une unité atomique (store.apply_status)
        """
        payload = dict(raw_payload or {})
        invoice = self.store.find_invoice_by_ref(transaction_ref, gateway)
        if invoice is None:
            logger.warning("payments.apply_result unknown_ref gateway=%s ref=%s", gateway, mask_reference(transaction_ref))
            raise InvoiceNotFound(
                "Facture introuvable pour cette référence",
                details={"transaction_ref": mask_reference(transaction_ref)},
            )

        target = canonical_status(status)
        if target is PaymentStatus.PENDING:
            self.store.append_event(invoice.id, "callback_received", {"status": str(getattr(status, "value", status)), "payload": payload})
            return ApplyOutcome(invoice=self._reload(invoice), applied=False, order_paid=False, noop=True)

        if invoice.payment_status is not PaymentStatus.PENDING:
            return self._absorb(invoice, target, payload)

        change = self.store.apply_status(invoice.id, target, payload)
        if not change.applied:
            # CAS perdu: un autre callback a déjà statué
            return self._absorb(change.invoice, target, payload)

        if change.order_was_paid:
            logger.warning(
                "payments.double_payment order_id=%s invoice_id=%s gateway=%s ref=%s (remboursement à traiter)",
                change.invoice.order_id, change.invoice.id, change.invoice.gateway, mask_reference(transaction_ref),
            )
        logger.info(
            "payments.apply_result invoice_id=%s status=%s previous=%s order_paid=%s",
            change.invoice.id, target.value, change.previous_status.value, change.order_paid,
        )
        return ApplyOutcome(invoice=change.invoice, applied=True, order_paid=change.order_paid)

    def _absorb(self, invoice: Invoice, target: PaymentStatus, payload: Dict[str, Any]) -> ApplyOutcome:
        if invoice.payment_status is target:
            self.store.append_event(invoice.id, "replay_ignored", {"status": target.value, "payload": payload})
            logger.info("payments.apply_result replay invoice_id=%s status=%s", invoice.id, target.value)
            return ApplyOutcome(invoice=self._reload(invoice), applied=False, order_paid=False, replay=True)
        if target is PaymentStatus.COMPLETED:
            # Fonds encaissés sur une facture déjà close en échec/annulation
            self.store.append_event(
                invoice.id,
                "refund_required",
                {"current": invoice.payment_status.value, "received": target.value, "payload": payload},
            )
            logger.warning(
                "payments.refund_required order_id=%s invoice_id=%s gateway=%s current=%s",
                invoice.order_id, invoice.id, invoice.gateway, invoice.payment_status.value,
            )
            return ApplyOutcome(invoice=self._reload(invoice), applied=False, order_paid=False, conflict=True)
        self.store.append_event(
            invoice.id,
            "conflict_ignored",
            {"current": invoice.payment_status.value, "received": target.value, "payload": payload},
        )
        logger.warning(
            "payments.apply_result conflict invoice_id=%s current=%s received=%s",
            invoice.id, invoice.payment_status.value, target.value,
        )
        return ApplyOutcome(invoice=self._reload(invoice), applied=False, order_paid=False, conflict=True)

    def _reload(self, invoice: Invoice) -> Invoice:
        return self.store.get_invoice(invoice.id) or invoice

    # --- Lecture / vérification ---

    def _owned_invoice(self, invoice: Optional[Invoice], user: Dict[str, Any]) -> Invoice:
        if invoice is None:
            raise InvoiceNotFound("Facture introuvable")
        if not _is_admin(user):
            order = self.store.get_order(invoice.order_id)
            if order is None or order.user_id != str(user.get("id") or ""):
                raise InvoiceNotFound("Facture introuvable")
        return invoice

    def is_owner(self, invoice: Invoice, user: Dict[str, Any]) -> bool:
        order = self.store.get_order(invoice.order_id)
        return order is not None and order.user_id == str(user.get("id") or "")

    def get_invoice(self, invoice_id: str, user: Dict[str, Any]) -> Invoice:
        return self._owned_invoice(self.store.get_invoice(invoice_id), user)

    def list_invoices_for_order(self, order_id: str, user: Dict[str, Any]) -> List[Invoice]:
        order = self.store.get_order(order_id)
        if order is None or (order.user_id != str(user.get("id") or "") and not _is_admin(user)):
            raise OrderNotFound(order_id)
        return self.store.list_invoices_for_order(order_id)

    def verify(self, gateway_id: str, transaction_ref: str, user: Optional[Dict[str, Any]] = None) -> VerificationResult:
        """
        Vérification hors bande: interroge la passerelle puis applique un statut terminal.
        - user=None: appel système (réconciliation), sans contrôle de propriété
        """
        gateway = self.registry.resolve(gateway_id)
        invoice = self.store.find_invoice_by_ref(transaction_ref, gateway.name)
        if user is not None:
            invoice = self._owned_invoice(invoice, user)
        elif invoice is None:
            raise InvoiceNotFound("Facture introuvable", details={"transaction_ref": mask_reference(transaction_ref)})

        result = gateway.verify_payment(transaction_ref)
        self.store.append_event(invoice.id, "verification", {"status": result.status.value, "raw": result.raw})
        outcome = None
        if result.status.is_terminal:
            outcome = self.apply_result(transaction_ref, result.status, {"source": "verification", **result.raw}, gateway=gateway.name)
        return VerificationResult(
            invoice=outcome.invoice if outcome else self._reload(invoice),
            payment=result,
            outcome=outcome,
        )

    def reconcile_pending(self, older_than_minutes: int = 30, limit: int = 100):
        from restopay.payments.reconcile import reconcile_pending
        return reconcile_pending(self, older_than_minutes=older_than_minutes, limit=limit)


def build_orchestrator(settings: Optional[Settings] = None, store: Optional[PaymentStore] = None) -> PaymentOrchestrator:
    """Assemble registre + stockage depuis la configuration (démarrage de l'app, CLI)."""
    from restopay.config import load_settings
    from restopay.payments.registry import build_registry
    from restopay.payments.repository import build_store

    settings = settings or load_settings()
    return PaymentOrchestrator(
        store=store or build_store(settings.store),
        registry=build_registry(settings),
        settings=settings,
    )
