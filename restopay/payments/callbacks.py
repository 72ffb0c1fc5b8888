"""
Frontière de sécurité des retours passerelles (webhooks, redirections succès/annulation).

Ordre strict: résolution -> vérification d'authenticité -> traduction -> apply_result.
Une vérification en échec n'atteint jamais le stockage.
"""
import logging
from typing import Optional

from restopay.payments.errors import (
    CaptureFailed,
    GatewayError,
    InvalidSignature,
    InvoiceNotFound,
)
from restopay.payments.models import CallbackOutcome, CallbackRequest, PaymentStatus, mask_reference
from restopay.payments.service import PaymentOrchestrator

logger = logging.getLogger(__name__)


class CallbackProcessor:
    def __init__(self, orchestrator: PaymentOrchestrator):
        self.orchestrator = orchestrator

    @property
    def registry(self):
        return self.orchestrator.registry

    def handle(self, gateway_id: str, request: CallbackRequest) -> CallbackOutcome:
        """
        Codes de sortie (via le handler d'exceptions):
        - InvalidSignature / CaptureFailed -> 400, aucun changement d'état
        - GatewayUnavailable -> 503 (le fournisseur doit réessayer)
        - facture inconnue après vérification -> 'ignored' (200)
        """
        gateway = self.registry.resolve(gateway_id)
        skipped = self._skip_capture(gateway, request)
        if skipped is not None:
            return skipped
        try:
            payload = gateway.verify_callback(request)
        except (InvalidSignature, CaptureFailed) as e:
            logger.warning(
                "payments.callback rejected gateway=%s kind=%s code=%s body_sha256=%s remote=%s",
                gateway.name, request.kind, e.code, request.body_digest(), request.remote_addr,
            )
            raise
        except GatewayError as e:
            if e.retryable:
                logger.warning("payments.callback unavailable gateway=%s kind=%s error=%s", gateway.name, request.kind, e.message)
                raise
            logger.warning(
                "payments.callback rejected gateway=%s kind=%s code=%s body_sha256=%s remote=%s",
                gateway.name, request.kind, e.code, request.body_digest(), request.remote_addr,
            )
            raise CaptureFailed(f"Retour {gateway.name} non vérifiable", details={"code": e.code}) from e

        if not payload:
            logger.info("payments.callback unhandled_event gateway=%s kind=%s", gateway.name, request.kind)
            return CallbackOutcome(status="ignored", gateway=gateway.name)

        result = gateway.handle_callback(payload)
        if not result.transaction_ref:
            logger.info("payments.callback no_reference gateway=%s kind=%s", gateway.name, request.kind)
            return CallbackOutcome(status="ignored", gateway=gateway.name, payment_status=result.status)

        raw = {"source": request.kind, **result.raw}
        try:
            outcome = self.orchestrator.apply_result(result.transaction_ref, result.status, raw, gateway=gateway.name)
        except InvoiceNotFound:
            logger.warning(
                "payments.callback unknown_invoice gateway=%s ref=%s",
                gateway.name, mask_reference(result.transaction_ref),
            )
            return CallbackOutcome(status="ignored", gateway=gateway.name, payment_status=result.status)

        status = "noop" if (outcome.noop or outcome.replay or outcome.conflict) else "accepted"
        logger.info(
            "payments.callback %s gateway=%s kind=%s invoice_id=%s status=%s",
            status, gateway.name, request.kind, outcome.invoice.id, outcome.invoice.payment_status.value,
        )
        return CallbackOutcome(
            status=status,
            gateway=gateway.name,
            payment_status=outcome.invoice.payment_status,
            invoice_id=outcome.invoice.id,
            order_paid=outcome.order_paid,
        )


    def _skip_capture(self, gateway, request: CallbackRequest) -> Optional[CallbackOutcome]:
        """
        Lecture seule avant une vérification qui encaisse des fonds:
        - référence sans facture locale -> jamais capturée (400 navigateur, 'ignored' webhook)
        - facture déjà close -> 'noop' sans capture
        """
        reference = gateway.capture_reference(request)
        if not reference:
            return None
        invoice = self.orchestrator.store.find_invoice_by_ref(reference, gateway.name)
        if invoice is None:
            logger.warning(
                "payments.callback capture_refused gateway=%s kind=%s ref=%s reason=unknown_invoice",
                gateway.name, request.kind, mask_reference(reference),
            )
            if request.kind == "webhook":
                return CallbackOutcome(status="ignored", gateway=gateway.name)
            raise CaptureFailed(f"Retour {gateway.name} sans facture correspondante")
        if invoice.payment_status is not PaymentStatus.PENDING:
            logger.warning(
                "payments.callback capture_refused gateway=%s kind=%s invoice_id=%s status=%s",
                gateway.name, request.kind, invoice.id, invoice.payment_status.value,
            )
            return CallbackOutcome(
                status="noop",
                gateway=gateway.name,
                payment_status=invoice.payment_status,
                invoice_id=invoice.id,
            )
        return None


def redirect_status(outcome: Optional[CallbackOutcome]) -> str:
    """Statut lisible pour les pages de retour navigateur."""
    if outcome is None or outcome.payment_status is None:
        return PaymentStatus.PENDING.value
    return outcome.payment_status.value
