"""
Réconciliation des factures 'pending' dont le retour passerelle n'est jamais arrivé.

Usage:
    python -m restopay.payments.reconcile [--minutes 30] [--max 100]
"""
import argparse
import logging
from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, List, Optional

from restopay.payments.errors import PaymentError
from restopay.payments.models import mask_reference, utcnow

if TYPE_CHECKING:
    from restopay.payments.service import PaymentOrchestrator

logger = logging.getLogger(__name__)


@dataclass
class ReconcileReport:
    checked: int = 0
    updated: int = 0
    still_pending: int = 0
    errors: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            "checked": self.checked,
            "updated": self.updated,
            "still_pending": self.still_pending,
            "errors": list(self.errors),
        }


def reconcile_pending(orchestrator: "PaymentOrchestrator", older_than_minutes: int = 30, limit: int = 100) -> ReconcileReport:
    """
    Interroge la passerelle pour chaque facture 'pending' plus ancienne que le seuil.
    Une erreur passerelle est journalisée et n'interrompt pas le balayage.
    """
    cutoff = utcnow() - timedelta(minutes=max(0, older_than_minutes))
    report = ReconcileReport()
    for invoice in orchestrator.store.list_pending(cutoff, limit=limit):
        report.checked += 1
        ref = invoice.transaction_ref or ""
        try:
            verification = orchestrator.verify(invoice.gateway, ref)
        except PaymentError as e:
            logger.warning(
                "payments.reconcile error invoice_id=%s gateway=%s ref=%s code=%s",
                invoice.id, invoice.gateway, mask_reference(ref), e.code,
            )
            report.errors.append(invoice.id)
            continue
        if verification.outcome is not None and verification.outcome.applied:
            report.updated += 1
        elif not verification.payment.status.is_terminal:
            report.still_pending += 1
    logger.info(
        "payments.reconcile done checked=%s updated=%s still_pending=%s errors=%s",
        report.checked, report.updated, report.still_pending, len(report.errors),
    )
    return report


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Réconcilie les factures 'pending' auprès des passerelles")
    parser.add_argument("--minutes", type=int, default=30, help="Seuil d'ancienneté en minutes")
    parser.add_argument("--max", type=int, default=100, help="Nombre maximal de factures traitées")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    from restopay.payments.service import build_orchestrator

    report = reconcile_pending(build_orchestrator(), older_than_minutes=args.minutes, limit=args.max)
    print(f"Checked {report.checked}, updated {report.updated}, still pending {report.still_pending}, errors {len(report.errors)}.")
    return 1 if report.errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
