from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field, field_validator

from restopay.payments.models import Invoice, mask_reference


class IntentRequest(BaseModel):
    order_id: str = Field(min_length=1)
    pricing_policy: Union[str, int] = "full_service"
    gateway_data: Dict[str, Any] = Field(default_factory=dict)

    @field_validator("order_id")
    def strip_order_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("order_id vide")
        return v


def serialize_invoice(invoice: Invoice, *, owner: bool = False) -> Dict[str, Any]:
    """
    Représentation publique d'une facture.
    - référence de transaction masquée (4 premiers / 4 derniers caractères)
    - owner=True: ajoute la référence complète et le journal d'audit
    """
    body: Dict[str, Any] = {
        "id": invoice.id,
        "order_id": invoice.order_id,
        "pricing_policy": invoice.pricing_policy.value,
        "tax_amount": f"{invoice.tax_amount:.2f}",
        "service_charge_amount": f"{invoice.service_charge_amount:.2f}",
        "final_amount": f"{invoice.final_amount:.2f}",
        "currency": invoice.currency,
        "gateway": invoice.gateway,
        "masked_transaction_ref": mask_reference(invoice.transaction_ref),
        "payment_status": invoice.payment_status.value,
        "created_at": invoice.created_at.isoformat(),
        "updated_at": invoice.updated_at.isoformat(),
    }
    if owner:
        body["transaction_ref"] = invoice.transaction_ref
        body["audit_trail"] = [e.to_dict() for e in invoice.audit_trail]
    return body


def intent_response(invoice: Invoice, next_action: Optional[Dict[str, Any]], created: bool) -> Dict[str, Any]:
    return {
        "invoice": serialize_invoice(invoice, owner=True),
        "next_action": next_action,
        "created": created,
    }
