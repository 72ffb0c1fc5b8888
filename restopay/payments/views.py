import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from restopay.payments.callbacks import CallbackProcessor, redirect_status
from restopay.payments.models import CallbackRequest
from restopay.payments.pricing import list_policies
from restopay.payments.schemas import IntentRequest, intent_response, serialize_invoice
from restopay.payments.service import PaymentOrchestrator
from restopay.utils.rate_limit import optional_rate_limit
from restopay.utils.security import require_user

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1/payments", tags=["Payments API"])


def get_orchestrator(request: Request) -> PaymentOrchestrator:
    return request.app.state.orchestrator


def get_callback_processor(request: Request) -> CallbackProcessor:
    processor = getattr(request.app.state, "callback_processor", None)
    if processor is None:
        processor = CallbackProcessor(get_orchestrator(request))
        request.app.state.callback_processor = processor
    return processor


async def _callback_request(request: Request, kind: str) -> CallbackRequest:
    return CallbackRequest(
        method=request.method.upper(),
        query=dict(request.query_params),
        headers=dict(request.headers),
        body=await request.body(),
        kind=kind,
        remote_addr=request.client.host if request.client else None,
    )


# module restopay.payments.views
@router.get("/policies")
def get_policies() -> Dict[str, Any]:
    return {"policies": list_policies()}


@router.get("/gateways")
def get_gateways(orchestrator: PaymentOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return {"gateways": orchestrator.registry.describe()}


@router.post(
    "/{gateway}/intent",
    status_code=201,
    dependencies=[Depends(optional_rate_limit(times=10, seconds=60))],
)
def create_intent(
    gateway: str,
    req: IntentRequest,
    user: Dict[str, Any] = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Crée (ou rejoue) l'intention de paiement d'une commande.
    - Entrée JSON: { "order_id": "...", "pricing_policy": "full_service" | "service_only" | 1 | 2, "gateway_data": {...} }
    - Sécurité: require_user + rate limit (10 req / 60s)
    - 201 {invoice, next_action, created}; created=false si une intention identique existe déjà
    - Erreurs: 400 passerelle/politique/commande payée, 404 commande, 409 intention en cours, 502/503 passerelle
    """
    result = orchestrator.create_intent(
        order_id=req.order_id,
        user=user,
        policy=req.pricing_policy,
        gateway_id=gateway,
        extra_data=req.gateway_data,
    )
    return intent_response(result.invoice, result.next_action, result.created)


@router.api_route("/{gateway}/callback", methods=["GET", "POST"], include_in_schema=False)
async def gateway_callback(
    gateway: str,
    request: Request,
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    """
    Webhook / callback serveur à serveur.
    - Authenticité vérifiée par la passerelle (signature HMAC ou rédemption du jeton)
    - 200 {status: accepted|noop|ignored}; 400 si la vérification échoue; 503 si la passerelle est indisponible
    """
    raw = await _callback_request(request, "webhook")
    outcome = await run_in_threadpool(processor.handle, gateway, raw)
    return JSONResponse(outcome.to_dict())


@router.get("/{gateway}/success", include_in_schema=False)
async def gateway_success(
    gateway: str,
    request: Request,
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    """Redirection navigateur après approbation: même traitement que le callback (kind=return)."""
    raw = await _callback_request(request, "return")
    outcome = await run_in_threadpool(processor.handle, gateway, raw)
    return JSONResponse({**outcome.to_dict(), "payment": redirect_status(outcome)})


@router.get("/{gateway}/cancel", include_in_schema=False)
async def gateway_cancel(
    gateway: str,
    request: Request,
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    raw = await _callback_request(request, "cancel")
    outcome = await run_in_threadpool(processor.handle, gateway, raw)
    return JSONResponse({**outcome.to_dict(), "payment": redirect_status(outcome)})


@router.get("/{gateway}/verify/{transaction_ref}")
def verify_payment(
    gateway: str,
    transaction_ref: str,
    user: Dict[str, Any] = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    """
    Vérification hors bande d'une transaction (propriétaire ou admin).
    - Applique le statut si la passerelle le déclare terminal
    """
    result = orchestrator.verify(gateway, transaction_ref, user)
    return {
        "status": result.payment.status.value,
        "applied": bool(result.outcome and result.outcome.applied),
        "invoice": serialize_invoice(result.invoice, owner=orchestrator.is_owner(result.invoice, user)),
    }


@router.get("/invoices/{invoice_id}")
def get_invoice(
    invoice_id: str,
    user: Dict[str, Any] = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    invoice = orchestrator.get_invoice(invoice_id, user)
    return serialize_invoice(invoice, owner=orchestrator.is_owner(invoice, user))


@router.get("/orders/{order_id}/invoices")
def list_order_invoices(
    order_id: str,
    user: Dict[str, Any] = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
):
    invoices = orchestrator.list_invoices_for_order(order_id, user)
    return {"invoices": [serialize_invoice(i, owner=orchestrator.is_owner(i, user)) for i in invoices]}
