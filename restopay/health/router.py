from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from restopay.health.service import health_payments_info, health_supabase_info
from restopay.payments.views import get_orchestrator
from restopay.utils.rate_limit import rate_limit_health_info

router = APIRouter(prefix="/health", tags=["Health"])

@router.get("")
def health_root():
    return {"ok": True}

@router.get("/payments")
def health_payments(request: Request, orchestrator=Depends(get_orchestrator)):
    info = health_payments_info(orchestrator)
    info["rate_limit"] = rate_limit_health_info(request)
    return info

@router.get("/supabase")
def health_supabase():
    return JSONResponse(health_supabase_info())
