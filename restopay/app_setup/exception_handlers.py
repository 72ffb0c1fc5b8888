"""
Gestionnaires d'exceptions.
- PaymentError: rendu JSON {"detail", "code"} avec le statut HTTP porté par l'erreur.
"""
import logging
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from restopay.payments.errors import PaymentError, PaymentRejected

logger = logging.getLogger(__name__)

CALLBACK_SUFFIXES = ("/callback", "/success", "/cancel")

def payment_error_status(request: Request, exc: PaymentError) -> int:
    # Les fournisseurs ne doivent pas réessayer un refus métier: 400 sur les retours passerelles
    if isinstance(exc, PaymentRejected) and request.url.path.endswith(CALLBACK_SUFFIXES):
        return 400
    return exc.status_code

def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(PaymentError)
    async def payment_error_handler(request: Request, exc: PaymentError):
        status = payment_error_status(request, exc)
        log = logger.warning if status >= 500 else logger.info
        log("payments.error path=%s code=%s status=%s", request.url.path, exc.code, status)
        return JSONResponse(status_code=status, content=exc.to_dict())
