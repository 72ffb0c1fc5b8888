# module restopay.app
from typing import Optional
from fastapi import FastAPI

from restopay.app_setup.lifespan import lifespan
from restopay.app_setup.middlewares import register_basic_middlewares, register_security_middleware
from restopay.app_setup.exception_handlers import register_exception_handlers
from restopay.app_setup.routers import register_routers
from restopay.payments.callbacks import CallbackProcessor
from restopay.payments.service import PaymentOrchestrator, build_orchestrator

def create_app(orchestrator: Optional[PaymentOrchestrator] = None) -> FastAPI:
    """
    Crée et configure l'instance FastAPI.
    Étapes et ordre:
      1) orchestrateur (registre des passerelles + stockage) placé sur app.state
      2) register_basic_middlewares: session, CORS, TrustedHost, ProxyHeaders
      3) register_security_middleware: en-têtes de sécurité + CSRF (retours passerelles exemptés)
      4) register_exception_handlers: PaymentError -> JSON
      5) register_routers: payments, health
    """
    app = FastAPI(title="Restopay API", lifespan=lifespan)
    orchestrator = orchestrator or build_orchestrator()
    app.state.orchestrator = orchestrator
    app.state.callback_processor = CallbackProcessor(orchestrator)
    register_basic_middlewares(app)
    register_security_middleware(app)
    register_exception_handlers(app)
    register_routers(app)
    return app
