from fastapi import APIRouter
from app.api.routes import webhook, users, requests, subscriptions, cancellation, purchases, system_config, plans

api_router = APIRouter()
api_router.include_router(webhook.router, tags=["webhook"])
api_router.include_router(users.router, prefix="/usuarios", tags=["usuarios"])
api_router.include_router(requests.router, prefix="/solicitacoes", tags=["solicitacoes"])
api_router.include_router(subscriptions.router, prefix="/assinaturas", tags=["assinaturas"])
api_router.include_router(cancellation.router, prefix="/cancelamentoAssinatura", tags=["assinaturas"])
api_router.include_router(purchases.router, prefix="/compras", tags=["compras"])
api_router.include_router(system_config.router, tags=["config"])
api_router.include_router(plans.router, prefix="/planos", tags=["planos"])
