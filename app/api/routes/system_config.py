from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_admin
from app.core.config import Settings
from app.core.deps import get_db_session, get_settings_dep
from app.db.session import transaction
from app.models.user import User
from app.schemas.ledger import ConfigIn, ConfigOut
from app.services import audit
from app.services.system_config import get_current_config, publish_config

router = APIRouter()


@router.get("/config/latest", response_model=ConfigOut)
async def latest_config(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    config = await get_current_config(session)
    if config is None:
        raise HTTPException(status_code=404, detail="Configuração não encontrada")
    return ConfigOut.from_model(config)


@router.post("/config", response_model=ConfigOut, status_code=status.HTTP_201_CREATED)
async def create_config(
    payload: ConfigIn,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    settings: Settings = Depends(get_settings_dep),
):
    async with transaction(session):
        current = await get_current_config(session)
        request_price = payload.preco_da_solicitacao_em_creditos
        if request_price is None:
            request_price = current.request_price_credits if current else settings.default_request_price_credits
        validity_days = payload.validade_em_dias
        if validity_days is None:
            validity_days = current.validity_days if current else settings.default_validity_days
        config = await publish_config(
            session,
            credit_price=payload.preco_do_credito,
            request_price_credits=request_price,
            validity_days=validity_days,
            description=payload.descricao,
        )
        audit.record(session, admin.id, f"Configuração do sistema {config.id} publicada")
    return ConfigOut.from_model(config)


@router.get("/preco-credito")
async def credit_price(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    config = await get_current_config(session)
    if config is None:
        raise HTTPException(status_code=404, detail="Preço do crédito não configurado")
    return {"preco_do_credito": str(config.credit_price), "preco_da_solicitacao_em_creditos": config.request_price_credits}
