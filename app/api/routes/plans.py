from fastapi import APIRouter, Depends, HTTPException
from redis.asyncio import Redis
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_admin
from app.core.deps import get_db_session, get_redis
from app.db.session import transaction
from app.models.subscription import Plan
from app.models.user import User
from app.schemas.subscription import PlanChangeIn, PlanOut, SubscriptionOut
from app.services import subscription_cache
from app.services.subscriptions import change_plan

router = APIRouter()


@router.get("", response_model=list[PlanOut])
async def list_plans(session: AsyncSession = Depends(get_db_session)):
    result = await session.execute(select(Plan).order_by(Plan.monthly_price, Plan.id))
    return result.scalars().all()


@router.post("/change")
async def post_change(
    payload: PlanChangeIn,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis),
):
    async with transaction(session):
        target = await session.get(User, payload.target_user_id)
        if target is None:
            raise HTTPException(status_code=404, detail="Usuário não encontrado")
        change = await change_plan(session, target, payload.id_plano, admin.id)
    await subscription_cache.invalidate(redis, [target.id])
    return {
        "mensagem": "Plano alterado com sucesso",
        "assinatura": SubscriptionOut.model_validate(change.subscription),
        "plano": PlanOut.model_validate(change.plan),
    }
