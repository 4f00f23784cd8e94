from fastapi import APIRouter, Depends, HTTPException, status
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.config import Settings
from app.core.deps import get_db_session, get_redis, get_settings_dep
from app.db.session import transaction
from app.models.user import User
from app.schemas.subscription import MemberAddIn, MemberOut, SubscribeIn, SubscriptionOut, SubscriptionSummaryOut, TransferIn
from app.services import subscription_cache
from app.services.spend import transfer_to_member
from app.services.subscriptions import add_member, list_members, remove_member, subscribe_locally, subscription_summary

router = APIRouter()


@router.get("/me", response_model=SubscriptionSummaryOut)
async def get_my_subscription(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis),
    settings: Settings = Depends(get_settings_dep),
):
    cached = await subscription_cache.get_cached(redis, user.id)
    if cached:
        return SubscriptionSummaryOut(**cached, cached=True)

    summary = await subscription_summary(session, user)
    if summary is None:
        raise HTTPException(status_code=404, detail="Nenhuma assinatura ativa")
    # só cacheia a assinatura própria; vínculos de membro mudam sem webhook
    if summary["owner_id"] == user.id:
        await subscription_cache.store(redis, user.id, summary, settings.subscription_cache_ttl_seconds)
    return SubscriptionSummaryOut(**summary)


@router.post("/me/assinar", status_code=status.HTTP_201_CREATED)
async def subscribe(
    payload: SubscribeIn,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis),
):
    async with transaction(session):
        sub = await subscribe_locally(session, user, payload.id_plano)
    await subscription_cache.invalidate(redis, [user.id])
    return {"success": True, "assinatura": SubscriptionOut.model_validate(sub)}


@router.get("/me/contas")
async def get_members(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    return await list_members(session, user)


@router.post("/me/contas")
async def post_member(
    payload: MemberAddIn,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        member = await add_member(session, user, payload.email)
    return {"success": True, "donoId": user.id, "user": MemberOut.model_validate(member)}


@router.delete("/me/contas/{user_id}")
async def delete_member(
    user_id: int,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        member = await remove_member(session, user, user_id)
    return {"success": True, "donoId": user.id, "user": MemberOut.model_validate(member)}


@router.post("/me/contas/transferir")
async def transfer_credits(
    payload: TransferIn,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        result = await transfer_to_member(session, user, payload.targetUserId, payload.quantidade)
    return {
        "success": True,
        "donoId": result.subscription.owner_id,
        "transferencia": {
            "quantidade": payload.quantidade,
            "data_recebimento": result.credit.received_at,
            "pacote_negativo_id": result.debit.id,
            "pacote_positivo_id": result.credit.id,
            "targetUserId": payload.targetUserId,
            "ownerUserId": user.id,
        },
        "saldo_antes": result.balance_before,
        "saldo_depois": result.balance_after,
    }
