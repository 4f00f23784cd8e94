import logging

from fastapi import APIRouter, BackgroundTasks, Depends
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.deps import get_db_session, get_payment_gateway, get_redis
from app.db.session import transaction
from app.models.user import User
from app.schemas.subscription import CancelIn, MemberOut, SubscriptionOut
from app.services import notifications, subscription_cache
from app.services.payments import StripeGateway
from app.services.subscriptions import request_cancellation

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/cancelar")
async def cancel(
    payload: CancelIn,
    background_tasks: BackgroundTasks,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    async with transaction(session):
        result = await request_cancellation(
            session,
            user,
            gateway,
            subscription_id=payload.assinaturaId,
            external_id=payload.subscriptionId,
            immediate=payload.immediate,
        )
    if result.note != "already_cancelled_local":
        await subscription_cache.invalidate(redis, [result.subscription.owner_id])
    if result.note == "cancelled":
        external = result.subscription.stripe_subscription_id or str(result.subscription.id)
        background_tasks.add_task(
            notifications.dispatch_notifications, [notifications.subscription_canceled(user, external)]
        )
    return {
        "ok": True,
        "note": result.note,
        "stripe": result.provider_response,
        "assinatura": SubscriptionOut.model_validate(result.subscription),
        "desvinculados": [MemberOut.model_validate(u) for u in result.unlinked],
    }
