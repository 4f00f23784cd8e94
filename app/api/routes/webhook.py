import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from redis.asyncio import Redis
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.deps import get_db_session, get_payment_gateway, get_redis, get_settings_dep
from app.services import subscription_cache
from app.services.notifications import dispatch_notifications
from app.services.payments import StripeGateway
from app.services.reconciliation import handle_external_event

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    stripe_signature: str | None = Header(default=None, convert_underscores=False, alias="Stripe-Signature"),
    settings: Settings = Depends(get_settings_dep),
    session: AsyncSession = Depends(get_db_session),
    redis: Redis = Depends(get_redis),
    gateway: StripeGateway = Depends(get_payment_gateway),
):
    raw_body = await request.body()
    outcome = await handle_external_event(session, raw_body, stripe_signature, settings, gateway)

    # estado já commitado; cache e e-mails são best-effort
    if outcome.affected_owner_ids:
        await subscription_cache.invalidate(redis, outcome.affected_owner_ids)
    if outcome.notifications:
        background_tasks.add_task(dispatch_notifications, outcome.notifications)
    return outcome.body()
