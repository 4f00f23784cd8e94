import datetime as dt
import logging
from collections.abc import Iterable

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.ledger import CreditPacket
from app.services.system_config import get_validity_days

logger = logging.getLogger(__name__)


def _utc(value: dt.datetime) -> dt.datetime:
    # sqlite devolve datetimes sem tzinfo
    if value.tzinfo is None:
        return value.replace(tzinfo=dt.timezone.utc)
    return value


def is_packet_spendable(packet: CreditPacket, validity_days: int, now: dt.datetime) -> bool:
    if not packet.quantity or packet.received_at is None:
        return False
    if validity_days <= 0:
        return True
    return _utc(packet.received_at) + dt.timedelta(days=validity_days) >= _utc(now)


async def compute_balance(session: AsyncSession, user_id: int, now: dt.datetime | None = None) -> int:
    """
    Sum of every spendable packet of the user, positive and negative.

    Expiry is evaluated here, at read time, against the authoritative
    `validity_days`. The result is never clamped at zero.
    """
    now = now or dt.datetime.now(dt.timezone.utc)
    validity_days = await get_validity_days(session)
    stmt = select(CreditPacket).where(CreditPacket.user_id == user_id)
    packets = (await session.execute(stmt)).scalars().all()
    return sum(p.quantity for p in packets if is_packet_spendable(p, validity_days, now))


async def balances_for_users(
    session: AsyncSession,
    user_ids: Iterable[int],
    now: dt.datetime | None = None,
) -> dict[int, int]:
    ids = list(set(user_ids))
    if not ids:
        return {}
    now = now or dt.datetime.now(dt.timezone.utc)
    validity_days = await get_validity_days(session)

    stmt = (
        select(CreditPacket.user_id, func.coalesce(func.sum(CreditPacket.quantity), 0))
        .where(CreditPacket.user_id.in_(ids), CreditPacket.received_at.is_not(None))
        .group_by(CreditPacket.user_id)
    )
    if validity_days > 0:
        stmt = stmt.where(CreditPacket.received_at >= _utc(now) - dt.timedelta(days=validity_days))

    balances = {uid: 0 for uid in ids}
    for uid, total in (await session.execute(stmt)).all():
        balances[uid] = int(total)
    return balances


async def find_packet(session: AsyncSession, user_id: int, origin: str) -> CreditPacket | None:
    stmt = select(CreditPacket).where(CreditPacket.user_id == user_id, CreditPacket.origin == origin)
    return (await session.execute(stmt)).scalar_one_or_none()


async def append_packet(
    session: AsyncSession,
    user_id: int,
    quantity: int,
    origin: str,
    received_at: dt.datetime | None = None,
) -> CreditPacket:
    packet = CreditPacket(
        user_id=user_id,
        quantity=quantity,
        origin=origin,
        received_at=received_at or dt.datetime.now(dt.timezone.utc),
    )
    session.add(packet)
    await session.flush()
    return packet


async def grant_credits(
    session: AsyncSession,
    user_id: int | None,
    origin: str | None,
    quantity: int,
    received_at: dt.datetime | None = None,
) -> CreditPacket | None:
    """
    Idempotent credit grant keyed by (origin, user_id).

    Returns the existing packet when this origin was already granted to the
    user, None for a non-positive quantity. A concurrent insert of the same
    key fails on the unique constraint and aborts the caller's transaction.
    """
    if not user_id or not origin:
        raise ValueError("grant_credits requires user_id and origin")
    if quantity <= 0:
        return None

    existing = await find_packet(session, user_id, origin)
    if existing is not None:
        logger.info("Credits already granted for origin=%s user=%s", origin, user_id)
        return existing

    packet = await append_packet(session, user_id, quantity, origin, received_at)
    logger.info("Granted %s credits to user=%s origin=%s", quantity, user_id, origin)
    return packet
