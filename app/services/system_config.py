import datetime as dt
import logging
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.ledger import ConfigPointer, SystemConfig

logger = logging.getLogger(__name__)

POINTER_ID = 1


async def get_current_config(session: AsyncSession) -> SystemConfig | None:
    """
    Return the authoritative configuration row.

    The pointer row is moved whenever a configuration is published; databases
    seeded without it fall back to the most recently updated row.
    """
    pointer = await session.get(ConfigPointer, POINTER_ID)
    if pointer is not None:
        config = await session.get(SystemConfig, pointer.config_id)
        if config is not None:
            return config
        logger.warning("Config pointer references missing row %s", pointer.config_id)

    stmt = select(SystemConfig).order_by(SystemConfig.updated_at.desc(), SystemConfig.id.desc()).limit(1)
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_validity_days(session: AsyncSession) -> int:
    config = await get_current_config(session)
    return int(config.validity_days) if config else 0


async def publish_config(
    session: AsyncSession,
    credit_price: Decimal,
    request_price_credits: int,
    validity_days: int,
    description: str | None = None,
    effective_at: dt.datetime | None = None,
) -> SystemConfig:
    """Insert a new configuration row and point to it. Caller commits."""
    now = dt.datetime.now(dt.timezone.utc)
    config = SystemConfig(
        credit_price=credit_price,
        request_price_credits=request_price_credits,
        validity_days=validity_days,
        description=description,
        effective_at=effective_at or now,
        created_at=now,
        updated_at=now,
    )
    session.add(config)
    await session.flush()

    pointer = await session.get(ConfigPointer, POINTER_ID)
    if pointer is None:
        session.add(ConfigPointer(id=POINTER_ID, config_id=config.id, updated_at=now))
    else:
        pointer.config_id = config.id
        pointer.updated_at = now
    await session.flush()
    logger.info("Published system config %s (price=%s, validity_days=%s)", config.id, credit_price, validity_days)
    return config
