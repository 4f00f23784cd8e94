import datetime as dt
import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.subscription import ExternalEvent

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GuardResult:
    already_processed: bool
    event: ExternalEvent


async def _load(session: AsyncSession, event_id: str) -> ExternalEvent | None:
    stmt = select(ExternalEvent).where(ExternalEvent.event_id == event_id).execution_options(populate_existing=True)
    return (await session.execute(stmt)).scalar_one_or_none()


async def begin_processing(
    session: AsyncSession,
    event_id: str,
    payload: dict[str, Any],
    event_type: str | None = None,
) -> GuardResult:
    """
    Record an inbound event before it is handled.

    The unprocessed row is committed on its own so that a failed handler leaves
    it behind for the provider's retry.
    """
    if not event_id:
        raise ValueError("event_id is required")

    event = await _load(session, event_id)
    if event is not None and event.processed:
        return GuardResult(already_processed=True, event=event)

    if event is None:
        event = ExternalEvent(event_id=event_id, event_type=event_type, payload=payload, processed=False)
        session.add(event)
        try:
            await session.commit()
        except IntegrityError:
            # outra entrega do mesmo evento gravou primeiro
            await session.rollback()
            event = await _load(session, event_id)
            if event is None:
                raise
            if event.processed:
                return GuardResult(already_processed=True, event=event)
        return GuardResult(already_processed=False, event=event)

    event.payload = payload
    event.event_type = event_type or event.event_type
    await session.commit()
    logger.info("Retrying unprocessed event %s", event_id)
    return GuardResult(already_processed=False, event=event)


async def mark_processed(session: AsyncSession, event_id: str) -> None:
    """Flag the event as handled. Runs inside the handler's transaction."""
    event = await _load(session, event_id)
    if event is None:
        raise LookupError(f"event {event_id} was never recorded")
    event.processed = True
    event.processed_at = dt.datetime.now(dt.timezone.utc)
    await session.flush()


async def record_ignored(
    session: AsyncSession,
    event_id: str,
    payload: dict[str, Any],
    event_type: str | None = None,
) -> None:
    event = await _load(session, event_id)
    now = dt.datetime.now(dt.timezone.utc)
    if event is None:
        session.add(
            ExternalEvent(
                event_id=event_id,
                event_type=event_type,
                payload=payload,
                processed=True,
                processed_at=now,
            )
        )
    elif not event.processed:
        event.processed = True
        event.processed_at = now
    try:
        await session.commit()
    except IntegrityError:
        await session.rollback()
        logger.info("Ignored event %s was recorded concurrently", event_id)
