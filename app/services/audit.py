import logging

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.user import AuditLog

logger = logging.getLogger(__name__)

MAX_ACTION_LENGTH = 512


def record(session: AsyncSession, user_id: int, action: str) -> AuditLog:
    """Stage an audit entry in the caller's transaction."""
    entry = AuditLog(user_id=user_id, action=action[:MAX_ACTION_LENGTH])
    session.add(entry)
    logger.debug("audit user=%s action=%s", user_id, entry.action)
    return entry
