import asyncio
import logging
from email.message import EmailMessage

import aiosmtplib
from celery import Celery

from app.core.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()
celery = Celery(
    "compatbio",
    broker=settings.redis_url,
    backend=settings.redis_url,
)

celery.conf.update(task_serializer="json", accept_content=["json"], result_serializer="json")


def build_message(to: str, subject: str, text: str) -> EmailMessage:
    message = EmailMessage()
    message["From"] = settings.email_sender
    message["To"] = to
    message["Subject"] = subject or "Notificação"
    message.set_content(text)
    return message


@celery.task(
    name="send_notification_email",
    autoretry_for=(aiosmtplib.SMTPException, OSError),
    retry_backoff=True,
    max_retries=3,
)
def send_notification_email(to: str, subject: str, text: str):
    if not settings.email_enabled:
        logger.warning("Email transport incomplete, skipping message %r", subject)
        return

    async def _run():
        await aiosmtplib.send(
            build_message(to, subject, text),
            hostname=settings.email_host,
            port=settings.email_port,
            username=settings.email_user,
            password=settings.email_pass,
            use_tls=settings.email_secure,
            timeout=10,
        )
        logger.info("Notification sent: %s", subject)

    asyncio.run(_run())
