import logging
from collections.abc import Iterable
from dataclasses import dataclass
from decimal import Decimal

from app.core.config import get_settings
from app.models.user import User
from app.workers.celery_app import send_notification_email

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Notification:
    to: str
    subject: str
    text: str


def _greeting(user: User) -> str:
    return f"Olá {user.nome or ''},"


def _money(amount: Decimal | float | None) -> str:
    return f"R$ {Decimal(str(amount)):.2f}" if amount is not None else "n/a"


def subscription_created(owner: User, plan_name: str, monthly_credits: int) -> Notification:
    return Notification(
        to=owner.email,
        subject=f"Assinatura criada: {plan_name}",
        text=f"{_greeting(owner)} sua assinatura foi criada. Plano: {plan_name}. Créditos/mês: {monthly_credits}.",
    )


def subscription_updated(owner: User, external_id: str) -> Notification:
    return Notification(
        to=owner.email,
        subject=f"Assinatura atualizada — {external_id}",
        text=f"{_greeting(owner)} sua assinatura foi atualizada. Subscription: {external_id}.",
    )


def invoice_paid(owner: User, external_id: str, amount: Decimal | None) -> Notification:
    return Notification(
        to=owner.email,
        subject=f"Pagamento recebido — assinatura {external_id}",
        text=f"{_greeting(owner)} recebemos o pagamento da sua assinatura. Valor: {_money(amount)}.",
    )


def invoice_failed(owner: User, external_id: str, invoice_id: str | None) -> Notification:
    return Notification(
        to=owner.email,
        subject=f"Falha no pagamento — assinatura {external_id}",
        text=f"{_greeting(owner)} detectamos falha no pagamento da assinatura (invoice {invoice_id}).",
    )


def subscription_canceled(owner: User, external_id: str) -> Notification:
    return Notification(
        to=owner.email,
        subject=f"Assinatura cancelada — {external_id}",
        text=f"{_greeting(owner)} sua assinatura foi marcada como inativa. Subscription: {external_id}.",
    )


def credits_purchased(user: User, quantity: int, amount: Decimal) -> Notification:
    return Notification(
        to=user.email,
        subject=f"Compra confirmada — créditos adicionados ({quantity})",
        text=f"{_greeting(user)} recebemos seu pagamento ({_money(amount)}). Créditos adicionados: {quantity}.",
    )


def payment_confirmed(user: User, purchase_id: int, amount: Decimal) -> Notification:
    return Notification(
        to=user.email,
        subject=f"Pagamento confirmado — compra {purchase_id}",
        text=f"{_greeting(user)} recebemos seu pagamento ({_money(amount)}).",
    )


def result_available(user: User, request_id: int) -> Notification:
    # o resultado em si nunca vai no e-mail
    return Notification(
        to=user.email,
        subject=f"Resultado disponível — solicitação #{request_id}",
        text=f"{_greeting(user)} o resultado da sua solicitação #{request_id} já está disponível na plataforma.",
    )


def dispatch_notifications(notifications: Iterable[Notification]) -> None:
    """
    Hand each message to the mail worker, one at a time.

    Runs after the transaction that produced the messages has committed;
    a failure here is logged and never propagates.
    """
    items = [n for n in notifications if n and n.to]
    if not items:
        return
    if not get_settings().email_enabled:
        logger.info("SMTP not configured, dropping %s notification(s)", len(items))
        return

    for n in items:
        try:
            send_notification_email.delay(n.to, n.subject, n.text)
        except Exception:
            logger.exception("Could not enqueue notification %r", n.subject)
