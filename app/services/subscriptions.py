import datetime as dt
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Conflict, Forbidden, NotFound, ValidationError
from app.models.ledger import Purchase, Revenue
from app.models.subscription import Plan, Subscription
from app.models.user import User
from app.services import audit
from app.services.ledger import balances_for_users, grant_credits
from app.services.payments import StripeGateway

logger = logging.getLogger(__name__)

STATUS_ACTIVE = "active"
STATUS_PAST_DUE = "past_due"
STATUS_CANCELED = "canceled"
INACTIVE_STATUSES = frozenset({STATUS_CANCELED, "incomplete_expired"})

PLAN_ID_KEYS = ("planId", "plan_id", "planoId")
USER_ID_KEYS = ("userId", "user_id", "usuarioId", "user")
LINKED_ID_KEYS = ("linked_user_ids", "linkedUserIds", "linked_user_id", "linkedUserIdsCSV")
LINKED_EMAIL_KEYS = ("linked_emails", "linkedEmails", "linked_emails_list", "linkedEmailsCSV")

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def is_valid_email(value: Any) -> bool:
    return isinstance(value, str) and bool(EMAIL_RE.match(value))


def to_int(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if number.is_integer() else None


def metadata_int(metadata: Mapping[str, Any] | None, *keys: str) -> int | None:
    """First non-empty key of `metadata` among `keys`, as an int."""
    for key in keys:
        value = (metadata or {}).get(key)
        if value not in (None, ""):
            return to_int(value)
    return None


def _first_present(metadata: Mapping[str, Any], keys: tuple[str, ...]) -> Any:
    for key in keys:
        value = metadata.get(key)
        if value:
            return value
    return None


def parse_linked_from_metadata(metadata: Mapping[str, Any] | None) -> tuple[list[int], list[str]]:
    metadata = metadata or {}
    raw_ids = _first_present(metadata, LINKED_ID_KEYS)
    raw_emails = _first_present(metadata, LINKED_EMAIL_KEYS)

    if isinstance(raw_ids, str):
        raw_ids = raw_ids.split(",")
    if isinstance(raw_emails, str):
        raw_emails = raw_emails.split(",")

    ids: list[int] = []
    for value in raw_ids or []:
        number = to_int(value.strip() if isinstance(value, str) else value)
        if number is not None and number not in ids:
            ids.append(number)

    emails: list[str] = []
    for value in raw_emails or []:
        email = str(value or "").strip().lower()
        if email and email not in emails:
            emails.append(email)
    return ids, emails


def from_timestamp(value: Any) -> dt.datetime | None:
    number = to_int(value)
    if not number:
        return None
    return dt.datetime.fromtimestamp(number, tz=dt.timezone.utc)


def subscription_period_end(obj: Mapping[str, Any] | None) -> dt.datetime | None:
    if not obj:
        return None
    if obj.get("current_period_end"):
        return from_timestamp(obj["current_period_end"])
    items = (obj.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end"):
        return from_timestamp(items[0]["current_period_end"])
    return None


def subscription_price_id(obj: Mapping[str, Any] | None) -> str | None:
    items = ((obj or {}).get("items") or {}).get("data") or []
    if items:
        return (items[0].get("price") or {}).get("id")
    return None


def is_current(sub: Subscription) -> bool:
    """Still the owner's live subscription: neither superseded nor canceled."""
    return bool(sub.active) and sub.canceled_at is None and (sub.status or "").lower() not in INACTIVE_STATUSES


async def get_active_subscription(session: AsyncSession, owner_id: int) -> Subscription | None:
    stmt = (
        select(Subscription)
        .where(Subscription.owner_id == owner_id, Subscription.active.is_(True))
        .order_by(Subscription.created_at.desc(), Subscription.id.desc())
        .limit(1)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def find_by_external_id(session: AsyncSession, external_id: str) -> Subscription | None:
    stmt = select(Subscription).where(Subscription.stripe_subscription_id == external_id)
    return (await session.execute(stmt)).scalar_one_or_none()


async def get_linked_subscription(session: AsyncSession, user: User) -> tuple[Subscription, Plan] | None:
    if not user.subscription_link_id:
        return None
    sub = await session.get(Subscription, user.subscription_link_id)
    if sub is None:
        return None
    plan = await session.get(Plan, sub.plan_id)
    return (sub, plan) if plan else None


async def plan_priority_for(session: AsyncSession, user: User) -> int:
    """Time priority of the plan the user is linked to, else of their own active plan."""
    linked = await get_linked_subscription(session, user)
    if linked and linked[0].active:
        return linked[1].time_priority or 0
    own = await get_active_subscription(session, user.id)
    if own:
        plan = await session.get(Plan, own.plan_id)
        return plan.time_priority if plan else 0
    return 0


def _link(session: AsyncSession, user: User, sub: Subscription, action: str) -> bool:
    if user.subscription_link_id not in (None, sub.id):
        logger.info("User %s already linked to subscription %s, skipping", user.id, user.subscription_link_id)
        return False
    if user.subscription_link_id == sub.id:
        return False
    user.subscription_link_id = sub.id
    audit.record(session, user.id, action)
    return True


async def link_members(session: AsyncSession, sub: Subscription, metadata: Mapping[str, Any] | None) -> list[int]:
    """
    Link the owner and every account named in `metadata` to `sub`.

    An account already linked to another subscription keeps its link.
    """
    linked: list[int] = []
    owner = await session.get(User, sub.owner_id)
    if owner and _link(session, owner, sub, f"Dono vinculado automaticamente à assinatura {sub.id} via webhook."):
        linked.append(owner.id)

    ids, emails = parse_linked_from_metadata(metadata)
    if ids:
        users = (await session.execute(select(User).where(User.id.in_(ids)))).scalars().all()
        for user in users:
            if _link(session, user, sub, f"Vinculado automaticamente à assinatura {sub.id} via metadata.linked_user_ids."):
                linked.append(user.id)
    if emails:
        users = (await session.execute(select(User).where(func.lower(User.email).in_(emails)))).scalars().all()
        found = {u.email.lower() for u in users}
        for user in users:
            if _link(session, user, sub, f"Vinculado automaticamente à assinatura {sub.id} via metadata.linked_emails."):
                linked.append(user.id)
        missing = [e for e in emails if e not in found]
        if missing:
            logger.info("linked_emails not found locally: %s", len(missing))
    await session.flush()
    return linked


async def activate_subscription(
    session: AsyncSession,
    owner_id: int | None,
    plan_id: int | None,
    external_id: str | None = None,
    customer_id: str | None = None,
    price_id: str | None = None,
    status: str | None = None,
    period_end: dt.datetime | None = None,
    cancel_at_period_end: bool = False,
) -> Subscription | None:
    """
    `none -> active`. Any other active subscription of the owner is
    deactivated first so that at most one stays active.
    """
    if not owner_id or not plan_id:
        logger.warning("Incomplete metadata to create subscription %s (owner=%s plan=%s)", external_id, owner_id, plan_id)
        return None
    owner = await session.get(User, owner_id)
    plan = await session.get(Plan, plan_id)
    if owner is None or plan is None:
        logger.warning("Unknown owner %s or plan %s for subscription %s", owner_id, plan_id, external_id)
        return None

    now = dt.datetime.now(dt.timezone.utc)
    await session.execute(
        update(Subscription)
        .where(Subscription.owner_id == owner_id, Subscription.active.is_(True))
        .values(active=False, updated_at=now)
    )
    sub = Subscription(
        owner_id=owner_id,
        plan_id=plan_id,
        active=True,
        stripe_subscription_id=external_id,
        stripe_customer_id=customer_id,
        stripe_price_id=price_id or plan.stripe_price_id,
        status=status or STATUS_ACTIVE,
        current_period_end=period_end,
        cancel_at_period_end=bool(cancel_at_period_end),
        created_at=now,
        updated_at=now,
    )
    session.add(sub)
    await session.flush()
    # troca de plano: o dono passa a apontar para a nova assinatura
    if owner.subscription_link_id is not None:
        previous = await session.get(Subscription, owner.subscription_link_id)
        if previous is not None and previous.owner_id == owner.id:
            owner.subscription_link_id = None
    logger.info("Subscription %s activated for owner %s (plan %s)", sub.id, owner_id, plan_id)
    return sub


async def sync_external_subscription(
    session: AsyncSession,
    external_id: str,
    subscription_obj: Mapping[str, Any],
    metadata: Mapping[str, Any] | None = None,
    customer_id: str | None = None,
) -> tuple[Subscription | None, bool]:
    """
    Apply a provider-side subscription snapshot. Returns the local row and
    whether it was created by this call.
    """
    metadata = metadata or subscription_obj.get("metadata") or {}
    sub = await find_by_external_id(session, external_id)
    created = False
    if sub is None:
        sub = await activate_subscription(
            session,
            owner_id=metadata_int(metadata, *USER_ID_KEYS),
            plan_id=metadata_int(metadata, *PLAN_ID_KEYS),
            external_id=external_id,
            customer_id=customer_id or subscription_obj.get("customer"),
            price_id=subscription_price_id(subscription_obj),
            status=subscription_obj.get("status"),
            period_end=subscription_period_end(subscription_obj),
            cancel_at_period_end=bool(subscription_obj.get("cancel_at_period_end")),
        )
        if sub is None:
            return None, False
        created = True
    else:
        if not is_current(sub):
            logger.info("Update for superseded or canceled subscription %s ignored", sub.id)
            return sub, False
        if subscription_obj.get("status"):
            sub.status = subscription_obj["status"]
            sub.active = sub.status not in INACTIVE_STATUSES
        if subscription_obj.get("cancel_at_period_end") is not None:
            sub.cancel_at_period_end = bool(subscription_obj["cancel_at_period_end"])
        sub.current_period_end = subscription_period_end(subscription_obj) or sub.current_period_end
        sub.stripe_customer_id = customer_id or subscription_obj.get("customer") or sub.stripe_customer_id
        sub.stripe_price_id = subscription_price_id(subscription_obj) or sub.stripe_price_id
    await link_members(session, sub, metadata)
    return sub, created


async def confirm_invoice_paid(
    session: AsyncSession,
    sub: Subscription,
    status: str | None = None,
    period_end: dt.datetime | None = None,
) -> bool:
    """
    Refresh a paid subscription. A superseded or canceled row is left
    untouched and False is returned.
    """
    if not is_current(sub):
        logger.info("Invoice for superseded or canceled subscription %s ignored", sub.id)
        return False
    sub.status = status or STATUS_ACTIVE
    sub.active = sub.status not in INACTIVE_STATUSES
    if period_end:
        sub.current_period_end = period_end
    await session.flush()
    return True


async def mark_past_due(session: AsyncSession, sub: Subscription, invoice_id: str | None = None) -> Subscription:
    sub.status = STATUS_PAST_DUE
    audit.record(
        session,
        sub.owner_id,
        f"Falha de pagamento para assinatura {sub.id} (subscription {sub.stripe_subscription_id}, invoice {invoice_id})",
    )
    await session.flush()
    return sub


async def cancel_subscription(
    session: AsyncSession,
    sub: Subscription,
    actor_id: int | None = None,
    status: str = STATUS_CANCELED,
    canceled_at: dt.datetime | None = None,
) -> list[User]:
    """
    `active|past_due -> canceled`. Unlinks every account pointing at the
    subscription, one audit entry each. The row itself is kept.
    """
    sub.active = False
    sub.status = status or STATUS_CANCELED
    sub.canceled_at = canceled_at or dt.datetime.now(dt.timezone.utc)
    sub.cancel_at_period_end = False

    linked = (await session.execute(select(User).where(User.subscription_link_id == sub.id))).scalars().all()
    actor = f"usuário {actor_id}" if actor_id else "evento Stripe"
    for user in linked:
        user.subscription_link_id = None
        audit.record(session, user.id, f"Vinculo removido devido ao cancelamento da assinatura {sub.id} por {actor}")
    audit.record(session, sub.owner_id, f"Assinatura {sub.id} marcada inativa por {actor}.")
    await session.flush()
    logger.info("Subscription %s canceled, %s account(s) unlinked", sub.id, len(linked))
    return list(linked)


async def subscribe_locally(session: AsyncSession, owner: User, plan_id: int) -> Subscription:
    plan = await session.get(Plan, plan_id)
    if plan is None:
        raise NotFound("Plano não encontrado")
    if await get_active_subscription(session, owner.id):
        raise Conflict("Já existe uma assinatura ativa para este usuário")
    sub = await activate_subscription(session, owner.id, plan.id)
    owner.subscription_link_id = sub.id
    audit.record(session, owner.id, f"Assinou o plano {plan.name} (assinatura {sub.id})")
    await session.flush()
    return sub


@dataclass
class PlanChange:
    subscription: Subscription
    plan: Plan
    purchase: Purchase


async def change_plan(session: AsyncSession, target: User, plan_id: int, operator_id: int) -> PlanChange:
    """Administrative plan switch with its monthly grant and billing records."""
    plan = await session.get(Plan, plan_id)
    if plan is None:
        raise NotFound("Plano não encontrado")

    sub = await activate_subscription(session, target.id, plan.id)
    await grant_credits(session, target.id, f"assinatura_troca_{sub.id}", plan.monthly_credits or 0)

    price = Decimal(plan.monthly_price or 0)
    purchase = Purchase(
        user_id=target.id,
        amount_paid=price,
        description=f"( usuário {target.nome} assinou o plano {plan.name} por 1 mês!",
    )
    session.add(purchase)
    session.add(Revenue(user_id=target.id, amount=price, description=f"Assinatura de plano - usuário {target.nome}"))
    target.subscription_link_id = sub.id
    audit.record(session, target.id, f"Plano alterado para {plan.name} (assinatura {sub.id}) por operador {operator_id}")
    await session.flush()
    return PlanChange(subscription=sub, plan=plan, purchase=purchase)


async def _require_enterprise(session: AsyncSession, user: User, owner_only: bool, action: str) -> tuple[Subscription, Plan]:
    linked = await get_linked_subscription(session, user)
    if not linked or not linked[1].is_enterprise:
        raise Forbidden("Acesso negado: requer assinatura com plano 'Enterprise'")
    sub, plan = linked
    if owner_only and sub.owner_id != user.id:
        raise Forbidden(f"Apenas o dono da assinatura pode {action}")
    return sub, plan


async def count_members(session: AsyncSession, sub: Subscription) -> int:
    stmt = select(func.count(User.id)).where(User.subscription_link_id == sub.id, User.id != sub.owner_id)
    return int((await session.execute(stmt)).scalar_one())


async def list_members(session: AsyncSession, user: User) -> dict[str, Any]:
    sub, plan = await _require_enterprise(session, user, owner_only=False, action="listar contas")
    members = (
        (await session.execute(select(User).where(User.subscription_link_id == sub.id).order_by(User.id)))
        .scalars()
        .all()
    )
    balances = await balances_for_users(session, [m.id for m in members])
    return {
        "assinaturaId": sub.id,
        "plano": plan.name,
        "donoId": sub.owner_id,
        "maximo_colaboradores": plan.max_members or 0,
        "colaboradores_atuais": await count_members(session, sub),
        "contas": [
            {
                "id": m.id,
                "nome": m.nome,
                "email": m.email,
                "tipo_usuario": m.tipo_usuario,
                "saldo_em_creditos": balances.get(m.id, 0),
                "created_at": m.created_at,
            }
            for m in members
        ],
    }


async def add_member(session: AsyncSession, owner: User, email: str) -> User:
    if not is_valid_email(email):
        raise ValidationError("email (string) é obrigatório e deve ser válido")
    sub, plan = await _require_enterprise(session, owner, owner_only=True, action="adicionar contas vinculadas")

    if plan.max_members and plan.max_members > 0:
        current = await count_members(session, sub)
        if current >= plan.max_members:
            raise ValidationError(
                "Limite de colaboradores atingido para este plano. Remova colaboradores ou atualize o plano.",
                detail={"colaboradores_atuais": current, "limite_do_plano": plan.max_members},
            )

    stmt = select(User).where(func.lower(User.email) == email.strip().lower()).with_for_update()
    target = (await session.execute(stmt)).scalar_one_or_none()
    if target is None:
        raise NotFound("Usuário alvo não encontrado (por email)")
    if target.subscription_link_id == sub.id:
        raise Conflict("Usuário já vinculado a esta assinatura")
    if target.subscription_link_id is not None:
        raise Conflict("Usuário já vinculado a outra assinatura")

    target.subscription_link_id = sub.id
    audit.record(session, target.id, f"Vinculado à assinatura {sub.id} (plano: {plan.name}) por dono {owner.id}")
    await session.flush()
    return target


async def remove_member(session: AsyncSession, owner: User, user_id: int) -> User:
    sub, plan = await _require_enterprise(session, owner, owner_only=True, action="remover contas vinculadas")
    target = await session.get(User, user_id)
    if target is None:
        raise NotFound("Usuário alvo não encontrado")
    if target.id == sub.owner_id:
        raise ValidationError("O dono não pode ser desvinculado da própria assinatura")
    if target.subscription_link_id != sub.id:
        raise ValidationError("Usuário alvo não está vinculado à sua assinatura")

    target.subscription_link_id = None
    audit.record(session, target.id, f"Desvinculado da assinatura {sub.id} (plano: {plan.name}) por dono {owner.id}")
    await session.flush()
    return target


async def require_enterprise_owner(session: AsyncSession, owner: User, action: str) -> tuple[Subscription, Plan]:
    return await _require_enterprise(session, owner, owner_only=True, action=action)


async def subscription_summary(session: AsyncSession, user: User) -> dict[str, Any] | None:
    sub = await get_active_subscription(session, user.id)
    if sub is None:
        linked = await get_linked_subscription(session, user)
        if not linked or not linked[0].active:
            return None
        sub = linked[0]
    plan = await session.get(Plan, sub.plan_id)
    return {
        "id": sub.id,
        "owner_id": sub.owner_id,
        "plan_id": sub.plan_id,
        "plan_name": plan.name if plan else "",
        "status": sub.status,
        "active": sub.active,
        "current_period_end": sub.current_period_end,
        "cancel_at_period_end": sub.cancel_at_period_end,
        "time_priority": plan.time_priority if plan else 0,
    }


@dataclass
class CancellationResult:
    note: str
    subscription: Subscription
    unlinked: list[User]
    provider_response: dict[str, Any] | None = None


async def request_cancellation(
    session: AsyncSession,
    requester: User,
    gateway: StripeGateway,
    subscription_id: int | None = None,
    external_id: str | None = None,
    immediate: bool = True,
) -> CancellationResult:
    """
    Owner-initiated cancellation. The provider is called before any local
    change; a provider failure leaves the local row untouched.
    """
    if not subscription_id and not external_id:
        raise ValidationError("Forneça assinaturaId ou subscriptionId")
    if subscription_id:
        sub = await session.get(Subscription, subscription_id)
    else:
        sub = await find_by_external_id(session, external_id)
    if sub is None:
        raise NotFound("Assinatura não encontrada")
    if sub.owner_id != requester.id:
        raise Forbidden("Apenas o dono pode cancelar a assinatura")
    if not sub.active or (sub.status or "").lower() in (STATUS_CANCELED, "cancelado"):
        return CancellationResult(note="already_cancelled_local", subscription=sub, unlinked=[])

    provider_response = None
    if sub.stripe_subscription_id:
        provider_response = await gateway.cancel_subscription(sub.stripe_subscription_id, immediate=immediate)

    if not immediate:
        sub.cancel_at_period_end = True
        audit.record(session, requester.id, f"Cancelamento da assinatura {sub.id} agendado para o fim do período")
        await session.flush()
        return CancellationResult(note="cancel_at_period_end", subscription=sub, unlinked=[], provider_response=provider_response)

    unlinked = await cancel_subscription(session, sub, actor_id=requester.id)
    return CancellationResult(note="cancelled", subscription=sub, unlinked=unlinked, provider_response=provider_response)
