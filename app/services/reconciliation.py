"""
Stripe webhook reconciliation.

Every handled event runs in a single transaction together with the update
that marks it processed, so a failure leaves no partial state behind and the
event stays eligible for the provider's retry. Notifications produced while
handling are only collected here; the caller sends them after the commit.
"""
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from enum import Enum
from typing import Any

import stripe
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.errors import InternalError, ServiceError, ValidationError
from app.db.session import transaction
from app.models.ledger import Purchase, Revenue
from app.models.subscription import Plan, Subscription
from app.models.user import User
from app.services import audit, notifications
from app.services.notifications import Notification
from app.services.idempotency import begin_processing, mark_processed, record_ignored
from app.services.ledger import find_packet, grant_credits
from app.services.payments import StripeGateway, construct_event, payment_intent_confirmed
from app.services.subscriptions import (
    INACTIVE_STATUSES,
    PLAN_ID_KEYS,
    STATUS_ACTIVE,
    USER_ID_KEYS,
    activate_subscription,
    cancel_subscription,
    confirm_invoice_paid,
    find_by_external_id,
    from_timestamp,
    is_current,
    link_members,
    mark_past_due,
    metadata_int,
    subscription_period_end,
    subscription_price_id,
    sync_external_subscription,
)
from app.services.system_config import get_current_config

logger = logging.getLogger(__name__)

CENTS = Decimal("100")
TWO_PLACES = Decimal("0.01")


class EventKind(str, Enum):
    CHECKOUT_COMPLETED = "checkout.session.completed"
    INVOICE_PAID = "invoice.paid"
    INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
    INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
    SUBSCRIPTION_CREATED = "customer.subscription.created"
    SUBSCRIPTION_UPDATED = "customer.subscription.updated"
    SUBSCRIPTION_DELETED = "customer.subscription.deleted"
    PAYMENT_INTENT_SUCCEEDED = "payment_intent.succeeded"
    CHARGE_SUCCEEDED = "charge.succeeded"
    CUSTOMER_UPDATED = "customer.updated"

    @classmethod
    def parse(cls, value: str | None) -> "EventKind | None":
        try:
            return cls(value)
        except ValueError:
            return None


@dataclass
class WebhookOutcome:
    note: str
    event_id: str | None = None
    event_type: str | None = None
    notifications: list[Notification] = field(default_factory=list)
    affected_owner_ids: set[int] = field(default_factory=set)

    def body(self) -> dict[str, Any]:
        return {"received": True, "note": self.note}

    def notify(self, message: Notification | None) -> None:
        if message is not None and message.to:
            self.notifications.append(message)


@dataclass
class EventContext:
    event_id: str
    kind: EventKind
    obj: dict[str, Any]
    metadata: dict[str, Any]
    subscription: dict[str, Any] | None = None
    payment_intent: dict[str, Any] | None = None


def _object_id(value: Any) -> str | None:
    if isinstance(value, dict):
        return value.get("id")
    return value or None


def _major_units(cents: Any) -> Decimal | None:
    if cents is None:
        return None
    return (Decimal(int(cents)) / CENTS).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    sub_id = _object_id(invoice.get("subscription"))
    if sub_id:
        return sub_id
    details = (invoice.get("parent") or {}).get("subscription_details") or {}
    return _object_id(details.get("subscription"))


async def _retrieve_subscription(gateway: StripeGateway, subscription_id: str) -> dict[str, Any] | None:
    try:
        return await gateway.retrieve_subscription(subscription_id)
    except stripe.StripeError as exc:
        logger.warning("Could not retrieve subscription %s: %s", subscription_id, type(exc).__name__)
        return None


async def resolve_context(gateway: StripeGateway, event_id: str, kind: EventKind, event: dict[str, Any]) -> EventContext:
    """Load the objects an event refers to. Provider lookups happen outside the transaction."""
    obj = (event.get("data") or {}).get("object") or {}
    own_metadata = obj.get("metadata") or {}
    ctx = EventContext(event_id=event_id, kind=kind, obj=obj, metadata=own_metadata)

    if kind is EventKind.CHECKOUT_COMPLETED:
        sub_id = _object_id(obj.get("subscription"))
        if sub_id:
            ctx.subscription = await _retrieve_subscription(gateway, sub_id)
        pi_id = _object_id(obj.get("payment_intent"))
        if pi_id:
            try:
                ctx.payment_intent = await gateway.retrieve_payment_intent(pi_id)
            except stripe.StripeError as exc:
                logger.warning("Could not retrieve PaymentIntent %s: %s", pi_id, type(exc).__name__)
    elif kind.value.startswith("invoice."):
        sub_id = _invoice_subscription_id(obj)
        if sub_id:
            ctx.subscription = await _retrieve_subscription(gateway, sub_id)
    elif kind.value.startswith("customer.subscription."):
        ctx.subscription = obj

    if ctx.subscription and ctx.subscription.get("metadata"):
        ctx.metadata = ctx.subscription["metadata"]
    return ctx


async def _find_local_user(
    session: AsyncSession,
    checkout: dict[str, Any],
    metadata: dict[str, Any],
    gateway: StripeGateway,
) -> User | None:
    user_id = metadata_int(metadata, *USER_ID_KEYS)
    if user_id:
        user = await session.get(User, user_id)
        if user:
            return user

    email = metadata.get("user_email") or metadata.get("userEmail") or (checkout.get("customer_details") or {}).get("email")
    if email:
        user = await _user_by_email(session, email)
        if user:
            return user

    customer_id = _object_id(checkout.get("customer"))
    if customer_id:
        try:
            customer_email = await gateway.retrieve_customer_email(customer_id)
        except stripe.StripeError as exc:
            logger.warning("Could not retrieve Stripe customer: %s", type(exc).__name__)
            customer_email = None
        if customer_email:
            return await _user_by_email(session, customer_email)
    return None


async def _user_by_email(session: AsyncSession, email: str) -> User | None:
    stmt = select(User).where(func.lower(User.email) == str(email).strip().lower())
    return (await session.execute(stmt)).scalar_one_or_none()


async def mark_user_made_purchase(session: AsyncSession, user_id: int | None) -> bool:
    """Flip `ja_fez_compra` false -> true; never the other way."""
    if not user_id:
        return False
    result = await session.execute(
        update(User).where(User.id == user_id, User.ja_fez_compra.is_(False)).values(ja_fez_compra=True)
    )
    if not result.rowcount:
        return False
    audit.record(
        session,
        user_id,
        "Flag ja_fez_compra marcada automaticamente após confirmação de pagamento via webhook Stripe.",
    )
    return True


async def _upsert_purchase(
    session: AsyncSession,
    checkout: dict[str, Any],
    amount: Decimal | None,
    payment_intent_id: str | None,
    user_id: int | None,
) -> Purchase:
    session_id = str(checkout["id"])
    stmt = select(Purchase).where(Purchase.stripe_session_id == session_id)
    purchase = (await session.execute(stmt)).scalar_one_or_none()
    if purchase is None:
        local_order = (checkout.get("metadata") or {}).get("local_order_id")
        purchase = Purchase(
            amount_paid=amount,
            description=f"Stripe checkout {session_id}" + (f" localOrder:{local_order}" if local_order else ""),
            stripe_session_id=session_id,
            payment_intent_id=payment_intent_id,
            user_id=user_id,
        )
        session.add(purchase)
        await session.flush()
        logger.info("Purchase %s created for checkout session", purchase.id)
        return purchase

    if not purchase.amount_paid and amount is not None:
        purchase.amount_paid = amount
    if not purchase.payment_intent_id and payment_intent_id:
        purchase.payment_intent_id = payment_intent_id
    if not purchase.user_id and user_id:
        purchase.user_id = user_id
    await session.flush()
    return purchase


async def _owner_and_plan(session: AsyncSession, sub: Subscription) -> tuple[User | None, Plan | None]:
    return await session.get(User, sub.owner_id), await session.get(Plan, sub.plan_id)


async def _grant_monthly_credits(session: AsyncSession, sub: Subscription, plan: Plan | None, origin: str) -> None:
    quantity = plan.monthly_credits if plan else 0
    if quantity and quantity > 0:
        await grant_credits(session, sub.owner_id, origin, quantity)


async def _handle_checkout(session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway) -> None:
    checkout = ctx.obj
    if not checkout.get("id"):
        raise ValidationError("Checkout session without id")
    sub_id = _object_id(checkout.get("subscription")) or (ctx.subscription or {}).get("id")
    payment_intent_id = _object_id(checkout.get("payment_intent"))

    amount_cents = checkout.get("amount_total")
    pi = ctx.payment_intent
    if pi and pi.get("amount_received") is not None:
        amount_cents = pi["amount_received"]
    if payment_intent_id:
        confirmed = payment_intent_confirmed(pi)
    else:
        confirmed = checkout.get("payment_status") == "paid"
    amount = _major_units(amount_cents)

    user = await _find_local_user(session, checkout, ctx.metadata, gateway)
    purchase = await _upsert_purchase(session, checkout, amount, payment_intent_id, user.id if user else None)

    buyer_id = purchase.user_id or (user.id if user else None)
    if buyer_id and confirmed:
        await mark_user_made_purchase(session, buyer_id)
    elif not confirmed:
        logger.info("Checkout %s payment not confirmed yet", checkout["id"])

    if sub_id:
        await _checkout_subscription(session, ctx, outcome, checkout, sub_id)
    else:
        await _checkout_one_off(session, outcome, checkout, user, amount)


async def _checkout_subscription(
    session: AsyncSession,
    ctx: EventContext,
    outcome: WebhookOutcome,
    checkout: dict[str, Any],
    sub_id: str,
) -> None:
    sub_obj = ctx.subscription or {}
    sub = await find_by_external_id(session, sub_id)
    if sub is None:
        sub = await activate_subscription(
            session,
            owner_id=metadata_int(ctx.metadata, *USER_ID_KEYS),
            plan_id=metadata_int(ctx.metadata, *PLAN_ID_KEYS),
            external_id=sub_id,
            customer_id=_object_id(checkout.get("customer")) or _object_id(sub_obj.get("customer")),
            price_id=subscription_price_id(sub_obj),
            status=sub_obj.get("status"),
            period_end=subscription_period_end(sub_obj),
            cancel_at_period_end=bool(sub_obj.get("cancel_at_period_end")),
        )
        if sub is None:
            return
        await link_members(session, sub, ctx.metadata)
        owner, plan = await _owner_and_plan(session, sub)
        if owner and plan:
            outcome.notify(notifications.subscription_created(owner, plan.name, plan.monthly_credits))
    else:
        if not is_current(sub):
            logger.info("Checkout %s for superseded or canceled subscription %s ignored", checkout["id"], sub.id)
            return
        sub.stripe_customer_id = _object_id(checkout.get("customer")) or sub.stripe_customer_id
        sub.stripe_price_id = subscription_price_id(sub_obj) or sub.stripe_price_id
        sub.status = sub_obj.get("status") or STATUS_ACTIVE
        sub.current_period_end = subscription_period_end(sub_obj) or sub.current_period_end
        if sub_obj.get("cancel_at_period_end") is not None:
            sub.cancel_at_period_end = bool(sub_obj["cancel_at_period_end"])
        sub.active = sub.status not in INACTIVE_STATUSES
        await link_members(session, sub, ctx.metadata)
        owner, plan = await _owner_and_plan(session, sub)
        if owner:
            outcome.notify(notifications.subscription_updated(owner, sub_id))

    _, plan = await _owner_and_plan(session, sub)
    await _grant_monthly_credits(session, sub, plan, f"stripe:subscription:{sub_id}:checkout_session:{checkout['id']}")
    outcome.affected_owner_ids.add(sub.owner_id)


async def _checkout_one_off(
    session: AsyncSession,
    outcome: WebhookOutcome,
    checkout: dict[str, Any],
    user: User | None,
    amount: Decimal | None,
) -> None:
    if user is None or amount is None:
        logger.warning("One-off checkout %s without resolvable user or amount", checkout["id"])
        return
    config = await get_current_config(session)
    credit_price = Decimal(config.credit_price) if config and config.credit_price is not None else None
    if not credit_price or credit_price <= 0:
        logger.warning("Invalid credit price, no credits granted for checkout %s", checkout["id"])
        return

    quantity = int((amount / credit_price).to_integral_value(rounding=ROUND_FLOOR))
    if quantity <= 0:
        logger.info("Amount %s below credit price %s for checkout %s", amount, credit_price, checkout["id"])
        return

    local_order = (checkout.get("metadata") or {}).get("local_order_id")
    origin = f"stripe:session:{checkout['id']}" + (f":local:{local_order}" if local_order else "")
    if await find_packet(session, user.id, origin):
        logger.info("Checkout %s already credited", checkout["id"])
        return

    await grant_credits(session, user.id, origin, quantity)
    session.add(Revenue(user_id=user.id, amount=amount, description=f"Receita via Stripe session {checkout['id']}"))
    outcome.notify(notifications.credits_purchased(user, quantity, amount))


async def _handle_invoice_paid(session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway) -> None:
    invoice = ctx.obj
    sub_id = _invoice_subscription_id(invoice) or (ctx.subscription or {}).get("id")
    if not sub_id:
        logger.info("Invoice %s without subscription", invoice.get("id"))
        return

    sub = await find_by_external_id(session, sub_id)
    if sub is None:
        sub, _ = await sync_external_subscription(
            session, sub_id, ctx.subscription or {}, ctx.metadata, _object_id(invoice.get("customer"))
        )
        if sub is None:
            logger.warning("No local subscription for %s", sub_id)
            return

    lines = (invoice.get("lines") or {}).get("data") or []
    period_end = subscription_period_end(ctx.subscription) or (
        from_timestamp((lines[0].get("period") or {}).get("end")) if lines else None
    )
    if not await confirm_invoice_paid(session, sub, (ctx.subscription or {}).get("status"), period_end):
        return
    await link_members(session, sub, ctx.metadata)

    owner, plan = await _owner_and_plan(session, sub)
    await _grant_monthly_credits(session, sub, plan, f"stripe:subscription:{sub_id}:invoice:{invoice.get('id')}")
    if owner:
        paid = invoice.get("amount_paid")
        if paid is None:
            paid = invoice.get("total")
        outcome.notify(notifications.invoice_paid(owner, sub_id, _major_units(paid)))
    outcome.affected_owner_ids.add(sub.owner_id)


async def _handle_invoice_failed(session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway) -> None:
    invoice = ctx.obj
    sub_id = _invoice_subscription_id(invoice) or (ctx.subscription or {}).get("id")
    sub = await find_by_external_id(session, sub_id) if sub_id else None
    if sub is None:
        logger.info("Payment failure for unknown subscription %s", sub_id)
        return
    await mark_past_due(session, sub, invoice.get("id"))
    owner, _ = await _owner_and_plan(session, sub)
    if owner:
        outcome.notify(notifications.invoice_failed(owner, sub_id, invoice.get("id")))
    outcome.affected_owner_ids.add(sub.owner_id)


async def _handle_subscription_changed(
    session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway
) -> None:
    sub_obj = ctx.obj
    if not sub_obj.get("id"):
        raise ValidationError("Subscription event without id")
    sub, created = await sync_external_subscription(
        session, sub_obj["id"], sub_obj, ctx.metadata, _object_id(sub_obj.get("customer"))
    )
    if sub is None:
        return
    if created:
        owner, plan = await _owner_and_plan(session, sub)
        if owner and plan:
            outcome.notify(notifications.subscription_created(owner, plan.name, plan.monthly_credits))
    outcome.affected_owner_ids.add(sub.owner_id)


async def _handle_subscription_deleted(
    session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway
) -> None:
    sub_obj = ctx.obj
    sub = await find_by_external_id(session, sub_obj.get("id")) if sub_obj.get("id") else None
    if sub is None:
        logger.info("Deletion for unknown subscription %s", sub_obj.get("id"))
        return
    await cancel_subscription(
        session,
        sub,
        status=sub_obj.get("status") or "canceled",
        canceled_at=from_timestamp(sub_obj.get("canceled_at")),
    )
    owner, _ = await _owner_and_plan(session, sub)
    if owner:
        outcome.notify(notifications.subscription_canceled(owner, sub_obj["id"]))
    outcome.affected_owner_ids.add(sub.owner_id)


async def _handle_payment_succeeded(
    session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway
) -> None:
    obj = ctx.obj
    if ctx.kind is EventKind.CHARGE_SUCCEEDED:
        pi_id = _object_id(obj.get("payment_intent"))
    else:
        pi_id = obj.get("id")
    if not pi_id:
        return
    received = obj.get("amount_received")
    if received is None:
        received = obj.get("amount")

    stmt = select(Purchase).where(Purchase.payment_intent_id == str(pi_id)).order_by(Purchase.id).limit(1)
    purchase = (await session.execute(stmt)).scalar_one_or_none()
    if purchase is None or purchase.amount_paid or received is None:
        return

    purchase.amount_paid = _major_units(received)
    logger.info("Purchase %s reconciled from PaymentIntent", purchase.id)
    if purchase.user_id:
        await mark_user_made_purchase(session, purchase.user_id)
        user = await session.get(User, purchase.user_id)
        if user:
            outcome.notify(notifications.payment_confirmed(user, purchase.id, purchase.amount_paid))


async def _handle_customer_updated(
    session: AsyncSession, ctx: EventContext, outcome: WebhookOutcome, gateway: StripeGateway
) -> None:
    logger.info("customer.updated received for %s", ctx.obj.get("id"))


Handler = Callable[[AsyncSession, EventContext, WebhookOutcome, StripeGateway], Awaitable[None]]

HANDLERS: dict[EventKind, Handler] = {
    EventKind.CHECKOUT_COMPLETED: _handle_checkout,
    EventKind.INVOICE_PAID: _handle_invoice_paid,
    EventKind.INVOICE_PAYMENT_SUCCEEDED: _handle_invoice_paid,
    EventKind.INVOICE_PAYMENT_FAILED: _handle_invoice_failed,
    EventKind.SUBSCRIPTION_CREATED: _handle_subscription_changed,
    EventKind.SUBSCRIPTION_UPDATED: _handle_subscription_changed,
    EventKind.SUBSCRIPTION_DELETED: _handle_subscription_deleted,
    EventKind.PAYMENT_INTENT_SUCCEEDED: _handle_payment_succeeded,
    EventKind.CHARGE_SUCCEEDED: _handle_payment_succeeded,
    EventKind.CUSTOMER_UPDATED: _handle_customer_updated,
}


async def handle_external_event(
    session: AsyncSession,
    raw_body: bytes,
    signature: str | None,
    settings: Settings,
    gateway: StripeGateway,
) -> WebhookOutcome:
    event = construct_event(raw_body, signature, settings)
    event_id = event.get("id")
    if not event_id:
        raise ValidationError("Missing event.id")
    event_type = event.get("type")
    logger.info("Stripe webhook received: %s", event_type)

    kind = EventKind.parse(event_type)
    if kind is None:
        await record_ignored(session, event_id, event, event_type)
        return WebhookOutcome(note="ignored_event_type", event_id=event_id, event_type=event_type)

    guard = await begin_processing(session, event_id, event, event_type)
    if guard.already_processed:
        logger.info("Event %s already processed", event_id)
        return WebhookOutcome(note="already_processed", event_id=event_id, event_type=event_type)

    outcome = WebhookOutcome(note="processed", event_id=event_id, event_type=event_type)
    try:
        ctx = await resolve_context(gateway, event_id, kind, event)
        async with transaction(session):
            await HANDLERS[kind](session, ctx, outcome, gateway)
            await mark_processed(session, event_id)
    except ServiceError as exc:
        if exc.status_code >= 500:
            logger.exception("Webhook %s (%s) aborted, transaction rolled back", event_id, event_type)
        else:
            logger.warning("Webhook %s (%s) rejected: %s", event_id, event_type, exc.message)
        raise
    except Exception as exc:
        logger.exception("Webhook %s (%s) aborted, transaction rolled back", event_id, event_type)
        raise InternalError() from exc
    return outcome
