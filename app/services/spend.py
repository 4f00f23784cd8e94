import datetime as dt
import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import Forbidden, InsufficientCredits, InternalError, NotFound, ValidationError
from app.models.analysis import (
    AnalysisRequest,
    PRODUCT_BIOLOGICAL,
    PRODUCT_CHEMICAL,
    Product,
    STATUS_FINISHED,
    STATUS_IN_PROGRESS,
)
from app.models.ledger import CreditPacket, Purchase, Revenue
from app.models.subscription import Subscription
from app.models.user import User
from app.services import audit, notifications
from app.services.ledger import append_packet, compute_balance
from app.services.subscriptions import get_linked_subscription, plan_priority_for, require_enterprise_owner
from app.services.system_config import get_current_config

logger = logging.getLogger(__name__)

OPERATIONS = ("add", "subtract", "set")


@dataclass(frozen=True)
class SpendResult:
    balance_before: int
    balance_after: int
    packet: CreditPacket | None


@dataclass(frozen=True)
class TransferResult:
    debit: CreditPacket
    credit: CreditPacket
    balance_before: int
    balance_after: int
    subscription: Subscription


async def lock_user(session: AsyncSession, user_id: int) -> User | None:
    """Row-lock the user for the rest of the transaction; serializes spends per user."""
    stmt = (
        select(User)
        .where(User.id == user_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return (await session.execute(stmt)).scalar_one_or_none()


async def spend(
    session: AsyncSession,
    user_id: int,
    amount: int,
    origin: str,
    received_at: dt.datetime | None = None,
) -> SpendResult:
    """
    Debit `amount` credits inside the caller's transaction.

    Raises InsufficientCredits without writing anything when the balance
    does not cover the amount.
    """
    if amount < 0:
        raise ValidationError("amount deve ser um inteiro não-negativo")
    if await lock_user(session, user_id) is None:
        raise NotFound("Usuário não encontrado")

    before = await compute_balance(session, user_id)
    if before < amount:
        raise InsufficientCredits(required=amount, available=before)
    if amount == 0:
        return SpendResult(balance_before=before, balance_after=before, packet=None)

    packet = await append_packet(session, user_id, -amount, origin, received_at)
    after = await compute_balance(session, user_id)
    logger.info("User %s spent %s credits (%s)", user_id, amount, origin)
    return SpendResult(balance_before=before, balance_after=after, packet=packet)


async def resolve_product(session: AsyncSession, ref: int | str | None, kind: str) -> Product:
    label = "químico" if kind == PRODUCT_CHEMICAL else "biológico"
    if ref is None or ref == "":
        raise ValidationError(f"Produto {label} é obrigatório")
    if isinstance(ref, int) or (isinstance(ref, str) and ref.isdigit()):
        product = await session.get(Product, int(ref))
    else:
        stmt = select(Product).where(Product.name == ref)
        product = (await session.execute(stmt)).scalar_one_or_none()
    if product is None or product.kind != kind:
        raise ValidationError(f"Produto {label} '{ref}' não encontrado")
    return product


async def create_analysis_request(
    session: AsyncSession,
    user: User,
    chemical: int | str | None,
    biological: int | str | None,
) -> tuple[AnalysisRequest, SpendResult, int]:
    chemical_product = await resolve_product(session, chemical, PRODUCT_CHEMICAL)
    biological_product = await resolve_product(session, biological, PRODUCT_BIOLOGICAL)

    config = await get_current_config(session)
    if config is None:
        raise InternalError("Configuração do sistema ausente. Contate o administrador.")
    price = int(config.request_price_credits or 0)

    # saldo conferido antes de gravar a solicitação
    if await lock_user(session, user.id) is None:
        raise NotFound("Usuário não encontrado")
    available = await compute_balance(session, user.id)
    if available < price:
        raise InsufficientCredits(required=price, available=available)

    request = AnalysisRequest(
        user_id=user.id,
        chemical_product_id=chemical_product.id,
        biological_product_id=biological_product.id,
        status=STATUS_IN_PROGRESS,
        priority=await plan_priority_for(session, user),
    )
    session.add(request)
    await session.flush()

    result = await spend(session, user.id, price, f"consumo_solicitacao:{request.id}")
    return request, result, price


async def list_requests(session: AsyncSession, user: User) -> list[AnalysisRequest]:
    """Own requests; Enterprise accounts also see every account linked to the same subscription."""
    user_ids = {user.id}
    linked = await get_linked_subscription(session, user)
    if linked and linked[1].is_enterprise:
        sub = linked[0]
        members = await session.execute(select(User.id).where(User.subscription_link_id == sub.id))
        user_ids.update(members.scalars().all())
        user_ids.add(sub.owner_id)
    stmt = (
        select(AnalysisRequest)
        .where(AnalysisRequest.user_id.in_(user_ids))
        .order_by(AnalysisRequest.requested_at.desc(), AnalysisRequest.id.desc())
    )
    return list((await session.execute(stmt)).scalars().all())


async def product_names(session: AsyncSession, requests: list[AnalysisRequest]) -> dict[int, str]:
    ids = {r.chemical_product_id for r in requests} | {r.biological_product_id for r in requests}
    if not ids:
        return {}
    rows = await session.execute(select(Product.id, Product.name).where(Product.id.in_(ids)))
    return {pid: name for pid, name in rows.all()}


async def transfer_to_member(session: AsyncSession, owner: User, target_id: int, quantity: int) -> TransferResult:
    if quantity <= 0 or target_id <= 0:
        raise ValidationError("targetUserId (number) e quantidade (number>0) são obrigatórios")
    sub, _ = await require_enterprise_owner(session, owner, action="transferir créditos")

    target = await session.get(User, target_id)
    if target is None:
        raise NotFound("Usuário alvo não encontrado")
    if target.id == owner.id:
        raise ValidationError("Não é permitido transferir para si mesmo")
    if target.subscription_link_id != sub.id:
        raise Forbidden("Usuário alvo não está vinculado à sua assinatura")

    # mesmo instante para o débito e o crédito
    now = dt.datetime.now(dt.timezone.utc)
    tag = uuid.uuid4().hex
    result = await spend(session, owner.id, quantity, f"transferencia_para:{target.id}:{tag}", received_at=now)
    credit = await append_packet(session, target.id, quantity, f"transferencia_de:{owner.id}:{tag}", received_at=now)

    audit.record(session, owner.id, f"Transferiu {quantity} créditos para usuário {target.id} (assinatura {sub.id})")
    audit.record(session, target.id, f"Recebeu {quantity} créditos de {owner.id} (assinatura {sub.id})")
    return TransferResult(
        debit=result.packet,
        credit=credit,
        balance_before=result.balance_before,
        balance_after=result.balance_after,
        subscription=sub,
    )


async def adjust_balance(
    session: AsyncSession,
    operator: User,
    target_id: int | None,
    amount: int,
    operation: str = "add",
    reason: str | None = None,
) -> tuple[User, int]:
    if amount < 0:
        raise ValidationError("amount deve ser um inteiro não-negativo")
    if operation not in OPERATIONS:
        raise ValidationError("operation inválida. Use 'add', 'subtract' ou 'set'")

    target_id = target_id or operator.id
    if target_id != operator.id and not operator.is_admin:
        raise Forbidden("Permissão negada para modificar saldo de outro usuário")
    if operation == "set" and not operator.is_admin:
        raise Forbidden("Apenas admin pode usar operation 'set'")

    target = await lock_user(session, target_id)
    if target is None:
        raise NotFound("Usuário alvo não encontrado")

    tag = uuid.uuid4().hex
    current = await compute_balance(session, target.id)
    if operation == "add":
        delta = amount
    elif operation == "subtract":
        if current < amount:
            raise InsufficientCredits(required=amount, available=current)
        delta = -amount
    else:
        delta = amount - current

    if delta:
        kind = operation if operation != "set" else ("set_add" if delta > 0 else "set_subtract")
        await append_packet(session, target.id, delta, f"manual_{kind}:operador:{operator.id}:{tag}")

    audit.record(session, target.id, f"Saldo {operation} {amount}. Motivo: {reason or ''} (operador: {operator.id})")
    new_balance = await compute_balance(session, target.id)
    logger.info("Balance of user %s adjusted by operator %s (%s %s)", target.id, operator.id, operation, amount)
    return target, new_balance


async def register_credit_purchase(session: AsyncSession, operator: User, target_id: int, quantity: int) -> dict:
    """Offline credit sale recorded by an administrator, priced from the current config."""
    if quantity <= 0:
        raise ValidationError("quantidade inválida")
    config = await get_current_config(session)
    if config is None:
        raise InternalError("Configuração do sistema não encontrada (preço do crédito)")
    target = await lock_user(session, target_id)
    if target is None:
        raise NotFound("Usuário não encontrado")

    unit_price = Decimal(config.credit_price)
    total = (unit_price * quantity).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    purchase = Purchase(
        user_id=target.id,
        amount_paid=total,
        description=f"( usuário {target.nome} comprou {quantity} por {unit_price} a unidade )",
    )
    session.add(purchase)
    await session.flush()
    await append_packet(session, target.id, quantity, f"compra_creditos_{purchase.id}")
    session.add(Revenue(user_id=target.id, amount=total, description=f"Compra de créditos - usuário {target.nome}"))
    audit.record(session, target.id, f"Compra de {quantity} créditos registrada por operador {operator.id}")
    await session.flush()
    return {
        "purchase": purchase,
        "quantidade": quantity,
        "preco_unitario": unit_price,
        "total": total,
    }


async def attach_result(
    session: AsyncSession,
    request_id: int,
    final_result: str,
    description: str | None = None,
) -> tuple[AnalysisRequest, notifications.Notification | None]:
    if not final_result or not final_result.strip():
        raise ValidationError("Campo 'resultado_final' é obrigatório e deve ser uma string não vazia")
    request = await session.get(AnalysisRequest, request_id)
    if request is None:
        raise NotFound("Solicitação não encontrada")

    request.final_result = final_result.strip()
    request.result_description = description
    request.status = STATUS_FINISHED
    request.result_at = dt.datetime.now(dt.timezone.utc)
    await session.flush()

    owner = await session.get(User, request.user_id)
    message = notifications.result_available(owner, request.id) if owner and owner.email else None
    return request, message

