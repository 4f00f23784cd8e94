import pytest
from sqlalchemy import func, select

from app.core.errors import Forbidden, InsufficientCredits, InternalError
from app.models.analysis import AnalysisRequest
from app.models.ledger import CreditPacket
from app.models.user import AuditLog, User
from app.services.ledger import append_packet, compute_balance
from app.services.spend import adjust_balance, create_analysis_request, spend, transfer_to_member
from app.services.subscriptions import subscribe_locally


async def _packet_count(session, user_id):
    return await session.scalar(select(func.count(CreditPacket.id)).where(CreditPacket.user_id == user_id))


async def test_spend_rejects_overdraft_without_writing(session, make_user):
    user = await make_user()
    user_id = user.id
    await append_packet(session, user_id, 3, "seed")
    await session.commit()

    with pytest.raises(InsufficientCredits) as excinfo:
        await spend(session, user_id, 5, "consumo:x")
    await session.rollback()

    assert excinfo.value.required == 5
    assert excinfo.value.available == 3
    assert excinfo.value.to_body()["detalhe"]["faltam"] == 2
    assert await _packet_count(session, user_id) == 1
    assert await compute_balance(session, user_id) == 3


async def test_spend_appends_negative_packet(session, make_user):
    user = await make_user()
    await append_packet(session, user.id, 4, "seed")

    result = await spend(session, user.id, 3, "consumo:y")
    await session.commit()

    assert (result.balance_before, result.balance_after) == (4, 1)
    assert result.packet.quantity == -3


async def test_request_consumes_exactly_one_credit(session, make_user, make_config, make_products):
    await make_config(request_price_credits=1)
    chemical, biological = await make_products()
    user = await make_user()
    user_id = user.id
    chemical_name, biological_name = chemical.name, biological.name
    await append_packet(session, user_id, 1, "seed")
    await session.commit()

    request, result, price = await create_analysis_request(session, user, chemical.id, biological.id)
    await session.commit()

    assert price == 1
    assert result.balance_after == 0
    assert await compute_balance(session, user_id) == 0
    debits = (
        await session.execute(select(CreditPacket).where(CreditPacket.user_id == user_id, CreditPacket.quantity < 0))
    ).scalars().all()
    assert [p.origin for p in debits] == [f"consumo_solicitacao:{request.id}"]

    with pytest.raises(InsufficientCredits):
        await create_analysis_request(session, user, chemical_name, biological_name)
    await session.rollback()

    count = await session.scalar(select(func.count(AnalysisRequest.id)).where(AnalysisRequest.user_id == user_id))
    assert count == 1


async def test_request_without_config_is_internal_error(session, make_user, make_products):
    chemical, biological = await make_products()
    user = await make_user()
    with pytest.raises(InternalError):
        await create_analysis_request(session, user, chemical.id, biological.id)


async def _enterprise_owner_with_member(session, make_user, make_plan):
    plan = await make_plan(name="Enterprise", max_members=5, time_priority=2)
    owner = await make_user("Dono")
    member = await make_user("Membro")
    sub = await subscribe_locally(session, owner, plan.id)
    member.subscription_link_id = sub.id
    await session.commit()
    return owner, member, sub


async def test_transfer_conserves_total(session, make_user, make_plan):
    owner, member, _ = await _enterprise_owner_with_member(session, make_user, make_plan)
    await append_packet(session, owner.id, 10, "seed")
    await append_packet(session, member.id, 2, "seed")
    await session.commit()

    result = await transfer_to_member(session, owner, member.id, 4)
    await session.commit()

    assert await compute_balance(session, owner.id) == 6
    assert await compute_balance(session, member.id) == 6
    assert result.debit.received_at == result.credit.received_at
    assert result.debit.quantity == -4 and result.credit.quantity == 4
    audits = await session.scalar(
        select(func.count(AuditLog.id)).where(AuditLog.action.like("%créditos%"), AuditLog.user_id.in_([owner.id, member.id]))
    )
    assert audits == 2


async def test_transfer_beyond_balance_leaves_both_unchanged(session, make_user, make_plan):
    owner, member, _ = await _enterprise_owner_with_member(session, make_user, make_plan)
    owner_id, member_id = owner.id, member.id
    await append_packet(session, owner_id, 3, "seed")
    await append_packet(session, member_id, 1, "seed")
    await session.commit()

    with pytest.raises(InsufficientCredits):
        await transfer_to_member(session, owner, member_id, 5)
    await session.rollback()

    assert await compute_balance(session, owner_id) == 3
    assert await compute_balance(session, member_id) == 1


async def test_transfer_requires_linked_target(session, make_user, make_plan):
    owner, _, _ = await _enterprise_owner_with_member(session, make_user, make_plan)
    stranger = await make_user("Fora")
    await append_packet(session, owner.id, 10, "seed")
    await session.commit()

    with pytest.raises(Forbidden):
        await transfer_to_member(session, owner, stranger.id, 1)


async def test_transfer_requires_enterprise_plan(session, make_user, make_plan):
    plan = await make_plan(name="Pro")
    owner = await make_user()
    member = await make_user()
    sub = await subscribe_locally(session, owner, plan.id)
    member.subscription_link_id = sub.id
    await session.commit()

    with pytest.raises(Forbidden):
        await transfer_to_member(session, owner, member.id, 1)


async def test_adjust_set_reaches_exact_balance(session, make_user):
    admin = await make_user("Admin", admin=True)
    target = await make_user()
    await append_packet(session, target.id, 12, "seed")
    await session.commit()

    _, balance = await adjust_balance(session, admin, target.id, 5, "set", "correção")
    await session.commit()
    assert balance == 5

    packets = (await session.execute(select(CreditPacket).where(CreditPacket.user_id == target.id))).scalars().all()
    assert any(p.origin.startswith(f"manual_set_subtract:operador:{admin.id}:") for p in packets)


async def test_non_admin_cannot_adjust_others(session, make_user):
    user = await make_user()
    other = await make_user()
    with pytest.raises(Forbidden):
        await adjust_balance(session, user, other.id, 5, "add")
    with pytest.raises(Forbidden):
        await adjust_balance(session, user, user.id, 5, "set")


async def test_subtract_checks_balance(session, make_user):
    user = await make_user()
    user_id = user.id
    await append_packet(session, user_id, 2, "seed")
    await session.commit()

    with pytest.raises(InsufficientCredits):
        await adjust_balance(session, user, None, 3, "subtract")
    await session.rollback()
    user = await session.get(User, user_id)
    _, balance = await adjust_balance(session, user, None, 2, "subtract")
    assert balance == 0
