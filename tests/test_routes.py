from sqlalchemy import select

from app.models.subscription import Subscription
from app.models.user import User
from app.services.ledger import append_packet, compute_balance
from app.services.subscriptions import subscribe_locally


async def test_status(client):
    response = await client.get("/status")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.headers["X-Frame-Options"] == "DENY"


async def test_balance_requires_token(client):
    response = await client.get("/usuarios/saldo")
    assert response.status_code == 401
    assert response.json() == {"error": "Token não fornecido"}


async def test_balance_of_current_user(client, session, make_user, auth_headers):
    user = await make_user("Ana")
    await append_packet(session, user.id, 7, "seed")
    await session.commit()

    response = await client.get("/usuarios/saldo", headers=auth_headers(user))

    assert response.status_code == 200
    assert response.json() == {"saldo_em_creditos": 7, "user": {"id": user.id, "nome": "Ana"}}


async def test_admin_sets_balance_of_other_user(client, session, make_user, auth_headers, session_factory):
    admin = await make_user("Admin", admin=True)
    target = await make_user()
    await append_packet(session, target.id, 3, "seed")
    await session.commit()

    response = await client.patch(
        "/usuarios/saldo",
        json={"amount": 10, "operation": "set", "target_user_id": target.id, "reason": "ajuste"},
        headers=auth_headers(admin),
    )

    assert response.status_code == 200
    assert response.json()["user"]["saldo_em_creditos"] == 10
    async with session_factory() as s:
        assert await compute_balance(s, target.id) == 10


async def test_client_cannot_adjust_other_user(client, make_user, auth_headers):
    user = await make_user()
    other = await make_user()

    response = await client.patch(
        "/usuarios/saldo",
        json={"amount": 10, "operation": "add", "target_user_id": other.id},
        headers=auth_headers(user),
    )

    assert response.status_code == 403


async def test_create_request_spends_credit(client, session, make_user, make_config, make_products, auth_headers):
    await make_config(request_price_credits=1)
    chemical, biological = await make_products()
    user = await make_user()
    await append_packet(session, user.id, 1, "seed")
    await session.commit()
    payload = {"id_produto_quimico": chemical.id, "id_produto_biologico": biological.id}

    created = await client.post("/solicitacoes", json=payload, headers=auth_headers(user))
    assert created.status_code == 201
    body = created.json()
    assert (body["saldo_antes"], body["saldo_depois"]) == (1, 0)
    assert body["solicitacao"]["nome_produto_quimico"] == "Glifosato"

    rejected = await client.post("/solicitacoes", json=payload, headers=auth_headers(user))
    assert rejected.status_code == 400
    assert rejected.json()["detalhe"] == {"necessario": 1, "disponivel": 0, "faltam": 1}

    listed = await client.get("/solicitacoes", headers=auth_headers(user))
    assert len(listed.json()) == 1


async def test_create_request_needs_product_pair(client, make_user, auth_headers):
    user = await make_user()
    response = await client.post("/solicitacoes", json={"id_produto_quimico": 1}, headers=auth_headers(user))
    assert response.status_code == 400
    assert response.json()["error"] == "invalid_payload"


async def test_admin_attaches_result(client, session, make_user, make_config, make_products, auth_headers):
    await make_config(request_price_credits=0)
    chemical, biological = await make_products()
    admin = await make_user(admin=True)
    user = await make_user()
    created = await client.post(
        "/solicitacoes",
        json={"nome_produto_quimico": chemical.name, "nome_produto_biologico": biological.name},
        headers=auth_headers(user),
    )
    request_id = created.json()["solicitacao"]["id"]

    forbidden = await client.post(
        f"/solicitacoes/{request_id}/vincular", json={"resultado_final": "compatível"}, headers=auth_headers(user)
    )
    assert forbidden.status_code == 403

    response = await client.post(
        f"/solicitacoes/{request_id}/vincular", json={"resultado_final": "compatível"}, headers=auth_headers(admin)
    )
    assert response.status_code == 200
    assert response.json()["solicitacao"]["status"] == "finalizado"


async def test_config_publish_moves_pointer(client, make_user, auth_headers):
    admin = await make_user(admin=True)
    user = await make_user()

    first = await client.post("/config", json={"preco_do_credito": "2.00", "validade_em_dias": 365}, headers=auth_headers(admin))
    second = await client.post("/config", json={"preco_do_credito": "3.50"}, headers=auth_headers(admin))
    assert first.status_code == second.status_code == 201

    latest = await client.get("/config/latest", headers=auth_headers(user))
    assert latest.json()["id"] == second.json()["id"]
    assert latest.json()["validade_em_dias"] == 365

    denied = await client.post("/config", json={"preco_do_credito": "1.00"}, headers=auth_headers(user))
    assert denied.status_code == 403


async def test_subscribe_twice_conflicts(client, make_user, make_plan, auth_headers, redis):
    plan = await make_plan()
    user = await make_user()

    first = await client.post("/assinaturas/me/assinar", json={"id_plano": plan.id}, headers=auth_headers(user))
    assert first.status_code == 201
    second = await client.post("/assinaturas/me/assinar", json={"id_plano": plan.id}, headers=auth_headers(user))
    assert second.status_code == 409

    summary = await client.get("/assinaturas/me", headers=auth_headers(user))
    assert summary.status_code == 200
    assert summary.json()["cached"] is False
    cached = await client.get("/assinaturas/me", headers=auth_headers(user))
    assert cached.json()["cached"] is True
    assert cached.json()["plan_name"] == plan.name
    assert await redis.hget(f"sub:{user.id}", "active") == "1"


async def test_member_management(client, make_user, make_plan, auth_headers):
    plan = await make_plan(name="Enterprise", max_members=1)
    owner = await make_user()
    first = await make_user(email="primeiro@example.com")
    await make_user(email="segundo@example.com")
    await client.post("/assinaturas/me/assinar", json={"id_plano": plan.id}, headers=auth_headers(owner))

    added = await client.post("/assinaturas/me/contas", json={"email": "primeiro@example.com"}, headers=auth_headers(owner))
    assert added.status_code == 200

    over_limit = await client.post("/assinaturas/me/contas", json={"email": "segundo@example.com"}, headers=auth_headers(owner))
    assert over_limit.status_code == 400
    assert over_limit.json()["detalhe"] == {"colaboradores_atuais": 1, "limite_do_plano": 1}

    listed = await client.get("/assinaturas/me/contas", headers=auth_headers(first))
    assert {c["id"] for c in listed.json()["contas"]} == {owner.id, first.id}

    member_cannot_add = await client.post(
        "/assinaturas/me/contas", json={"email": "segundo@example.com"}, headers=auth_headers(first)
    )
    assert member_cannot_add.status_code == 403

    removed = await client.delete(f"/assinaturas/me/contas/{first.id}", headers=auth_headers(owner))
    assert removed.status_code == 200
    assert removed.json()["user"]["subscription_link_id"] is None


async def test_transfer_route(client, session, make_user, make_plan, auth_headers, session_factory):
    plan = await make_plan(name="Enterprise", max_members=3)
    owner = await make_user()
    member = await make_user()
    sub = await subscribe_locally(session, owner, plan.id)
    member.subscription_link_id = sub.id
    await append_packet(session, owner.id, 5, "seed")
    await session.commit()

    ok = await client.post(
        "/assinaturas/me/contas/transferir", json={"targetUserId": member.id, "quantidade": 2}, headers=auth_headers(owner)
    )
    assert ok.status_code == 200
    assert (ok.json()["saldo_antes"], ok.json()["saldo_depois"]) == (5, 3)

    too_much = await client.post(
        "/assinaturas/me/contas/transferir", json={"targetUserId": member.id, "quantidade": 5}, headers=auth_headers(owner)
    )
    assert too_much.status_code == 400
    async with session_factory() as s:
        assert await compute_balance(s, owner.id) == 3
        assert await compute_balance(s, member.id) == 2


async def _external_subscription(session, owner, plan, external_id="sub_ext"):
    sub = await subscribe_locally(session, owner, plan.id)
    sub.stripe_subscription_id = external_id
    await session.commit()
    return sub


async def test_cancellation_gateway_failure_changes_nothing(client, session, make_user, make_plan, gateway, auth_headers, session_factory):
    plan = await make_plan()
    owner = await make_user()
    sub = await _external_subscription(session, owner, plan)
    gateway.fail_cancellation()

    response = await client.post("/cancelamentoAssinatura/cancelar", json={"assinaturaId": sub.id}, headers=auth_headers(owner))

    assert response.status_code == 502
    async with session_factory() as s:
        row = await s.get(Subscription, sub.id)
        assert row.active is True
        assert (await s.get(User, owner.id)).subscription_link_id == sub.id


async def test_cancellation_unlinks_accounts(client, session, make_user, make_plan, gateway, auth_headers, session_factory):
    plan = await make_plan(name="Enterprise", max_members=3)
    owner = await make_user()
    member = await make_user()
    sub = await _external_subscription(session, owner, plan)
    member.subscription_link_id = sub.id
    await session.commit()

    stranger = await make_user()
    denied = await client.post("/cancelamentoAssinatura/cancelar", json={"assinaturaId": sub.id}, headers=auth_headers(stranger))
    assert denied.status_code == 403

    response = await client.post("/cancelamentoAssinatura/cancelar", json={"subscriptionId": "sub_ext"}, headers=auth_headers(owner))

    assert response.status_code == 200
    assert response.json()["note"] == "cancelled"
    assert {u["id"] for u in response.json()["desvinculados"]} == {owner.id, member.id}
    assert gateway.cancelled == [("sub_ext", True)]
    async with session_factory() as s:
        active = (await s.execute(select(Subscription).where(Subscription.active.is_(True)))).scalars().all()
        assert active == []

    again = await client.post("/cancelamentoAssinatura/cancelar", json={"assinaturaId": sub.id}, headers=auth_headers(owner))
    assert again.json()["note"] == "already_cancelled_local"


async def test_cancel_at_period_end_keeps_subscription_active(client, session, make_user, make_plan, gateway, auth_headers, session_factory):
    plan = await make_plan()
    owner = await make_user()
    sub = await _external_subscription(session, owner, plan)

    response = await client.post(
        "/cancelamentoAssinatura/cancelar",
        json={"assinaturaId": sub.id, "immediate": False},
        headers=auth_headers(owner),
    )

    assert response.json()["note"] == "cancel_at_period_end"
    async with session_factory() as s:
        row = await s.get(Subscription, sub.id)
        assert row.active is True
        assert row.cancel_at_period_end is True


async def test_admin_plan_change_and_credit_purchase(client, make_user, make_plan, make_config, auth_headers, session_factory):
    await make_config(credit_price="2.50")
    plan = await make_plan(monthly_credits=30)
    admin = await make_user(admin=True)
    target = await make_user()

    changed = await client.post("/planos/change", json={"id_plano": plan.id, "target_user_id": target.id}, headers=auth_headers(admin))
    assert changed.status_code == 200
    assert changed.json()["plano"]["monthly_price"] == "199.90"

    bought = await client.post("/compras/creditos", json={"quantidade": 4, "target_user_id": target.id}, headers=auth_headers(admin))
    assert bought.status_code == 200
    assert bought.json()["detalhes"]["total"] == "10.00"

    async with session_factory() as s:
        assert await compute_balance(s, target.id) == 34

    plans = await client.get("/planos")
    assert [p["id"] for p in plans.json()] == [plan.id]
