import datetime as dt

import pytest
from fastapi import HTTPException
from jose import jwt

from app.core.security import create_access_token, verify_token


def test_access_token_roundtrip(settings):
    token = create_access_token(42, settings, tipo_usuario="cliente", email="ana@example.com")
    claims = verify_token(token, settings, expected_typ="access")
    assert claims.user_id == 42
    assert claims.tipo_usuario == "cliente"
    assert claims.typ == "access"


def test_typ_enforced(settings):
    token = create_access_token(42, settings)
    with pytest.raises(HTTPException):
        verify_token(token, settings, expected_typ="refresh")


def test_legacy_id_claim_accepted(settings):
    now = dt.datetime.now(dt.timezone.utc)
    payload = {"id": 7, "exp": int((now + dt.timedelta(minutes=5)).timestamp()), "typ": "access"}
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    assert verify_token(token, settings).user_id == 7


def test_future_iat_rejected(settings):
    now = dt.datetime.now(dt.timezone.utc)
    payload = {
        "sub": "1",
        "typ": "access",
        "exp": int((now + dt.timedelta(minutes=5)).timestamp()),
        "iat": int((now + dt.timedelta(seconds=settings.jwt_clock_skew_seconds + 10)).timestamp()),
    }
    token = jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    with pytest.raises(HTTPException):
        verify_token(token, settings, expected_typ="access")


def test_wrong_key_rejected(settings):
    now = dt.datetime.now(dt.timezone.utc)
    payload = {"sub": "1", "typ": "access", "exp": int((now + dt.timedelta(minutes=5)).timestamp())}
    token = jwt.encode(payload, "another-secret", algorithm="HS256")
    with pytest.raises(HTTPException) as excinfo:
        verify_token(token, settings)
    assert excinfo.value.status_code == 401


async def test_admin_route_reads_role_from_database(client, make_user, settings):
    user = await make_user()
    # claim de admin no token não basta
    token = create_access_token(user.id, settings, tipo_usuario="administrativo")
    response = await client.post(
        "/compras/creditos",
        json={"quantidade": 1, "target_user_id": user.id},
        headers={"Authorization": f"Bearer {token}"},
    )
    assert response.status_code == 403
