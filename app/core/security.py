import datetime as dt
import uuid
from typing import Any

from fastapi import HTTPException, status
from jose import jwt, JWTError
from pydantic import BaseModel, ValidationError, field_validator

from app.core.config import Settings


class TokenClaims(BaseModel):
    sub: str
    exp: int
    typ: str = "access"
    tipo_usuario: str | None = None
    email: str | None = None
    jti: str | None = None
    aud: str | list[str] | None = None
    iss: str | None = None
    nbf: int | None = None
    iat: int | None = None

    @field_validator("sub")
    @classmethod
    def _numeric_subject(cls, value: str) -> str:
        if not value.isdigit():
            raise ValueError("sub must be a numeric user id")
        return value

    @property
    def user_id(self) -> int:
        return int(self.sub)


def _verification_key(settings: Settings) -> str:
    if settings.jwt_algorithm.startswith("HS"):
        if settings.jwt_secret_key:
            return settings.jwt_secret_key
    elif settings.jwt_public_key:
        return settings.jwt_public_key
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="No verification key available")


def _get_leeway(settings: Settings) -> int:
    return max(0, settings.jwt_clock_skew_seconds)


def verify_token(token: str, settings: Settings, expected_typ: str = "access") -> TokenClaims:
    """
    Verify a JWT and return its claims; aud/iss are enforced only when configured.
    """
    options = {
        "verify_aud": settings.jwt_audience is not None,
        "verify_iss": settings.jwt_issuer is not None,
        "leeway": _get_leeway(settings),
    }
    try:
        payload = jwt.decode(
            token,
            _verification_key(settings),
            algorithms=[settings.jwt_algorithm],
            audience=settings.jwt_audience,
            issuer=settings.jwt_issuer,
            options=options,
        )
        # tokens antigos trazem o id em "id" em vez de "sub"
        if "sub" not in payload and "id" in payload:
            payload["sub"] = payload["id"]
        payload["sub"] = str(payload.get("sub", ""))
        claims = TokenClaims(**payload)
    except (JWTError, ValidationError, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token verification failed") from exc

    if claims.typ != expected_typ:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Unexpected token type")

    now_ts = int(dt.datetime.now(dt.timezone.utc).timestamp())
    if claims.iat and claims.iat - _get_leeway(settings) > now_ts:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token issued in the future")

    return claims


def _sign_payload(payload: dict[str, Any], settings: Settings) -> str:
    """
    Signs a JWT. Tokens are issued by the identity service in production; this is
    used by tests and local tooling.
    """
    if settings.jwt_algorithm.startswith("HS") and settings.jwt_secret_key:
        return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    if settings.jwt_private_key:
        return jwt.encode(payload, settings.jwt_private_key, algorithm=settings.jwt_algorithm)
    raise RuntimeError("No signing key configured")


def create_access_token(
    user_id: int,
    settings: Settings,
    tipo_usuario: str | None = None,
    email: str | None = None,
) -> str:
    now = dt.datetime.now(dt.timezone.utc)
    expire = now + dt.timedelta(minutes=settings.jwt_expire_minutes)
    payload: dict[str, Any] = {
        "sub": str(user_id),
        "exp": int(expire.timestamp()),
        "nbf": int(now.timestamp()),
        "iat": int(now.timestamp()),
        "typ": "access",
        "jti": str(uuid.uuid4()),
    }
    if tipo_usuario:
        payload["tipo_usuario"] = tipo_usuario
    if email:
        payload["email"] = email
    if settings.jwt_audience:
        payload["aud"] = settings.jwt_audience
    if settings.jwt_issuer:
        payload["iss"] = settings.jwt_issuer
    return _sign_payload(payload, settings)
