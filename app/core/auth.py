from dataclasses import dataclass

from fastapi import Header, HTTPException, status, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import Settings
from app.core.deps import get_settings_dep, get_db_session
from app.core.security import verify_token, TokenClaims
from app.models.user import User


@dataclass(frozen=True)
class Identity:
    user_id: int
    claims: TokenClaims


async def get_current_identity(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings_dep),
) -> Identity:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token não fornecido")
    token = authorization.split(" ", 1)[1]
    claims = verify_token(token, settings, expected_typ="access")
    return Identity(user_id=claims.user_id, claims=claims)


async def get_current_user(
    identity: Identity = Depends(get_current_identity),
    session: AsyncSession = Depends(get_db_session),
) -> User:
    user = await session.get(User, identity.user_id)
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Usuário não encontrado")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    # o tipo é sempre lido do banco; a claim do token pode estar desatualizada
    if not user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Acesso negado: requer tipo Administrativo")
    return user
