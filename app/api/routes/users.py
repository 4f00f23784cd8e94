from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user
from app.core.deps import get_db_session
from app.db.session import transaction
from app.models.user import User
from app.schemas.ledger import BalanceAdjustIn, BalanceOut, UserBrief
from app.services.ledger import compute_balance
from app.services.spend import adjust_balance

router = APIRouter()


@router.get("/saldo", response_model=BalanceOut)
async def get_balance(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    balance = await compute_balance(session, user.id)
    return BalanceOut(saldo_em_creditos=balance, user=UserBrief.model_validate(user))


@router.patch("/saldo")
async def patch_balance(
    payload: BalanceAdjustIn,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        target, balance = await adjust_balance(
            session, user, payload.target_user_id, payload.amount, payload.operation, payload.reason
        )
    return {"success": True, "user": {"id": target.id, "nome": target.nome, "saldo_em_creditos": balance}}
