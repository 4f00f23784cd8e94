from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import require_admin
from app.core.deps import get_db_session
from app.db.session import transaction
from app.models.user import User
from app.schemas.ledger import CreditPurchaseIn
from app.services.spend import register_credit_purchase

router = APIRouter()


@router.post("/creditos")
async def buy_credits(
    payload: CreditPurchaseIn,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        result = await register_credit_purchase(session, admin, payload.target_user_id, payload.quantidade)
    purchase = result["purchase"]
    return {
        "mensagem": "Compra realizada com sucesso",
        "compra": {
            "id": purchase.id,
            "id_usuario": purchase.user_id,
            "valor_pago": f"{result['total']:.2f}",
            "descricao": purchase.description,
        },
        "detalhes": {
            "quantidade": result["quantidade"],
            "preco_unitario": str(result["preco_unitario"]),
            "total": f"{result['total']:.2f}",
        },
    }
