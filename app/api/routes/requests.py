from fastapi import APIRouter, BackgroundTasks, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.auth import get_current_user, require_admin
from app.core.deps import get_db_session
from app.db.session import transaction
from app.models.user import User
from app.schemas.analysis import AnalysisRequestCreatedOut, AnalysisRequestIn, AnalysisRequestOut, ResultIn
from app.services.notifications import dispatch_notifications
from app.services.spend import attach_result, create_analysis_request, list_requests, product_names

router = APIRouter()


@router.post("", response_model=AnalysisRequestCreatedOut, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: AnalysisRequestIn,
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        request, result, price = await create_analysis_request(session, user, payload.chemical, payload.biological)
        names = await product_names(session, [request])
    return AnalysisRequestCreatedOut(
        solicitacao=AnalysisRequestOut.from_model(request, names),
        custo_em_creditos=price,
        saldo_antes=result.balance_before,
        saldo_depois=result.balance_after,
    )


@router.get("", response_model=list[AnalysisRequestOut])
async def get_requests(
    user: User = Depends(get_current_user),
    session: AsyncSession = Depends(get_db_session),
):
    requests = await list_requests(session, user)
    names = await product_names(session, requests)
    return [AnalysisRequestOut.from_model(r, names) for r in requests]


@router.post("/{request_id}/vincular")
async def link_result(
    request_id: int,
    payload: ResultIn,
    background_tasks: BackgroundTasks,
    admin: User = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    async with transaction(session):
        request, message = await attach_result(session, request_id, payload.resultado_final, payload.descricao_resultado)
        names = await product_names(session, [request])
    if message:
        background_tasks.add_task(dispatch_notifications, [message])
    return {"message": "Resultado vinculado com sucesso", "solicitacao": AnalysisRequestOut.from_model(request, names)}
