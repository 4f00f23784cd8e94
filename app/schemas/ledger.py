from decimal import Decimal
from typing import Literal
import datetime as dt

from pydantic import BaseModel, ConfigDict, Field


class UserBrief(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    nome: str


class BalanceOut(BaseModel):
    saldo_em_creditos: int
    user: UserBrief


class BalanceAdjustIn(BaseModel):
    amount: int = Field(..., ge=0)
    operation: Literal["add", "subtract", "set"] = "add"
    target_user_id: int | None = None
    reason: str | None = Field(default=None, max_length=255)


class CreditPurchaseIn(BaseModel):
    quantidade: int = Field(..., gt=0)
    target_user_id: int = Field(..., gt=0)


class ConfigIn(BaseModel):
    preco_do_credito: Decimal = Field(..., gt=0, max_digits=10, decimal_places=4)
    preco_da_solicitacao_em_creditos: int | None = Field(default=None, ge=0)
    validade_em_dias: int | None = None
    descricao: str | None = Field(default=None, max_length=255)


class ConfigOut(BaseModel):
    id: int
    preco_do_credito: Decimal
    preco_da_solicitacao_em_creditos: int
    validade_em_dias: int
    descricao: str | None = None
    data_vigencia: dt.datetime
    atualizado_em: dt.datetime

    @classmethod
    def from_model(cls, config) -> "ConfigOut":
        return cls(
            id=config.id,
            preco_do_credito=config.credit_price,
            preco_da_solicitacao_em_creditos=config.request_price_credits,
            validade_em_dias=config.validity_days,
            descricao=config.description,
            data_vigencia=config.effective_at,
            atualizado_em=config.updated_at,
        )
