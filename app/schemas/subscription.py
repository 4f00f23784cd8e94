from decimal import Decimal
import datetime as dt

from pydantic import BaseModel, ConfigDict, Field, field_serializer


class PlanOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    time_priority: int
    monthly_credits: int
    monthly_price: Decimal
    stripe_price_id: str | None = None
    max_members: int

    @field_serializer("monthly_price")
    def _price(self, value: Decimal) -> str:
        return f"{value:.2f}"


class SubscriptionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_id: int
    plan_id: int
    active: bool
    status: str
    stripe_subscription_id: str | None = None
    current_period_end: dt.datetime | None = None
    cancel_at_period_end: bool
    canceled_at: dt.datetime | None = None
    created_at: dt.datetime


class SubscriptionSummaryOut(BaseModel):
    id: int
    owner_id: int
    plan_id: int
    plan_name: str
    status: str
    active: bool
    current_period_end: dt.datetime | None = None
    cancel_at_period_end: bool
    time_priority: int
    cached: bool = False


class SubscribeIn(BaseModel):
    id_plano: int = Field(..., gt=0)


class PlanChangeIn(BaseModel):
    id_plano: int = Field(..., gt=0)
    target_user_id: int = Field(..., gt=0)


class MemberAddIn(BaseModel):
    email: str = Field(..., max_length=255)


class MemberOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    nome: str
    email: str
    subscription_link_id: int | None = None


class TransferIn(BaseModel):
    targetUserId: int
    quantidade: int


class CancelIn(BaseModel):
    assinaturaId: int | None = None
    subscriptionId: str | None = Field(default=None, max_length=128)
    immediate: bool = True
