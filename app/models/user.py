import datetime as dt
from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base

USER_KIND_CLIENT = "cliente"
USER_KIND_ADMIN = "administrativo"


class User(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    nome: Mapped[str] = mapped_column(String(128))
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True)
    tipo_usuario: Mapped[str] = mapped_column(String(32), default=USER_KIND_CLIENT)
    ja_fez_compra: Mapped[bool] = mapped_column(Boolean, default=False)
    # back-reference to the subscription this account is linked to (owner or member)
    subscription_link_id: Mapped[int | None] = mapped_column(
        ForeignKey("subscription.id", use_alter=True, name="fk_user_subscription_link"), nullable=True, index=True
    )
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=lambda: dt.datetime.now(dt.timezone.utc))

    @property
    def is_admin(self) -> bool:
        return (self.tipo_usuario or "").lower() == USER_KIND_ADMIN


class AuditLog(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    action: Mapped[str] = mapped_column(String(512))
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=lambda: dt.datetime.now(dt.timezone.utc))

    __table_args__ = (
        Index("ix_auditlog_user_created", "user_id", "created_at"),
    )
