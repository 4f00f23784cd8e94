import datetime as dt
from sqlalchemy import DateTime, ForeignKey, Integer, String, Text, Index
from sqlalchemy.orm import Mapped, mapped_column
from app.models.base import Base

PRODUCT_CHEMICAL = "quimico"
PRODUCT_BIOLOGICAL = "biologico"

STATUS_IN_PROGRESS = "em_andamento"
STATUS_FINISHED = "finalizado"


class Product(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(128), unique=True, index=True)
    kind: Mapped[str] = mapped_column(String(16))


class AnalysisRequest(Base):
    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("user.id"), index=True)
    chemical_product_id: Mapped[int] = mapped_column(ForeignKey("product.id"))
    biological_product_id: Mapped[int] = mapped_column(ForeignKey("product.id"))
    status: Mapped[str] = mapped_column(String(16), default=STATUS_IN_PROGRESS)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    final_result: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_description: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=lambda: dt.datetime.now(dt.timezone.utc))
    result_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_analysisrequest_user_requested", "user_id", "requested_at"),
    )
