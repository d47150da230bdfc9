from __future__ import annotations
"""SQLAlchemy model for store deliveries (owned by the store-operations app)."""
from datetime import date, datetime
from decimal import Decimal
from sqlalchemy import Integer, String, Date, DateTime, Enum, Numeric, Boolean, ForeignKey
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from bl_reconciliation.database import Base
from .enums import DeliveryStatus


class Delivery(Base):
    __tablename__ = "deliveries"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    store_id: Mapped[int] = mapped_column(Integer, ForeignKey("store_reconciliation_configs.store_id"), nullable=False, index=True)
    supplier_name: Mapped[str | None] = mapped_column(String, nullable=True)

    # Invoice side (filled by operators or by reconciliation)
    invoice_reference: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    invoice_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # Delivery note (BL) side
    bl_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    bl_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    scheduled_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[DeliveryStatus] = mapped_column(Enum(DeliveryStatus), default=DeliveryStatus.PENDING, nullable=False, index=True)
    reconciled: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
