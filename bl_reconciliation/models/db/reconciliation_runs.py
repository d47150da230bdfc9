from __future__ import annotations
"""SQLAlchemy model for reconciliation run bookkeeping."""
from datetime import datetime
from sqlalchemy import Integer, DateTime, Enum, JSON, Text
from sqlalchemy.orm import Mapped, mapped_column
from bl_reconciliation.database import Base
from .enums import RunStatus, RunTrigger


class ReconciliationRunRecord(Base):
    __tablename__ = "reconciliation_runs"
    id: Mapped[int] = mapped_column(Integer, primary_key=True, index=True)
    trigger: Mapped[RunTrigger] = mapped_column(Enum(RunTrigger), nullable=False)
    status: Mapped[RunStatus] = mapped_column(Enum(RunStatus), nullable=False, index=True)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    ended_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    processed_count: Mapped[int] = mapped_column(Integer, default=0)
    reconciled_count: Mapped[int] = mapped_column(Integer, default=0)
    error_count: Mapped[int] = mapped_column(Integer, default=0)
    errors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    details: Mapped[list | None] = mapped_column(JSON, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
