from __future__ import annotations
"""SQLAlchemy model for per-store external table configuration."""
from sqlalchemy import Integer, String, Boolean
from sqlalchemy.orm import Mapped, mapped_column
from bl_reconciliation.database import Base


class StoreConfigRecord(Base):
    """Connection + column mapping of one store's external invoice table.

    Any of the connection fields or the four mandatory column names may be
    NULL while a store is being set up; such a store is not reconcilable.
    """
    __tablename__ = "store_reconciliation_configs"
    store_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    store_name: Mapped[str | None] = mapped_column(String, nullable=True)

    base_url: Mapped[str | None] = mapped_column(String, nullable=True)
    project_id: Mapped[str | None] = mapped_column(String, nullable=True)
    table_id: Mapped[str | None] = mapped_column(String, nullable=True)
    api_token: Mapped[str | None] = mapped_column(String, nullable=True)

    invoice_column: Mapped[str | None] = mapped_column(String, nullable=True)
    bl_column: Mapped[str | None] = mapped_column(String, nullable=True)
    amount_column: Mapped[str | None] = mapped_column(String, nullable=True)
    supplier_column: Mapped[str | None] = mapped_column(String, nullable=True)
    date_column: Mapped[str | None] = mapped_column(String, nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
