from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from services.balance_service.app.db.base import BaseModel


class OrderStatus(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


class Order(BaseModel):
    __tablename__ = "orders"
    __table_args__ = (
        Index("ix_orders_status_processing_started", "status", "processing_started_at"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    item_name: Mapped[str] = mapped_column(String(255), nullable=False)
    order_type: Mapped[str] = mapped_column(String(64), nullable=False, default="guest_post")
    description: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    price: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=OrderStatus.pending.value)
    failure_code: Mapped[str | None] = mapped_column(String(64), nullable=True, default=None)
    failure_reason: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    ledger_event_id: Mapped[int | None] = mapped_column(ForeignKey("ledger_events.id"), nullable=True, default=None)
    processing_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
