from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from services.balance_service.app.db.base import BaseModel, utcnow


class FundRequestStatus(str, Enum):
    pending = "pending"
    invoice_sent = "invoice-sent"
    paid = "paid"
    rejected = "rejected"


class FundRequest(BaseModel):
    __tablename__ = "fund_requests"
    __table_args__ = (
        Index("ix_fund_requests_status", "status"),
        Index("ix_fund_requests_request_date", "request_date"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=FundRequestStatus.pending.value)
    paypal_email: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    request_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    admin_notes: Mapped[str | None] = mapped_column(Text, nullable=True, default=None)
    processed_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, default=None)
    processed_by: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)
    ledger_event_id: Mapped[int | None] = mapped_column(ForeignKey("ledger_events.id"), nullable=True, default=None)
