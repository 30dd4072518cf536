from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy import ForeignKey, Index, Numeric, String, UniqueConstraint, event
from sqlalchemy.orm import Mapped, mapped_column

from services.balance_service.app.db.base import BaseModel
from services.balance_service.app.errors import LedgerImmutable


class SourceType(str, Enum):
    order = "order"
    fund_request = "fund_request"
    adjustment = "adjustment"


@dataclass(frozen=True)
class LedgerSource:
    """What caused a balance change. At most one ledger event exists per source."""

    type: SourceType
    reference: str

    @classmethod
    def order(cls, order_id: int) -> LedgerSource:
        return cls(SourceType.order, str(order_id))

    @classmethod
    def fund_request(cls, request_id: int) -> LedgerSource:
        return cls(SourceType.fund_request, str(request_id))

    @classmethod
    def adjustment(cls, key: str) -> LedgerSource:
        return cls(SourceType.adjustment, key)

    def __str__(self) -> str:
        return f"{self.type.value}:{self.reference}"


class LedgerEvent(BaseModel):
    __tablename__ = "ledger_events"
    __table_args__ = (
        Index("ix_ledger_events_user_id_id", "user_id", "id"),
        UniqueConstraint("source_type", "source_id", name="uq_ledger_event_source"),
    )

    user_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True, nullable=False)
    delta: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    balance_after: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)
    source_type: Mapped[str] = mapped_column(String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(String(64), nullable=False)
    description: Mapped[str | None] = mapped_column(String(255), nullable=True, default=None)

    @property
    def source(self) -> LedgerSource:
        return LedgerSource(SourceType(self.source_type), self.source_id)


@event.listens_for(LedgerEvent, "before_update")
def _reject_event_update(_mapper, _connection, target: LedgerEvent) -> None:
    raise LedgerImmutable("Ledger events cannot be modified", event_id=target.id)


@event.listens_for(LedgerEvent, "before_delete")
def _reject_event_delete(_mapper, _connection, target: LedgerEvent) -> None:
    raise LedgerImmutable("Ledger events cannot be deleted", event_id=target.id)
