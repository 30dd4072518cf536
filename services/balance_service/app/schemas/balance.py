from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class AccountCreate(BaseModel):
    email: str | None = Field(None, max_length=255)
    display_name: str | None = Field(None, max_length=255)


class AccountResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    email: str | None
    display_name: str | None
    balance: Decimal
    created_at: datetime


class BalanceResponse(BaseModel):
    user_id: int
    balance: Decimal


class LedgerEventResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    delta: Decimal
    balance_after: Decimal
    source_type: str
    source_id: str
    description: str | None
    created_at: datetime


class LedgerHistoryResponse(BaseModel):
    items: list[LedgerEventResponse]
    next_cursor: int | None = None


class AdjustmentRequest(BaseModel):
    """Manual admin correction, applied once per idempotency key."""

    direction: Literal["credit", "debit"]
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    reason: str = Field(..., min_length=1, max_length=255)
    idempotency_key: str = Field(..., min_length=1, max_length=64)


class AuditResponse(BaseModel):
    user_id: int
    balance: Decimal
    ledger_total: Decimal
    last_balance_after: Decimal | None
    event_count: int
    consistent: bool
