from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from services.balance_service.app.models import FundRequestStatus


class FundRequestCreate(BaseModel):
    amount: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    notes: str | None = Field(None, max_length=2000)
    paypal_email: str | None = Field(None, max_length=255)


class FundRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    amount: Decimal
    status: FundRequestStatus
    notes: str | None
    paypal_email: str | None
    request_date: datetime
    admin_notes: str | None
    processed_date: datetime | None
    processed_by: str | None
    ledger_event_id: int | None


class FundRequestTransitionRequest(BaseModel):
    target_status: FundRequestStatus
    admin_notes: str | None = Field(None, max_length=2000)


class FundRequestPage(BaseModel):
    items: list[FundRequestResponse]
    total: int
    page: int
    limit: int


class FundRequestStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    pending: int
    invoice_sent: int
    paid: int
    rejected: int
    total_amount: Decimal
    pending_amount: Decimal
    paid_amount: Decimal
