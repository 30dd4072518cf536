from __future__ import annotations

from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field

from services.balance_service.app.models import OrderStatus


class OrderCreate(BaseModel):
    item_name: str = Field(..., min_length=1, max_length=255)
    price: Decimal = Field(..., gt=0, max_digits=18, decimal_places=2)
    order_type: str = Field("guest_post", min_length=1, max_length=64)
    description: str | None = Field(None, max_length=2000)


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    user_id: int
    item_name: str
    order_type: str
    description: str | None
    price: Decimal
    status: OrderStatus
    failure_code: str | None
    failure_reason: str | None
    ledger_event_id: int | None
    processing_started_at: datetime | None
    completed_at: datetime | None
    created_at: datetime


class OrderPage(BaseModel):
    items: list[OrderResponse]
    total: int
    page: int
    limit: int


class ReconcileResponse(BaseModel):
    settled: int
    orders: list[OrderResponse]


class OrderStatsResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int
    pending: int
    processing: int
    completed: int
    failed: int
    total_revenue: Decimal
    average_order_value: Decimal
