from __future__ import annotations

from datetime import timedelta

from fastapi import APIRouter, Depends, Query, Response, status
from loguru import logger

from services.balance_service.app.dependencies import get_facade, get_orders, require_admin
from services.balance_service.app.principal import Principal
from services.balance_service.app.schemas import (
    AdjustmentRequest,
    AuditResponse,
    LedgerEventResponse,
    OrderResponse,
    ReconcileResponse,
)
from services.balance_service.app.services.balance_facade import BalanceFacade
from services.balance_service.app.services.orders import OrderWorkflow

router = APIRouter()


@router.post("/orders/reconcile", response_model=ReconcileResponse)
async def reconcile_orders(
    older_than_seconds: int | None = Query(None, ge=0),
    admin: Principal = Depends(require_admin),
    orders: OrderWorkflow = Depends(get_orders),
) -> ReconcileResponse:
    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
    settled = await orders.reconcile(older_than=older_than)
    logger.bind(actor=admin.label).info("reconciliation requested, {} orders settled", len(settled))
    return ReconcileResponse(
        settled=len(settled),
        orders=[OrderResponse.model_validate(order) for order in settled],
    )


@router.post(
    "/users/{user_id}/adjustments",
    response_model=LedgerEventResponse,
    status_code=status.HTTP_201_CREATED,
)
async def adjust_balance(
    user_id: int,
    payload: AdjustmentRequest,
    response: Response,
    admin: Principal = Depends(require_admin),
    facade: BalanceFacade = Depends(get_facade),
) -> LedgerEventResponse:
    event, applied = await facade.adjust(
        user_id,
        payload.direction,
        payload.amount,
        idempotency_key=payload.idempotency_key,
        reason=f"{payload.reason} (by {admin.label})"[:255],
    )
    if not applied:
        response.status_code = status.HTTP_200_OK
    return LedgerEventResponse.model_validate(event)


@router.get("/users/{user_id}/audit", response_model=AuditResponse)
async def audit_user(
    user_id: int,
    _admin: Principal = Depends(require_admin),
    facade: BalanceFacade = Depends(get_facade),
) -> AuditResponse:
    audit = await facade.audit(user_id)
    return AuditResponse(
        user_id=audit.user_id,
        balance=audit.balance,
        ledger_total=audit.ledger_total,
        last_balance_after=audit.last_balance_after,
        event_count=audit.event_count,
        consistent=audit.consistent,
    )
