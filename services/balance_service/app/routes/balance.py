from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Response, status

from services.balance_service.app.dependencies import get_current_principal, get_facade, get_page_size
from services.balance_service.app.principal import Principal
from services.balance_service.app.schemas import (
    AccountCreate,
    AccountResponse,
    BalanceResponse,
    LedgerEventResponse,
    LedgerHistoryResponse,
)
from services.balance_service.app.services.balance_facade import BalanceFacade

router = APIRouter()


@router.post("/account", response_model=AccountResponse, status_code=status.HTTP_201_CREATED)
async def open_account(
    response: Response,
    payload: AccountCreate | None = None,
    principal: Principal = Depends(get_current_principal),
    facade: BalanceFacade = Depends(get_facade),
) -> AccountResponse:
    payload = payload or AccountCreate()
    user, created = await facade.open_account(
        principal.user_id,
        email=payload.email or principal.email,
        display_name=payload.display_name,
    )
    if not created:
        # Idempotent create: return existing
        response.status_code = status.HTTP_200_OK
    return AccountResponse.model_validate(user)


@router.get("", response_model=BalanceResponse)
async def get_balance(
    principal: Principal = Depends(get_current_principal),
    facade: BalanceFacade = Depends(get_facade),
) -> BalanceResponse:
    balance = await facade.get_balance(principal.user_id)
    return BalanceResponse(user_id=principal.user_id, balance=balance)


@router.get("/events", response_model=LedgerHistoryResponse)
async def list_events(
    cursor: int | None = Query(None, ge=1, description="Return events older than this event id"),
    limit: int = Depends(get_page_size),
    principal: Principal = Depends(get_current_principal),
    facade: BalanceFacade = Depends(get_facade),
) -> LedgerHistoryResponse:
    # 404 for callers without a ledger account
    await facade.get_balance(principal.user_id)
    events, next_cursor = await facade.history(principal.user_id, limit=limit, cursor=cursor)
    return LedgerHistoryResponse(
        items=[LedgerEventResponse.model_validate(event) for event in events],
        next_cursor=next_cursor,
    )
