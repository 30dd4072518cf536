from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from services.balance_service.app.dependencies import (
    get_current_principal,
    get_fund_requests,
    get_page_size,
    require_admin,
    scope_user,
)
from services.balance_service.app.models import FundRequestStatus
from services.balance_service.app.principal import Principal
from services.balance_service.app.schemas import (
    FundRequestCreate,
    FundRequestPage,
    FundRequestResponse,
    FundRequestStatsResponse,
    FundRequestTransitionRequest,
)
from services.balance_service.app.services.fund_requests import FundRequestWorkflow

router = APIRouter()


@router.post("", response_model=FundRequestResponse, status_code=status.HTTP_201_CREATED)
async def submit_fund_request(
    payload: FundRequestCreate,
    principal: Principal = Depends(get_current_principal),
    workflow: FundRequestWorkflow = Depends(get_fund_requests),
) -> FundRequestResponse:
    request = await workflow.submit(
        principal.user_id,
        payload.amount,
        notes=payload.notes,
        paypal_email=payload.paypal_email,
    )
    return FundRequestResponse.model_validate(request)


@router.get("", response_model=FundRequestPage)
async def list_fund_requests(
    status_filter: FundRequestStatus | None = Query(None, alias="status"),
    user_id: int | None = Query(None, ge=1),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Depends(get_page_size),
    principal: Principal = Depends(get_current_principal),
    workflow: FundRequestWorkflow = Depends(get_fund_requests),
) -> FundRequestPage:
    items, total = await workflow.list_requests(
        user_id=scope_user(principal, user_id),
        status=status_filter,
        start=start_date,
        end=end_date,
        page=page,
        limit=limit,
    )
    return FundRequestPage(
        items=[FundRequestResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=FundRequestStatsResponse)
async def fund_request_stats(
    user_id: int | None = Query(None, ge=1),
    principal: Principal = Depends(get_current_principal),
    workflow: FundRequestWorkflow = Depends(get_fund_requests),
) -> FundRequestStatsResponse:
    stats = await workflow.stats(user_id=scope_user(principal, user_id))
    return FundRequestStatsResponse.model_validate(stats)


@router.get("/{request_id}", response_model=FundRequestResponse)
async def get_fund_request(
    request_id: int,
    principal: Principal = Depends(get_current_principal),
    workflow: FundRequestWorkflow = Depends(get_fund_requests),
) -> FundRequestResponse:
    request = await workflow.get(request_id, viewer=principal)
    return FundRequestResponse.model_validate(request)


@router.post("/{request_id}/transitions", response_model=FundRequestResponse)
async def transition_fund_request(
    request_id: int,
    payload: FundRequestTransitionRequest,
    admin: Principal = Depends(require_admin),
    workflow: FundRequestWorkflow = Depends(get_fund_requests),
) -> FundRequestResponse:
    request = await workflow.transition(
        request_id,
        payload.target_status,
        actor=admin,
        admin_notes=payload.admin_notes,
    )
    return FundRequestResponse.model_validate(request)
