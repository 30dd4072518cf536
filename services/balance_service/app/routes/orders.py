from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query, Response, status
from loguru import logger

from services.balance_service.app.dependencies import get_current_principal, get_orders, get_page_size, scope_user
from services.balance_service.app.errors import StoreUnavailable
from services.balance_service.app.models import Order, OrderStatus
from services.balance_service.app.principal import Principal
from services.balance_service.app.schemas import OrderCreate, OrderPage, OrderResponse, OrderStatsResponse
from services.balance_service.app.services.orders import OrderWorkflow

router = APIRouter()

UNSETTLED = frozenset({OrderStatus.pending.value, OrderStatus.processing.value})


def _checkout_response(order: Order, response: Response) -> OrderResponse:
    # 202 tells the caller the debit is still in flight and the order will settle later
    if order.status in UNSETTLED:
        response.status_code = status.HTTP_202_ACCEPTED
    return OrderResponse.model_validate(order)


@router.post(
    "",
    response_model=OrderResponse,
    status_code=status.HTTP_201_CREATED,
    responses={202: {"model": OrderResponse, "description": "Debit still processing"}},
)
async def place_order(
    payload: OrderCreate,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    orders: OrderWorkflow = Depends(get_orders),
) -> OrderResponse:
    order = await orders.create(
        principal.user_id,
        item_name=payload.item_name,
        price=payload.price,
        order_type=payload.order_type,
        description=payload.description,
    )
    try:
        order = await orders.checkout(order.id, user_id=principal.user_id)
    except StoreUnavailable as exc:
        # The order already exists; the caller retries its checkout instead of placing another
        logger.bind(order_id=order.id, user_id=principal.user_id).warning("checkout deferred: {}", exc.message)
        try:
            order = await orders.get(order.id)
        except StoreUnavailable as reread:
            raise StoreUnavailable(exc.message, order_id=order.id) from reread
    return _checkout_response(order, response)


@router.get("", response_model=OrderPage)
async def list_orders(
    status_filter: OrderStatus | None = Query(None, alias="status"),
    order_type: str | None = Query(None, alias="type", max_length=64),
    user_id: int | None = Query(None, ge=1),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Depends(get_page_size),
    principal: Principal = Depends(get_current_principal),
    orders: OrderWorkflow = Depends(get_orders),
) -> OrderPage:
    items, total = await orders.list_orders(
        scope_user(principal, user_id),
        status=status_filter,
        order_type=order_type,
        start=start_date,
        end=end_date,
        page=page,
        limit=limit,
    )
    return OrderPage(
        items=[OrderResponse.model_validate(item) for item in items],
        total=total,
        page=page,
        limit=limit,
    )


@router.get("/stats", response_model=OrderStatsResponse)
async def order_stats(
    user_id: int | None = Query(None, ge=1),
    principal: Principal = Depends(get_current_principal),
    orders: OrderWorkflow = Depends(get_orders),
) -> OrderStatsResponse:
    stats = await orders.stats(user_id=scope_user(principal, user_id))
    return OrderStatsResponse.model_validate(stats)


@router.get("/{order_id}", response_model=OrderResponse)
async def get_order(
    order_id: int,
    principal: Principal = Depends(get_current_principal),
    orders: OrderWorkflow = Depends(get_orders),
) -> OrderResponse:
    order = await orders.get(order_id, user_id=principal.user_id)
    return OrderResponse.model_validate(order)


@router.post(
    "/{order_id}/checkout",
    response_model=OrderResponse,
    responses={202: {"model": OrderResponse, "description": "Debit still processing"}},
)
async def checkout_order(
    order_id: int,
    response: Response,
    principal: Principal = Depends(get_current_principal),
    orders: OrderWorkflow = Depends(get_orders),
) -> OrderResponse:
    order = await orders.checkout(order_id, user_id=principal.user_id)
    return _checkout_response(order, response)
