from fastapi import APIRouter, FastAPI

from . import admin, balance, fund_requests, orders, system


def register_routes(app: FastAPI) -> None:
    router = APIRouter(prefix="/api/v1")
    router.include_router(balance.router, prefix="/balance", tags=["balance"])
    router.include_router(fund_requests.router, prefix="/fund-requests", tags=["fund-requests"])
    router.include_router(orders.router, prefix="/orders", tags=["orders"])
    router.include_router(admin.router, prefix="/admin", tags=["admin"])
    router.include_router(system.router, tags=["system"])
    app.include_router(router)
