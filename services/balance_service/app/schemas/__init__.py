from .balance import (
    AccountCreate,
    AccountResponse,
    AdjustmentRequest,
    AuditResponse,
    BalanceResponse,
    LedgerEventResponse,
    LedgerHistoryResponse,
)
from .fund_request import (
    FundRequestCreate,
    FundRequestPage,
    FundRequestResponse,
    FundRequestStatsResponse,
    FundRequestTransitionRequest,
)
from .order import OrderCreate, OrderPage, OrderResponse, OrderStatsResponse, ReconcileResponse

__all__ = [
    "AccountCreate",
    "AccountResponse",
    "AdjustmentRequest",
    "AuditResponse",
    "BalanceResponse",
    "LedgerEventResponse",
    "LedgerHistoryResponse",
    "FundRequestCreate",
    "FundRequestPage",
    "FundRequestResponse",
    "FundRequestStatsResponse",
    "FundRequestTransitionRequest",
    "OrderCreate",
    "OrderPage",
    "OrderResponse",
    "OrderStatsResponse",
    "ReconcileResponse",
]
