from .user import User
from .ledger_event import LedgerEvent, LedgerSource, SourceType
from .fund_request import FundRequest, FundRequestStatus
from .order import Order, OrderStatus

__all__ = [
    "User",
    "LedgerEvent",
    "LedgerSource",
    "SourceType",
    "FundRequest",
    "FundRequestStatus",
    "Order",
    "OrderStatus",
]
