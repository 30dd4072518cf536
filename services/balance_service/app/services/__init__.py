from .balance_facade import BalanceFacade
from .fund_requests import FundRequestWorkflow
from .ledger_store import LedgerStore
from .locks import UserLocks
from .orders import OrderWorkflow

__all__ = [
    "BalanceFacade",
    "FundRequestWorkflow",
    "LedgerStore",
    "OrderWorkflow",
    "UserLocks",
]
