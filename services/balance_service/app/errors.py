"""Typed errors raised by the balance ledger and its workflows.

Every error carries a stable ``code`` and maps to one HTTP status through the
shared ``ServiceError`` handler. Domain errors are never retried;
``StoreUnavailable`` (and its ``BalanceChanged`` subtype) are retried a bounded
number of times at the store boundary before they reach a caller.
"""

from __future__ import annotations

from shared.errors import ServiceError


class LedgerError(ServiceError):
    code = "ledger_error"
    status_code = 400


class NotFound(LedgerError):
    code = "not_found"
    status_code = 404


class InvalidAmount(LedgerError):
    code = "invalid_amount"
    status_code = 422


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"
    status_code = 409


class Conflict(LedgerError):
    code = "conflict"
    status_code = 409


class InvalidStateTransition(LedgerError):
    code = "invalid_state_transition"
    status_code = 409


class Forbidden(LedgerError):
    code = "forbidden"
    status_code = 403


class LedgerImmutable(LedgerError):
    code = "ledger_immutable"
    status_code = 500


class StoreUnavailable(LedgerError):
    code = "store_unavailable"
    status_code = 503


class BalanceChanged(StoreUnavailable):
    """The balance row changed between read and write; safe to retry."""

    code = "balance_changed"
