"""Prometheus metrics for balance ledger flows."""

from __future__ import annotations

from prometheus_client import Counter

balance_credit_total = Counter(
    "balance_credit_total",
    "Number of successful balance credits grouped by source type",
    ["source"],
)

balance_debit_total = Counter(
    "balance_debit_total",
    "Number of successful balance debits grouped by source type",
    ["source"],
)

balance_insufficient_funds_total = Counter(
    "balance_insufficient_funds_total",
    "Number of debit attempts rejected for insufficient funds",
    ["source"],
)

ledger_store_retry_total = Counter(
    "ledger_store_retry_total",
    "Ledger store units of work retried after a transient failure",
    ["reason"],
)

fund_request_transition_total = Counter(
    "fund_request_transition_total",
    "Fund request transitions grouped by target status and outcome",
    ["target", "outcome"],
)

order_outcome_total = Counter(
    "order_outcome_total",
    "Order settlements grouped by resulting status",
    ["status"],
)

order_checkout_timeout_total = Counter(
    "order_checkout_timeout_total",
    "Checkouts that returned while the debit was still in flight",
)

balance_adjustment_replay_total = Counter(
    "balance_adjustment_replay_total",
    "Admin adjustments answered from an existing ledger event for the same idempotency key",
    ["direction"],
)
