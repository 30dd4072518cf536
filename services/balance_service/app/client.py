"""Async HTTP client for the balance service, with an optimistic balance cache.

Front ends (dashboard, checkout) render balance changes before the service
answers. ``OptimisticBalance`` keeps those speculative changes apart from the
last balance the service confirmed: ``display`` shows both combined, while
``can_afford`` only ever looks at the confirmed value.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any
from uuid import uuid4

import httpx
from loguru import logger

from shared import REQUEST_ID_HEADER

DEFAULT_TIMEOUT = httpx.Timeout(10.0, read=20.0)


class BalanceClientError(Exception):
    """Non-2xx answer from the balance service."""

    def __init__(self, status_code: int, code: str | None, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


@dataclass
class PendingChange:
    token: str
    delta: Decimal
    reason: str | None = None


@dataclass
class OptimisticBalance:
    confirmed: Decimal | None = None
    pending: dict[str, PendingChange] = field(default_factory=dict)

    @property
    def unconfirmed(self) -> bool:
        return bool(self.pending)

    @property
    def display(self) -> Decimal | None:
        if self.confirmed is None:
            return None
        return self.confirmed + sum((change.delta for change in self.pending.values()), Decimal("0.00"))

    def can_afford(self, amount: Decimal) -> bool:
        # Speculative changes never authorize a debit
        return self.confirmed is not None and self.confirmed >= amount

    def apply(self, delta: Decimal, reason: str | None = None) -> str:
        token = uuid4().hex
        self.pending[token] = PendingChange(token=token, delta=delta, reason=reason)
        return token

    def confirm(self, token: str, balance: Decimal) -> None:
        """Drop the speculative change and adopt the service's balance."""
        self.pending.pop(token, None)
        self.confirmed = balance

    def rollback(self, token: str) -> None:
        self.pending.pop(token, None)

    def refresh(self, balance: Decimal) -> None:
        """Adopt an authoritative read.

        Pending changes stay: each one is dropped only by ``confirm`` or
        ``rollback`` once its own request has answered.
        """
        self.confirmed = balance


class BalanceClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        *,
        timeout: httpx.Timeout = DEFAULT_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._client = httpx.AsyncClient(
            base_url=base_url,
            timeout=timeout,
            transport=transport,
            headers={"authorization": f"Bearer {token}"},
        )
        self.balance = OptimisticBalance()
        self._order_tokens: dict[int, str] = {}

    async def __aenter__(self) -> BalanceClient:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        headers = {REQUEST_ID_HEADER: uuid4().hex}
        response = await self._client.request(method, f"/api/v1{path}", headers=headers, **kwargs)
        if response.is_success:
            return response
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") or response.reason_phrase
        logger.bind(status=response.status_code, path=path).warning("balance service answered {}", message)
        raise BalanceClientError(response.status_code, body.get("code"), message)

    async def open_account(self, *, display_name: str | None = None) -> dict[str, Any]:
        return (await self._request("POST", "/balance/account", json={"display_name": display_name})).json()

    async def get_balance(self) -> Decimal:
        response = await self._request("GET", "/balance")
        balance = Decimal(str(response.json()["balance"]))
        self.balance.refresh(balance)
        return balance

    async def place_order(
        self,
        item_name: str,
        price: Decimal,
        *,
        order_type: str = "guest_post",
        description: str | None = None,
    ) -> dict[str, Any]:
        """Place an order, showing the debit optimistically until the service answers.

        The confirmed balance is re-read once the order settles and a failed
        order rolls the speculative debit back. A still-processing order keeps
        it pending until ``get_order`` sees the order settle.
        """
        token = self.balance.apply(-price, reason=item_name)
        payload = {
            "item_name": item_name,
            "price": str(price),
            "order_type": order_type,
            "description": description,
        }
        try:
            response = await self._request("POST", "/orders", json=payload)
        except (BalanceClientError, httpx.HTTPError):
            self.balance.rollback(token)
            raise
        order = response.json()
        self._order_tokens[order["id"]] = token
        await self._settle_token(order)
        return order

    async def _settle_token(self, order: dict[str, Any]) -> None:
        if order["status"] not in {"completed", "failed"}:
            return
        token = self._order_tokens.pop(order["id"], None)
        if token is None:
            return
        if order["status"] == "completed":
            self.balance.confirm(token, await self._fetch_balance())
        else:
            self.balance.rollback(token)

    async def _fetch_balance(self) -> Decimal:
        response = await self._request("GET", "/balance")
        return Decimal(str(response.json()["balance"]))

    async def get_order(self, order_id: int) -> dict[str, Any]:
        order = (await self._request("GET", f"/orders/{order_id}")).json()
        await self._settle_token(order)
        return order

    async def submit_fund_request(
        self, amount: Decimal, *, notes: str | None = None, paypal_email: str | None = None
    ) -> dict[str, Any]:
        payload = {"amount": str(amount), "notes": notes, "paypal_email": paypal_email}
        return (await self._request("POST", "/fund-requests", json=payload)).json()

    async def history(self, *, limit: int | None = None, cursor: int | None = None) -> dict[str, Any]:
        params = {key: value for key, value in {"limit": limit, "cursor": cursor}.items() if value is not None}
        return (await self._request("GET", "/balance/events", params=params)).json()
