"""Order debit workflow.

``pending -> processing -> completed | failed``. Checkout moves an order to
processing and settles it by debiting the price through the balance facade.
A debit that does not answer within the checkout timeout keeps running in the
background; the order stays ``processing`` until that debit, a retried
checkout, or a reconciliation pass settles it. Settlement is idempotent: it
only acts on a ``processing`` order and reuses an existing debit event for
the order instead of charging again.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from loguru import logger
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.balance_service.app.db.base import utcnow
from services.balance_service.app.errors import (
    InvalidAmount,
    InvalidStateTransition,
    LedgerError,
    NotFound,
    StoreUnavailable,
)
from services.balance_service.app.metrics import order_checkout_timeout_total, order_outcome_total
from services.balance_service.app.models import LedgerEvent, LedgerSource, Order, OrderStatus
from services.balance_service.app.services.balance_facade import BalanceFacade
from services.balance_service.app.services.ledger_store import MONEY_QUANTUM, ZERO, to_money
from services.balance_service.app.settings import BalanceSettings

TERMINAL_STATUSES = frozenset({OrderStatus.completed, OrderStatus.failed})


@dataclass(frozen=True)
class OrderStats:
    total: int = 0
    pending: int = 0
    processing: int = 0
    completed: int = 0
    failed: int = 0
    # Sum of prices over every matched order, whatever its status
    total_revenue: Decimal = ZERO
    average_order_value: Decimal = ZERO


class OrderWorkflow:
    def __init__(
        self,
        facade: BalanceFacade,
        *,
        debit_timeout: float = 5.0,
        stale_after: timedelta = timedelta(minutes=5),
    ) -> None:
        self._facade = facade
        self._debit_timeout = debit_timeout
        self._stale_after = stale_after
        self._inflight: set[asyncio.Task[Order]] = set()

    @classmethod
    def from_settings(cls, facade: BalanceFacade, settings: BalanceSettings) -> OrderWorkflow:
        return cls(
            facade,
            debit_timeout=settings.debit_timeout_seconds,
            stale_after=timedelta(seconds=settings.reconcile_stale_after_seconds),
        )

    async def create(
        self,
        user_id: int,
        *,
        item_name: str,
        price: Any,
        order_type: str = "guest_post",
        description: str | None = None,
    ) -> Order:
        value = to_money(price)
        if value <= ZERO:
            raise InvalidAmount("Order price must be greater than zero", price=str(value))

        async def work(session: AsyncSession) -> Order:
            await self._facade.require_account(session, user_id)
            order = Order(
                user_id=user_id,
                item_name=item_name,
                order_type=order_type,
                description=description,
                price=value,
                status=OrderStatus.pending.value,
            )
            session.add(order)
            await session.flush()
            return order

        order = await self._facade.query(work)
        logger.bind(user_id=user_id, order_id=order.id).info("order for {} created at {}", item_name, value)
        return order

    async def get(self, order_id: int, *, user_id: int | None = None) -> Order:
        order = await self._facade.query(lambda session: session.get(Order, order_id))
        if order is None or (user_id is not None and order.user_id != user_id):
            raise NotFound(f"Order {order_id} not found", order_id=order_id)
        return order

    async def list_orders(
        self,
        user_id: int | None = None,
        *,
        status: OrderStatus | None = None,
        order_type: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[Order], int]:
        """Page through orders, newest first; ``user_id=None`` lists every user's orders."""
        filters = []
        if user_id is not None:
            filters.append(Order.user_id == user_id)
        if status is not None:
            filters.append(Order.status == status.value)
        if order_type is not None:
            filters.append(Order.order_type == order_type)
        if start is not None:
            filters.append(Order.created_at >= start)
        if end is not None:
            filters.append(Order.created_at <= end)

        async def work(session: AsyncSession) -> tuple[list[Order], int]:
            total = await session.scalar(select(func.count(Order.id)).where(*filters))
            rows = await session.scalars(
                select(Order).where(*filters).order_by(Order.id.desc()).offset((page - 1) * limit).limit(limit)
            )
            return list(rows), int(total or 0)

        return await self._facade.query(work)

    async def stats(self, *, user_id: int | None = None) -> OrderStats:
        stmt = select(Order.status, func.count(Order.id), func.sum(Order.price)).group_by(Order.status)
        if user_id is not None:
            stmt = stmt.where(Order.user_id == user_id)

        async def work(session: AsyncSession) -> list[Any]:
            return list((await session.execute(stmt)).all())

        counts: dict[str, int] = {}
        revenue = ZERO
        for status, count, amount in await self._facade.query(work):
            counts[status] = int(count)
            revenue += Decimal(str(amount or 0))
        total = sum(counts.values())
        return OrderStats(
            total=total,
            pending=counts.get(OrderStatus.pending.value, 0),
            processing=counts.get(OrderStatus.processing.value, 0),
            completed=counts.get(OrderStatus.completed.value, 0),
            failed=counts.get(OrderStatus.failed.value, 0),
            total_revenue=revenue.quantize(MONEY_QUANTUM),
            average_order_value=(revenue / total).quantize(MONEY_QUANTUM) if total else ZERO,
        )

    async def checkout(self, order_id: int, *, user_id: int | None = None) -> Order:
        """Move the order to processing and wait a bounded time for its debit.

        Returns the order as ``completed`` or ``failed`` when the debit answered
        in time, or still ``processing`` when it did not. ``StoreUnavailable``
        propagates with the order left in ``processing`` so the caller retries.
        """
        order = await self.get(order_id, user_id=user_id)
        if OrderStatus(order.status) is OrderStatus.pending:
            order = await self._begin_processing(order)
        elif OrderStatus(order.status) in TERMINAL_STATUSES:
            raise InvalidStateTransition(
                f"Order {order_id} is already {order.status}", order_id=order_id, current=order.status
            )

        task = self._spawn_settlement(order.id)
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=self._debit_timeout)
        except asyncio.TimeoutError:
            order_checkout_timeout_total.inc()
            logger.bind(order_id=order_id).warning(
                "debit still in flight after {}s, order left processing", self._debit_timeout
            )
            return await self.get(order_id)

    async def settle(self, order_id: int) -> Order:
        """Resolve a processing order against the ledger; a no-op for any other status."""
        owner_id = (await self.get(order_id)).user_id
        source = LedgerSource.order(order_id)

        async def work(session: AsyncSession) -> Order:
            order = await session.get(Order, order_id, with_for_update=True, populate_existing=True)
            if order is None:
                raise NotFound(f"Order {order_id} not found", order_id=order_id)
            if order.status != OrderStatus.processing.value:
                return order

            existing = await self._facade.store.find_event(session, source)
            if existing is not None:
                self._complete(order, existing)
                return order

            try:
                event = await self._facade.debit(
                    order.user_id,
                    order.price,
                    source,
                    session=session,
                    description=f"Order {order.id}: {order.item_name}"[:255],
                )
            except StoreUnavailable:
                raise
            except LedgerError as exc:
                order.status = OrderStatus.failed.value
                order.failure_code = exc.code
                order.failure_reason = exc.message[:255]
                await session.flush()
                return order

            self._complete(order, event)
            await session.flush()
            return order

        order = await self._facade.run(owner_id, work)
        order_outcome_total.labels(status=order.status).inc()
        logger.bind(order_id=order_id, user_id=owner_id).info("order settled as {}", order.status)
        return order

    async def reconcile(self, *, older_than: timedelta | None = None, now: datetime | None = None) -> list[Order]:
        """Settle processing orders that started before the staleness cutoff."""
        cutoff = (now or utcnow()) - (self._stale_after if older_than is None else older_than)

        async def work(session: AsyncSession) -> list[int]:
            rows = await session.scalars(
                select(Order.id)
                .where(Order.status == OrderStatus.processing.value, Order.processing_started_at <= cutoff)
                .order_by(Order.id)
            )
            return list(rows)

        settled: list[Order] = []
        for order_id in await self._facade.query(work):
            try:
                settled.append(await self.settle(order_id))
            except StoreUnavailable as exc:
                logger.bind(order_id=order_id).warning("reconciliation deferred: {}", exc.message)
        logger.info("reconciliation settled {} stale orders", len(settled))
        return settled

    async def drain(self) -> None:
        """Wait for background settlements started by timed-out checkouts."""
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def _begin_processing(self, order: Order) -> Order:
        async def work(session: AsyncSession) -> Order:
            current = await session.get(Order, order.id, with_for_update=True, populate_existing=True)
            if current is None:
                raise NotFound(f"Order {order.id} not found", order_id=order.id)
            if current.status == OrderStatus.pending.value:
                current.status = OrderStatus.processing.value
                current.processing_started_at = utcnow()
                await session.flush()
            elif current.status != OrderStatus.processing.value:
                raise InvalidStateTransition(
                    f"Order {order.id} is already {current.status}", order_id=order.id, current=current.status
                )
            return current

        return await self._facade.run(order.user_id, work)

    def _spawn_settlement(self, order_id: int) -> asyncio.Task[Order]:
        task = asyncio.create_task(self.settle(order_id))
        self._inflight.add(task)
        task.add_done_callback(self._settlement_done)
        return task

    def _settlement_done(self, task: asyncio.Task[Order]) -> None:
        self._inflight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.warning("order settlement ended with {}: {}", type(exc).__name__, exc)

    @staticmethod
    def _complete(order: Order, event: LedgerEvent) -> None:
        order.status = OrderStatus.completed.value
        order.ledger_event_id = event.id
        order.failure_code = None
        order.failure_reason = None
        order.completed_at = utcnow()
